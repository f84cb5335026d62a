from __future__ import annotations

import logging
from typing import Optional, Sequence

import requests

from .errors import NotificationError

LOG = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30


def send_notification(
    url: str,
    message: str,
    tags: Sequence[str] = (),
    title: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> None:
    """POST ``message`` to an ntfy-style endpoint."""
    headers = {}
    if title:
        headers["Title"] = title
    if tags:
        headers["Tags"] = ",".join(tags)

    poster = session or requests
    try:
        response = poster.post(url, data=message.encode("utf-8"), headers=headers, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as exc:
        raise NotificationError(f"Failed to send notification to {url}: {exc}") from exc

    if response.status_code >= 400:
        raise NotificationError(f"Notification endpoint {url} returned {response.status_code}: {response.text}")
    LOG.info("Sent notification to %s", url)
