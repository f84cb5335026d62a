from __future__ import annotations

import calendar
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from ..config import DEFAULT_API_URL
from ..errors import FetchError

DEFAULT_ACCEPT_HEADER = "application/vnd.github+json"
PAGE_SIZE = 100
REQUEST_TIMEOUT = 30
MIN_RATE_LIMIT_WAIT = 10
MAX_RATE_LIMIT_WAITS = 5


class GitHubAPI:
    """Minimal forge REST client that pages with Link headers and waits out rate limits."""

    def __init__(
        self,
        token: Optional[str],
        base_url: str = DEFAULT_API_URL,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Accept": DEFAULT_ACCEPT_HEADER,
                "User-Agent": "forge-backup",
            }
        )
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"
        self._base_url = base_url.rstrip("/")
        self._sleep = sleep
        self._log = logging.getLogger(self.__class__.__name__)

    # Endpoints -------------------------------------------------------------
    def get_user(self, login: Optional[str] = None) -> Dict[str, Any]:
        """Return the profile of ``login``, or of the token owner when ``login`` is None."""
        return self.get(f"users/{login}" if login else "user")

    def list_user_repositories(self, login: str) -> List[Dict[str, Any]]:
        return list(self.iterate(f"users/{login}/repos"))

    def list_authenticated_user_repositories(self) -> List[Dict[str, Any]]:
        return list(self.iterate("user/repos"))

    def list_starred(self, login: str) -> List[Dict[str, Any]]:
        return list(self.iterate(f"users/{login}/starred"))

    def list_org_members(self, org: str) -> List[Dict[str, Any]]:
        return list(self.iterate(f"orgs/{org}/members"))

    # Transport -------------------------------------------------------------
    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        response = self._request(url, params)
        payload = _json(response)
        if not isinstance(payload, dict):
            raise FetchError(f"GET {url} returned {type(payload).__name__}, expected an object")
        return payload

    def iterate(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterable[Dict[str, Any]]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        next_url: Optional[str] = url
        request_params = params.copy() if params else {}
        request_params.setdefault("per_page", PAGE_SIZE)

        while next_url:
            response = self._request(next_url, request_params)
            page = _json(response)
            if not isinstance(page, list):
                raise FetchError(f"GET {next_url} returned {type(page).__name__}, expected a list")
            for item in page:
                yield item

            next_url = self._extract_next_link(response.headers.get("Link"))
            # The next link already carries the query string.
            request_params = {}

    def _request(self, url: str, params: Optional[Dict[str, Any]]) -> requests.Response:
        waits = 0
        while True:
            try:
                response = self._session.get(url, params=params, timeout=REQUEST_TIMEOUT)
            except requests.RequestException as exc:
                raise FetchError(f"Request to {url} failed: {exc}") from exc

            delay = self._rate_limit_delay(response)
            if delay is not None and waits < MAX_RATE_LIMIT_WAITS:
                waits += 1
                self._log.warning(
                    "Rate limit hit (%s) for %s; waiting %.0f seconds",
                    response.status_code,
                    url,
                    delay,
                )
                self._sleep(delay)
                continue

            if response.status_code >= 400:
                self._log.error("GitHub API request failed: %s %s", response.status_code, response.text)
                raise FetchError(
                    f"GET {url} returned {response.status_code}: {_error_message(response)}",
                    status_code=response.status_code,
                )
            return response

    @staticmethod
    def _rate_limit_delay(response: requests.Response) -> Optional[float]:
        status = response.status_code
        headers = response.headers
        if status not in (403, 429):
            return None

        retry_after = headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            return float(max(int(retry_after), 1))

        remaining = headers.get("x-ratelimit-remaining")
        if status == 429 or (remaining is not None and remaining == "0"):
            now = calendar.timegm(time.gmtime())
            reset = headers.get("x-ratelimit-reset")
            reset_at = int(reset) if reset and reset.isdigit() else now
            return float(max(MIN_RATE_LIMIT_WAIT, reset_at - now))
        return None

    @staticmethod
    def _extract_next_link(link_header: Optional[str]) -> Optional[str]:
        if not link_header:
            return None
        parts = [p.strip() for p in link_header.split(",")]
        for part in parts:
            if 'rel="next"' in part:
                start = part.find("<") + 1
                end = part.find(">")
                return part[start:end]
        return None


def _json(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise FetchError(
            f"GET {response.url} returned a response that is not JSON: {exc}",
            status_code=response.status_code,
        ) from exc


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text
