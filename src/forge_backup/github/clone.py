from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, urlparse, urlunparse

from ..errors import BackupError

LOG = logging.getLogger(__name__)


class RepositoryCloneError(BackupError):
    """Raised when ``git clone`` fails for one repository."""


def clone_repository(
    clone_url: str,
    destination: Path,
    username: Optional[str],
    password: Optional[str],
    recurse_submodules: bool = False,
) -> None:
    """Clone ``clone_url`` into ``destination`` with HTTP basic credentials."""
    remote_url = _with_credentials(clone_url, username, password)
    destination.parent.mkdir(parents=True, exist_ok=True)

    cmd: List[str] = ["git", "clone"]
    if recurse_submodules:
        cmd.append("--recurse-submodules")
    cmd.extend([remote_url, str(destination)])

    env = os.environ.copy()
    # Fail instead of blocking on a credential prompt.
    env["GIT_TERMINAL_PROMPT"] = "0"

    LOG.info("Cloning %s to %s", mask_password(remote_url), destination)
    try:
        subprocess.run(cmd, env=env, check=True, capture_output=True)
    except FileNotFoundError as exc:
        raise RepositoryCloneError("git executable not found") from exc
    except subprocess.CalledProcessError as exc:
        stderr = mask_secret(exc.stderr.decode("utf-8", "ignore").strip(), password)
        LOG.error("git clone failed: %s", stderr)
        raise RepositoryCloneError(f"git clone of {clone_url} failed: {stderr}") from exc


def mask_password(url: str, secret: str = "*****") -> str:
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = f"{secret}:{secret}@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


def mask_secret(text: str, secret: Optional[str]) -> str:
    if not secret:
        return text
    return text.replace(secret, "*****")


def _with_credentials(url: str, username: Optional[str], password: Optional[str]) -> str:
    if not password:
        return url
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return url
    user = quote(username or password, safe="")
    netloc = f"{user}:{quote(password, safe='')}@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))
