from __future__ import annotations

import ipaddress
import re
from pathlib import Path
from urllib.parse import urlparse

import requests
from requests import exceptions as requests_exceptions

from merse_studio.errors import InvalidMediaUrl, MediaError

_CHUNK = 1024 * 1024


def is_blocked_host(hostname: str) -> bool:
    value = (hostname or "").strip().lower().strip("[]")
    if value in ("localhost", "127.0.0.1", "::1"):
        return True
    if re.match(r"^10\.", value) or re.match(r"^192\.168\.", value) or re.match(r"^169\.254\.", value):
        return True
    m = re.match(r"^172\.(\d+)\.", value)
    if m and 16 <= int(m.group(1)) <= 31:
        return True
    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        return False
    return addr.is_loopback or addr.is_private or addr.is_link_local


def resolve_media_url(raw_url: str, host: str | None = None, proto: str | None = None) -> str:
    """
    Absolute http(s) URLs pass through; `/relative` paths resolve against the
    caller's host. Anything pointing at a private/loopback host is refused.
    """
    trimmed = (raw_url or "").strip()
    if re.match(r"^https?://", trimmed, re.IGNORECASE):
        absolute = trimmed
    elif trimmed.startswith("/"):
        if not host:
            raise InvalidMediaUrl("Host unavailable to resolve a relative URL.")
        scheme = (proto or "http").split(",")[0].strip() or "http"
        absolute = f"{scheme}://{host}{trimmed}"
    else:
        raise InvalidMediaUrl("Invalid video URL.")

    parsed = urlparse(absolute)
    if parsed.scheme not in ("http", "https"):
        raise InvalidMediaUrl("All URLs must use http/https.")
    if is_blocked_host(parsed.hostname or ""):
        raise InvalidMediaUrl("One or more URLs point to a host that is not allowed.")
    return absolute


def download_to_file(
    url: str,
    dest: Path,
    session: requests.Session | None = None,
    timeout: float = 120.0,
) -> Path:
    client = session or requests
    try:
        with client.get(url, stream=True, timeout=timeout) as resp:
            if resp.status_code >= 400:
                raise MediaError(f"Failed to download media ({resp.status_code} {resp.reason}).")
            dest.parent.mkdir(parents=True, exist_ok=True)
            with dest.open("wb") as f:
                for chunk in resp.iter_content(chunk_size=_CHUNK):
                    if chunk:
                        f.write(chunk)
    except requests_exceptions.RequestException as exc:
        raise MediaError(f"Failed to download media: {exc}") from exc
    return dest
