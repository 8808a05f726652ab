"""Best-effort evidence snapshot of a reported URL."""

import logging
import time
from typing import Optional
from urllib.parse import urlparse

import requests

from .models.evidence import Snapshot

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "...[truncated]"
DEFAULT_MAX_BYTES = 8 * 1024

# Headers never kept in evidence
_DROPPED_HEADERS = {"set-cookie", "cookie", "authorization", "proxy-authorization"}


class SnapshotError(Exception):
    """Exception raised when a snapshot cannot be taken."""
    pass


def truncate_to_bytes(text: str, max_bytes: int = DEFAULT_MAX_BYTES) -> str:
    """Cut ``text`` to ``max_bytes`` of UTF-8 and append the truncation marker.

    Text within the budget is returned verbatim. A multibyte character split
    by the cut is dropped.
    """
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore") + TRUNCATION_MARKER


def is_fetchable(target: str) -> bool:
    """Whether ``target`` is an http(s) URL (wallet strings are not)."""
    try:
        parsed = urlparse(target.strip())
    except ValueError:
        # Malformed host, e.g. an unclosed IPv6 bracket
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _declared_charset(content_type: str) -> Optional[str]:
    for param in content_type.split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key.strip().lower() == "charset" and value.strip():
            return value.strip().strip("\"'")
    return None


class EvidenceSnapshotter:
    """Single GET of the reported target, following redirects.

    ``timeout`` bounds the whole fetch, body included. Never raises: any
    failure yields an empty ``Snapshot``.
    """

    def __init__(self, timeout: float = 15.0, max_bytes: int = DEFAULT_MAX_BYTES):
        self.timeout = timeout
        self.max_bytes = max_bytes

    def capture(self, target: str) -> Snapshot:
        try:
            if not is_fetchable(target):
                logger.debug(f"Snapshot skipped: {target!r} is not an http(s) URL")
                return Snapshot()
            return self._fetch(target)
        except SnapshotError as e:
            logger.warning(f"Snapshot fetch failed for {target}: {e}")
        except Exception as e:
            logger.warning(f"Snapshot of {target} failed unexpectedly: {type(e).__name__}: {e}")
        return Snapshot()

    def _fetch(self, target: str) -> Snapshot:
        deadline = time.monotonic() + self.timeout
        try:
            response = requests.get(
                target,
                timeout=self.timeout,
                allow_redirects=True,
                stream=True,
                headers={"User-Agent": "PhishBlock-Evidence/1.0"},
            )
        except (requests.RequestException, ValueError) as e:
            raise SnapshotError(str(e)) from e

        try:
            headers = {
                str(k).lower(): str(v)
                for k, v in response.headers.items()
                if str(k).lower() not in _DROPPED_HEADERS
            }
            # Enough raw bytes to fill the budget for any encoding
            read_cap = self.max_bytes * 4 + 1
            raw = bytearray()
            for chunk in response.iter_content(chunk_size=8192):
                if time.monotonic() > deadline:
                    raise SnapshotError(f"Body not received within {self.timeout:.0f}s")
                if not chunk:
                    continue
                raw.extend(chunk)
                if len(raw) >= read_cap:
                    break
            # Without a declared charset requests assumes ISO-8859-1 for text/*
            encoding = _declared_charset(headers.get("content-type", "")) or "utf-8"
            try:
                text = bytes(raw[:read_cap]).decode(encoding, errors="replace")
            except LookupError:
                text = bytes(raw[:read_cap]).decode("utf-8", errors="replace")
        except requests.RequestException as e:
            raise SnapshotError(f"Body read failed: {e}") from e
        finally:
            response.close()

        final_url = response.url or target

        return Snapshot(
            http_status=int(response.status_code),
            headers=headers,
            redirect_chain=[target, final_url],
            body=truncate_to_bytes(text, self.max_bytes),
        )
