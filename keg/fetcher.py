"""
fetcher.py

Responsibility: Isolate all source-archive downloads and checksum verification.

This module must be the only place that:
- Sends HTTP requests for formula archives
- Reads `file://` URLs and local archive paths
- Interprets transport failures (timeouts, HTTP error statuses)
- Compares archive bytes against a declared sha256

Fetching never retries: every failure aborts the install of the formula.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import requests

from keg import __version__
from keg.errors import ChecksumMismatch, FetchTimeout, NetworkError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class Fetcher:
    def __init__(self, *, timeout: float = 30.0, session: Any | None = None) -> None:
        self._timeout = timeout
        self._session = session if session is not None else requests.Session()

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": f"keg/{__version__}"}

    def _read_local(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as e:
            raise NetworkError(f"Cannot read source archive {path}: {e.strerror or e}") from e

    def _download(self, url: str) -> bytes:
        try:
            r = self._session.get(url, headers=self._headers(), stream=True, timeout=self._timeout)
        except requests.exceptions.Timeout as e:
            raise FetchTimeout(f"Timed out after {self._timeout:g}s fetching {url}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Failed to fetch {url}: {e}") from e
        try:
            if r.status_code >= 400:
                raise NetworkError(f"HTTP {r.status_code} fetching {url}")
            chunks = []
            for chunk in r.iter_content(chunk_size=_CHUNK_SIZE):
                if chunk:
                    chunks.append(chunk)
            return b"".join(chunks)
        except requests.exceptions.Timeout as e:
            raise FetchTimeout(f"Timed out after {self._timeout:g}s reading {url}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Failed while reading {url}: {e}") from e
        finally:
            r.close()

    def fetch(self, url: str) -> bytes:
        """
        Return the bytes at `url`. Supports http(s), `file://` URLs and plain local paths.
        """
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https"):
            logger.info("Downloading %s", url)
            return self._download(url)
        if parsed.scheme == "file":
            return self._read_local(Path(unquote(parsed.path)))
        if parsed.scheme == "" or len(parsed.scheme) == 1:  # bare or Windows drive path
            return self._read_local(Path(url).expanduser())
        raise NetworkError(f"Unsupported URL scheme {parsed.scheme!r}: {url}")


def verify(data: bytes, expected_sha256: str | None, *, url: str) -> bool:
    """
    Check `data` against the declared checksum.

    Returns True when verified, False when there was nothing to verify against
    (a warning is logged). Raises ChecksumMismatch on disagreement.
    """
    if expected_sha256 is None:
        logger.warning("No sha256 declared for %s; installing an unverified source.", url)
        return False
    actual = sha256_hex(data)
    if actual != expected_sha256.lower():
        raise ChecksumMismatch(url, expected_sha256, actual)
    logger.info("Verified sha256 %s", actual)
    return True


def fetch_and_verify(url: str, expected_sha256: str | None = None, *, fetcher: Fetcher | None = None) -> bytes:
    """
    Download `url` and verify it against `expected_sha256` when one is declared.
    """
    data = (fetcher or Fetcher()).fetch(url)
    verify(data, expected_sha256, url=url)
    return data
