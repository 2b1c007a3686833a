"""Image download.

Batocera images are fetched over HTTPS, usually through a mirror redirect.
The archive is saved into the workspace root under the name the server
reports (Content-Disposition) or the URL path gives. Names without an
archive or image extension fall back to ``batocera.img.gz`` so extraction
can still recognise the file.
"""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse

import httpx

logger = logging.getLogger(__name__)

# Batocera images are several GiB; mirrors can be slow
DOWNLOAD_TIMEOUT = 3600

DOWNLOAD_CHUNK_SIZE = 1024 * 1024

DEFAULT_ARCHIVE_NAME = "batocera.img.gz"

# Everything extract_image can handle
KNOWN_SUFFIXES = (".gz", ".xz", ".bz2", ".zip", ".img", ".iso", ".bin")

_DISPOSITION_EXT = re.compile(r"filename\*\s*=\s*[^']*'[^']*'([^;]+)", re.IGNORECASE)
_DISPOSITION = re.compile(r'filename\s*=\s*"?([^";]+)"?', re.IGNORECASE)


class DownloadError(Exception):
    """Raised when an image download fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        super().__init__(message)
        self.code = code


class VerificationError(Exception):
    """Raised when a downloaded archive does not match its SHA-256."""

    def __init__(self, message: str, code: str = "checksum_mismatch") -> None:
        super().__init__(message)
        self.code = code


def _usable(name: str | None) -> str | None:
    if not name:
        return None
    base = PurePosixPath(name.replace("\\", "/")).name.strip()
    if base in {"", ".", ".."} or not base.lower().endswith(KNOWN_SUFFIXES):
        return None
    return base


def filename_from_disposition(header: str | None) -> str | None:
    """Extract the file name from a Content-Disposition header value."""
    if not header:
        return None
    match = _DISPOSITION_EXT.search(header)
    if match:
        return unquote(match.group(1).strip())
    match = _DISPOSITION.search(header)
    return match.group(1).strip() if match else None


def archive_name(url: str, content_disposition: str | None = None) -> str:
    """Choose the local file name for a downloaded archive.

    The server's Content-Disposition name wins, then the last URL path
    segment. A candidate is only taken if it carries a known archive or
    image extension; otherwise DEFAULT_ARCHIVE_NAME is used.
    """
    from_header = _usable(filename_from_disposition(content_disposition))
    if from_header:
        return from_header
    from_url = _usable(unquote(urlparse(url).path))
    return from_url or DEFAULT_ARCHIVE_NAME


def _save(response: httpx.Response, dest_path: Path, chunk_size: int) -> tuple[str, int]:
    digest = hashlib.sha256()
    size = 0
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    with dest_path.open("wb") as f:
        for chunk in response.iter_bytes(chunk_size):
            f.write(chunk)
            digest.update(chunk)
            size += len(chunk)
    return digest.hexdigest(), size


def _discard(partial: Path | None) -> None:
    # A truncated archive must not be picked up by a later --no-clear run
    if partial is not None:
        partial.unlink(missing_ok=True)


def _fetch(
    client: httpx.Client,
    url: str,
    dest_dir: Path,
    timeout: float,
    chunk_size: int,
) -> tuple[Path, str, int]:
    dest_path: Path | None = None
    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            dest_path = dest_dir / archive_name(
                str(response.url), response.headers.get("content-disposition")
            )
            logger.info("Downloading %s to %s", url, dest_path)
            checksum, size = _save(response, dest_path, chunk_size)
            return dest_path, checksum, size
    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        _discard(dest_path)
        raise DownloadError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        _discard(dest_path)
        raise DownloadError(
            f"Network error downloading {url}: {e}", code="network_error"
        ) from e
    except OSError as e:
        _discard(dest_path)
        raise DownloadError(f"Could not write {dest_path}: {e}", code="os_error") from e


def download_image(
    url: str,
    dest_dir: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    client: httpx.Client | None = None,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> Path:
    """Download an image archive into a directory.

    Args:
        url: Image URL.
        dest_dir: Directory receiving the archive.
        expected_checksum: SHA-256 the archive must match (case-insensitive).
        timeout: Download timeout in seconds.
        client: HTTPX client; a redirect-following client is created if None.
        chunk_size: Bytes per streamed chunk.

    Returns:
        Path to the downloaded archive.

    Raises:
        DownloadError: The request or the local write failed.
        VerificationError: The archive does not match expected_checksum;
            the file is removed.
    """
    if client is None:
        with httpx.Client(follow_redirects=True) as own_client:
            dest_path, checksum, size = _fetch(own_client, url, dest_dir, timeout, chunk_size)
    else:
        dest_path, checksum, size = _fetch(client, url, dest_dir, timeout, chunk_size)

    if expected_checksum and checksum != expected_checksum.lower():
        dest_path.unlink(missing_ok=True)
        raise VerificationError(
            f"Checksum mismatch for {url}: expected {expected_checksum.lower()}, got {checksum}"
        )

    logger.info("Downloaded %s (%d bytes, sha256 %s...)", dest_path.name, size, checksum[:16])
    return dest_path


__all__ = [
    "DEFAULT_ARCHIVE_NAME",
    "DownloadError",
    "VerificationError",
    "archive_name",
    "download_image",
    "filename_from_disposition",
]
