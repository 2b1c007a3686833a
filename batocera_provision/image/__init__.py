"""Image acquisition and staging.

This module handles:
- Choosing between a local archive and a remote URL
- Downloading with optional checksum verification
- Decompressing the archive to a raw image in the staging directory
"""

from batocera_provision.image.acquire import (
    Downloader,
    acquire_image,
    validate_image_source,
)
from batocera_provision.image.extract import extract_image
from batocera_provision.image.fetch import (
    DownloadError,
    VerificationError,
    archive_name,
    download_image,
)

__all__ = [
    "DownloadError",
    "Downloader",
    "VerificationError",
    "acquire_image",
    "archive_name",
    "download_image",
    "extract_image",
    "validate_image_source",
]
