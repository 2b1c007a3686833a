"""Image acquisition.

Exactly one of a local archive path or a remote URL supplies the image.
A local path is used as-is; a URL is downloaded into the workspace root.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from batocera_provision.errors import AcquisitionError, InputValidationError
from batocera_provision.image.fetch import DownloadError, VerificationError, download_image
from batocera_provision.types import ImageArtifact, ImageSourceKind, Workspace

logger = logging.getLogger(__name__)

# (url, dest_dir, expected_checksum) -> downloaded archive path
Downloader = Callable[[str, Path, str | None], Path]


def validate_image_source(local_path: str | Path | None, url: str | None) -> ImageSourceKind:
    """Check that exactly one image source was supplied.

    Raises:
        InputValidationError: Neither or both sources given.
    """
    has_local = local_path is not None and str(local_path).strip() != ""
    has_url = url is not None and url.strip() != ""

    if has_local and has_url:
        raise InputValidationError("Give either a local image path or an image URL, not both")
    if not has_local and not has_url:
        raise InputValidationError("An image is required: give a local image path or a URL")
    return ImageSourceKind.LOCAL if has_local else ImageSourceKind.REMOTE


def acquire_image(
    workspace: Workspace,
    local_path: str | Path | None = None,
    url: str | None = None,
    expected_checksum: str | None = None,
    downloader: Downloader | None = None,
) -> ImageArtifact:
    """Obtain the compressed image from exactly one source.

    Args:
        workspace: Prepared workspace; downloads land in its root.
        local_path: Local archive path, used without re-validation.
        url: Remote image URL.
        expected_checksum: SHA-256 the download must match (remote only).
        downloader: Download collaborator; the httpx downloader if None.

    Returns:
        ImageArtifact pointing at the archive.

    Raises:
        InputValidationError: Neither or both sources given.
        AcquisitionError: The download failed.
    """
    kind = validate_image_source(local_path, url)

    if kind is ImageSourceKind.LOCAL:
        archive = Path(str(local_path)).expanduser()
        logger.info("Using local image %s", archive)
        return ImageArtifact(source_kind=kind, archive_path=archive)

    if url is None:
        raise InputValidationError("A remote image source needs a URL")
    downloader = downloader or download_image
    try:
        archive = downloader(url, workspace.root, expected_checksum)
    except (DownloadError, VerificationError) as e:
        raise AcquisitionError(str(e), code=e.code) from e
    except OSError as e:
        raise AcquisitionError(f"Could not store download from {url}: {e}") from e

    logger.info("Downloaded image to %s", archive)
    return ImageArtifact(source_kind=kind, archive_path=Path(archive))


__all__ = ["Downloader", "acquire_image", "validate_image_source"]
