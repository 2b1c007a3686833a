"""Image extraction.

Batocera publishes raw disk images compressed as ``.img.gz``; mirrors and
users also hand over ``.xz``, ``.bz2`` and ``.zip`` archives or an already
decompressed ``.img``. Whatever the input, the result is a single raw
image file inside the staging directory.
"""

from __future__ import annotations

import bz2
import gzip
import logging
import lzma
import shutil
import zipfile
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from typing import IO

from batocera_provision.errors import ExtractionError

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024

_STREAM_OPENERS: dict[str, Callable[[Path], IO[bytes]]] = {
    ".gz": lambda p: gzip.open(p, "rb"),
    ".xz": lambda p: lzma.open(p, "rb"),
    ".bz2": lambda p: bz2.open(p, "rb"),
}

_IMAGE_SUFFIXES = (".img", ".iso", ".bin")


def image_name_for(archive_path: Path) -> str:
    """Return the raw image file name for an archive.

    'batocera-39.img.gz' -> 'batocera-39.img'; 'image.zip' -> 'image.img'.
    """
    name = archive_path.name
    suffix = archive_path.suffix.lower()
    if suffix in _STREAM_OPENERS or suffix == ".zip":
        name = name[: -len(suffix)]
    if not name.lower().endswith(_IMAGE_SUFFIXES):
        name = f"{name}.img"
    return name


def _extract_stream(archive_path: Path, dest_path: Path) -> None:
    opener = _STREAM_OPENERS[archive_path.suffix.lower()]
    with opener(archive_path) as src, dest_path.open("wb") as dst:
        shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)


def _extract_zip(archive_path: Path, dest_dir: Path) -> Path:
    with zipfile.ZipFile(archive_path) as zf:
        candidates = [
            info
            for info in zf.infolist()
            if not info.is_dir() and info.filename.lower().endswith(_IMAGE_SUFFIXES)
        ]
        if not candidates:
            raise ExtractionError(
                f"No disk image found in {archive_path.name}",
                code="empty_archive",
            )
        member = max(candidates, key=lambda info: info.file_size)

        member_path = PurePosixPath(member.filename)
        if member_path.is_absolute() or ".." in member_path.parts:
            raise ExtractionError(
                f"Refusing to extract {member.filename}: path traversal detected",
                code="path_traversal",
            )

        dest_path = dest_dir / member_path.name
        with zf.open(member) as src, dest_path.open("wb") as dst:
            shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)
        return dest_path


def extract_image(archive_path: str | Path, dest_dir: Path) -> Path:
    """Decompress an image archive into the staging directory.

    Args:
        archive_path: Compressed archive or raw image.
        dest_dir: Staging directory receiving the raw image.

    Returns:
        Path to the raw image file.

    Raises:
        ExtractionError: The archive is missing, corrupt, empty or of an
            unsupported format.
    """
    archive_path = Path(archive_path)
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)

    if not archive_path.is_file():
        raise ExtractionError(f"Image archive not found: {archive_path}", code="not_found")

    suffix = archive_path.suffix.lower()
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        if suffix in _STREAM_OPENERS:
            image_path = dest_dir / image_name_for(archive_path)
            _extract_stream(archive_path, image_path)
        elif suffix == ".zip":
            image_path = _extract_zip(archive_path, dest_dir)
        elif suffix in _IMAGE_SUFFIXES:
            image_path = dest_dir / archive_path.name
            if archive_path.resolve() != image_path.resolve():
                shutil.copyfile(archive_path, image_path)
        else:
            raise ExtractionError(
                f"Unsupported archive format: {archive_path.suffix or archive_path.name}",
                code="unsupported_format",
            )
    except ExtractionError:
        raise
    except (OSError, EOFError, lzma.LZMAError, zipfile.BadZipFile) as e:
        raise ExtractionError(
            f"Failed to extract {archive_path.name}: {e}",
            code="corrupt_archive",
        ) from e

    if image_path.stat().st_size == 0:
        raise ExtractionError(
            f"Extracted image {image_path.name} is empty", code="empty_archive"
        )

    logger.info("Extracted image %s (%d bytes)", image_path, image_path.stat().st_size)
    return image_path


__all__ = ["extract_image", "image_name_for"]
