"""Raw image writer for SD cards.

The image is streamed to the raw device in whole sectors. Raw devices
(``\\\\.\\PHYSICALDRIVEn`` on Windows, an unbuffered ``/dev/sdX`` on Linux)
reject transfers that are not a multiple of the sector size, so a short
final block is zero-padded up to the next sector boundary.

The part of the image that is verified is hashed while it is written; the
device is then read back once and compared.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from batocera_provision.types import VerificationMode, VerificationResult

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512

# Must stay a multiple of SECTOR_SIZE
DEFAULT_BLOCK_SIZE = 1024 * 1024

VERIFY_PREFIX_BYTES = {
    VerificationMode.PREFIX_16M: 16 * 1024 * 1024,
    VerificationMode.PREFIX_64M: 64 * 1024 * 1024,
}

_PROGRESS_EVERY = 256 * 1024 * 1024


@dataclass
class WriteResult:
    """Result of a raw write.

    Attributes:
        bytes_written: Image bytes written.
        padding_bytes: Zero bytes appended to finish the last sector.
        verification_mode: Verification mode used.
        verification_result: MATCH, or SKIPPED when verification was off.
    """

    bytes_written: int
    verification_mode: VerificationMode
    verification_result: VerificationResult
    padding_bytes: int = 0


class WriteError(Exception):
    """Raw write failed; ``error_code`` names the failure."""

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ImageNotFoundError(WriteError):
    def __init__(self, image_path: str) -> None:
        super().__init__(f"Image file not found: {image_path}", error_code="IMAGE_NOT_FOUND")
        self.image_path = image_path


class WritePermissionError(WriteError):
    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Permission denied opening {device_path}; "
            "raw disk access needs administrator (root) rights",
            error_code="WRITE_PERMISSION_DENIED",
        )
        self.device_path = device_path


class WriteIOError(WriteError):
    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="WRITE_IO_ERROR")


class HashMismatchError(WriteError):
    """The device read back something other than what was written."""

    def __init__(self, device_path: str, checked_bytes: int, actual_hash: str) -> None:
        super().__init__(
            f"Read-back of the first {checked_bytes} bytes of {device_path} does "
            f"not match the image (device sha256 {actual_hash[:16]}...); "
            "the card may be failing",
            error_code="HASH_MISMATCH",
        )
        self.device_path = device_path
        self.checked_bytes = checked_bytes
        self.actual_hash = actual_hash


def pad_to_sector(block: bytes, sector_size: int = SECTOR_SIZE) -> bytes:
    """Zero-pad a block to a whole number of sectors."""
    short = -len(block) % sector_size
    return block + b"\x00" * short if short else block


def bytes_to_verify(mode: VerificationMode, image_size: int) -> int:
    """How many leading image bytes a verification mode compares."""
    if mode is VerificationMode.SKIP:
        return 0
    if mode in VERIFY_PREFIX_BYTES:
        return min(VERIFY_PREFIX_BYTES[mode], image_size)
    return image_size


def read_device_hash(
    device_path: str,
    num_bytes: int,
    block_size: int = DEFAULT_BLOCK_SIZE,
) -> str:
    """SHA-256 of the first ``num_bytes`` of a device, read in whole blocks."""
    digest = hashlib.sha256()
    remaining = num_bytes
    with open(device_path, "rb", buffering=0) as device:
        while remaining > 0:
            block = device.read(block_size)
            if not block:
                break
            digest.update(block[:remaining])
            remaining -= len(block)
    return digest.hexdigest()


def _write_all(device: BinaryIO, block: bytes) -> None:
    # Unbuffered writes may be partial
    view = memoryview(block)
    while view:
        written = device.write(view)
        if not written:
            raise OSError("device accepted no data")
        view = view[written:]


def _stream_image(
    image: BinaryIO,
    device: BinaryIO,
    image_size: int,
    verify_bytes: int,
    block_size: int,
) -> tuple[int, int, str]:
    """Copy the image to the device; return (written, padding, prefix sha256)."""
    digest = hashlib.sha256()
    written = padding = 0
    next_report = _PROGRESS_EVERY

    while block := image.read(block_size):
        if written < verify_bytes:
            digest.update(block[: verify_bytes - written])
        aligned = pad_to_sector(block)
        _write_all(device, aligned)
        written += len(block)
        padding += len(aligned) - len(block)

        if written >= next_report:
            logger.debug(
                "Write progress: %d / %d bytes (%.0f%%)",
                written,
                image_size,
                written * 100 / image_size,
            )
            next_report += _PROGRESS_EVERY

    return written, padding, digest.hexdigest()


def write_image_to_device(
    image_path: str | Path,
    device_path: str,
    *,
    verification_mode: VerificationMode = VerificationMode.PREFIX_64M,
    block_size: int = DEFAULT_BLOCK_SIZE,
) -> WriteResult:
    """Overwrite a raw device with an image and check the result.

    Args:
        image_path: Raw (already extracted) image file.
        device_path: Raw device identifier to open for writing.
        verification_mode: How much of the device to read back.
        block_size: Transfer size; a multiple of SECTOR_SIZE.

    Returns:
        WriteResult.

    Raises:
        ValueError: block_size is not sector aligned.
        ImageNotFoundError: The image file is missing.
        WritePermissionError: The device cannot be opened for writing.
        WriteIOError: The write or the read-back failed.
        HashMismatchError: Read-back differs from the image.
    """
    if block_size <= 0 or block_size % SECTOR_SIZE:
        raise ValueError(f"Block size must be a multiple of {SECTOR_SIZE}, got {block_size}")

    image_path = Path(image_path)
    if not image_path.is_file():
        raise ImageNotFoundError(str(image_path))

    image_size = image_path.stat().st_size
    verify_bytes = bytes_to_verify(verification_mode, image_size)
    logger.info("Writing %s (%d bytes) to %s", image_path.name, image_size, device_path)

    try:
        with open(image_path, "rb") as image, open(device_path, "r+b", buffering=0) as device:
            written, padding, expected_hash = _stream_image(
                image, device, image_size, verify_bytes, block_size
            )
            os.fsync(device.fileno())
    except PermissionError as e:
        raise WritePermissionError(device_path) from e
    except OSError as e:
        raise WriteIOError(f"Error writing to {device_path}: {e}") from e

    if padding:
        logger.debug("Padded final sector of %s with %d zero bytes", device_path, padding)
    logger.info("Wrote %d bytes to %s", written, device_path)

    if not verify_bytes:
        return WriteResult(
            bytes_written=written,
            padding_bytes=padding,
            verification_mode=verification_mode,
            verification_result=VerificationResult.SKIPPED,
        )

    logger.info(
        "Reading back %d bytes of %s (%s)", verify_bytes, device_path, verification_mode.value
    )
    try:
        actual_hash = read_device_hash(device_path, verify_bytes, block_size)
    except OSError as e:
        raise WriteIOError(f"Error reading back {device_path}: {e}") from e

    if actual_hash != expected_hash:
        logger.error("Read-back mismatch on %s", device_path)
        raise HashMismatchError(device_path, verify_bytes, actual_hash)

    return WriteResult(
        bytes_written=written,
        padding_bytes=padding,
        verification_mode=verification_mode,
        verification_result=VerificationResult.MATCH,
    )


__all__ = [
    "DEFAULT_BLOCK_SIZE",
    "SECTOR_SIZE",
    "HashMismatchError",
    "ImageNotFoundError",
    "WriteError",
    "WriteIOError",
    "WritePermissionError",
    "WriteResult",
    "bytes_to_verify",
    "pad_to_sector",
    "read_device_hash",
    "write_image_to_device",
]
