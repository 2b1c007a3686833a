"""SD card flashing.

This module handles:
- The confirmation-gated flash stage
- Raw block-wise writes with fsync
- Sector-aligned raw writes with hash read-back verification

Safety rules:
- The target is always an explicitly resolved disk, never guessed
- Nothing is written without a positive confirmation
- A failed write is never retried
"""

from batocera_provision.flash.service import (
    ConfirmFlash,
    FlashOutcome,
    FlashPlan,
    flash_image,
    plan_flash,
)
from batocera_provision.flash.writer import (
    HashMismatchError,
    ImageNotFoundError,
    WriteError,
    WriteResult,
    write_image_to_device,
)

__all__ = [
    "ConfirmFlash",
    "FlashOutcome",
    "FlashPlan",
    "HashMismatchError",
    "ImageNotFoundError",
    "WriteError",
    "WriteResult",
    "flash_image",
    "plan_flash",
    "write_image_to_device",
]
