"""Device resolution.

Maps the disk number the user reads off their disk manager to the
identifier the raw writer opens. Resolution is read-only.
"""

import logging

from batocera_provision.devices.backend import DiskBackend
from batocera_provision.errors import DeviceNotFoundError, InputValidationError
from batocera_provision.types import MAX_DISK_INDEX, MIN_DISK_INDEX, TargetDevice

logger = logging.getLogger(__name__)


def validate_disk_index(index: int) -> int:
    """Check that a disk index is within the accepted range.

    Disk 0 is excluded because it is the system disk on every supported host.

    Raises:
        InputValidationError: Index outside [1, 99].
    """
    if isinstance(index, bool) or not isinstance(index, int):
        raise InputValidationError(f"Disk number must be an integer, got {index!r}")
    if not MIN_DISK_INDEX <= index <= MAX_DISK_INDEX:
        raise InputValidationError(
            f"Disk number must be between {MIN_DISK_INDEX} and {MAX_DISK_INDEX}, got {index}"
        )
    return index


def resolve_device(index: int, backend: DiskBackend) -> TargetDevice:
    """Resolve a host disk number to a target device.

    Args:
        index: Host disk number (1-99).
        backend: Disk backend for the running host.

    Returns:
        The resolved TargetDevice.

    Raises:
        InputValidationError: Index outside [1, 99]; the backend is not queried.
        DeviceNotFoundError: No disk has that number.
    """
    validate_disk_index(index)

    logger.debug("Resolving disk %d via %s backend", index, backend.name)
    device = backend.get_disk(index)
    if device is None:
        logger.error("Disk %d not found", index)
        raise DeviceNotFoundError(index)

    logger.info(
        "Resolved disk %d to %s (%s)",
        index,
        device.identifier,
        device.description or "unknown model",
    )
    return device


__all__ = ["resolve_device", "validate_disk_index"]
