"""Host disk access.

This module handles:
- Enumerating disks and partitions through a platform backend
- Resolving a user supplied disk number to a raw device identifier
- The few partition metadata changes repair needs (mount point, label)
"""

from batocera_provision.devices.backend import (
    DiskBackend,
    UnsupportedPlatformError,
    get_backend,
)
from batocera_provision.devices.commands import CommandRunner, run_command
from batocera_provision.devices.resolver import resolve_device, validate_disk_index

__all__ = [
    "CommandRunner",
    "DiskBackend",
    "UnsupportedPlatformError",
    "get_backend",
    "resolve_device",
    "run_command",
    "validate_disk_index",
]
