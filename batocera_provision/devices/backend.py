"""Host disk backend interface.

A backend answers the questions the workflow asks the host operating
system about disks and partitions, and performs the few metadata changes
partition repair needs. The workflow only talks to this protocol, so tests
drive it with an in-memory fake.
"""

from __future__ import annotations

import platform
from pathlib import Path
from typing import Protocol, runtime_checkable

from batocera_provision.devices.commands import CommandRunner
from batocera_provision.types import PartitionInfo, TargetDevice


@runtime_checkable
class DiskBackend(Protocol):
    """Operations the provisioning workflow needs from the host."""

    name: str
    default_mount_designator: str

    def list_disks(self) -> list[TargetDevice]:
        """Return all whole disks, ordered by host disk number."""
        ...

    def get_disk(self, number: int) -> TargetDevice | None:
        """Return the disk with the given host number, or None."""
        ...

    def release_device(self, device: TargetDevice) -> None:
        """Detach the disk's volumes so its raw device can be written."""
        ...

    def ensure_online(self, device: TargetDevice) -> None:
        """Bring a re-inserted disk online if the host left it offline."""
        ...

    def list_partitions(self, disk_number: int) -> list[PartitionInfo]:
        """Read the current partition table of a disk."""
        ...

    def assign_mount_point(self, partition: PartitionInfo, designator: str) -> None:
        """Give a partition a drive letter or mount it at a directory."""
        ...

    def set_label(self, partition: PartitionInfo, label: str) -> None:
        """Set the filesystem label of a mounted partition."""
        ...

    def normalize_designator(self, designator: str) -> str:
        """Validate a user supplied mount designator and return its canonical form."""
        ...

    def volume_root(self, mount_point: str) -> Path:
        """Return the filesystem root path of a mount point."""
        ...


class UnsupportedPlatformError(Exception):
    """No backend exists for the running operating system."""


def get_backend(
    system: str | None = None,
    runner: CommandRunner | None = None,
) -> DiskBackend:
    """Return the backend for the running (or given) operating system.

    Args:
        system: platform.system() value to select for; detected if None.
        runner: Command runner to inject; the subprocess runner if None.

    Returns:
        A DiskBackend instance.

    Raises:
        UnsupportedPlatformError: No backend for this system.
    """
    system = system or platform.system()

    if system == "Windows":
        from batocera_provision.devices.windows import WindowsDiskBackend

        return WindowsDiskBackend(runner=runner)
    if system == "Linux":
        from batocera_provision.devices.linux import LinuxDiskBackend

        return LinuxDiskBackend(runner=runner)

    raise UnsupportedPlatformError(f"Unsupported platform: {system}")


__all__ = ["DiskBackend", "UnsupportedPlatformError", "get_backend"]
