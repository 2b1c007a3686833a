"""Linux disk backend built on util-linux tools.

Disks are enumerated with ``lsblk --json``. Host disk numbers are the
0-based position of a whole disk in lsblk order, so disk 0 is normally the
system disk, the same convention Windows uses. Partitions are mounted with
mount(8) and labelled with the label tool matching their filesystem.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from batocera_provision.devices.commands import (
    CommandRunner,
    parse_json_output,
    run_command,
)
from batocera_provision.errors import InputValidationError
from batocera_provision.types import PartitionInfo, TargetDevice

logger = logging.getLogger(__name__)

LSBLK_DISK_COLUMNS = "NAME,PATH,TYPE,SIZE,MODEL,RM"
LSBLK_PART_COLUMNS = "NAME,PATH,TYPE,SIZE,FSTYPE,LABEL,MOUNTPOINT"

# Whole-disk types worth offering; loop, rom and zram devices are skipped
_DISK_TYPES = {"disk"}

# /dev/sdb2 -> 2, /dev/mmcblk0p2 -> 2, /dev/nvme0n1p3 -> 3
_PARTITION_NUMBER = re.compile(r"(?:p)?(\d+)$")


def partition_number_from_name(name: str) -> int | None:
    """Extract the partition number from a kernel partition name.

    Args:
        name: Partition name such as 'sdb2' or 'mmcblk0p2'.

    Returns:
        Partition number, or None if the name carries none.
    """
    base = Path(name).name
    if re.match(r"^(mmcblk|nvme\d+n|loop)\d+$", base):
        return None
    match = _PARTITION_NUMBER.search(base)
    return int(match.group(1)) if match else None


def _as_int(value: Any) -> int | None:
    # lsblk emits numbers as strings on older util-linux releases
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _label_command(fs_type: str | None, device: str, label: str) -> list[str]:
    fs = (fs_type or "").lower()
    if fs in {"vfat", "fat", "fat16", "fat32", "msdos"}:
        return ["fatlabel", device, label]
    if fs == "exfat":
        return ["exfatlabel", device, label]
    if fs in {"ext2", "ext3", "ext4"}:
        return ["e2label", device, label]
    if fs == "btrfs":
        return ["btrfs", "filesystem", "label", device, label]
    if fs == "ntfs":
        return ["ntfslabel", device, label]
    raise ValueError(f"Don't know how to label a {fs_type or 'unknown'} filesystem")


class LinuxDiskBackend:
    """DiskBackend for Linux hosts."""

    name = "linux"
    default_mount_designator = "/mnt/batocera-share"

    def __init__(
        self,
        runner: CommandRunner | None = None,
    ) -> None:
        self._runner = runner or run_command

    def _lsblk(self, *args: str) -> list[dict[str, Any]]:
        payload = parse_json_output(self._runner(["lsblk", "--json", "--bytes", *args]), "lsblk")
        if not isinstance(payload, dict):
            return []
        devices = payload.get("blockdevices") or []
        return [d for d in devices if isinstance(d, dict)]

    def list_disks(self) -> list[TargetDevice]:
        entries = self._lsblk("--nodeps", "--output", LSBLK_DISK_COLUMNS)
        disks: list[TargetDevice] = []
        for entry in entries:
            if entry.get("type") not in _DISK_TYPES:
                continue
            path = entry.get("path") or f"/dev/{entry.get('name')}"
            model = (entry.get("model") or "").strip() or None
            disks.append(
                TargetDevice(
                    index=len(disks),
                    identifier=path,
                    description=model,
                    size_bytes=_as_int(entry.get("size")),
                )
            )
        return disks

    def get_disk(self, number: int) -> TargetDevice | None:
        disks = self.list_disks()
        if 0 <= number < len(disks):
            return disks[number]
        return None

    def _mounted_partitions(self, device: TargetDevice) -> list[PartitionInfo]:
        return [p for p in self._partitions_of(device) if p.has_mount_point]

    def release_device(self, device: TargetDevice) -> None:
        for partition in self._mounted_partitions(device):
            logger.info("Unmounting %s from %s", partition.device_path, partition.mount_point)
            self._runner(["umount", partition.device_path or str(partition.mount_point)])

    def _partitions_of(self, device: TargetDevice) -> list[PartitionInfo]:
        entries = self._lsblk("--output", LSBLK_PART_COLUMNS, device.identifier)
        partitions: list[PartitionInfo] = []
        for entry in entries:
            for child in entry.get("children") or []:
                if child.get("type") != "part":
                    continue
                number = partition_number_from_name(child.get("name") or "")
                if number is None:
                    continue
                partitions.append(
                    PartitionInfo(
                        disk_number=device.index,
                        partition_number=number,
                        mount_point=child.get("mountpoint") or None,
                        label=(child.get("label") or "").strip() or None,
                        size_bytes=_as_int(child.get("size")),
                        fs_type=child.get("fstype") or None,
                        device_path=child.get("path") or f"/dev/{child.get('name')}",
                    )
                )
        return sorted(partitions, key=lambda p: p.partition_number)

    def ensure_online(self, device: TargetDevice) -> None:
        # The kernel brings re-inserted media up by itself
        logger.debug("Nothing to bring online for %s", device.identifier)

    def list_partitions(self, disk_number: int) -> list[PartitionInfo]:
        device = self.get_disk(disk_number)
        if device is None:
            raise LookupError(f"Disk {disk_number} is no longer present")
        return self._partitions_of(device)

    def assign_mount_point(self, partition: PartitionInfo, designator: str) -> None:
        if not partition.device_path:
            raise ValueError(f"Partition {partition.partition_number} has no device node")
        mount_dir = Path(self.normalize_designator(designator))
        mount_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Mounting %s at %s", partition.device_path, mount_dir)
        self._runner(["mount", partition.device_path, str(mount_dir)])

    def set_label(self, partition: PartitionInfo, label: str) -> None:
        if not partition.device_path:
            raise ValueError(f"Partition {partition.partition_number} has no device node")
        command = _label_command(partition.fs_type, partition.device_path, label)
        logger.info("Labelling %s as %s", partition.device_path, label)
        self._runner(command)

    def normalize_designator(self, designator: str) -> str:
        value = designator.strip()
        if not value.startswith("/"):
            raise InputValidationError(
                f"Mount point must be an absolute directory, got {designator!r}"
            )
        return value.rstrip("/") or "/"

    def volume_root(self, mount_point: str) -> Path:
        return Path(mount_point)


__all__ = ["LinuxDiskBackend", "partition_number_from_name"]
