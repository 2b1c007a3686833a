"""Windows disk backend built on the PowerShell Storage cmdlets.

Disks are addressed by their Get-Disk number; the raw device the writer
opens is \\\\.\\PHYSICALDRIVE<number>. Every query pipes through
ConvertTo-Json so output is parsed, never scraped.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from batocera_provision.devices.commands import (
    CommandRunner,
    as_list,
    parse_json_output,
    run_command,
)
from batocera_provision.errors import InputValidationError
from batocera_provision.types import PartitionInfo, TargetDevice

logger = logging.getLogger(__name__)

POWERSHELL = ["powershell", "-NoProfile", "-NonInteractive", "-Command"]

PHYSICAL_DRIVE_PREFIX = "\\\\.\\PHYSICALDRIVE"

_DRIVE_LETTER = re.compile(r"^[A-Za-z]:?$")

_DISK_FIELDS = "Number,FriendlyName,Size"

_PARTITIONS_SCRIPT = """
Get-Partition -DiskNumber {disk} -ErrorAction Stop | Sort-Object PartitionNumber | ForEach-Object {{
    $vol = $_ | Get-Volume -ErrorAction SilentlyContinue
    [PSCustomObject]@{{
        DiskNumber = $_.DiskNumber
        PartitionNumber = $_.PartitionNumber
        DriveLetter = [string]$_.DriveLetter
        Size = $_.Size
        FileSystemLabel = $vol.FileSystemLabel
        FileSystem = $vol.FileSystem
    }}
}} | ConvertTo-Json -Compress
"""


def physical_drive_path(number: int) -> str:
    """Return the raw device path for a disk number."""
    return f"{PHYSICAL_DRIVE_PREFIX}{number}"


def _ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string."""
    return "'" + value.replace("'", "''") + "'"


def _clean_drive_letter(value: Any) -> str | None:
    # An unassigned DriveLetter is the NUL char, serialised as "\u0000".
    if value is None:
        return None
    letter = str(value).strip("\x00 ").upper()
    return letter or None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class WindowsDiskBackend:
    """DiskBackend for Windows hosts."""

    name = "windows"
    default_mount_designator = "R"

    def __init__(
        self,
        runner: CommandRunner | None = None,
    ) -> None:
        self._runner = runner or run_command

    def _powershell(self, script: str) -> str:
        return self._runner([*POWERSHELL, script.strip()])

    def _query(self, script: str) -> list[dict[str, Any]]:
        return as_list(parse_json_output(self._powershell(script), "powershell"))

    def _to_device(self, item: dict[str, Any]) -> TargetDevice | None:
        number = _as_int(item.get("Number"))
        if number is None:
            return None
        return TargetDevice(
            index=number,
            identifier=physical_drive_path(number),
            description=(item.get("FriendlyName") or "").strip() or None,
            size_bytes=_as_int(item.get("Size")),
        )

    def list_disks(self) -> list[TargetDevice]:
        items = self._query(
            f"Get-Disk | Sort-Object Number | Select-Object {_DISK_FIELDS} "
            "| ConvertTo-Json -Compress"
        )
        devices = [self._to_device(item) for item in items]
        return [d for d in devices if d is not None]

    def get_disk(self, number: int) -> TargetDevice | None:
        items = self._query(
            f"Get-Disk -Number {int(number)} -ErrorAction SilentlyContinue "
            f"| Select-Object {_DISK_FIELDS} | ConvertTo-Json -Compress"
        )
        for item in items:
            device = self._to_device(item)
            if device is not None and device.index == number:
                return device
        return None

    def release_device(self, device: TargetDevice) -> None:
        # Raw writes to sectors of a mounted volume are refused. Set-Disk
        # -IsOffline is unsupported on removable media, so each lettered
        # volume is dismounted instead; re-insertion mounts them again.
        for partition in self.list_partitions(device.index):
            if not partition.mount_point:
                continue
            letter = self.normalize_designator(partition.mount_point)
            logger.info(
                "Dismounting %s: (disk %d partition %d)",
                letter,
                device.index,
                partition.partition_number,
            )
            self._runner(["mountvol", f"{letter}:", "/p"])

    def ensure_online(self, device: TargetDevice) -> None:
        # The SAN policy can leave a re-inserted card offline on fixed-disk
        # readers. Removable disks are never offline, so nothing matches there.
        self._powershell(
            f"Get-Disk -Number {int(device.index)} -ErrorAction Stop "
            "| Where-Object IsOffline "
            "| Set-Disk -IsOffline $false -ErrorAction Stop"
        )

    def list_partitions(self, disk_number: int) -> list[PartitionInfo]:
        items = self._query(_PARTITIONS_SCRIPT.format(disk=int(disk_number)))
        partitions: list[PartitionInfo] = []
        for item in items:
            partition_number = _as_int(item.get("PartitionNumber"))
            if partition_number is None:
                continue
            label = item.get("FileSystemLabel")
            partitions.append(
                PartitionInfo(
                    disk_number=_as_int(item.get("DiskNumber")) or disk_number,
                    partition_number=partition_number,
                    mount_point=_clean_drive_letter(item.get("DriveLetter")),
                    label=label.strip() if isinstance(label, str) and label.strip() else None,
                    size_bytes=_as_int(item.get("Size")),
                    fs_type=item.get("FileSystem") or None,
                )
            )
        return sorted(partitions, key=lambda p: p.partition_number)

    def assign_mount_point(self, partition: PartitionInfo, designator: str) -> None:
        letter = self.normalize_designator(designator)
        logger.info(
            "Assigning drive letter %s: to disk %d partition %d",
            letter,
            partition.disk_number,
            partition.partition_number,
        )
        self._powershell(
            f"Set-Partition -DiskNumber {int(partition.disk_number)} "
            f"-PartitionNumber {int(partition.partition_number)} "
            f"-NewDriveLetter {letter} -ErrorAction Stop"
        )

    def set_label(self, partition: PartitionInfo, label: str) -> None:
        if not partition.mount_point:
            raise ValueError(
                f"Partition {partition.partition_number} has no drive letter to label"
            )
        letter = self.normalize_designator(partition.mount_point)
        logger.info("Labelling volume %s: as %s", letter, label)
        self._powershell(
            f"Set-Volume -DriveLetter {letter} "
            f"-NewFileSystemLabel {_ps_quote(label)} -ErrorAction Stop"
        )

    def normalize_designator(self, designator: str) -> str:
        value = designator.strip()
        if not _DRIVE_LETTER.match(value):
            raise InputValidationError(
                f"Drive letter must be a single letter A-Z, got {designator!r}"
            )
        return value[0].upper()

    def volume_root(self, mount_point: str) -> Path:
        return Path(f"{self.normalize_designator(mount_point)}:\\")


__all__ = ["PHYSICAL_DRIVE_PREFIX", "WindowsDiskBackend", "physical_drive_path"]
