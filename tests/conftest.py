"""Shared fixtures: an in-memory disk backend."""

from dataclasses import replace
from pathlib import Path

import pytest

from batocera_provision.types import PartitionInfo, TargetDevice


class FakeDiskBackend:
    """DiskBackend keeping disks and partitions in memory.

    Records every call so tests can assert on order and count. Setting
    ``fail_on`` to a method name makes that method raise RuntimeError.
    """

    name = "fake"
    default_mount_designator = "R"

    def __init__(
        self,
        disks: list[TargetDevice] | None = None,
        partitions: dict[int, list[PartitionInfo]] | None = None,
        volume_base: Path | None = None,
    ) -> None:
        self.disks = disks or []
        self.partitions = partitions or {}
        self.volume_base = volume_base or Path("/fake")
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()
        self.assign_takes_effect = True

    def _call(self, name: str, *args: object) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def list_disks(self) -> list[TargetDevice]:
        self._call("list_disks")
        return list(self.disks)

    def get_disk(self, number: int) -> TargetDevice | None:
        self._call("get_disk", number)
        for disk in self.disks:
            if disk.index == number:
                return disk
        return None

    def release_device(self, device: TargetDevice) -> None:
        self._call("release_device", device.index)

    def ensure_online(self, device: TargetDevice) -> None:
        self._call("ensure_online", device.index)

    def list_partitions(self, disk_number: int) -> list[PartitionInfo]:
        self._call("list_partitions", disk_number)
        return [replace(p) for p in self.partitions.get(disk_number, [])]

    def _stored(self, partition: PartitionInfo) -> PartitionInfo:
        for stored in self.partitions[partition.disk_number]:
            if stored.partition_number == partition.partition_number:
                return stored
        raise LookupError(partition.partition_number)

    def assign_mount_point(self, partition: PartitionInfo, designator: str) -> None:
        self._call("assign_mount_point", partition.partition_number, designator)
        if self.assign_takes_effect:
            self._stored(partition).mount_point = self.normalize_designator(designator)

    def set_label(self, partition: PartitionInfo, label: str) -> None:
        self._call("set_label", partition.partition_number, label)
        self._stored(partition).label = label

    def normalize_designator(self, designator: str) -> str:
        return designator.strip().rstrip(":").upper()

    def volume_root(self, mount_point: str) -> Path:
        return self.volume_base / mount_point


SD_CARD = TargetDevice(
    index=2,
    identifier="\\\\.\\PHYSICALDRIVE2",
    description="Generic SD card",
    size_bytes=32 * 1024**3,
)


def batocera_partitions(
    disk_number: int = 2,
    share_mount: str | None = None,
    share_label: str | None = None,
) -> list[PartitionInfo]:
    """Partition table of a freshly written Batocera card."""
    return [
        PartitionInfo(
            disk_number=disk_number,
            partition_number=1,
            mount_point="E",
            label="BATOCERA",
            size_bytes=8 * 1024**3,
            fs_type="FAT32",
        ),
        PartitionInfo(
            disk_number=disk_number,
            partition_number=2,
            mount_point=share_mount,
            label=share_label,
            size_bytes=20 * 1024**3,
            fs_type="exFAT",
        ),
    ]


@pytest.fixture
def sd_card() -> TargetDevice:
    return SD_CARD


@pytest.fixture
def fake_backend(tmp_path: Path) -> FakeDiskBackend:
    """Backend with one SD card at disk 2 whose SHARE partition needs repair."""
    volumes = tmp_path / "volumes"
    volumes.mkdir()
    return FakeDiskBackend(
        disks=[
            TargetDevice(index=0, identifier="\\\\.\\PHYSICALDRIVE0", description="System"),
            SD_CARD,
        ],
        partitions={2: batocera_partitions()},
        volume_base=volumes,
    )
