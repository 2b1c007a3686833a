"""Partition repair stage.

After a raw write and re-insertion the host sees the card's new partition
table, but the data partition usually has no drive letter (or mount) and
often no filesystem label. This stage fixes both, then derives the volume
root the sync stage copies into.

Host disk numbers can move while the card is out of the reader, so the disk
at the target number is re-read first and must still be the resolved card.

The stage is one failure boundary: any error is logged and folded into the
returned RepairResult instead of propagating, because a user may already
have mounted the partition by hand and later stages can still proceed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from batocera_provision.devices.backend import DiskBackend
from batocera_provision.errors import PartitionRepairError
from batocera_provision.partitions.selectors import PartitionSelector, last_partition
from batocera_provision.types import (
    MountedVolume,
    PartitionInfo,
    RepairStatus,
    TargetDevice,
)

logger = logging.getLogger(__name__)

DEFAULT_SHARE_LABEL = "SHARE"

ACTION_ASSIGN_MOUNT = "assign_mount_point"
ACTION_SET_LABEL = "set_label"


@dataclass
class RepairResult:
    """Outcome of partition repair.

    Attributes:
        status: REPAIRED, UNCHANGED, DEGRADED or FAILED.
        partition: The selected data partition, as last seen.
        volume: Mounted volume for the sync stage, if one was derived.
        actions: Mutating calls performed, in order.
        error: The caught failure for DEGRADED/FAILED results.
    """

    status: RepairStatus
    partition: PartitionInfo | None = None
    volume: MountedVolume | None = None
    actions: list[str] = field(default_factory=list)
    error: PartitionRepairError | None = None

    @property
    def has_volume(self) -> bool:
        return self.volume is not None


def _refresh(backend: DiskBackend, partition: PartitionInfo) -> PartitionInfo | None:
    for candidate in backend.list_partitions(partition.disk_number):
        if candidate.partition_number == partition.partition_number:
            return candidate
    return None


def _confirm_target(backend: DiskBackend, target: TargetDevice) -> TargetDevice:
    """Re-read the disk at the target's number and check it is still the card."""
    current = backend.get_disk(target.index)
    if current is None:
        raise PartitionRepairError(
            f"Disk {target.index} is no longer present; was the card re-inserted?"
        )
    if current.identifier != target.identifier:
        raise PartitionRepairError(
            f"Disk {target.index} is now {current.identifier}, not {target.identifier}; "
            "the card came back under another device, re-run against its new number"
        )
    if (
        current.size_bytes is not None
        and target.size_bytes is not None
        and current.size_bytes != target.size_bytes
    ):
        raise PartitionRepairError(
            f"Disk {target.index} size changed from {target.size_bytes} "
            f"to {current.size_bytes} bytes; refusing to modify another disk"
        )
    backend.ensure_online(current)
    return current


def _select_data_partition(
    backend: DiskBackend,
    target: TargetDevice,
    selector: PartitionSelector,
) -> PartitionInfo:
    partitions = backend.list_partitions(target.index)
    logger.debug(
        "Disk %d partitions: %s",
        target.index,
        [(p.partition_number, p.mount_point, p.label) for p in partitions],
    )
    if not partitions:
        raise PartitionRepairError(
            f"No partitions visible on disk {target.index}; was the card re-inserted?"
        )

    partition = selector(partitions)
    if partition is None:
        raise PartitionRepairError(f"No data partition identified on disk {target.index}")

    logger.info(
        "Data partition: disk %d partition %d (mount=%s, label=%s)",
        partition.disk_number,
        partition.partition_number,
        partition.mount_point or "none",
        partition.label or "none",
    )
    return partition


def repair_partitions(
    backend: DiskBackend,
    target: TargetDevice,
    *,
    selector: PartitionSelector = last_partition,
    designator: str | None = None,
    label: str = DEFAULT_SHARE_LABEL,
) -> RepairResult:
    """Give the data partition a mount point and label, then derive its root.

    Args:
        backend: Disk backend for the running host.
        target: The resolved target device.
        selector: Picks the data partition among the disk's partitions.
        designator: Drive letter or mount directory; the backend default if None.
        label: Label applied when the partition has none.

    Returns:
        RepairResult. Never raises for repair failures.
    """
    actions: list[str] = []
    partition: PartitionInfo | None = None
    volume: MountedVolume | None = None

    try:
        _confirm_target(backend, target)
        partition = _select_data_partition(backend, target, selector)

        mount_point = partition.mount_point
        if not mount_point:
            wanted = designator or backend.default_mount_designator
            backend.assign_mount_point(partition, wanted)
            actions.append(ACTION_ASSIGN_MOUNT)
            refreshed = _refresh(backend, partition)
            if refreshed is not None and refreshed.mount_point:
                partition = refreshed
                mount_point = refreshed.mount_point
            else:
                mount_point = backend.normalize_designator(wanted)
                partition = replace(partition, mount_point=mount_point)

        volume = MountedVolume(
            mount_point=mount_point,
            root_path=backend.volume_root(mount_point),
        )

        if not partition.has_label:
            backend.set_label(partition, label)
            actions.append(ACTION_SET_LABEL)
            partition = replace(partition, label=label)

    except Exception as e:
        if isinstance(e, PartitionRepairError):
            error = e
        else:
            error = PartitionRepairError(f"Partition repair failed: {e}")
            error.__cause__ = e
        status = RepairStatus.DEGRADED if volume is not None else RepairStatus.FAILED
        logger.warning(
            "Partition repair %s on disk %d: %s",
            status.value,
            target.index,
            error.message,
        )
        return RepairResult(
            status=status,
            partition=partition,
            volume=volume,
            actions=actions,
            error=error,
        )

    status = RepairStatus.REPAIRED if actions else RepairStatus.UNCHANGED
    logger.info(
        "Partition repair %s: volume root %s", status.value, volume.root_path
    )
    return RepairResult(status=status, partition=partition, volume=volume, actions=actions)


__all__ = [
    "ACTION_ASSIGN_MOUNT",
    "ACTION_SET_LABEL",
    "DEFAULT_SHARE_LABEL",
    "RepairResult",
    "repair_partitions",
]
