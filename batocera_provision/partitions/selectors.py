"""Data partition selection.

The image writes several partitions and the tool does not parse the image
format, so which one holds user data is a heuristic. Selectors are plain
functions over the partition list so the heuristic can change without
touching the repair stage.
"""

from collections.abc import Callable, Sequence

from batocera_provision.types import PartitionInfo

PartitionSelector = Callable[[Sequence[PartitionInfo]], PartitionInfo | None]


def last_partition(partitions: Sequence[PartitionInfo]) -> PartitionInfo | None:
    """Pick the partition with the highest partition number.

    Batocera images end with the SHARE partition, but position is not
    guaranteed across image versions.
    """
    if not partitions:
        return None
    return max(partitions, key=lambda p: p.partition_number)


def largest_partition(partitions: Sequence[PartitionInfo]) -> PartitionInfo | None:
    """Pick the largest partition, preferring the later one on ties."""
    if not partitions:
        return None
    return max(partitions, key=lambda p: (p.size_bytes or 0, p.partition_number))


def label_selector(
    label: str,
    fallback: PartitionSelector | None = last_partition,
) -> PartitionSelector:
    """Build a selector matching a filesystem label, case-insensitively.

    Args:
        label: Label to look for.
        fallback: Selector used when no partition carries the label yet
            (a freshly written SHARE partition is often unlabelled).
    """
    wanted = label.strip().lower()

    def select(partitions: Sequence[PartitionInfo]) -> PartitionInfo | None:
        for partition in partitions:
            if partition.label and partition.label.strip().lower() == wanted:
                return partition
        return fallback(partitions) if fallback else None

    return select


def get_selector(name: str, label: str = "SHARE") -> PartitionSelector:
    """Return the selector registered under a settings name.

    Raises:
        ValueError: Unknown selector name.
    """
    if name == "last":
        return last_partition
    if name == "largest":
        return largest_partition
    if name == "label":
        return label_selector(label)
    raise ValueError(f"Unknown partition selector: {name}")


__all__ = [
    "PartitionSelector",
    "get_selector",
    "label_selector",
    "largest_partition",
    "last_partition",
]
