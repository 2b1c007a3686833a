"""Post-flash partition repair.

This module handles:
- Choosing the data partition among those the image wrote
- Assigning it a mount point and a filesystem label when missing
- Reporting the outcome as a typed result instead of raising
"""

from batocera_provision.partitions.repair import (
    DEFAULT_SHARE_LABEL,
    RepairResult,
    repair_partitions,
)
from batocera_provision.partitions.selectors import (
    PartitionSelector,
    get_selector,
    label_selector,
    largest_partition,
    last_partition,
)

__all__ = [
    "DEFAULT_SHARE_LABEL",
    "PartitionSelector",
    "RepairResult",
    "get_selector",
    "label_selector",
    "largest_partition",
    "last_partition",
    "repair_partitions",
]
