"""Shared type definitions for batocera_provision.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports. Everything here describes transient, process-local
device or filesystem state; nothing is persisted.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

# Name of the staging subdirectory inside the workspace root
STAGING_DIR_NAME = "Batocera"

MIN_DISK_INDEX = 1
MAX_DISK_INDEX = 99


class ImageSourceKind(str, Enum):
    """Where the compressed image came from."""

    LOCAL = "local"
    REMOTE = "remote"


class VerificationMode(str, Enum):
    """Mode for verifying flashed images."""

    FULL = "full-hash"
    PREFIX_16M = "prefix-16MiB"
    PREFIX_64M = "prefix-64MiB"
    SKIP = "skipped"


class VerificationResult(str, Enum):
    """Result of flash verification."""

    MATCH = "match"
    MISMATCH = "mismatch"
    SKIPPED = "skipped"


class FlashStatus(str, Enum):
    """Outcome of the flash stage."""

    FLASHED = "flashed"
    SKIPPED = "skipped"


class RepairStatus(str, Enum):
    """Outcome of the partition repair stage.

    REPAIRED and UNCHANGED both yield a usable volume. DEGRADED means a
    substep failed but a mount path could still be derived. FAILED means
    no mount path is known and the sync stage must not copy to it.
    """

    REPAIRED = "repaired"
    UNCHANGED = "unchanged"
    DEGRADED = "degraded"
    FAILED = "failed"


class StageStatus(str, Enum):
    """Status of a single workflow stage in a run report."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    DEGRADED = "degraded"
    FAILED = "failed"


class Stage(str, Enum):
    """Workflow stages, in execution order."""

    VALIDATE = "validate"
    RESOLVE = "resolve"
    WORKSPACE = "workspace"
    ACQUIRE = "acquire"
    EXTRACT = "extract"
    FLASH = "flash"
    REINSERT = "reinsert"
    REPAIR = "repair"
    SYNC = "sync"


@dataclass(frozen=True)
class TargetDevice:
    """A resolved target disk.

    Attributes:
        index: Host disk number supplied by the user (1-99).
        identifier: Identifier the raw writer opens (e.g. '\\\\.\\PHYSICALDRIVE2'
            or '/dev/sdb').
        description: Model or friendly name, if the host reports one.
        size_bytes: Disk size in bytes, if known.
    """

    index: int
    identifier: str
    description: str | None = None
    size_bytes: int | None = None


@dataclass(frozen=True)
class Workspace:
    """Scratch directory for staged artifacts."""

    root: Path
    staging_dir: Path


@dataclass
class ImageArtifact:
    """An acquired image archive and, once extracted, the raw disk image."""

    source_kind: ImageSourceKind
    archive_path: Path
    image_path: Path | None = None


@dataclass
class PartitionInfo:
    """A partition as currently reported by the host.

    Attributes:
        disk_number: Host disk number the partition belongs to.
        partition_number: 1-based partition index on the disk.
        mount_point: Drive letter (Windows) or mount directory (Linux), if any.
        label: Filesystem label, if any.
        size_bytes: Partition size in bytes, if known.
        fs_type: Filesystem type, if known.
        device_path: Partition device node on hosts that expose one.
    """

    disk_number: int
    partition_number: int
    mount_point: str | None = None
    label: str | None = None
    size_bytes: int | None = None
    fs_type: str | None = None
    device_path: str | None = None

    @property
    def has_mount_point(self) -> bool:
        return bool(self.mount_point)

    @property
    def has_label(self) -> bool:
        return bool(self.label and self.label.strip())


@dataclass(frozen=True)
class MountedVolume:
    """A mounted data partition usable as a copy destination."""

    mount_point: str
    root_path: Path


@dataclass(frozen=True)
class UserFileSet:
    """Personal BIOS and ROM source trees. Either may be absent."""

    bios_path: Path | None = None
    rom_path: Path | None = None

    @property
    def is_empty(self) -> bool:
        return self.bios_path is None and self.rom_path is None


@dataclass
class StageRecord:
    """Outcome of one stage as recorded in the run report."""

    stage: Stage
    status: StageStatus
    message: str = ""
    details: dict[str, object] = field(default_factory=dict)


__all__ = [
    "MAX_DISK_INDEX",
    "MIN_DISK_INDEX",
    "STAGING_DIR_NAME",
    "FlashStatus",
    "ImageArtifact",
    "ImageSourceKind",
    "MountedVolume",
    "PartitionInfo",
    "RepairStatus",
    "Stage",
    "StageRecord",
    "StageStatus",
    "TargetDevice",
    "UserFileSet",
    "VerificationMode",
    "VerificationResult",
    "Workspace",
]
