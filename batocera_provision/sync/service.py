"""File sync stage.

Copies BIOS and ROM trees into Batocera's ``bios`` and ``roms`` folders.
Two independent groups of copies may run:

- mirror: the card's own bios/roms folders onto a second, already mounted
  card, when one was given;
- personal: the user's BIOS and ROM trees onto the card, for whichever of
  the two paths is set.

Every copy is independent. A failed copy is recorded and the others still
run; nothing already copied is rolled back.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from batocera_provision.errors import CopyError
from batocera_provision.types import MountedVolume, UserFileSet

logger = logging.getLogger(__name__)

BIOS_DIR_NAME = "bios"
ROMS_DIR_NAME = "roms"

# (source_dir, destination_dir) -> None
TreeCopier = Callable[[Path, Path], None]


def copy_tree(source: Path, destination: Path) -> None:
    """Copy a directory tree, merging into an existing destination."""
    shutil.copytree(source, destination, dirs_exist_ok=True)


@dataclass(frozen=True)
class CopyOperation:
    """One planned copy."""

    kind: str
    source: Path
    destination: Path


@dataclass
class SyncResult:
    """Outcome of the sync stage.

    Attributes:
        copied: Operations that completed.
        failed: Errors of operations that failed.
        skipped: Human readable reasons for copies that were not attempted.
    """

    copied: list[CopyOperation] = field(default_factory=list)
    failed: list[CopyError] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def operation_count(self) -> int:
        return len(self.copied) + len(self.failed)


def plan_copies(
    primary: MountedVolume | None,
    user_files: UserFileSet,
    second_card: Path | None = None,
) -> tuple[list[CopyOperation], list[str]]:
    """Work out which copies to run.

    Args:
        primary: The repaired card volume, or None if repair derived none.
        user_files: Personal BIOS/ROM trees.
        second_card: Root of a second mounted card to mirror onto.

    Returns:
        Tuple of (operations, skip reasons).
    """
    operations: list[CopyOperation] = []
    skipped: list[str] = []

    wants_primary = second_card is not None or not user_files.is_empty
    if primary is None:
        if wants_primary:
            skipped.append("no mounted volume for the card; all copies skipped")
        return operations, skipped

    root = primary.root_path

    if second_card is not None:
        for name in (BIOS_DIR_NAME, ROMS_DIR_NAME):
            source = root / name
            if source.is_dir():
                operations.append(CopyOperation("mirror", source, second_card / name))
            else:
                skipped.append(f"card has no {name} folder to mirror")

    if user_files.bios_path is not None:
        operations.append(
            CopyOperation("bios", user_files.bios_path, root / BIOS_DIR_NAME)
        )
    if user_files.rom_path is not None:
        operations.append(
            CopyOperation("roms", user_files.rom_path, root / ROMS_DIR_NAME)
        )

    return operations, skipped


def sync_files(
    primary: MountedVolume | None,
    user_files: UserFileSet,
    second_card: Path | None = None,
    copier: TreeCopier = copy_tree,
) -> SyncResult:
    """Run the planned copies.

    Args:
        primary: The repaired card volume, or None.
        user_files: Personal BIOS/ROM trees.
        second_card: Root of a second mounted card to mirror onto.
        copier: Tree copy collaborator.

    Returns:
        SyncResult; failures are collected, never raised.
    """
    operations, skipped = plan_copies(primary, user_files, second_card)
    result = SyncResult(skipped=skipped)

    for reason in skipped:
        logger.warning("Sync: %s", reason)

    if not operations:
        logger.info("Nothing to copy")
        return result

    for operation in operations:
        logger.info(
            "Copying %s: %s -> %s", operation.kind, operation.source, operation.destination
        )
        try:
            copier(operation.source, operation.destination)
        except OSError as e:
            error = CopyError(
                f"Copying {operation.source} to {operation.destination} failed: {e}",
                source=str(operation.source),
                destination=str(operation.destination),
            )
            error.__cause__ = e
            logger.error("%s", error.message)
            result.failed.append(error)
            continue
        result.copied.append(operation)

    logger.info(
        "Sync finished: %d copied, %d failed", len(result.copied), len(result.failed)
    )
    return result


__all__ = [
    "BIOS_DIR_NAME",
    "ROMS_DIR_NAME",
    "CopyOperation",
    "SyncResult",
    "TreeCopier",
    "copy_tree",
    "plan_copies",
    "sync_files",
]
