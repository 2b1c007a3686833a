"""BIOS/ROM file sync onto the provisioned card."""

from batocera_provision.sync.service import (
    BIOS_DIR_NAME,
    ROMS_DIR_NAME,
    CopyOperation,
    SyncResult,
    TreeCopier,
    copy_tree,
    plan_copies,
    sync_files,
)

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
