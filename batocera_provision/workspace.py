"""Workspace preparation.

The workspace is a scratch directory holding the downloaded archive at its
root and the extracted image under its ``Batocera`` staging subdirectory.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from batocera_provision.errors import WorkspaceError
from batocera_provision.types import STAGING_DIR_NAME, Workspace

logger = logging.getLogger(__name__)


def _is_unsafe_to_clear(root: Path) -> bool:
    resolved = root.resolve()
    if resolved == Path(resolved.anchor):
        return True
    try:
        return resolved == Path.home().resolve()
    except RuntimeError:
        return False


def prepare_workspace(root: str | Path, clear: bool = True) -> Workspace:
    """Create the workspace, optionally wiping its previous contents.

    Args:
        root: Workspace root directory.
        clear: Recursively delete the root first. Destructive; on by default.

    Returns:
        Workspace with root and staging directory.

    Raises:
        WorkspaceError: The directory cannot be removed or created, or
            clearing was requested for a filesystem root or home directory.
    """
    root = Path(root).expanduser()
    staging_dir = root / STAGING_DIR_NAME

    if clear and root.exists():
        if _is_unsafe_to_clear(root):
            raise WorkspaceError(
                f"Refusing to clear {root}: not a scratch directory",
                code="unsafe_path",
            )
        if not root.is_dir():
            raise WorkspaceError(f"Workspace path is not a directory: {root}")

        logger.info("Clearing workspace %s", root)
        try:
            shutil.rmtree(root)
        except OSError as e:
            raise WorkspaceError(f"Could not clear workspace {root}: {e}") from e

    try:
        staging_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise WorkspaceError(f"Could not create workspace {staging_dir}: {e}") from e

    logger.debug("Workspace ready: root=%s staging=%s", root, staging_dir)
    return Workspace(root=root, staging_dir=staging_dir)


__all__ = ["prepare_workspace"]
