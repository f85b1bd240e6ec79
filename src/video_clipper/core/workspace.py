"""Per-operation temporary workspaces and the sweep of stale ones."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from ..config import get_work_dir

logger = logging.getLogger(__name__)

OWNER_FILE = ".owner"


@asynccontextmanager
async def operation_workspace(label: str, root: Path | None = None) -> AsyncIterator[Path]:
    """
    Create a scoped temporary directory for one pipeline operation.

    The directory is removed on every exit path. An ``.owner`` file records
    the process id so the periodic sweep never removes a live workspace.

    Args:
        label: Short operation name used in the directory name
        root: Parent directory (defaults to the configured work dir)

    Yields:
        Path to the workspace directory
    """
    root = Path(root) if root is not None else get_work_dir()
    workdir = root / f"{label}-{uuid.uuid4().hex[:12]}"
    workdir.mkdir(parents=True, exist_ok=False)
    (workdir / OWNER_FILE).write_text(str(os.getpid()))
    logger.debug(f"Created workspace {workdir}")
    try:
        yield workdir
    finally:
        await asyncio.to_thread(shutil.rmtree, workdir, True)
        logger.debug(f"Removed workspace {workdir}")


def get_folder_age_days(folder_path: Path) -> float | None:
    """
    Get folder age in days based on the newest file's mtime.

    A workspace still being written to is young even if it was created
    long ago.

    Returns:
        Age in days, or None if the folder is empty or inaccessible
    """
    try:
        mtimes = [f.stat().st_mtime for f in folder_path.rglob("*") if f.is_file()]
        if not mtimes:
            mtimes = [folder_path.stat().st_mtime]
        return (time.time() - max(mtimes)) / 86400.0
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to get age for {folder_path}: {e}")
        return None


def owner_is_alive(folder_path: Path) -> bool:
    """Whether the process that created the workspace is still running."""
    owner_file = folder_path / OWNER_FILE
    try:
        pid = int(owner_file.read_text().strip())
    except (OSError, ValueError):
        return False
    if pid == os.getpid():
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def delete_folder_safe(folder_path: Path) -> tuple[bool, str | None, int]:
    """
    Delete a folder, reporting instead of raising.

    Returns:
        Tuple of (success, error_message, bytes_freed)
    """
    try:
        folder_size = sum(f.stat().st_size for f in folder_path.rglob("*") if f.is_file())
        shutil.rmtree(folder_path)
        return True, None, folder_size
    except PermissionError as e:
        error_msg = f"Permission denied: {e}"
        logger.warning(f"Skipped {folder_path}: {error_msg}")
        return False, error_msg, 0
    except OSError as e:
        error_msg = f"Failed to delete: {e}"
        logger.error(f"Failed to delete {folder_path}: {error_msg}")
        return False, error_msg, 0


def cleanup_stale_workspaces(retention_days: float, root: Path | None = None) -> dict[str, Any]:
    """
    Remove workspaces left behind by crashed operations.

    A workspace is deleted when its newest file is older than
    ``retention_days`` and its owning process is gone.

    Returns:
        Dictionary with cleanup statistics:
        {
            "success": True,
            "deleted_count": 2,
            "freed_bytes": 123456,
            "skipped_active": 1,
            "errors": [],
            "details": [...]
        }
    """
    work_dir = Path(root) if root is not None else get_work_dir()
    result: dict[str, Any] = {
        "success": True,
        "deleted_count": 0,
        "freed_bytes": 0,
        "skipped_active": 0,
        "errors": [],
        "details": [],
    }

    if not work_dir.exists():
        logger.info(f"Work directory does not exist: {work_dir}")
        return result

    for folder in work_dir.iterdir():
        if not folder.is_dir():
            continue

        age_days = get_folder_age_days(folder)
        if age_days is None or age_days <= retention_days:
            continue

        if owner_is_alive(folder):
            logger.info(f"Skipped {folder.name}: owner process still running")
            result["skipped_active"] += 1
            continue

        logger.info(f"Deleting stale workspace {folder.name}: age {age_days:.2f} days")
        success, error_msg, size = delete_folder_safe(folder)
        if success:
            result["deleted_count"] += 1
            result["freed_bytes"] += size
            result["details"].append({"folder": folder.name, "age_days": round(age_days, 2), "size_bytes": size})
        else:
            result["errors"].append({"folder": folder.name, "error": error_msg})

    return result
