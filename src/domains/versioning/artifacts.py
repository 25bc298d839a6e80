"""All-or-nothing filesystem primitives for model artifact directories.

Copies are made into a hidden staging directory beside the destination and
renamed into place, so a half-written tree is never visible under its final
name. Renames within one filesystem are atomic.
"""

import os
import shutil
import uuid
from pathlib import Path

import structlog

logger = structlog.get_logger()


def directory_size(path: Path) -> tuple[int, int]:
    """Return (total bytes, file count) for a directory tree."""
    if not path.exists():
        return 0, 0
    total = 0
    files = 0
    for root, _dirs, names in os.walk(path):
        for name in names:
            total += (Path(root) / name).stat().st_size
            files += 1
    return total, files


def is_populated(path: Path) -> bool:
    return path.is_dir() and any(path.iterdir())


def _staging_path(dest: Path, label: str) -> Path:
    return dest.parent / f".{dest.name}.{label}-{uuid.uuid4().hex[:8]}"


def copy_tree_atomic(source: Path, dest: Path) -> None:
    """Copy ``source`` to a new directory ``dest``.

    Raises FileExistsError if ``dest`` exists. On any failure the staging
    copy is removed and ``dest`` is left absent.
    """
    if dest.exists():
        raise FileExistsError(f"{dest} already exists")
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = _staging_path(dest, "staging")
    try:
        if source.exists():
            shutil.copytree(source, staging)
        else:
            staging.mkdir()
        os.replace(staging, dest)
    except OSError:
        shutil.rmtree(staging, ignore_errors=True)
        raise


def replace_tree(source: Path, dest: Path) -> None:
    """Atomically replace the contents of ``dest`` with a copy of ``source``.

    The new tree is fully staged before the swap. If the swap itself fails,
    the previous tree is moved back under ``dest``.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = _staging_path(dest, "staging")
    try:
        shutil.copytree(source, staging)
    except OSError:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    retired = _staging_path(dest, "retired")
    had_previous = dest.exists()
    try:
        if had_previous:
            os.replace(dest, retired)
        os.replace(staging, dest)
    except OSError:
        if had_previous and retired.exists() and not dest.exists():
            os.replace(retired, dest)
        shutil.rmtree(staging, ignore_errors=True)
        raise

    if had_previous:
        shutil.rmtree(retired, ignore_errors=True)
    logger.debug("artifact_tree_replaced", source=str(source), dest=str(dest))
