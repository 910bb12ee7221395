from __future__ import annotations

import contextlib
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from agentdeploy.logging import get_logger

logger = get_logger(__name__)

# Directory under a user's auth root holding the linked messaging credentials
LINK_STATE_DIRNAME = "link-state"


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


def user_dir(auth_root: str, user_id: str) -> Path:
    return safe_join(Path(auth_root), user_id)


def chown_recursive(
    target: Path, uid: int, gid: int, *, chown: Callable[..., None] = os.lchown
) -> int:
    """Change ownership of ``target`` and everything below it; returns the count."""
    if not target.exists() and not target.is_symlink():
        return 0
    changed = 0
    if target.is_dir() and not target.is_symlink():
        for child in target.iterdir():
            changed += chown_recursive(child, uid, gid, chown=chown)
    chown(str(target), uid, gid)
    return changed + 1


@dataclass
class OwnershipPolicy:
    """Decides whether runtime files must be handed to the container's user.

    Only a shared volume needs it: bind mounts keep host ownership. Changing
    ownership also requires running as root and a uid/gid that differs from
    the current process.
    """

    uid: int
    gid: int
    shared_volume: bool = False
    current_uid: Optional[Callable[[], int]] = None
    current_gid: Optional[Callable[[], int]] = None
    chown: Callable[..., None] = os.lchown

    def _ids(self) -> tuple:
        get_uid = self.current_uid or getattr(os, "getuid", None)
        get_gid = self.current_gid or getattr(os, "getgid", None)
        return (get_uid() if get_uid else None, get_gid() if get_gid else None)

    def should_apply(self) -> bool:
        if not self.shared_volume:
            return False
        uid, gid = self._ids()
        if uid == self.uid and gid == self.gid:
            return False
        return uid == 0

    def apply(self, target: Path) -> bool:
        if not self.should_apply():
            return False
        changed = chown_recursive(Path(target), self.uid, self.gid, chown=self.chown)
        logger.info("ownership_applied", path=str(target), uid=self.uid, gid=self.gid, entries=changed)
        return True


def copy_link_state(source_dir: str, auth_root: str, user_id: str) -> Path:
    """Copy credential files written during pairing into the user's directory."""
    destination = user_dir(auth_root, user_id) / LINK_STATE_DIRNAME
    destination.mkdir(parents=True, exist_ok=True)
    source = Path(source_dir)
    if source.is_dir():
        shutil.copytree(source, destination, dirs_exist_ok=True)
    return destination


def sweep_stale_dirs(
    tmp_root: Path, max_age_seconds: int, *, now: Optional[float] = None
) -> List[str]:
    """Remove per-session working directories untouched for ``max_age_seconds``.

    Runs in a thread; entries that vanish concurrently are skipped.
    """
    if not tmp_root.exists():
        return []
    cutoff = (now if now is not None else time.time()) - max_age_seconds
    removed: List[str] = []
    for entry in tmp_root.iterdir():
        try:
            mtime = entry.stat().st_mtime
        except FileNotFoundError:
            continue
        if mtime >= cutoff:
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry, ignore_errors=True)
        else:
            with contextlib.suppress(FileNotFoundError):
                entry.unlink()
        removed.append(entry.name)
    if removed:
        logger.info("tmp_dirs_swept", root=str(tmp_root), removed=len(removed))
    return removed
