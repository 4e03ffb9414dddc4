"""
Scoped advisory locks keyed by branch name.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional
from urllib.parse import quote

from .models import LockTimeoutError

logger = logging.getLogger(__name__)


class BranchLockManager:
    """Serializes work on branches across threads and processes.

    Each branch has its own lock file under ``lock_dir``. Locks are re-entrant
    for the same owner object, so a run holding a whole stack can hand work to
    helpers (for example push workers) that lock single branches on its behalf.
    A lock file left behind by a process that no longer exists is broken.
    """

    def __init__(self, lock_dir: Path, *, timeout: Optional[float] = None, poll: float = 0.05) -> None:
        self.lock_dir = Path(lock_dir)
        self.timeout = timeout
        self.poll = poll
        self._mutex = threading.Lock()
        self._held: Dict[str, List[object]] = {}  # branch -> [owner, depth]

    def _path_for(self, branch: str) -> Path:
        return self.lock_dir / f"{quote(branch, safe='')}.lock"

    @contextmanager
    def hold(self, names: Iterable[str], owner: Optional[object] = None) -> Iterator[None]:
        """Hold the locks for every branch in ``names`` for the duration of the block."""
        owner = owner if owner is not None else threading.current_thread()
        ordered = sorted(set(names))
        acquired: List[str] = []
        try:
            for name in ordered:
                self._acquire(name, owner)
                acquired.append(name)
            yield
        finally:
            for name in reversed(acquired):
                self._release(name, owner)

    def _acquire(self, branch: str, owner: object) -> None:
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        path = self._path_for(branch)
        while True:
            with self._mutex:
                entry = self._held.get(branch)
                if entry is not None and entry[0] is owner:
                    entry[1] += 1
                    return
                if entry is None and self._create(path):
                    self._held[branch] = [owner, 1]
                    logger.debug(f"Locked branch {branch}")
                    return
            if entry is None and self._is_stale(path):
                logger.warning(f"Breaking stale lock for branch {branch} ({path})")
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                continue
            if deadline is not None and time.monotonic() >= deadline:
                raise LockTimeoutError(f"Timed out waiting for the lock on branch {branch} ({path})")
            time.sleep(self.poll)

    def _release(self, branch: str, owner: object) -> None:
        with self._mutex:
            entry = self._held.get(branch)
            if entry is None or entry[0] is not owner:
                return
            entry[1] -= 1
            if entry[1] > 0:
                return
            del self._held[branch]
            try:
                self._path_for(branch).unlink()
            except FileNotFoundError:
                pass
            logger.debug(f"Unlocked branch {branch}")

    def _create(self, path: Path) -> bool:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(f"pid={os.getpid()} time={timestamp}\n")
        return True

    @staticmethod
    def _pid_of_lock(path: Path) -> Optional[int]:
        try:
            content = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        for part in content.split():
            if part.startswith("pid="):
                try:
                    return int(part.split("=", 1)[1])
                except ValueError:
                    return None
        return None

    def _is_stale(self, path: Path) -> bool:
        pid = self._pid_of_lock(path)
        if pid is None or pid == os.getpid():
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False
