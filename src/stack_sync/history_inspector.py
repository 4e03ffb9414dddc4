"""
Read-only queries over commit ancestry.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, TypeVar

from .models import CommitInfo, NotAncestorError, TransientStoreError, UnknownBranchError
from .store_interface import RepositoryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HistoryInspector:
    """Answers ancestry and tip questions about a repository.

    Every method is free of side effects. Calls that fail with a transient
    store error are retried with exponential backoff before giving up.
    """

    def __init__(self, store: RepositoryStore, retries: int = 3, retry_delay: float = 0.25) -> None:
        self.store = store
        self.retries = max(1, retries)
        self.retry_delay = retry_delay

    def _read(self, description: str, fn: Callable[[], T]) -> T:
        for attempt in range(self.retries):
            try:
                return fn()
            except (TransientStoreError, OSError) as e:
                if attempt >= self.retries - 1:
                    logger.error(f"Giving up on {description} after {self.retries} attempts: {e}")
                    raise
                delay = self.retry_delay * (2 ** attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt + 1}/{self.retries}): {e}; retrying in {delay:.2f}s"
                )
                time.sleep(delay)
        raise AssertionError("unreachable")

    def resolve(self, revision: str) -> str:
        """Full commit id for a branch name or any other revision."""
        commit = self._read(f"resolve {revision}", lambda: self.store.resolve_revision(revision))
        if commit is None:
            raise UnknownBranchError(revision)
        return commit

    def tip_of(self, branch: str) -> str:
        """Current commit of a local branch."""
        tip = self._read(f"tip of {branch}", lambda: self.store.branch_tip(branch))
        if tip is None:
            raise UnknownBranchError(branch)
        return tip

    def local_branches(self) -> List[str]:
        return self._read("list local branches", self.store.list_local_branches)

    def is_ancestor(self, a: str, b: str) -> bool:
        """True if ``a`` is reachable from ``b``; every commit is its own ancestor."""
        if a == b:
            return True
        return self._read(f"is-ancestor {a} {b}", lambda: self.store.is_ancestor(a, b))

    def ancestor_count(self, base: str, tip: str) -> int:
        """Number of commits reachable from ``tip`` but not from ``base``."""
        if not self.is_ancestor(base, tip):
            raise NotAncestorError(base, tip)
        return self._read(f"count {base}..{tip}", lambda: self.store.count_commits(base, tip))

    def unique_commits(self, base: str, tip: str) -> List[CommitInfo]:
        """Commits of ``tip`` not reachable from ``base``, oldest first."""
        return self._read(f"list {base}..{tip}", lambda: self.store.commits_between(base, tip))

    def remote_tip(self, remote: str, branch: str) -> Optional[str]:
        """Fresh tip of ``branch`` on ``remote``, or None if absent there."""
        return self._read(f"remote tip of {remote}/{branch}", lambda: self.store.remote_tip(remote, branch))

    def tracking_tip(self, remote: str, branch: str) -> Optional[str]:
        """Last observed tip of ``branch`` on ``remote``, or None if never observed."""
        return self._read(
            f"tracking tip of {remote}/{branch}", lambda: self.store.tracking_tip(remote, branch)
        )
