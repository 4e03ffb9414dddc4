"""
Storage-engine agnostic interface consumed by the stack engine.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .models import CommitInfo, ReplayOutcome


class RepositoryStore(ABC):
    """Abstract command/query interface over a version-control repository.

    Implementations translate their own failures into ``GitRepositoryError``
    (or ``TransientStoreError`` for failures worth retrying) so that callers
    never see backend-specific exceptions.
    """

    @property
    @abstractmethod
    def state_dir(self) -> Path:
        """Directory where the engine may keep private files (locks, logs)."""

    # --- Queries ---
    @abstractmethod
    def list_local_branches(self) -> List[str]:
        """Return local branch names (full names, including slashes)."""

    @abstractmethod
    def branch_tip(self, branch: str) -> Optional[str]:
        """Return the commit a local branch points at, or None if it does not exist."""

    @abstractmethod
    def resolve_revision(self, revision: str) -> Optional[str]:
        """Return the full commit id for any revision, or None if it cannot be resolved."""

    @abstractmethod
    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Return True if ``ancestor`` is reachable from ``descendant`` (reflexive)."""

    @abstractmethod
    def count_commits(self, base: str, tip: str) -> int:
        """Number of commits reachable from ``tip`` but not from ``base``."""

    @abstractmethod
    def commits_between(self, base: str, tip: str) -> List[CommitInfo]:
        """Commits reachable from ``tip`` but not ``base``, oldest first."""

    @abstractmethod
    def get_commit(self, commit: str) -> CommitInfo:
        """Return information about one commit."""

    @abstractmethod
    def current_branch(self) -> Optional[str]:
        """Name of the checked-out branch, or None when HEAD is detached."""

    @abstractmethod
    def is_worktree_clean(self) -> bool:
        """Return True if the working tree has no staged or unstaged changes."""

    # --- Commands ---
    @contextmanager
    def replay_scope(self) -> Iterator[None]:
        """Keep replay resources alive across several ``replay_commit`` calls."""
        yield

    @abstractmethod
    def replay_commit(self, commit: str, onto: str) -> ReplayOutcome:
        """Re-create ``commit``'s change on top of ``onto`` without touching any branch."""

    @abstractmethod
    def materialize(self, commit: str) -> None:
        """Ensure a commit created by ``replay_commit`` is durably stored."""

    @abstractmethod
    def move_branch(self, branch: str, new_tip: str, expected_tip: str) -> None:
        """Point ``branch`` at ``new_tip`` only if it currently points at ``expected_tip``."""

    # --- Generic references (backups) ---
    @abstractmethod
    def read_ref(self, ref: str) -> Optional[str]:
        """Return the commit a full ref name points at, or None."""

    @abstractmethod
    def write_ref(self, ref: str, commit: str) -> None:
        """Create or overwrite a full ref name."""

    @abstractmethod
    def delete_ref(self, ref: str) -> None:
        """Delete a full ref name."""

    @abstractmethod
    def list_refs(self, prefix: str) -> Dict[str, str]:
        """Map of full ref name to commit for every ref under ``prefix``."""

    # --- Remotes ---
    @abstractmethod
    def has_remote(self, remote: str) -> bool:
        """Return True if a remote with this name is configured."""

    @abstractmethod
    def remote_tip(self, remote: str, branch: str) -> Optional[str]:
        """Query the remote directly for the current tip of ``branch``."""

    @abstractmethod
    def tracking_tip(self, remote: str, branch: str) -> Optional[str]:
        """Last locally observed tip of ``remote/branch`` (remote-tracking ref)."""

    @abstractmethod
    def push_branch(self, remote: str, branch: str, expected_remote_tip: Optional[str]) -> None:
        """Push ``branch`` with a lease: succeed only if the remote is at ``expected_remote_tip``.

        ``None`` as expectation means the branch must not exist on the remote.
        Raises ``StaleRemoteError`` when the lease is broken and
        ``PushRejectedError`` for any other refusal.
        """
