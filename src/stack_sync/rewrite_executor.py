"""
Application of a rewrite plan to local branch references.
"""

from __future__ import annotations

import logging
from typing import Optional

from .backup_manager import BackupManager
from .cancellation import CancellationToken
from .models import (
    AppliedResult,
    CancelledError,
    GitRepositoryError,
    PartialRewriteError,
    RewritePlan,
    RunState,
)
from .store_interface import RepositoryStore

logger = logging.getLogger(__name__)


class RewriteExecutor:
    """Moves branch references to the tips a plan computed.

    Every new commit is verified before the first move, so a failure there
    leaves all references untouched. Moves are issued bottom to top; if one
    fails the caller learns exactly which branches moved and which did not.
    """

    def __init__(self, store: RepositoryStore, backups: Optional[BackupManager] = None) -> None:
        self.store = store
        self.backups = backups

    def apply(
        self,
        plan: RewritePlan,
        backup_session: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AppliedResult:
        """Apply ``plan``; ``backup_session`` names backups already taken by the caller."""
        result = AppliedResult(backup_session=backup_session)
        pending = [u.branch for u in plan.pending_updates]

        try:
            for commit in plan.new_commits:
                self.store.materialize(commit)
        except GitRepositoryError as e:
            logger.error(f"Could not materialize planned commits: {e}")
            raise PartialRewriteError([], pending, str(e)) from e

        if pending and self.backups is not None and backup_session is None:
            result.backup_session = self.backups.create_session({u.branch: u.old_tip for u in plan.updates})

        for update in plan.updates:
            if not update.needs_move:
                result.unchanged.append(update.branch)
                continue
            remaining = [b for b in pending if b not in result.moved]
            if cancel:
                try:
                    cancel.check(RunState.EXECUTING, result.moved, remaining)
                except CancelledError:
                    logger.warning(f"Cancelled after moving {result.moved}; pending {remaining}")
                    raise
            try:
                self.store.move_branch(update.branch, update.new_tip, update.old_tip)
            except GitRepositoryError as e:
                logger.error(f"Moving {update.branch} failed after {result.moved}: {e}")
                raise PartialRewriteError(result.moved, remaining, str(e)) from e
            result.moved.append(update.branch)

        logger.info(f"Applied plan: moved {result.moved}, unchanged {result.unchanged}")
        return result
