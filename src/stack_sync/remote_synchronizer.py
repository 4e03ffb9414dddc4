"""
Lease-guarded publication of rewritten branches to a remote.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from .branch_lock import BranchLockManager
from .cancellation import CancellationToken
from .history_inspector import HistoryInspector
from .models import (
    BranchPushOutcome,
    CancelledError,
    LockTimeoutError,
    PushResult,
    PushStatus,
    RunState,
    StackError,
    StaleRemoteError,
)
from .store_interface import RepositoryStore

logger = logging.getLogger(__name__)


class RemoteSynchronizer:
    """Pushes branches one by one, never overwriting remote work we have not seen.

    For every branch the remote is queried right before the push. If its tip
    differs from the expectation the branch is reported ``STALE_REMOTE`` and
    left alone; other branches of the batch are still pushed.
    """

    def __init__(
        self,
        store: RepositoryStore,
        inspector: HistoryInspector,
        remote: str = "origin",
        locks: Optional[BranchLockManager] = None,
        workers: int = 1,
    ) -> None:
        self.store = store
        self.inspector = inspector
        self.remote = remote
        self.locks = locks
        self.workers = max(1, workers)

    def push(
        self,
        branch_names: List[str],
        expected_remote_tips: Dict[str, Optional[str]],
        owner: Optional[object] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> PushResult:
        """Push ``branch_names``; ``expected_remote_tips[b]`` is None when ``b`` should be new."""
        result = PushResult(remote=self.remote)
        if not branch_names:
            return result

        if self.workers == 1 or len(branch_names) == 1:
            for index, name in enumerate(branch_names):
                if cancel:
                    cancel.check(RunState.SYNCHRONIZING, result.pushed, branch_names[index:])
                result.outcomes.append(self._push_one(name, expected_remote_tips.get(name), owner))
        else:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="stack-sync-push") as pool:
                futures = [
                    pool.submit(self._push_unless_cancelled, name, expected_remote_tips.get(name), owner, cancel)
                    for name in branch_names
                ]
                outcomes = [f.result() for f in futures]
            result.outcomes = [o for o in outcomes if o is not None]
            skipped = [name for name, o in zip(branch_names, outcomes) if o is None]
            if skipped:
                logger.warning(f"Cancelled with {skipped} not pushed")
                raise CancelledError(RunState.SYNCHRONIZING, result.pushed, skipped)

        logger.info(
            f"Push to {self.remote}: ok={result.pushed} stale={result.stale} "
            f"failed={[b for b in result.failed if b not in result.stale]}"
        )
        return result

    def _push_unless_cancelled(
        self,
        branch: str,
        expected: Optional[str],
        owner: Optional[object],
        cancel: Optional[CancellationToken],
    ) -> Optional[BranchPushOutcome]:
        """Push from a worker thread; None when cancellation came before this branch started."""
        if cancel is not None and cancel.cancelled:
            return None
        return self._push_one(branch, expected, owner)

    def _push_one(self, branch: str, expected: Optional[str], owner: Optional[object]) -> BranchPushOutcome:
        if self.locks is None:
            return self._push_locked(branch, expected)
        try:
            with self.locks.hold([branch], owner):
                return self._push_locked(branch, expected)
        except LockTimeoutError as e:
            logger.error(str(e))
            return BranchPushOutcome(
                branch=branch, status=PushStatus.FAILED, expected_remote_tip=expected, detail=str(e)
            )

    def _push_locked(self, branch: str, expected: Optional[str]) -> BranchPushOutcome:
        outcome = BranchPushOutcome(branch=branch, status=PushStatus.FAILED, expected_remote_tip=expected)
        try:
            local_tip = self.inspector.tip_of(branch)
            outcome.local_tip = local_tip
            actual = self.inspector.remote_tip(self.remote, branch)
            outcome.actual_remote_tip = actual

            if actual == local_tip:
                outcome.status = PushStatus.UP_TO_DATE
                return outcome
            if actual != expected:
                error = StaleRemoteError(branch, expected, actual)
                logger.warning(str(error))
                outcome.status = PushStatus.STALE_REMOTE
                outcome.detail = str(error)
                return outcome

            self.store.push_branch(self.remote, branch, expected)
            outcome.status = PushStatus.PUSHED
        except StaleRemoteError as e:
            # Remote moved between our query and the push itself
            outcome.status = PushStatus.STALE_REMOTE
            outcome.detail = str(e)
        except StackError as e:
            logger.error(f"Push of {branch} failed: {e}")
            outcome.detail = str(e)
        except Exception as e:
            logger.exception(f"Unexpected error pushing {branch}")
            outcome.detail = str(e)
        return outcome
