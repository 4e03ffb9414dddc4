"""
Main orchestration logic for rewriting and publishing a branch stack.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .backup_manager import BackupManager
from .branch_lock import BranchLockManager
from .cancellation import CancellationToken
from .config import StackConfig
from .history_inspector import HistoryInspector
from .hosting_interface import HostingPlatform
from .models import (
    AppliedResult,
    CancelledError,
    ConfigError,
    ConflictError,
    DependencyChain,
    GitRepositoryError,
    PartialRewriteError,
    PushResult,
    ReasonCode,
    RewriteInvariantError,
    RewritePlan,
    RunFailure,
    RunState,
    StackBranch,
    StackError,
    StackRun,
    UnknownBranchError,
)
from .remote_synchronizer import RemoteSynchronizer
from .rewrite_executor import RewriteExecutor
from .rewrite_planner import RewritePlanner
from .stack_resolver import StackResolver
from .store_interface import RepositoryStore


logger = logging.getLogger(__name__)


class StackOrchestrator:
    """Drives one rewrite request through resolve, plan, execute and push.

    Failures never escape as exceptions from ``sync_stack`` and the resume
    operations: they are recorded on the returned ``StackRun`` together with
    the stage they happened in and the branches that did or did not move.
    """

    def __init__(
        self,
        store: RepositoryStore,
        config: Optional[StackConfig] = None,
        platform: Optional[HostingPlatform] = None,
        locks: Optional[BranchLockManager] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self.store = store
        self.config = config or StackConfig()
        self.platform = platform
        self.cancel = cancel or CancellationToken()
        self.inspector = HistoryInspector(
            store, retries=self.config.read_retries, retry_delay=self.config.retry_delay
        )
        self.resolver = StackResolver(self.inspector)
        self.planner = RewritePlanner(store, self.inspector)
        self.backups = BackupManager(store)
        self.executor = RewriteExecutor(store, self.backups)
        self.locks = locks or BranchLockManager(
            store.state_dir / "locks", timeout=self.config.lock_timeout
        )
        self.synchronizer = RemoteSynchronizer(
            store,
            self.inspector,
            remote=self.config.remote,
            locks=self.locks,
            workers=self.config.push_workers,
        )
        logger.debug(f"Initialized stack orchestrator (remote={self.config.remote}, trunk={self.config.trunk})")

    # --- Queries ---
    def default_head(self) -> str:
        """Name of the checked-out branch; a detached HEAD needs an explicit head."""
        head = self.store.current_branch()
        if head is None:
            raise UnknownBranchError("HEAD (detached; pass --head)")
        return head

    def list_stack(self, base: Optional[str] = None, head: Optional[str] = None) -> DependencyChain:
        """Resolve the stack between ``base`` (default: trunk) and ``head`` (default: current branch)."""
        return self.resolver.resolve_stack(base or self.config.trunk, head or self.default_head())

    def detect_new_base(self, chain: DependencyChain) -> str:
        """Ask the hosting platform where the bottom branch's pull request landed."""
        if self.platform is None:
            raise ConfigError("No new base given and no hosting platform configured to detect it")
        if chain.is_empty():
            raise ConfigError("Cannot detect a new base for an empty stack")
        bottom = chain.bottom
        merged = self.platform.merged_commit_for(bottom.name)
        if merged is None:
            raise ConfigError(f"Pull request for {bottom.name} is not merged; pass --new-base explicitly")
        logger.info(f"Detected new base {merged[:8]} from merged pull request of {bottom.name}")
        return merged

    # --- Rewrite requests ---
    def sync_stack(
        self,
        old_base: str,
        new_base: Optional[str] = None,
        head: Optional[str] = None,
        push: Optional[bool] = None,
    ) -> StackRun:
        """Move the stack built on ``old_base`` onto ``new_base`` and publish it."""
        run = StackRun(
            old_base=old_base,
            new_base=new_base or "",
            head=head,
            push=self.config.push if push is None else push,
        )
        try:
            self._transition(run, RunState.RESOLVING)
            run.head = head or self.default_head()
            names = self.resolver.resolve_stack(old_base, run.head).names
            with self.locks.hold(names, owner=run):
                # Re-resolve now that nobody else can move these branches
                chain = self.resolver.resolve_stack(old_base, run.head)
                if chain.names != names:
                    raise RewriteInvariantError(f"Stack changed while waiting for locks: {names} -> {chain.names}")
                run.chain = chain
                run.original_tips = chain.tips
                if not run.new_base:
                    run.new_base = self.detect_new_base(chain)
                run.new_base_commit = self.inspector.resolve(run.new_base)
                run.observed_remote_tips = self._observe_remote(chain.names)
                self._plan_and_apply(run, chain)
        except StackError as e:
            self._fail(run, e)
        return run

    def resume(self, run: StackRun) -> StackRun:
        """Continue a run waiting for conflict resolution in this process."""
        if run.state != RunState.AWAITING_CONFLICT_RESOLUTION or run.chain is None:
            raise StackError(f"Run is in state {run.state.value}; only a run awaiting conflict resolution can resume")
        try:
            with self.locks.hold(run.branch_names, owner=run):
                chain = self._current_chain(run.chain)
                run.conflict = None
                self._plan_and_apply(run, chain)
        except StackError as e:
            self._fail(run, e)
        return run

    def resume_from_backups(
        self,
        old_base: str,
        new_base: str,
        session: Optional[str] = None,
        head: Optional[str] = None,
        push: Optional[bool] = None,
    ) -> StackRun:
        """Continue an interrupted run, rebuilding its original tips from backup refs."""
        run = StackRun(
            old_base=old_base,
            new_base=new_base,
            head=head,
            push=self.config.push if push is None else push,
        )
        try:
            self._transition(run, RunState.RESOLVING)
            session = session or self.backups.latest_session()
            if session is None:
                raise GitRepositoryError("No backup session found to resume from")
            original_tips = self.backups.session_tips(session)
            if not original_tips:
                raise GitRepositoryError(f"Backup session {session} does not exist")
            run.backup_session = session

            base_commit = self.inspector.resolve(old_base)
            ordered = sorted(
                original_tips.items(),
                key=lambda item: (self.inspector.ancestor_count(base_commit, item[1]), item[0]),
            )
            with self.locks.hold(original_tips.keys(), owner=run):
                branches = [
                    StackBranch(name=name, tip=self.inspector.tip_of(name), depth=index)
                    for index, (name, _) in enumerate(ordered)
                ]
                chain = DependencyChain(
                    base=old_base, base_commit=base_commit, head=head or branches[-1].name, branches=branches
                )
                run.chain = chain
                run.original_tips = original_tips
                run.new_base_commit = self.inspector.resolve(new_base)
                run.observed_remote_tips = self._observe_remote(chain.names)
                logger.info(f"Resuming session {session} for {chain.names}")
                self._plan_and_apply(run, chain)
        except StackError as e:
            self._fail(run, e)
        return run

    def push_stack(self, base: Optional[str] = None, head: Optional[str] = None) -> PushResult:
        """Push every branch of the stack, expecting remotes at their last observed tips."""
        chain = self.list_stack(base, head)
        owner = object()
        with self.locks.hold(chain.names, owner=owner):
            expected = self._observe_remote(chain.names)
            return self.synchronizer.push(chain.names, expected, owner=owner, cancel=self.cancel)

    def retarget_pull_requests(self, run: StackRun) -> List[Tuple[int, str]]:
        """Re-point open pull requests based on absorbed branches at the nearest live base."""
        if self.platform is None or run.plan is None or run.chain is None:
            return []
        retargeted: List[Tuple[int, str]] = []
        absorbed = set(run.plan.absorbed_branches)
        for branch in run.plan.absorbed_branches:
            target = self._live_base_below(run.chain, branch, absorbed)
            for pr in self.platform.list_open_pull_requests(branch):
                self.platform.set_base(pr.number, target)
                retargeted.append((pr.number, target))
        return retargeted

    # --- Internals ---
    def _plan_and_apply(self, run: StackRun, chain: DependencyChain) -> None:
        """Plan the rewrite, move the branches and push them, updating ``run`` as it goes."""
        self._transition(run, RunState.PLANNING)
        try:
            plan = self.planner.plan(chain, run.new_base_commit, run.original_tips, cancel=self.cancel)
        except ConflictError as e:
            self._enter_conflict(run, e)
            return
        run.plan = plan

        if plan.is_noop() and (not run.push or self._remote_in_sync(run)):
            run.applied = AppliedResult(unchanged=plan.branches, backup_session=run.backup_session)
            logger.info("Stack is already up to date")
            self._finish(run)
            return

        if not plan.is_noop():
            self._transition(run, RunState.EXECUTING)
            self._execute(run, plan)
            self._verify_on_new_base(run, plan)

        if run.push and not self.store.has_remote(self.config.remote):
            logger.warning(f"Remote {self.config.remote} is not configured; skipping push")
        elif run.push:
            self._transition(run, RunState.SYNCHRONIZING)
            run.push_result = self.synchronizer.push(
                plan.branches, run.observed_remote_tips, owner=run, cancel=self.cancel
            )
            if not run.push_result.succeeded:
                reason = ReasonCode.STALE_REMOTE if run.push_result.stale else ReasonCode.PUSH_FAILED
                run.failure = RunFailure(
                    stage=RunState.SYNCHRONIZING,
                    reason=reason,
                    detail=f"Could not push {run.push_result.failed}",
                    moved=run.push_result.pushed,
                    pending=run.push_result.failed,
                )
                self._transition(run, RunState.FAILED)
                return
        self._finish(run)

    def _execute(self, run: StackRun, plan: RewritePlan) -> None:
        """Apply ``plan`` after backing up the original tips."""
        current = self.store.current_branch()
        if current in [u.branch for u in plan.pending_updates] and not self.store.is_worktree_clean():
            raise GitRepositoryError(f"Checked-out branch {current} has uncommitted changes; commit or stash them")
        self._ensure_backups(run)
        try:
            run.applied = self.executor.apply(plan, backup_session=run.backup_session, cancel=self.cancel)
        except PartialRewriteError as e:
            run.applied = AppliedResult(moved=e.moved, backup_session=run.backup_session)
            raise
        except CancelledError as e:
            run.applied = AppliedResult(moved=e.completed, backup_session=run.backup_session)
            raise

    def _enter_conflict(self, run: StackRun, error: ConflictError) -> None:
        """Move the branches below the conflict and wait for the user."""
        run.conflict = error
        run.plan = error.partial_plan
        self._ensure_backups(run)
        partial = error.partial_plan
        if partial is not None and not partial.is_noop():
            # Branches below the conflict replayed cleanly; move them now
            self._transition(run, RunState.EXECUTING)
            self._execute(run, partial)
        logger.warning(f"Waiting for conflict resolution in {error.branch}: {error}")
        self._transition(run, RunState.AWAITING_CONFLICT_RESOLUTION)

    def _ensure_backups(self, run: StackRun) -> None:
        """Back up the original tips once per run."""
        if run.backup_session is None:
            run.backup_session = self.backups.create_session(run.original_tips)

    def _verify_on_new_base(self, run: StackRun, plan: RewritePlan) -> None:
        """Every planned branch must now descend from the new base."""
        broken = [
            u.branch
            for u in plan.updates
            if not self.inspector.is_ancestor(plan.new_base, self.inspector.tip_of(u.branch))
        ]
        if broken:
            raise RewriteInvariantError(f"Branches no longer descend from the new base: {broken}")

    def _finish(self, run: StackRun) -> None:
        """Drop the run's backups unless configured to keep them, then mark it done."""
        if run.backup_session and not self.config.keep_backups:
            self.backups.delete_session(run.backup_session)
        self._transition(run, RunState.DONE)

    def _observe_remote(self, names: List[str]) -> Dict[str, Optional[str]]:
        """Last locally observed remote tip of every branch (remote-tracking refs)."""
        if not self.store.has_remote(self.config.remote):
            return {}
        return {name: self.inspector.tracking_tip(self.config.remote, name) for name in names}

    def _remote_in_sync(self, run: StackRun) -> bool:
        """True when every branch was last seen on the remote at its local tip."""
        if not self.store.has_remote(self.config.remote):
            return True
        return all(
            run.observed_remote_tips.get(name) == self.inspector.tip_of(name) for name in run.branch_names
        )

    def _current_chain(self, chain: DependencyChain) -> DependencyChain:
        """Same chain with each branch's tip re-read from the repository."""
        branches = [
            StackBranch(name=b.name, tip=self.inspector.tip_of(b.name), depth=b.depth) for b in chain.branches
        ]
        return DependencyChain(base=chain.base, base_commit=chain.base_commit, head=chain.head, branches=branches)

    def _live_base_below(self, chain: DependencyChain, branch: str, absorbed: set) -> str:
        """Nearest branch under ``branch`` that was not absorbed, else the trunk."""
        below = self.resolver.branch_below(chain, branch)
        while below is not None and below in absorbed:
            below = self.resolver.branch_below(chain, below)
        return below or self.config.trunk

    def _transition(self, run: StackRun, state: RunState) -> None:
        logger.info(f"Run state: {run.state.value} -> {state.value}")
        run.state = state
        run.history.append(state)

    def _fail(self, run: StackRun, error: StackError) -> None:
        """Record ``error`` as the run's failure and mark it failed."""
        stage = run.state
        moved = run.moved
        pending: List[str] = []
        if isinstance(error, PartialRewriteError):
            moved, pending = error.moved, error.pending
        elif isinstance(error, CancelledError):
            stage = error.stage
            moved, pending = error.completed, error.pending
        elif run.plan is not None:
            pending = [u.branch for u in run.plan.pending_updates if u.branch not in moved]
        run.failure = RunFailure(stage=stage, reason=error.reason, detail=str(error), moved=moved, pending=pending)
        logger.error(f"Run failed during {stage.value} ({error.reason.value}): {error}")
        self._transition(run, RunState.FAILED)
