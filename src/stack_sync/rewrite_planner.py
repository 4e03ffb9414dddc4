"""
Planning of the commit replays needed to move a stack onto a new base.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .cancellation import CancellationToken
from .commit_tracker import CommitTracker
from .history_inspector import HistoryInspector
from .models import (
    BranchUpdate,
    ConflictError,
    DependencyChain,
    RewriteInvariantError,
    RewritePlan,
    RunState,
)
from .store_interface import RepositoryStore

logger = logging.getLogger(__name__)


class RewritePlanner:
    """Replays each branch's unique commits, bottom to top, onto the new base.

    Replayed commits are created in the object store but no branch is moved;
    the resulting plan is handed to the executor.
    """

    def __init__(self, store: RepositoryStore, inspector: HistoryInspector) -> None:
        self.store = store
        self.inspector = inspector

    def plan(
        self,
        chain: DependencyChain,
        new_base: str,
        original_tips: Optional[Dict[str, str]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RewritePlan:
        """Build the rewrite plan for ``chain`` onto ``new_base``.

        Args:
            chain: Chain resolved against the old base; its tips are the current tips.
            new_base: Revision the bottom branch must end up on.
            original_tips: Tips captured before the first attempt of this run.
                A branch whose current tip differs was rewritten already.
            cancel: Optional token checked between commits.

        Raises:
            ConflictError: a commit needs manual resolution; the error carries the
                plan for every branch below the conflicting one.
        """
        new_base_commit = self.inspector.resolve(new_base)
        tips = dict(chain.tips)
        tips.update(original_tips or {})

        tracker = CommitTracker()
        plan = RewritePlan(old_base=chain.base_commit, new_base=new_base_commit)
        previous_original = chain.base_commit
        onto = new_base_commit

        logger.info(
            f"Planning rewrite of {len(chain)} branch(es) from {chain.base_commit[:8]} onto {new_base_commit[:8]}"
        )
        with self.store.replay_scope():
            for position, branch in enumerate(chain.branches):
                original_tip = tips[branch.name]
                if branch.tip != original_tip:
                    update = self._adopt_rewritten(
                        branch.name, branch.tip, previous_original, original_tip, onto, tracker, plan
                    )
                else:
                    update = self._replay_branch(
                        branch.name, branch.tip, previous_original, onto, tracker, plan, chain, position, cancel
                    )
                plan.updates.append(update)
                onto = update.new_tip
                previous_original = original_tip

        self._fill(plan, tracker)
        plan.complete = True
        self.validate(plan, chain)
        logger.info(
            f"Plan ready: {len(plan.pending_updates)} branch(es) to move, "
            f"{len(plan.new_commits)} new commit(s), {len(tracker.dropped)} dropped"
        )
        return plan

    def _replay_branch(
        self,
        name: str,
        tip: str,
        previous_original: str,
        onto: str,
        tracker: CommitTracker,
        plan: RewritePlan,
        chain: DependencyChain,
        position: int,
        cancel: Optional[CancellationToken],
    ) -> BranchUpdate:
        update = BranchUpdate(branch=name, old_tip=tip, new_tip=onto)
        commits = self.inspector.unique_commits(previous_original, tip)
        for commit in commits:
            if cancel:
                cancel.check(RunState.PLANNING, plan.branches, chain.names[position:])

            if self.inspector.is_ancestor(commit.hash, onto):
                tracker.record_dropped(commit.hash, onto)
                update.dropped.append(commit.hash)
                continue

            if commit.parents and commit.parents[0] == onto:
                tracker.record_kept(commit.hash)
                update.replayed.append(commit.hash)
                onto = commit.hash
                continue

            outcome = self.store.replay_commit(commit.hash, onto)
            if outcome.has_conflict:
                self._fill(plan, tracker)
                logger.warning(f"Conflict in {name} at {commit.hash[:8]}: {outcome.conflict_paths}")
                raise ConflictError(name, commit.hash, outcome.conflict_paths, partial_plan=plan)
            if outcome.dropped:
                tracker.record_dropped(commit.hash, onto)
                update.dropped.append(commit.hash)
                continue
            tracker.record_replayed(commit.hash, outcome.new_commit)
            update.replayed.append(commit.hash)
            onto = outcome.new_commit

        update.new_tip = onto
        update.absorbed = bool(commits) and not update.replayed
        if update.absorbed:
            logger.info(f"Branch {name} is fully absorbed into {onto[:8]}")
        return update

    def _adopt_rewritten(
        self,
        name: str,
        current_tip: str,
        previous_original: str,
        original_tip: str,
        onto: str,
        tracker: CommitTracker,
        plan: RewritePlan,
    ) -> BranchUpdate:
        """Accept a branch that was already moved, provided it builds on ``onto``."""
        if not self.inspector.is_ancestor(onto, current_tip):
            self._fill(plan, tracker)
            raise ConflictError(
                name,
                None,
                partial_plan=plan,
                message=f"Branch {name} was changed but does not build on {onto[:8]}; rebase it onto that commit",
            )
        originals = self.inspector.unique_commits(previous_original, original_tip)
        rewritten = self.inspector.unique_commits(onto, current_tip)
        mapped = tracker.map_rewritten(originals, rewritten)
        update = BranchUpdate(branch=name, old_tip=current_tip, new_tip=current_tip)
        for commit in originals:
            if commit.hash in mapped:
                update.replayed.append(commit.hash)
            else:
                tracker.record_dropped(commit.hash, current_tip)
                update.dropped.append(commit.hash)
        update.absorbed = bool(originals) and not update.replayed
        logger.info(f"Branch {name} already rewritten to {current_tip[:8]}; keeping it")
        return update

    @staticmethod
    def _fill(plan: RewritePlan, tracker: CommitTracker) -> None:
        plan.commit_mapping = tracker.get_all_mappings()
        plan.new_commits = list(tracker.created)

    def validate(self, plan: RewritePlan, chain: DependencyChain) -> None:
        """Reject plans that would leave any branch of the chain behind."""
        planned: List[str] = plan.branches
        missing = [name for name in chain.names if name not in planned]
        if missing or planned != chain.names:
            raise RewriteInvariantError(
                f"Plan covers {planned} but the stack is {chain.names}; missing {missing}"
            )
        for update in plan.updates:
            unmapped = [c for c in update.replayed + update.dropped if c not in plan.commit_mapping]
            if unmapped:
                raise RewriteInvariantError(
                    f"Branch {update.branch} has commits without a new location: {unmapped}"
                )
