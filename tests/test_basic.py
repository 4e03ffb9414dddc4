"""
Basic tests for the stack-sync package.
"""

import re

from stack_sync import __version__
from stack_sync import (
    CommitInfo,
    CommitTracker,
    DependencyChain,
    GitManager,
    HistoryInspector,
    RemoteSynchronizer,
    RewriteExecutor,
    RewritePlan,
    RewritePlanner,
    RunState,
    StackOrchestrator,
    StackResolver,
    StackRun,
)


def test_version_matches_semver():
    assert re.match(r"^\d+\.\d+\.\d+$", __version__)


def test_all_imports():
    """Test that all main classes can be imported."""
    for obj in (
        CommitInfo,
        CommitTracker,
        DependencyChain,
        GitManager,
        HistoryInspector,
        RemoteSynchronizer,
        RewriteExecutor,
        RewritePlan,
        RewritePlanner,
        StackOrchestrator,
        StackResolver,
        StackRun,
    ):
        assert obj is not None


def test_run_states():
    assert RunState.AWAITING_CONFLICT_RESOLUTION.value == "AWAITING_CONFLICT_RESOLUTION"
    assert StackRun(old_base="main", new_base="origin/main").state == RunState.IDLE
