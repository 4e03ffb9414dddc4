"""
stack-sync - keep stacked pull-request branches in sync.

This package discovers a chain of dependent branches, replays them onto a new
base after a lower branch changed (for example when it was squash-merged),
moves every dependent branch reference, and pushes the results without
overwriting remote work that was never observed locally.
"""

__version__ = "0.1.0"

from .models import (
    CommitInfo,
    DependencyChain,
    ReasonCode,
    RewritePlan,
    RunState,
    StackError,
    StackRun,
)
from .git_manager import GitManager
from .history_inspector import HistoryInspector
from .stack_resolver import StackResolver
from .commit_tracker import CommitTracker
from .rewrite_planner import RewritePlanner
from .rewrite_executor import RewriteExecutor
from .remote_synchronizer import RemoteSynchronizer
from .stack_orchestrator import StackOrchestrator

__all__ = [
    "StackOrchestrator",
    "StackRun",
    "RunState",
    "ReasonCode",
    "StackError",
    "CommitInfo",
    "DependencyChain",
    "RewritePlan",
    "GitManager",
    "HistoryInspector",
    "StackResolver",
    "CommitTracker",
    "RewritePlanner",
    "RewriteExecutor",
    "RemoteSynchronizer",
]
