"""
Data models and errors for the stack synchronization engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ReasonCode(Enum):
    """Machine-readable failure reasons reported to callers."""

    CONFLICT = "CONFLICT"
    STALE_REMOTE = "STALE_REMOTE"
    PARTIAL_REWRITE = "PARTIAL_REWRITE"
    UNKNOWN_BRANCH = "UNKNOWN_BRANCH"
    NOT_ANCESTOR = "NOT_ANCESTOR"
    EMPTY_STACK = "EMPTY_STACK"
    CANCELLED = "CANCELLED"
    PUSH_FAILED = "PUSH_FAILED"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    STORE_ERROR = "STORE_ERROR"
    PLATFORM_ERROR = "PLATFORM_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"


class RunState(Enum):
    """States of one rewrite request."""

    IDLE = "IDLE"
    RESOLVING = "RESOLVING"
    PLANNING = "PLANNING"
    AWAITING_CONFLICT_RESOLUTION = "AWAITING_CONFLICT_RESOLUTION"
    EXECUTING = "EXECUTING"
    SYNCHRONIZING = "SYNCHRONIZING"
    DONE = "DONE"
    FAILED = "FAILED"


class PushStatus(Enum):
    """Per-branch outcome of a push."""

    PUSHED = "PUSHED"
    UP_TO_DATE = "UP_TO_DATE"
    STALE_REMOTE = "STALE_REMOTE"
    FAILED = "FAILED"


@dataclass
class CommitInfo:
    """Information about a Git commit."""

    hash: str
    message: str
    author: str
    author_email: str
    date: str
    parents: List[str] = field(default_factory=list)

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    @property
    def subject(self) -> str:
        return self.message.strip().split("\n", 1)[0]


@dataclass(frozen=True)
class StackBranch:
    """A branch participating in a stack, with its position data."""

    name: str
    tip: str
    depth: int


@dataclass
class DependencyChain:
    """Ordered chain of dependent branches, bottom first."""

    base: str
    base_commit: str
    head: Optional[str]
    branches: List[StackBranch] = field(default_factory=list)

    @property
    def names(self) -> List[str]:
        return [b.name for b in self.branches]

    @property
    def tips(self) -> Dict[str, str]:
        return {b.name: b.tip for b in self.branches}

    @property
    def bottom(self) -> Optional[StackBranch]:
        return self.branches[0] if self.branches else None

    def is_empty(self) -> bool:
        return not self.branches

    def __len__(self) -> int:
        return len(self.branches)


@dataclass
class ReplayOutcome:
    """Result of replaying a single commit onto a new parent.

    Exactly one of ``new_commit`` (replayed), ``dropped`` (content already
    present on the target) or ``conflict_paths`` (manual resolution needed)
    describes the outcome.
    """

    source: str
    onto: str
    new_commit: Optional[str] = None
    dropped: bool = False
    conflict_paths: List[str] = field(default_factory=list)

    @property
    def has_conflict(self) -> bool:
        return bool(self.conflict_paths)


@dataclass
class BranchUpdate:
    """Planned move of one branch reference."""

    branch: str
    old_tip: str
    new_tip: str
    replayed: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    absorbed: bool = False

    @property
    def needs_move(self) -> bool:
        return self.old_tip != self.new_tip


@dataclass
class RewritePlan:
    """Old-to-new commit mapping plus the ordered branch updates it implies."""

    old_base: str
    new_base: str
    commit_mapping: Dict[str, str] = field(default_factory=dict)  # old_hash -> new_hash
    new_commits: List[str] = field(default_factory=list)
    updates: List[BranchUpdate] = field(default_factory=list)
    complete: bool = False

    @property
    def branches(self) -> List[str]:
        return [u.branch for u in self.updates]

    @property
    def pending_updates(self) -> List[BranchUpdate]:
        return [u for u in self.updates if u.needs_move]

    @property
    def absorbed_branches(self) -> List[str]:
        return [u.branch for u in self.updates if u.absorbed]

    def is_noop(self) -> bool:
        return not self.pending_updates

    def get_update(self, branch: str) -> Optional[BranchUpdate]:
        for update in self.updates:
            if update.branch == branch:
                return update
        return None


@dataclass
class AppliedResult:
    """Outcome of applying a rewrite plan to the local repository."""

    moved: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    backup_session: Optional[str] = None


@dataclass
class BranchPushOutcome:
    """Result of pushing a single branch."""

    branch: str
    status: PushStatus
    local_tip: Optional[str] = None
    expected_remote_tip: Optional[str] = None
    actual_remote_tip: Optional[str] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (PushStatus.PUSHED, PushStatus.UP_TO_DATE)


@dataclass
class PushResult:
    """Per-branch push outcomes, in the order the branches were requested."""

    remote: str
    outcomes: List[BranchPushOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def pushed(self) -> List[str]:
        return [o.branch for o in self.outcomes if o.ok]

    @property
    def stale(self) -> List[str]:
        return [o.branch for o in self.outcomes if o.status == PushStatus.STALE_REMOTE]

    @property
    def failed(self) -> List[str]:
        return [o.branch for o in self.outcomes if not o.ok]

    def outcome_for(self, branch: str) -> Optional[BranchPushOutcome]:
        for outcome in self.outcomes:
            if outcome.branch == branch:
                return outcome
        return None


@dataclass
class RunFailure:
    """Terminal failure of a run: where it stopped and what is left where."""

    stage: RunState
    reason: ReasonCode
    detail: str
    moved: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)


@dataclass
class StackRun:
    """State of one rewrite request driven by the orchestrator."""

    old_base: str
    new_base: str
    head: Optional[str] = None
    push: bool = True
    state: RunState = RunState.IDLE
    chain: Optional[DependencyChain] = None
    new_base_commit: Optional[str] = None
    original_tips: Dict[str, str] = field(default_factory=dict)
    observed_remote_tips: Dict[str, Optional[str]] = field(default_factory=dict)
    plan: Optional[RewritePlan] = None
    applied: Optional[AppliedResult] = None
    push_result: Optional[PushResult] = None
    conflict: Optional["ConflictError"] = None
    failure: Optional[RunFailure] = None
    backup_session: Optional[str] = None
    history: List[RunState] = field(default_factory=lambda: [RunState.IDLE])

    @property
    def branch_names(self) -> List[str]:
        return self.chain.names if self.chain else []

    @property
    def reason(self) -> Optional[ReasonCode]:
        if self.failure:
            return self.failure.reason
        if self.state == RunState.AWAITING_CONFLICT_RESOLUTION:
            return ReasonCode.CONFLICT
        return None

    @property
    def moved(self) -> List[str]:
        return list(self.applied.moved) if self.applied else []

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.DONE


@dataclass
class BackupEntry:
    """Structured representation of a backup ref in a repository."""

    ref: str
    branch: str
    session: str
    commit: str


@dataclass
class PullRequestInfo:
    """Minimal view of a pull request on the hosting platform."""

    number: int
    base: str
    head: str
    state: str = "open"
    merged: bool = False
    merge_commit: Optional[str] = None
    title: str = ""


class StackError(Exception):
    """Base exception for stack synchronization."""

    reason = ReasonCode.STORE_ERROR


class GitRepositoryError(StackError):
    """Exception raised for Git repository related errors."""

    reason = ReasonCode.STORE_ERROR


class TransientStoreError(GitRepositoryError):
    """A read failed for a reason that may go away on retry (lock files, network)."""


class ConfigError(StackError):
    """Invalid configuration value."""

    reason = ReasonCode.CONFIG_ERROR


class UnknownBranchError(StackError):
    """A branch or revision does not exist."""

    reason = ReasonCode.UNKNOWN_BRANCH

    def __init__(self, branch: str) -> None:
        super().__init__(f"Unknown branch or revision: {branch}")
        self.branch = branch


class NotAncestorError(StackError):
    """``base`` is not an ancestor of ``tip``."""

    reason = ReasonCode.NOT_ANCESTOR

    def __init__(self, base: str, tip: str) -> None:
        super().__init__(f"{base} is not an ancestor of {tip}")
        self.base = base
        self.tip = tip


class EmptyStackError(StackError):
    """No branch lies between the base and the head."""

    reason = ReasonCode.EMPTY_STACK

    def __init__(self, base: str, head: str) -> None:
        super().__init__(f"No stacked branches found between {base} and {head}")
        self.base = base
        self.head = head


class ConflictError(StackError):
    """Replaying a branch's commit needs manual conflict resolution."""

    reason = ReasonCode.CONFLICT

    def __init__(
        self,
        branch: str,
        commit: Optional[str],
        paths: Optional[List[str]] = None,
        partial_plan: Optional[RewritePlan] = None,
        message: Optional[str] = None,
    ) -> None:
        short = commit[:8] if commit else "?"
        super().__init__(message or f"Conflict replaying {short} of branch {branch}")
        self.branch = branch
        self.commit = commit
        self.paths = list(paths or [])
        self.partial_plan = partial_plan


class PartialRewriteError(StackError):
    """Reference updates stopped part-way; reports exactly what moved."""

    reason = ReasonCode.PARTIAL_REWRITE

    def __init__(self, moved: List[str], pending: List[str], detail: str = "") -> None:
        msg = f"Rewrite stopped after moving {moved or 'no branches'}; pending {pending}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.moved = list(moved)
        self.pending = list(pending)
        self.detail = detail


class StaleRemoteError(StackError):
    """The remote branch moved since it was last observed."""

    reason = ReasonCode.STALE_REMOTE

    def __init__(self, branch: str, expected: Optional[str], actual: Optional[str]) -> None:
        super().__init__(
            f"Remote {branch} is at {_short(actual)}, expected {_short(expected)}; refusing to overwrite"
        )
        self.branch = branch
        self.expected = expected
        self.actual = actual


class PushRejectedError(GitRepositoryError):
    """The remote refused a push for a reason other than a stale lease."""

    reason = ReasonCode.PUSH_FAILED


class RefUpdateError(GitRepositoryError):
    """A compare-and-swap branch move found an unexpected old value."""


class RewriteInvariantError(StackError):
    """A plan or its result would leave the stack inconsistent."""

    reason = ReasonCode.INVARIANT_VIOLATION


class CancelledError(StackError):
    """The run was cancelled at a safe point."""

    reason = ReasonCode.CANCELLED

    def __init__(
        self,
        stage: RunState,
        completed: Optional[List[str]] = None,
        pending: Optional[List[str]] = None,
    ) -> None:
        super().__init__(f"Cancelled during {stage.value}")
        self.stage = stage
        self.completed = list(completed or [])
        self.pending = list(pending or [])


class LockTimeoutError(StackError):
    """A branch lock could not be acquired in time."""

    reason = ReasonCode.LOCK_TIMEOUT


class HostingError(StackError):
    """The code-hosting platform refused or failed a request."""

    reason = ReasonCode.PLATFORM_ERROR


def _short(commit: Optional[str]) -> str:
    return commit[:8] if commit else "<absent>"
