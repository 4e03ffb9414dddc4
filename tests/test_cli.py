"""
Tests for the CLI interface.
"""

from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from stack_sync.cli import cli, exit_code_for
from stack_sync.models import (
    AppliedResult,
    BackupEntry,
    BranchPushOutcome,
    BranchUpdate,
    ConflictError,
    DependencyChain,
    NotAncestorError,
    PushResult,
    PushStatus,
    ReasonCode,
    RewritePlan,
    RunFailure,
    RunState,
    StackBranch,
    StackRun,
)


def _chain():
    return DependencyChain(
        base="main",
        base_commit="m" * 40,
        head="b3",
        branches=[StackBranch("b1", "1" * 40, 1), StackBranch("b2", "2" * 40, 2), StackBranch("b3", "3" * 40, 3)],
    )


def _run(state, **kwargs):
    chain = _chain()
    run = StackRun(old_base="main", new_base="origin/main", head="b3", state=state, chain=chain, **kwargs)
    run.original_tips = chain.tips
    return run


def _done_run():
    plan = RewritePlan(
        old_base="m" * 40,
        new_base="s" * 40,
        updates=[
            BranchUpdate("b1", "1" * 40, "s" * 40, absorbed=True),
            BranchUpdate("b2", "2" * 40, "4" * 40),
            BranchUpdate("b3", "3" * 40, "5" * 40),
        ],
        complete=True,
    )
    push = PushResult(
        remote="origin",
        outcomes=[BranchPushOutcome(name, PushStatus.PUSHED) for name in ("b1", "b2", "b3")],
    )
    return _run(RunState.DONE, plan=plan, applied=AppliedResult(moved=["b1", "b2", "b3"]), push_result=push)


@pytest.fixture()
def mocked():
    with patch("stack_sync.cli.GitManager") as git_manager_class, patch(
        "stack_sync.cli.StackOrchestrator"
    ) as orchestrator_class:
        git_manager_class.return_value.read_config_section.return_value = {}
        orchestrator = MagicMock()
        orchestrator_class.return_value = orchestrator
        yield orchestrator


class TestCLI:
    """Test CLI commands."""

    def setup_method(self):
        """Setup test environment."""
        self.runner = CliRunner()

    def test_cli_help(self):
        result = self.runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "stacked branches" in result.output
        for command in ("list-stack", "sync-stack", "push-stack", "backups"):
            assert command in result.output

    def test_version(self):
        result = self.runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "stack-sync 0.1.0" in result.output

    def test_exit_codes(self):
        assert exit_code_for(None) == 0
        assert exit_code_for(ReasonCode.CONFLICT) == 3
        assert exit_code_for(ReasonCode.STALE_REMOTE) == 4
        assert exit_code_for(ReasonCode.CANCELLED) == 130


class TestListStack:
    """list-stack command."""

    def setup_method(self):
        self.runner = CliRunner()

    def test_prints_branches_bottom_first(self, mocked):
        mocked.list_stack.return_value = _chain()
        result = self.runner.invoke(cli, ["list-stack", "--base", "main", "--head", "b3"])
        assert result.exit_code == 0
        lines = [line for line in result.output.splitlines() if line in ("b1", "b2", "b3")]
        assert lines == ["b1", "b2", "b3"]
        mocked.list_stack.assert_called_once_with("main", "b3")

    def test_reports_resolution_errors(self, mocked):
        mocked.list_stack.side_effect = NotAncestorError("main", "b3")
        result = self.runner.invoke(cli, ["list-stack", "--base", "main", "--head", "b3"])
        assert result.exit_code == 7
        assert "error: NOT_ANCESTOR stage=RESOLVING" in result.output


class TestSyncStack:
    """sync-stack command."""

    def setup_method(self):
        self.runner = CliRunner()

    def test_success(self, mocked):
        mocked.sync_stack.return_value = _done_run()
        result = self.runner.invoke(cli, ["sync-stack", "--base", "main", "--new-base", "origin/main", "--head", "b3"])
        assert result.exit_code == 0, result.output
        assert "b1 local=MOVED remote=PUSHED" in result.output
        assert "b3 local=MOVED remote=PUSHED" in result.output
        assert "Stack is in sync" in result.output
        mocked.sync_stack.assert_called_once_with("main", "origin/main", head="b3", push=None)

    def test_no_push_flag(self, mocked):
        run = _done_run()
        run.push_result = None
        mocked.sync_stack.return_value = run
        result = self.runner.invoke(cli, ["sync-stack", "--base", "main", "--new-base", "origin/main", "--no-push"])
        assert result.exit_code == 0
        assert "b2 local=MOVED remote=SKIPPED" in result.output
        mocked.sync_stack.assert_called_once_with("main", "origin/main", head=None, push=False)

    def test_conflict(self, mocked):
        run = _run(
            RunState.AWAITING_CONFLICT_RESOLUTION,
            applied=AppliedResult(moved=["b1"]),
            conflict=ConflictError("b2", "2" * 40, ["README.md"]),
            backup_session="20240101-000000",
        )
        mocked.sync_stack.return_value = run
        result = self.runner.invoke(cli, ["sync-stack", "--base", "main", "--new-base", "origin/main"])
        assert result.exit_code == 3
        assert "b1 local=MOVED remote=SKIPPED" in result.output
        assert "b2 local=CONFLICT remote=SKIPPED" in result.output
        assert "b3 local=PENDING remote=SKIPPED" in result.output
        assert "error: CONFLICT stage=PLANNING branch=b2" in result.output
        assert "README.md" in result.output

    def test_stale_remote(self, mocked):
        run = _done_run()
        run.state = RunState.FAILED
        run.push_result.outcomes[2] = BranchPushOutcome("b3", PushStatus.STALE_REMOTE)
        run.failure = RunFailure(
            RunState.SYNCHRONIZING, ReasonCode.STALE_REMOTE, "Could not push ['b3']", moved=["b1", "b2"], pending=["b3"]
        )
        mocked.sync_stack.return_value = run
        result = self.runner.invoke(cli, ["sync-stack", "--base", "main", "--new-base", "origin/main"])
        assert result.exit_code == 4
        assert "b3 local=MOVED remote=STALE_REMOTE" in result.output
        assert "error: STALE_REMOTE stage=SYNCHRONIZING" in result.output

    def test_partial_rewrite(self, mocked):
        run = _run(
            RunState.FAILED,
            applied=AppliedResult(moved=["b1"]),
            failure=RunFailure(RunState.EXECUTING, ReasonCode.PARTIAL_REWRITE, "cannot lock ref", ["b1"], ["b2", "b3"]),
            backup_session="20240101-000000",
        )
        mocked.sync_stack.return_value = run
        result = self.runner.invoke(cli, ["sync-stack", "--base", "main", "--new-base", "origin/main"])
        assert result.exit_code == 5
        assert "b2 local=PENDING" in result.output
        assert "error: PARTIAL_REWRITE stage=EXECUTING" in result.output
        assert "20240101-000000" in result.output

    def test_resume_uses_backups(self, mocked):
        mocked.resume_from_backups.return_value = _done_run()
        result = self.runner.invoke(
            cli,
            ["sync-stack", "--base", "main", "--new-base", "origin/main", "--resume", "--session", "20240101-000000"],
        )
        assert result.exit_code == 0
        mocked.resume_from_backups.assert_called_once_with(
            "main", "origin/main", session="20240101-000000", head=None, push=None
        )
        mocked.sync_stack.assert_not_called()

    def test_session_requires_resume(self, mocked):
        result = self.runner.invoke(cli, ["sync-stack", "--base", "main", "--session", "x"])
        assert result.exit_code == 2

    def test_resume_requires_new_base(self, mocked):
        result = self.runner.invoke(cli, ["sync-stack", "--base", "main", "--resume"])
        assert result.exit_code == 2

    def test_retarget_prs(self, mocked):
        mocked.sync_stack.return_value = _done_run()
        mocked.retarget_pull_requests.return_value = [(2, "main")]
        result = self.runner.invoke(
            cli, ["sync-stack", "--base", "main", "--new-base", "origin/main", "--retarget-prs"]
        )
        assert result.exit_code == 0
        assert "PR #2 now targets main" in result.output


class TestPushStack:
    """push-stack command."""

    def setup_method(self):
        self.runner = CliRunner()

    def test_reports_per_branch_status(self, mocked):
        mocked.push_stack.return_value = PushResult(
            remote="origin",
            outcomes=[
                BranchPushOutcome("b1", PushStatus.PUSHED),
                BranchPushOutcome("b2", PushStatus.UP_TO_DATE),
                BranchPushOutcome("b3", PushStatus.STALE_REMOTE, actual_remote_tip="f" * 40),
            ],
        )
        result = self.runner.invoke(cli, ["push-stack", "--base", "main", "--head", "b3"])
        assert result.exit_code == 4
        assert "b1 PUSHED" in result.output
        assert "b2 UP_TO_DATE" in result.output
        assert "b3 STALE_REMOTE" in result.output
        assert "error: STALE_REMOTE stage=SYNCHRONIZING" in result.output

    def test_failed_push(self, mocked):
        mocked.push_stack.return_value = PushResult(
            remote="origin", outcomes=[BranchPushOutcome("b1", PushStatus.FAILED, detail="hook declined")]
        )
        result = self.runner.invoke(cli, ["push-stack"])
        assert result.exit_code == 9
        assert "error: PUSH_FAILED stage=SYNCHRONIZING" in result.output

    def test_all_pushed(self, mocked):
        mocked.push_stack.return_value = PushResult(
            remote="origin", outcomes=[BranchPushOutcome("b1", PushStatus.PUSHED)]
        )
        result = self.runner.invoke(cli, ["push-stack", "--remote", "upstream"])
        assert result.exit_code == 0
        mocked.push_stack.assert_called_once_with(None, None)


class TestBackups:
    """backups command group."""

    def setup_method(self):
        self.runner = CliRunner()

    def test_list(self, mocked):
        mocked.backups.list_entries.return_value = [
            BackupEntry("refs/stack-sync/backup/s1/b1", "b1", "s1", "1" * 40),
        ]
        result = self.runner.invoke(cli, ["backups", "list"])
        assert result.exit_code == 0
        assert f"s1 b1 {'1' * 40}" in result.output

    def test_list_empty(self, mocked):
        mocked.backups.list_entries.return_value = []
        result = self.runner.invoke(cli, ["backups", "list"])
        assert result.exit_code == 0
        assert "No backups found" in result.output

    def test_restore_with_yes(self, mocked):
        mocked.backups.list_entries.return_value = [
            BackupEntry("refs/stack-sync/backup/s1/b1", "b1", "s1", "1" * 40),
        ]
        mocked.backups.restore_session.return_value = ["b1"]
        result = self.runner.invoke(cli, ["backups", "restore", "s1", "--yes"])
        assert result.exit_code == 0
        assert "b1 RESTORED" in result.output
        mocked.backups.restore_session.assert_called_once_with("s1", None)

    def test_restore_declined(self, mocked):
        mocked.backups.list_entries.return_value = []
        result = self.runner.invoke(cli, ["backups", "restore", "s1"], input="n\n")
        assert result.exit_code == 0
        mocked.backups.restore_session.assert_not_called()

    def test_delete_requires_target(self, mocked):
        result = self.runner.invoke(cli, ["backups", "delete"])
        assert result.exit_code == 2

    def test_delete_all(self, mocked):
        mocked.backups.list_sessions.return_value = ["s1", "s2"]
        mocked.backups.delete_session.return_value = 3
        result = self.runner.invoke(cli, ["backups", "delete", "--all"])
        assert result.exit_code == 0
        assert "Deleted 6 backup ref(s)" in result.output
