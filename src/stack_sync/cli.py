"""
Command-line interface for stack-sync.

Machine-readable results (branch names, per-branch states, ``error:`` lines)
go to stdout; human-oriented summaries and logs go to stderr.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
from contextlib import contextmanager
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__ as PACKAGE_VERSION
from .cancellation import CancellationToken
from .config import GIT_CONFIG_SECTION, StackConfig, load_config
from .git_manager import GitManager
from .github_platform import GitHubPlatform
from .models import PushResult, PushStatus, ReasonCode, RunState, StackError, StackRun
from .stack_orchestrator import StackOrchestrator


console = Console(stderr=True)
logger = logging.getLogger(__name__)


EXIT_CODES: Dict[ReasonCode, int] = {
    ReasonCode.CONFIG_ERROR: 2,
    ReasonCode.CONFLICT: 3,
    ReasonCode.STALE_REMOTE: 4,
    ReasonCode.PARTIAL_REWRITE: 5,
    ReasonCode.UNKNOWN_BRANCH: 6,
    ReasonCode.NOT_ANCESTOR: 7,
    ReasonCode.EMPTY_STACK: 8,
    ReasonCode.PUSH_FAILED: 9,
    ReasonCode.INVARIANT_VIOLATION: 10,
    ReasonCode.LOCK_TIMEOUT: 11,
    ReasonCode.PLATFORM_ERROR: 12,
    ReasonCode.STORE_ERROR: 1,
    ReasonCode.CANCELLED: 130,
}


def exit_code_for(reason: Optional[ReasonCode]) -> int:
    if reason is None:
        return 0
    return EXIT_CODES.get(reason, 1)


def _print_version(ctx, param, value):
    """Eager option callback to print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    click.echo(f"stack-sync {PACKAGE_VERSION}")
    ctx.exit()


def _default_log_path() -> Path:
    """Determine default log file path (~/.stack-sync/stack-sync.log)."""
    env_path = os.environ.get("STACK_SYNC_LOG")
    if env_path:
        p = Path(env_path).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        return p
    base = Path.home() / ".stack-sync"
    base.mkdir(parents=True, exist_ok=True)
    return base / "stack-sync.log"


def setup_logging(verbose: bool = False, console_level: Optional[str] = None, log_file: Optional[Path] = None) -> Path:
    """Setup logging with a per-run file plus a rotating aggregate log.

    Console logging is off unless ``verbose`` or ``console_level`` is given.
    Returns the aggregate log path.
    """
    aggregate_path = Path(log_file) if log_file else _default_log_path()
    base_dir = aggregate_path.parent
    base_dir.mkdir(parents=True, exist_ok=True)
    stem = aggregate_path.stem or "stack-sync"
    per_run_path = base_dir / f"{stem}-{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    root = logging.getLogger()
    # Clear existing handlers to avoid duplication in tests / repeated invocations
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)

    file_fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    run_handler = logging.FileHandler(str(per_run_path), encoding="utf-8")
    run_handler.setLevel(logging.DEBUG)
    run_handler.setFormatter(file_fmt)
    root.addHandler(run_handler)

    aggregate_handler = RotatingFileHandler(
        str(aggregate_path), maxBytes=1_000_000, backupCount=3, encoding="utf-8"
    )
    aggregate_handler.setLevel(logging.DEBUG)
    aggregate_handler.setFormatter(file_fmt)
    root.addHandler(aggregate_handler)

    if verbose or console_level:
        level = getattr(logging, (console_level or "info").upper(), logging.INFO)
        console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(console_handler)

    return aggregate_path


def _maybe_print_log_notice(ctx: click.Context) -> None:
    """Inform user about logging destination and how to enable console logs."""
    if ctx.obj.get("verbose") or ctx.obj.get("console_level"):
        return
    console.print(
        f"[dim]Logs are written to {ctx.obj.get('log_path')}. Use -v or --log-level to see them here.[/dim]"
    )


@contextmanager
def _cancel_on_interrupt(token: CancellationToken) -> Iterator[None]:
    """Turn Ctrl-C into a cancellation request honoured between branch steps."""

    def _handler(signum, frame):
        console.print("\n🛑 Cancellation requested; finishing the current branch step...", style="bold yellow")
        token.cancel()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not in the main thread; leave default handling in place
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _load(ctx: click.Context, **overrides) -> tuple:
    """Build the git manager and effective configuration for a command."""
    gm = GitManager(ctx.obj.get("repo_path"))
    config = load_config(gm.read_config_section(GIT_CONFIG_SECTION), overrides=overrides)
    return gm, config


def _make_orchestrator(
    gm: GitManager, config: StackConfig, *, need_platform: bool = False, cancel: Optional[CancellationToken] = None
) -> StackOrchestrator:
    platform = None
    if need_platform and config.github_repo:
        platform = GitHubPlatform(config.github_repo)
    return StackOrchestrator(gm, config, platform=platform, cancel=cancel)


def _fail(reason: ReasonCode, stage: RunState, detail: str, extra: str = "") -> None:
    console.print(f"\n❌ **{reason.value}:** {detail}", style="bold red")
    click.echo(f"error: {reason.value} stage={stage.value}{extra}")
    sys.exit(exit_code_for(reason))


@click.group()
@click.option(
    "--version",
    "-V",
    is_flag=True,
    callback=_print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose console logging (INFO)")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Console log level. By default, console logging is disabled.",
)
@click.option(
    "--repo-path",
    type=click.Path(exists=True, path_type=Path),
    help="Path to repository (defaults to current directory)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, log_level: Optional[str], repo_path: Optional[Path]) -> None:
    """stack-sync - keep stacked branches in sync after their base changes."""
    log_path = setup_logging(verbose, console_level=log_level)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["console_level"] = log_level
    ctx.obj["log_path"] = log_path
    ctx.obj["repo_path"] = repo_path.resolve() if isinstance(repo_path, Path) else None
    logger.debug(f"CLI init: cwd={Path.cwd()} repo_path={ctx.obj['repo_path']}")


@cli.command("list-stack")
@click.option("--base", default=None, help="Base branch of the stack (defaults to the configured trunk)")
@click.option("--head", default=None, help="Top of the stack (defaults to the current branch)")
@click.pass_context
def list_stack(ctx: click.Context, base: Optional[str], head: Optional[str]) -> None:
    """Print the stacked branches between BASE and HEAD, bottom to top."""
    try:
        gm, config = _load(ctx)
        chain = _make_orchestrator(gm, config).list_stack(base, head)
    except StackError as e:
        logger.debug("list-stack failed", exc_info=True)
        _fail(e.reason, RunState.RESOLVING, str(e))
        return
    for name in chain.names:
        click.echo(name)


@cli.command("sync-stack")
@click.option("--base", "old_base", required=True, help="Base the stack is currently built on")
@click.option("--new-base", default=None, help="Commit or branch to move the stack onto (detected from the merged PR if omitted)")
@click.option("--head", default=None, help="Top of the stack (defaults to the current branch)")
@click.option("--resume", is_flag=True, help="Resume the latest interrupted run from its backup refs")
@click.option("--session", default=None, help="Backup session to resume (with --resume)")
@click.option("--push/--no-push", "push", default=None, help="Push rewritten branches (default from config)")
@click.option("--remote", default=None, help="Remote to push to")
@click.option("--keep-backups", is_flag=True, help="Keep backup refs after success")
@click.option("--retarget-prs", is_flag=True, help="Re-point open PRs based on absorbed branches")
@click.pass_context
def sync_stack(
    ctx: click.Context,
    old_base: str,
    new_base: Optional[str],
    head: Optional[str],
    resume: bool,
    session: Optional[str],
    push: Optional[bool],
    remote: Optional[str],
    keep_backups: Optional[bool],
    retarget_prs: bool,
) -> None:
    """
    Move the stack built on BASE onto NEW_BASE and push it.

    Example: stack-sync sync-stack --base main --new-base origin/main
    """
    if session and not resume:
        raise click.UsageError("--session only makes sense with --resume")
    if resume and not new_base:
        raise click.UsageError("--resume needs --new-base")
    _maybe_print_log_notice(ctx)

    token = CancellationToken()
    try:
        gm, config = _load(ctx, remote=remote, keep_backups=keep_backups or None)
        orchestrator = _make_orchestrator(
            gm, config, need_platform=retarget_prs or not new_base, cancel=token
        )
    except StackError as e:
        logger.debug("sync-stack setup failed", exc_info=True)
        _fail(e.reason, RunState.IDLE, str(e))
        return

    with _cancel_on_interrupt(token):
        if resume:
            run = orchestrator.resume_from_backups(old_base, new_base, session=session, head=head, push=push)
        else:
            run = orchestrator.sync_stack(old_base, new_base, head=head, push=push)

    _display_run(run)
    for line in _run_lines(run):
        click.echo(line)

    if run.state == RunState.DONE:
        if retarget_prs:
            try:
                for number, target in orchestrator.retarget_pull_requests(run):
                    console.print(f"🔁 PR #{number} now targets {target}")
            except StackError as e:
                logger.debug("Retargeting pull requests failed", exc_info=True)
                _fail(e.reason, RunState.DONE, str(e))
        console.print("\n✅ **Stack is in sync**", style="bold green")
        return

    if run.state == RunState.AWAITING_CONFLICT_RESOLUTION and run.conflict is not None:
        for path in run.conflict.paths:
            console.print(f"   ⚠️  {path}", style="yellow")
        console.print(
            f"\nResolve {run.conflict.branch} by rebasing it onto its rewritten parent, then run "
            f"'stack-sync sync-stack --base {old_base} --new-base {run.new_base} --resume'.",
            style="yellow",
        )
        click.echo(f"error: CONFLICT stage={RunState.PLANNING.value} branch={run.conflict.branch}")
        sys.exit(exit_code_for(ReasonCode.CONFLICT))

    failure = run.failure
    if failure is not None:
        if run.backup_session:
            console.print(
                f"Original tips are saved in backup session {run.backup_session} "
                f"('stack-sync backups restore {run.backup_session}' to roll back).",
                style="yellow",
            )
        _fail(failure.reason, failure.stage, failure.detail)


@cli.command("push-stack")
@click.option("--base", default=None, help="Base branch of the stack (defaults to the configured trunk)")
@click.option("--head", default=None, help="Top of the stack (defaults to the current branch)")
@click.option("--remote", default=None, help="Remote to push to")
@click.pass_context
def push_stack(ctx: click.Context, base: Optional[str], head: Optional[str], remote: Optional[str]) -> None:
    """Push every branch of the stack without overwriting unseen remote work."""
    token = CancellationToken()
    try:
        gm, config = _load(ctx, remote=remote)
        orchestrator = _make_orchestrator(gm, config, cancel=token)
        with _cancel_on_interrupt(token):
            result = orchestrator.push_stack(base, head)
    except StackError as e:
        logger.debug("push-stack failed", exc_info=True)
        _fail(e.reason, RunState.SYNCHRONIZING, str(e))
        return

    _display_push(result)
    for outcome in result.outcomes:
        click.echo(f"{outcome.branch} {outcome.status.value}")
    if not result.succeeded:
        reason = ReasonCode.STALE_REMOTE if result.stale else ReasonCode.PUSH_FAILED
        click.echo(f"error: {reason.value} stage={RunState.SYNCHRONIZING.value}")
        sys.exit(exit_code_for(reason))


@cli.group()
@click.pass_context
def backups(ctx: click.Context) -> None:
    """Manage backup refs taken before stacks were rewritten."""
    pass


@backups.command("list")
@click.option("--session", default=None, help="Show only this session")
@click.pass_context
def backups_list(ctx: click.Context, session: Optional[str]) -> None:
    """List backup sessions and the branch tips they recorded."""
    try:
        gm, config = _load(ctx)
        entries = _make_orchestrator(gm, config).backups.list_entries(session)
    except StackError as e:
        logger.debug("Error in backups list", exc_info=True)
        _fail(e.reason, RunState.IDLE, str(e))
        return

    if not entries:
        console.print("No backups found.")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Session", style="cyan")
    table.add_column("Branch", style="green")
    table.add_column("Commit", style="yellow")
    for entry in sorted(entries, key=lambda e: (e.session, e.branch), reverse=True):
        table.add_row(entry.session, entry.branch, entry.commit[:8])
        click.echo(f"{entry.session} {entry.branch} {entry.commit}")
    console.print(table)


@backups.command("restore")
@click.argument("session")
@click.option("--branch", "branches", multiple=True, help="Restore only this branch. Repeatable.")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def backups_restore(ctx: click.Context, session: str, branches: tuple, yes: bool) -> None:
    """Point branches back at the tips recorded in SESSION."""
    try:
        gm, config = _load(ctx)
        orchestrator = _make_orchestrator(gm, config)
        entries = orchestrator.backups.list_entries(session)
        names = [e.branch for e in entries if not branches or e.branch in branches]
        if not yes and not click.confirm(f"Restore {', '.join(names) or 'nothing'} from {session}?", default=False):
            console.print("🔒 Nothing restored.", style="yellow")
            return
        with orchestrator.locks.hold(names):
            restored = orchestrator.backups.restore_session(session, list(branches) or None)
    except StackError as e:
        logger.debug("Error in backups restore", exc_info=True)
        _fail(e.reason, RunState.EXECUTING, str(e))
        return
    for name in restored:
        click.echo(f"{name} RESTORED")
    console.print(f"♻️  Restored {len(restored)} branch(es) from {session}", style="bold green")


@backups.command("delete")
@click.argument("session", required=False)
@click.option("--all", "delete_all", is_flag=True, help="Delete every backup session")
@click.pass_context
def backups_delete(ctx: click.Context, session: Optional[str], delete_all: bool) -> None:
    """Delete one backup SESSION (or all of them with --all)."""
    if not session and not delete_all:
        raise click.UsageError("Give a SESSION or --all")
    try:
        gm, config = _load(ctx)
        manager = _make_orchestrator(gm, config).backups
        sessions = manager.list_sessions() if delete_all else [session]
        deleted = sum(manager.delete_session(s) for s in sessions)
    except StackError as e:
        logger.debug("Error in backups delete", exc_info=True)
        _fail(e.reason, RunState.IDLE, str(e))
        return
    console.print(f"🧹 Deleted {deleted} backup ref(s)", style="bold green")


@cli.command()
def version() -> None:
    """Print the current stack-sync version."""
    click.echo(f"stack-sync {PACKAGE_VERSION}")


def _branch_states(run: StackRun) -> Dict[str, str]:
    """Local outcome of every branch of the run: MOVED, UNCHANGED, CONFLICT or PENDING."""
    states: Dict[str, str] = {}
    moved = set(run.moved)
    blocked = False
    pending = set(run.failure.pending) if run.failure else set()
    for name in run.branch_names:
        if run.conflict is not None and name == run.conflict.branch:
            states[name] = "CONFLICT"
            blocked = True
        elif name in moved:
            states[name] = "MOVED"
        elif blocked or name in pending:
            states[name] = "PENDING"
        else:
            states[name] = "UNCHANGED"
    return states


def _run_lines(run: StackRun) -> List[str]:
    lines: List[str] = []
    for name, state in _branch_states(run).items():
        remote = "SKIPPED"
        if run.push_result is not None:
            outcome = run.push_result.outcome_for(name)
            if outcome is not None:
                remote = outcome.status.value
        lines.append(f"{name} local={state} remote={remote}")
    return lines


def _display_run(run: StackRun) -> None:
    """Display the per-branch outcome of a run."""
    if not run.branch_names:
        return
    console.print(f"\n📋 **Stack on {run.old_base}** -> {run.new_base} ({run.state.value})")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Order", justify="center")
    table.add_column("Branch", style="cyan")
    table.add_column("Old tip", style="red")
    table.add_column("New tip", style="green")
    table.add_column("Local", style="blue")
    table.add_column("Remote", style="yellow")

    states = _branch_states(run)
    for i, name in enumerate(run.branch_names, 1):
        update = run.plan.get_update(name) if run.plan else None
        old_tip = run.original_tips.get(name, "")[:8]
        new_tip = update.new_tip[:8] if update else ""
        if update and update.absorbed:
            new_tip = f"{new_tip} (absorbed)"
        remote = ""
        if run.push_result is not None:
            outcome = run.push_result.outcome_for(name)
            remote = outcome.status.value if outcome else ""
        table.add_row(str(i), name, old_tip, new_tip, states[name], remote)
    console.print(table)


def _display_push(result: PushResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Branch", style="cyan")
    table.add_column("Status")
    table.add_column("Remote tip", style="dim")
    styles = {
        PushStatus.PUSHED: "green",
        PushStatus.UP_TO_DATE: "dim",
        PushStatus.STALE_REMOTE: "bold red",
        PushStatus.FAILED: "red",
    }
    for outcome in result.outcomes:
        actual = outcome.actual_remote_tip[:8] if outcome.actual_remote_tip else "-"
        table.add_row(
            outcome.branch, f"[{styles[outcome.status]}]{outcome.status.value}[/]", actual
        )
    console.print(table)


def main() -> None:
    """Main entry point for the CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n\n🚫 **Operation cancelled by user**", style="bold yellow")
        logger.debug("Top-level cancellation (KeyboardInterrupt)", exc_info=True)
        sys.exit(130)
    except Exception as e:
        console.print(f"\n💥 **Unexpected error:** {e}", style="bold red")
        logger.debug("Unexpected error in main()", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
