"""
Git repository management and operations.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from git import Git, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.exc import GitCommandError

from .models import (
    CommitInfo,
    GitRepositoryError,
    PushRejectedError,
    RefUpdateError,
    ReplayOutcome,
    StaleRemoteError,
    TransientStoreError,
)
from .store_interface import RepositoryStore


logger = logging.getLogger(__name__)


# stderr fragments that indicate a failure worth retrying
TRANSIENT_MARKERS = (
    "index.lock",
    ".lock': File exists",
    "Unable to create",
    "Could not read from remote",
    "Connection timed out",
    "Connection reset",
    "Could not resolve host",
    "early EOF",
)

STALE_MARKERS = ("stale info", "fetch first", "non-fast-forward")


class GitManager(RepositoryStore):
    """Manages Git operations for one repository through GitPython."""

    def __init__(self, repo_path: Optional[Path] = None) -> None:
        """Initialize Git manager with optional repository path."""
        self.repo_path = (repo_path or Path.cwd()).resolve()
        self._repo: Optional[Repo] = None
        self._scratch: Optional[Path] = None

    @property
    def repo(self) -> Repo:
        """Get the Git repository instance."""
        if self._repo is None:
            self._repo = self._discover_repository()
        return self._repo

    def _discover_repository(self) -> Repo:
        """Discover the Git repository from the configured path or any parent."""
        logger.debug(f"Discovering repository in: {self.repo_path}")
        try:
            repo = Repo(self.repo_path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise GitRepositoryError(
                f"No Git repository found at {self.repo_path} or any parent directory"
            ) from e
        logger.info(f"Found Git repository at: {repo.working_dir}")
        return repo

    @property
    def state_dir(self) -> Path:
        """Directory for stack-sync state such as lock files."""
        # Shared by every worktree of the repository
        return Path(self.repo.common_dir) / "stack-sync"

    @property
    def working_dir(self) -> Path:
        """Root of the working tree."""
        return Path(self.repo.working_dir)

    # --- Low-level command runner ---
    def _run(self, *args: str, git: Optional[Git] = None) -> Tuple[int, str, str]:
        """Run a git command without raising; return (status, stdout, stderr)."""
        runner = git or self.repo.git
        logger.debug(f"git {' '.join(args)}")
        status, out, err = runner.execute(
            ["git", *args], with_extended_output=True, with_exceptions=False
        )
        return status, out, err

    def _check(self, *args: str, git: Optional[Git] = None) -> str:
        """Run a git command and translate a failure into a repository error."""
        status, out, err = self._run(*args, git=git)
        if status != 0:
            self._raise_for(args, err or out)
        return out

    def _raise_for(self, args: Tuple[str, ...], message: str) -> None:
        """Raise the error matching a failed command's output."""
        command = f"git {' '.join(args)}"
        if any(marker in message for marker in TRANSIENT_MARKERS):
            logger.warning(f"Transient failure running '{command}': {message}")
            raise TransientStoreError(f"{command} failed: {message}")
        logger.error(f"'{command}' failed: {message}")
        raise GitRepositoryError(f"{command} failed: {message}")

    # --- Queries ---
    def list_local_branches(self) -> List[str]:
        """List local branch names (full names, including slashes)."""
        return sorted(ref[len("refs/heads/"):] for ref in self.list_refs("refs/heads/"))

    def branch_tip(self, branch: str) -> Optional[str]:
        """Commit of a local branch, or None if it does not exist."""
        return self.read_ref(f"refs/heads/{branch}")

    def resolve_revision(self, revision: str) -> Optional[str]:
        """Resolve any revision expression to a commit id."""
        status, out, _ = self._run("rev-parse", "--verify", "--quiet", f"{revision}^{{commit}}")
        if status != 0 or not out.strip():
            return None
        return out.strip()

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """True if ``ancestor`` is reachable from ``descendant``."""
        status, out, err = self._run("merge-base", "--is-ancestor", ancestor, descendant)
        if status == 0:
            return True
        if status == 1:
            return False
        self._raise_for(("merge-base", "--is-ancestor", ancestor, descendant), err or out)
        return False

    def count_commits(self, base: str, tip: str) -> int:
        """Number of commits in ``tip`` that are not in ``base``."""
        out = self._check("rev-list", "--count", f"{base}..{tip}")
        return int(out.strip() or 0)

    def commits_between(self, base: str, tip: str) -> List[CommitInfo]:
        """Commits in ``tip`` not in ``base`` along the first-parent line, oldest first."""
        try:
            commits = list(
                self.repo.iter_commits(f"{base}..{tip}", first_parent=True, reverse=True)
            )
        except GitCommandError as e:
            logger.error(f"Error getting commits between {base} and {tip}: {e}")
            raise GitRepositoryError(f"Failed to list commits between {base} and {tip}: {e}") from e
        return [self._to_commit_info(c) for c in commits]

    def get_commit(self, commit: str) -> CommitInfo:
        """Load a single commit."""
        try:
            return self._to_commit_info(self.repo.commit(commit))
        except (GitCommandError, ValueError) as e:
            raise GitRepositoryError(f"Unknown commit {commit}: {e}") from e

    @staticmethod
    def _to_commit_info(commit) -> CommitInfo:
        return CommitInfo(
            hash=commit.hexsha,
            message=commit.message.strip(),
            author=commit.author.name,
            author_email=commit.author.email,
            date=commit.committed_datetime.isoformat(),
            parents=[parent.hexsha for parent in commit.parents],
        )

    def current_branch(self) -> Optional[str]:
        """Checked-out branch, or None for a detached HEAD."""
        status, out, _ = self._run("symbolic-ref", "--quiet", "--short", "HEAD")
        if status != 0:
            return None
        return out.strip() or None

    def is_worktree_clean(self) -> bool:
        """Return True if there are no staged or unstaged changes (untracked ignored)."""
        if self.repo.is_dirty(index=True, working_tree=True, untracked_files=False):
            return False
        # No unresolved merges
        return not self._check("ls-files", "-u").strip()

    def get_dirty_paths(self) -> List[str]:
        """Return list of paths that are staged or unstaged (untracked ignored)."""
        output = self._check("status", "--porcelain")
        dirty: List[str] = []
        for line in output.splitlines():
            if not line.strip() or line.startswith("??"):
                continue
            path = line[3:].strip()
            if path:
                dirty.append(path)
        return dirty

    # --- Replay ---
    @contextmanager
    def replay_scope(self) -> Iterator[None]:
        """Provide one scratch detached worktree for every replay in the block.

        The user's own working tree and index are never touched; the scratch
        worktree shares the object database so replayed commits stay visible.
        """
        if self._scratch is not None:
            yield
            return
        holder = Path(tempfile.mkdtemp(prefix="stack-sync-"))
        scratch = holder / "tree"
        self._check("worktree", "add", "--detach", "--quiet", str(scratch), "HEAD")
        logger.debug(f"Created scratch worktree at {scratch}")
        self._scratch = scratch
        try:
            yield
        finally:
            self._scratch = None
            status, _, err = self._run("worktree", "remove", "--force", str(scratch))
            if status != 0:
                logger.warning(f"Could not remove scratch worktree {scratch}: {err}")
            shutil.rmtree(holder, ignore_errors=True)
            self._run("worktree", "prune")

    def replay_commit(self, commit: str, onto: str) -> ReplayOutcome:
        """Cherry-pick ``commit`` onto ``onto`` inside the scratch worktree."""
        if self._scratch is None:
            with self.replay_scope():
                return self.replay_commit(commit, onto)

        scratch_git = Git(str(self._scratch))
        self._check("reset", "--hard", "--quiet", onto, git=scratch_git)
        self._check("clean", "-fdq", git=scratch_git)

        info = self.get_commit(commit)
        args = ["cherry-pick", "--no-commit"]
        if info.is_merge:
            args += ["-m", "1"]
        status, out, err = self._run(*args, commit, git=scratch_git)
        if status != 0:
            conflicts = [
                p.strip()
                for p in self._check("diff", "--name-only", "--diff-filter=U", git=scratch_git).splitlines()
                if p.strip()
            ]
            self._run("cherry-pick", "--quit", git=scratch_git)
            self._check("reset", "--hard", "--quiet", onto, git=scratch_git)
            if conflicts:
                logger.warning(f"Replaying {commit[:8]} onto {onto[:8]} conflicts in: {conflicts}")
                return ReplayOutcome(source=commit, onto=onto, conflict_paths=conflicts)
            self._raise_for(tuple(args) + (commit,), err or out)

        status, _, _ = self._run("diff", "--cached", "--quiet", git=scratch_git)
        if status == 0:
            logger.info(f"Commit {commit[:8]} is already contained in {onto[:8]}; dropping it")
            self._check("reset", "--hard", "--quiet", onto, git=scratch_git)
            return ReplayOutcome(source=commit, onto=onto, dropped=True)

        with scratch_git.custom_environment(GIT_EDITOR="true"):
            self._check(
                "commit", "--quiet", "--no-verify", "--allow-empty-message", "-C", commit,
                git=scratch_git,
            )
        new_commit = self._check("rev-parse", "HEAD", git=scratch_git).strip()
        logger.debug(f"Replayed {commit[:8]} onto {onto[:8]} as {new_commit[:8]}")
        return ReplayOutcome(source=commit, onto=onto, new_commit=new_commit)

    def materialize(self, commit: str) -> None:
        """Make sure a planned commit exists in the object store."""
        status, _, err = self._run("cat-file", "-e", f"{commit}^{{commit}}")
        if status != 0:
            raise GitRepositoryError(f"Commit {commit} is not present in the object store: {err}")

    def move_branch(self, branch: str, new_tip: str, expected_tip: str) -> None:
        """Compare-and-swap a branch ref; the checked-out branch is hard reset."""
        if self.current_branch() == branch:
            if self.branch_tip(branch) != expected_tip:
                raise RefUpdateError(f"Branch {branch} moved underneath us; expected {expected_tip[:8]}")
            if not self.is_worktree_clean():
                dirty = self.get_dirty_paths()
                raise GitRepositoryError(
                    f"Cannot move checked-out branch {branch}: working tree has changes in {dirty}"
                )
            self._check("reset", "--hard", "--quiet", new_tip)
            logger.info(f"Reset checked-out branch {branch} to {new_tip[:8]}")
            return

        status, out, err = self._run(
            "update-ref", "-m", f"stack-sync: move {branch}", f"refs/heads/{branch}", new_tip, expected_tip
        )
        if status != 0:
            logger.error(f"Compare-and-swap of {branch} failed: {err or out}")
            raise RefUpdateError(f"Failed to move {branch} to {new_tip[:8]}: {err or out}")
        logger.info(f"Moved branch {branch} {expected_tip[:8]} -> {new_tip[:8]}")

    # --- Generic references ---
    def read_ref(self, ref: str) -> Optional[str]:
        """Commit a ref points to, or None."""
        status, out, _ = self._run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        if status != 0 or not out.strip():
            return None
        return out.strip()

    def write_ref(self, ref: str, commit: str) -> None:
        """Create or overwrite a ref unconditionally."""
        self._check("update-ref", ref, commit)

    def delete_ref(self, ref: str) -> None:
        """Delete a ref."""
        self._check("update-ref", "-d", ref)

    def list_refs(self, prefix: str) -> Dict[str, str]:
        """Map every ref under ``prefix`` to its commit."""
        out = self._check("for-each-ref", "--format=%(refname) %(objectname)", prefix)
        refs: Dict[str, str] = {}
        for line in out.splitlines():
            name, _, sha = line.strip().partition(" ")
            if name and sha:
                refs[name] = sha
        return refs

    # --- Remote synchronization helpers ---
    def has_remote(self, remote: str) -> bool:
        """Check whether a remote is configured."""
        return remote in [r.name for r in self.repo.remotes]

    def remote_tip(self, remote: str, branch: str) -> Optional[str]:
        """Ask the remote for the current tip of ``branch`` (never a cached value)."""
        ref = f"refs/heads/{branch}"
        with self.repo.git.custom_environment(GIT_TERMINAL_PROMPT="0"):
            out = self._check("ls-remote", "--heads", remote, ref)
        for line in out.splitlines():
            sha, _, name = line.strip().partition("\t")
            if name == ref:
                return sha
        return None

    def tracking_tip(self, remote: str, branch: str) -> Optional[str]:
        """Last tip of ``branch`` we fetched from or pushed to ``remote``."""
        return self.read_ref(f"refs/remotes/{remote}/{branch}")

    def push_branch(self, remote: str, branch: str, expected_remote_tip: Optional[str]) -> None:
        """Push ``branch`` only if the remote still has ``expected_remote_tip``."""
        local_tip = self.branch_tip(branch)
        if local_tip is None:
            raise PushRejectedError(f"Local branch {branch} does not exist")
        ref = f"refs/heads/{branch}"
        lease = f"--force-with-lease={ref}:{expected_remote_tip or ''}"
        with self.repo.git.custom_environment(GIT_TERMINAL_PROMPT="0"):
            status, out, err = self._run("push", "--porcelain", lease, remote, f"{ref}:{ref}")
        if status != 0:
            message = f"{out}\n{err}".strip()
            if any(marker in message for marker in STALE_MARKERS):
                logger.warning(f"Push of {branch} rejected, remote moved: {message}")
                raise StaleRemoteError(branch, expected_remote_tip, None)
            if any(marker in message for marker in TRANSIENT_MARKERS):
                raise TransientStoreError(f"Push of {branch} failed: {message}")
            logger.error(f"Push of {branch} to {remote} failed: {message}")
            raise PushRejectedError(f"Push of {branch} to {remote} failed: {message}")
        # Record what we now know about the remote
        self.write_ref(f"refs/remotes/{remote}/{branch}", local_tip)
        logger.info(f"Pushed {branch} ({local_tip[:8]}) to {remote}")

    # --- Configuration ---
    def read_config_section(self, section: str) -> Dict[str, str]:
        """Return ``{key: value}`` for every ``<section>.<key>`` git config entry."""
        status, out, _ = self._run("config", "--get-regexp", f"^{section}\\.")
        if status != 0:
            # exit code 1: no matching key
            return {}
        values: Dict[str, str] = {}
        for line in out.splitlines():
            key, _, value = line.partition(" ")
            values[key[len(section) + 1:]] = value.strip()
        return values
