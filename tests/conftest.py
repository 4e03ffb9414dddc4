"""
Shared fixtures for the stack-sync tests.
"""

import shutil
from pathlib import Path
from typing import Dict

import pytest
from git import Repo

from fakes import FakeStore, build_stack


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path_factory, monkeypatch):
    """Keep CLI log files out of the user's home directory."""
    log_dir = tmp_path_factory.mktemp("logs")
    monkeypatch.setenv("STACK_SYNC_LOG", str(log_dir / "stack-sync.log"))
    for var in ("STACK_SYNC_REMOTE", "STACK_SYNC_TRUNK", "STACK_SYNC_PUSH", "GITHUB_TOKEN", "GH_TOKEN"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture()
def store(tmp_path: Path) -> FakeStore:
    return FakeStore(root=tmp_path)


@pytest.fixture()
def stack(store: FakeStore) -> Dict[str, str]:
    """Published stack main <- b1 <- b2 <- b3 in the fake store."""
    return build_stack(store)


class GitStack:
    """A bare origin plus two clones: ``work`` owns the stack, ``other`` plays a teammate."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.origin_path = root / "origin.git"
        self.work_path = root / "work"
        self.other_path = root / "other"
        self.origin = Repo.init(self.origin_path, bare=True)
        self.origin.git.symbolic_ref("HEAD", "refs/heads/main")
        self.work = Repo.init(self.work_path)
        self.work.git.symbolic_ref("HEAD", "refs/heads/main")
        self.work.create_remote("origin", str(self.origin_path))
        self.ids: Dict[str, str] = {}

    def write(self, repo: Repo, path: str, content: str, message: str) -> str:
        (Path(repo.working_dir) / path).write_text(content)
        repo.git.add(path)
        repo.git.commit("-q", "-m", message)
        return repo.head.commit.hexsha

    def tip(self, branch: str, repo: Repo = None) -> str:
        return (repo or self.work).git.rev_parse(f"refs/heads/{branch}")

    def remote_tip(self, branch: str) -> str:
        return self.origin.git.rev_parse(f"refs/heads/{branch}")

    def parent(self, commit: str) -> str:
        return self.work.git.rev_parse(f"{commit}^")

    def build(self, paths=("a.txt", "b.txt", "c.txt")) -> "GitStack":
        """One commit per branch b1..b3, each appending its name to the given file."""
        self.ids["M"] = self.write(self.work, "README.md", "hello\n", "Initial commit")
        self.work.git.push("-q", "origin", "main")
        previous = "main"
        for index, path in enumerate(paths, 1):
            name = f"b{index}"
            self.work.git.checkout("-q", "-b", name, previous)
            target = self.work_path / path
            content = (target.read_text() if target.exists() else "") + f"{name}\n"
            self.ids[f"B{index}"] = self.write(self.work, path, content, f"{name}: update {path}")
            self.work.git.push("-q", "origin", name)
            previous = name
        self.work.git.checkout("-q", "main")
        return self

    def clone_other(self) -> Repo:
        if not self.other_path.exists():
            Repo.clone_from(str(self.origin_path), str(self.other_path))
        return Repo(self.other_path)

    def squash_merge_b1(self, amend_with: Dict[str, str] = None) -> str:
        """Squash-merge b1 into origin's main from the teammate clone; returns the squash commit."""
        other = self.clone_other()
        other.git.checkout("-q", "main")
        other.git.merge("--squash", "origin/b1")
        for path, content in (amend_with or {}).items():
            (self.other_path / path).write_text(content)
            other.git.add(path)
        other.git.commit("-q", "-m", "Add a.txt (#1)")
        other.git.push("-q", "origin", "main")
        self.work.git.fetch("-q", "origin")
        return other.head.commit.hexsha


@pytest.fixture()
def git_env(tmp_path: Path, monkeypatch) -> GitStack:
    """Real repositories with nothing committed yet."""
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Stack Tester")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tester@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Stack Tester")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tester@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("HOME", str(tmp_path))
    return GitStack(tmp_path / "repos")


@pytest.fixture()
def git_stack(git_env: GitStack) -> GitStack:
    """Real repositories with a published three-branch stack on separate files."""
    return git_env.build()
