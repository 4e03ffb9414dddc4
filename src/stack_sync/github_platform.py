"""
GitHub implementation of the hosting platform interface, built on PyGithub.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from github import Auth, Github, GithubException

from .hosting_interface import HostingPlatform
from .models import ConfigError, HostingError, PullRequestInfo

logger = logging.getLogger(__name__)


def find_github_token() -> Optional[str]:
    """Find a GitHub token from the environment or the gh CLI config."""
    for var in ("GITHUB_TOKEN", "GH_TOKEN"):
        token = os.environ.get(var)
        if token:
            return token

    gh_config_path = Path.home() / ".config" / "gh" / "hosts.yml"
    if gh_config_path.exists():
        try:
            with open(gh_config_path, "r", encoding="utf-8") as f:
                gh_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error reading gh CLI config: {e}")
            return None
        github_config: Dict[str, Any] = gh_config.get("github.com") or {}
        token = github_config.get("oauth_token")
        if isinstance(token, str) and token:
            return token
    return None


def _to_info(pr: Any) -> PullRequestInfo:
    return PullRequestInfo(
        number=pr.number,
        base=pr.base.ref,
        head=pr.head.ref,
        state=pr.state,
        merged=bool(pr.merged),
        merge_commit=pr.merge_commit_sha if pr.merged else None,
        title=pr.title or "",
    )


class GitHubPlatform(HostingPlatform):
    """Pull-request operations against one GitHub repository."""

    def __init__(self, repo_full_name: str, token: Optional[str] = None, client: Optional[Any] = None) -> None:
        if "/" not in repo_full_name:
            raise ConfigError(f"GitHub repository must look like owner/name, got {repo_full_name!r}")
        self.repo_full_name = repo_full_name
        self.owner = repo_full_name.split("/", 1)[0]
        if client is None:
            token = token or find_github_token()
            if not token:
                raise ConfigError("No GitHub token found; set GITHUB_TOKEN or log in with 'gh auth login'")
            client = Github(auth=Auth.Token(token))
        self.client = client
        self._repo: Optional[Any] = None

    @property
    def repo(self) -> Any:
        if self._repo is None:
            try:
                self._repo = self.client.get_repo(self.repo_full_name)
            except GithubException as e:
                raise HostingError(f"Cannot open GitHub repository {self.repo_full_name}: {e}") from e
        return self._repo

    def list_open_pull_requests(self, base: str) -> List[PullRequestInfo]:
        try:
            pulls = [_to_info(pr) for pr in self.repo.get_pulls(state="open", base=base)]
        except GithubException as e:
            raise HostingError(f"Listing pull requests on {base} failed: {e}") from e
        logger.debug(f"GitHub returned {len(pulls)} open PR(s) with base {base}")
        return pulls

    def find_pull_request(self, head: str) -> Optional[PullRequestInfo]:
        head_filter = f"{self.owner}:{head}"
        try:
            pulls = list(self.repo.get_pulls(state="all", head=head_filter, sort="updated", direction="desc"))
        except GithubException as e:
            raise HostingError(f"Looking up pull request for {head} failed: {e}") from e
        for pr in pulls:
            if pr.head.ref == head:
                return _to_info(pr)
        return None

    def merged_commit_for(self, head: str) -> Optional[str]:
        info = self.find_pull_request(head)
        if info is None or not info.merged:
            return None
        logger.info(f"PR #{info.number} for {head} was merged as {info.merge_commit}")
        return info.merge_commit

    def set_base(self, number: int, base: str) -> None:
        try:
            self.repo.get_pull(number).edit(base=base)
        except GithubException as e:
            raise HostingError(f"Changing base of PR #{number} to {base} failed: {e}") from e
        logger.info(f"Retargeted PR #{number} onto {base}")
