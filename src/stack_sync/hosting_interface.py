"""
UI-agnostic interface to the code-hosting platform's pull requests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import PullRequestInfo


class HostingPlatform(ABC):
    """Abstract pull-request API used by the orchestrator."""

    @abstractmethod
    def list_open_pull_requests(self, base: str) -> List[PullRequestInfo]:
        """
        List open pull requests targeting a base branch.

        Args:
            base: Name of the base branch

        Returns:
            Pull requests whose base is ``base``
        """
        pass

    @abstractmethod
    def find_pull_request(self, head: str) -> Optional[PullRequestInfo]:
        """Return the most recent pull request whose head is ``head``, open or closed."""
        pass

    @abstractmethod
    def merged_commit_for(self, head: str) -> Optional[str]:
        """
        Report the commit a merged pull request produced on its base.

        Args:
            head: Head branch of the pull request

        Returns:
            The merge (or squash) commit id, or None if no merged pull request exists
        """
        pass

    @abstractmethod
    def set_base(self, number: int, base: str) -> None:
        """Change the base branch of pull request ``number``."""
        pass
