"""
Commit tracking and hash mapping while a stack is rewritten.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .models import CommitInfo


logger = logging.getLogger(__name__)


class CommitTracker:
    """Tracks which commits were replayed, kept or dropped and where they went."""

    def __init__(self) -> None:
        self.commit_mappings: Dict[str, str] = {}  # old_hash -> new_hash
        self.created: List[str] = []
        self.dropped: List[str] = []

    def record_replayed(self, old_hash: str, new_hash: str) -> None:
        """A commit was re-created on a new parent."""
        self.add_mapping(old_hash, new_hash)
        self.created.append(new_hash)

    def record_kept(self, old_hash: str) -> None:
        """A commit already sat on the right parent and keeps its id."""
        self.add_mapping(old_hash, old_hash)

    def record_dropped(self, old_hash: str, absorbed_into: str) -> None:
        """A commit's change already exists below it; map it to where it was absorbed."""
        self.commit_mappings[old_hash] = absorbed_into
        self.dropped.append(old_hash)
        logger.debug(f"Dropped commit {old_hash[:8]} (absorbed into {absorbed_into[:8]})")

    def add_mapping(self, old_hash: str, new_hash: str) -> None:
        self.commit_mappings[old_hash] = new_hash
        logger.debug(f"Mapped commit {old_hash[:8]} -> {new_hash[:8]}")

    def map_rewritten(
        self, original_commits: List[CommitInfo], rewritten_commits: List[CommitInfo]
    ) -> Dict[str, str]:
        """Map original commits onto commits that were rewritten outside this tracker.

        Used when a branch was already moved by an earlier partial run or by a
        manual conflict resolution, so its new ids were never observed here.
        Matching uses the commit subject and author, in order; originals that
        find no counterpart are treated as dropped.
        """
        mappings: Dict[str, str] = {}
        start = 0
        for original in original_commits:
            match_index = self._find_best_match(original, rewritten_commits, start)
            if match_index is None:
                logger.warning(
                    f"Could not find rewritten counterpart for {original.hash[:8]}: {original.subject[:50]}"
                )
                continue
            mappings[original.hash] = rewritten_commits[match_index].hash
            start = match_index + 1

        for old_hash, new_hash in mappings.items():
            self.add_mapping(old_hash, new_hash)
        return mappings

    def _find_best_match(
        self, original: CommitInfo, candidates: List[CommitInfo], start: int
    ) -> Optional[int]:
        # Exact subject and author first, then subject containment for amended messages
        for i in range(start, len(candidates)):
            candidate = candidates[i]
            if candidate.subject == original.subject and candidate.author == original.author:
                return i
        for i in range(start, len(candidates)):
            candidate = candidates[i]
            if candidate.author == original.author and self._messages_similar(
                original.subject, candidate.subject
            ):
                return i
        return None

    def _messages_similar(self, msg1: str, msg2: str) -> bool:
        a = msg1.strip().lower()
        b = msg2.strip().lower()
        return a == b or a in b or b in a

    def get_all_mappings(self) -> Dict[str, str]:
        return self.commit_mappings.copy()

