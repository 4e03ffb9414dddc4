"""
Discovery of the ordered chain of branches stacked between a base and a head.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .history_inspector import HistoryInspector
from .models import DependencyChain, EmptyStackError, NotAncestorError, StackBranch

logger = logging.getLogger(__name__)


class StackResolver:
    """Computes dependency chains from current branch positions.

    Chains are rebuilt from the repository on every call; nothing is cached
    between calls because any rewrite invalidates positions.
    """

    def __init__(self, inspector: HistoryInspector) -> None:
        self.inspector = inspector

    def resolve_stack(self, base: str, head: str) -> DependencyChain:
        """Return the branches between ``base`` (exclusive) and ``head`` (inclusive), bottom first.

        Branches are ordered by their commit count from ``base``; ties are
        broken by name. A branch sitting on the base commit has depth 0 and is
        kept so it follows the base when the stack moves.
        """
        base_commit = self.inspector.resolve(base)
        head_commit = self.inspector.resolve(head)

        if head == base or head_commit == base_commit:
            logger.info(f"Head {head} is the base {base}; stack is empty")
            return DependencyChain(base=base, base_commit=base_commit, head=head)

        if not self.inspector.is_ancestor(base_commit, head_commit):
            raise NotAncestorError(base, head)

        candidates: List[StackBranch] = []
        for name in self.inspector.local_branches():
            if name == base:
                continue
            tip = self.inspector.tip_of(name)
            if not self.inspector.is_ancestor(tip, head_commit):
                continue
            if not self.inspector.is_ancestor(base_commit, tip):
                continue
            depth = self.inspector.ancestor_count(base_commit, tip)
            candidates.append(StackBranch(name=name, tip=tip, depth=depth))

        if not candidates:
            raise EmptyStackError(base, head)

        candidates.sort(key=lambda b: (b.depth, b.name))
        self._check_linear(candidates)

        chain = DependencyChain(base=base, base_commit=base_commit, head=head, branches=candidates)
        logger.info(f"Resolved stack on {base}: {' -> '.join(chain.names)}")
        return chain

    def _check_linear(self, branches: List[StackBranch]) -> None:
        """Each branch must be an ancestor of the next one in order."""
        for lower, upper in zip(branches, branches[1:]):
            if not self.inspector.is_ancestor(lower.tip, upper.tip):
                logger.error(f"Branches {lower.name} and {upper.name} have forked")
                raise NotAncestorError(lower.name, upper.name)

    def branch_below(self, chain: DependencyChain, branch: str) -> Optional[str]:
        """Name of the branch directly under ``branch`` in ``chain`` (None for the bottom)."""
        names = chain.names
        index = names.index(branch)
        return names[index - 1] if index > 0 else None
