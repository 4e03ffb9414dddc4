"""
Backup refs recording branch tips before a stack is rewritten.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .models import BackupEntry, GitRepositoryError
from .store_interface import RepositoryStore

logger = logging.getLogger(__name__)


BACKUP_PREFIX = "refs/stack-sync/backup"
_SESSION_RE = re.compile(r"^(?P<stamp>\d{8}-\d{6})(?:-(?P<n>\d+))?$")


def session_sort_key(session: str) -> Tuple[str, int]:
    """Order sessions by timestamp, then by their numeric same-second suffix."""
    match = _SESSION_RE.match(session)
    if match is None:
        return (session, 0)
    return (match.group("stamp"), int(match.group("n") or 1))


class BackupManager:
    """Create, list, restore and delete backup sessions for one repository.

    A session is stored as one ref per branch,
    ``refs/stack-sync/backup/<session>/<branch>``, so backups survive the
    process and never show up as branches.
    """

    def __init__(self, store: RepositoryStore) -> None:
        self.store = store

    def new_session_id(self) -> str:
        base = datetime.now().strftime("%Y%m%d-%H%M%S")
        existing = set(self.list_sessions())
        session = base
        suffix = 2
        while session in existing:
            session = f"{base}-{suffix}"
            suffix += 1
        return session

    def make_backup_ref(self, branch: str, session: str) -> str:
        return f"{BACKUP_PREFIX}/{session}/{branch}"

    def create_session(self, tips: Dict[str, str], session: Optional[str] = None) -> str:
        """Record ``{branch: tip}`` under a new session; returns the session id."""
        session = session or self.new_session_id()
        for branch, tip in tips.items():
            ref = self.make_backup_ref(branch, session)
            try:
                self.store.write_ref(ref, tip)
            except GitRepositoryError as e:
                logger.error(f"Failed to create backup {ref}: {e}")
                raise
            logger.debug(f"Backed up {branch} at {tip[:8]} as {ref}")
        logger.info(f"Created backup session {session} for {len(tips)} branch(es)")
        return session

    def _parse_backup_ref(self, ref: str) -> Optional[Dict[str, str]]:
        prefix = f"{BACKUP_PREFIX}/"
        if not ref.startswith(prefix):
            return None
        session, _, branch = ref[len(prefix):].partition("/")
        if not session or not branch:
            return None
        return {"session": session, "branch": branch}

    def list_entries(self, session: Optional[str] = None) -> List[BackupEntry]:
        """Structured backup entries, optionally restricted to one session."""
        entries: List[BackupEntry] = []
        for ref, commit in self.store.list_refs(f"{BACKUP_PREFIX}/").items():
            parsed = self._parse_backup_ref(ref)
            if not parsed:
                continue
            if session is not None and parsed["session"] != session:
                continue
            entries.append(
                BackupEntry(ref=ref, branch=parsed["branch"], session=parsed["session"], commit=commit)
            )
        entries.sort(key=lambda e: (e.session, e.branch))
        return entries

    def list_sessions(self) -> List[str]:
        return sorted({e.session for e in self.list_entries()}, key=session_sort_key)

    def latest_session(self) -> Optional[str]:
        sessions = self.list_sessions()
        return sessions[-1] if sessions else None

    def session_tips(self, session: str) -> Dict[str, str]:
        return {e.branch: e.commit for e in self.list_entries(session)}

    def restore_session(self, session: str, branches: Optional[List[str]] = None) -> List[str]:
        """Point every backed-up branch back at its recorded tip; returns branches moved."""
        entries = self.list_entries(session)
        if not entries:
            raise GitRepositoryError(f"Backup session does not exist: {session}")
        restored: List[str] = []
        for entry in entries:
            if branches is not None and entry.branch not in branches:
                continue
            current = self.store.branch_tip(entry.branch)
            if current == entry.commit:
                continue
            try:
                if current is None:
                    self.store.write_ref(f"refs/heads/{entry.branch}", entry.commit)
                else:
                    self.store.move_branch(entry.branch, entry.commit, current)
            except GitRepositoryError as e:
                logger.error(f"Failed to restore {entry.branch} from {entry.ref}: {e}")
                raise
            logger.info(f"Restored {entry.branch} to {entry.commit[:8]} from session {session}")
            restored.append(entry.branch)
        return restored

    def delete_session(self, session: str) -> int:
        """Delete every ref of a session; returns how many were removed."""
        entries = self.list_entries(session)
        for entry in entries:
            self.store.delete_ref(entry.ref)
        logger.info(f"Deleted backup session {session} ({len(entries)} ref(s))")
        return len(entries)
