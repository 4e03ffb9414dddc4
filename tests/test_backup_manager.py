"""
Tests for BackupManager.
"""

from datetime import datetime

import pytest

from stack_sync.backup_manager import BACKUP_PREFIX, BackupManager
from stack_sync.models import GitRepositoryError


class TestBackupSessions:
    """Creating, listing, restoring and deleting backup sessions."""

    def test_create_and_list(self, store, stack):
        manager = BackupManager(store)
        session = manager.create_session({"b1": stack["B1"], "feature/x": stack["B2"]}, session="20240101-120000")

        assert session == "20240101-120000"
        assert store.read_ref(f"{BACKUP_PREFIX}/20240101-120000/feature/x") == stack["B2"]
        entries = manager.list_entries()
        assert [(e.session, e.branch, e.commit) for e in entries] == [
            ("20240101-120000", "b1", stack["B1"]),
            ("20240101-120000", "feature/x", stack["B2"]),
        ]
        assert manager.session_tips(session) == {"b1": stack["B1"], "feature/x": stack["B2"]}

    def test_session_ids_are_unique(self, store, stack):
        manager = BackupManager(store)
        first = manager.create_session({"b1": stack["B1"]})
        second = manager.create_session({"b1": stack["B1"]})
        assert first != second
        assert manager.latest_session() == second
        assert manager.list_sessions() == [first, second]

    def test_same_second_suffixes_sort_numerically(self, store, stack):
        manager = BackupManager(store)
        for session in ("20240101-120000", "20240101-120000-2", "20240101-120000-10", "20231231-235959-3"):
            manager.create_session({"b1": stack["B1"]}, session=session)
        assert manager.list_sessions() == [
            "20231231-235959-3",
            "20240101-120000",
            "20240101-120000-2",
            "20240101-120000-10",
        ]
        assert manager.latest_session() == "20240101-120000-10"

    def test_eleventh_session_in_one_second_is_latest(self, store, stack, monkeypatch):
        class FrozenClock:
            @staticmethod
            def now():
                return datetime(2024, 1, 1, 12, 0, 0)

        monkeypatch.setattr("stack_sync.backup_manager.datetime", FrozenClock)
        manager = BackupManager(store)
        sessions = [manager.create_session({"b1": stack["B1"]}) for _ in range(11)]
        assert sessions[0] == "20240101-120000"
        assert sessions[-1] == "20240101-120000-11"
        assert manager.latest_session() == "20240101-120000-11"
        assert manager.list_sessions() == sessions

    def test_ignores_malformed_refs(self, store, stack):
        store.write_ref(f"{BACKUP_PREFIX}/lonely", stack["M"])
        assert BackupManager(store).list_entries() == []

    def test_restore_moves_branches_back(self, store, stack):
        manager = BackupManager(store)
        session = manager.create_session({"b1": stack["B1"], "b2": stack["B2"], "b3": stack["B3"]})
        store.set_branch("b1", stack["M"])
        store.set_branch("b2", stack["M"])
        del store.refs["refs/heads/b3"]

        restored = manager.restore_session(session)

        assert restored == ["b1", "b2", "b3"]
        assert store.branch_tip("b1") == stack["B1"]
        assert store.branch_tip("b3") == stack["B3"]

    def test_restore_subset_skips_branches_at_backup(self, store, stack):
        manager = BackupManager(store)
        session = manager.create_session({"b1": stack["B1"], "b2": stack["B2"]})
        store.set_branch("b2", stack["M"])
        assert manager.restore_session(session, ["b1"]) == []
        assert manager.restore_session(session, ["b1", "b2"]) == ["b2"]

    def test_restore_unknown_session(self, store):
        with pytest.raises(GitRepositoryError):
            BackupManager(store).restore_session("nope")

    def test_delete_session(self, store, stack):
        manager = BackupManager(store)
        keep = manager.create_session({"b1": stack["B1"]}, session="a")
        drop = manager.create_session({"b1": stack["B1"], "b2": stack["B2"]}, session="b")
        assert manager.delete_session(drop) == 2
        assert manager.list_sessions() == [keep]
        assert manager.delete_session("missing") == 0
