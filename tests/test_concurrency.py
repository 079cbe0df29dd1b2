"""
Current-pointer uniqueness under concurrent writers.

A concurrent writer is simulated by making the pointer read miss the
row another caller already committed: the insert then collides with the
partial unique index exactly as a lost race would.
"""

import pytest
from sqlalchemy import func, select

from conftest import EDITOR
from docledger.core.exceptions import ConflictError
from docledger.models import db
from docledger.models.artifact import Artifact
from docledger.services import version_ledger


def _current_count(pid):
    return db.session.execute(
        select(func.count(Artifact.id)).where(
            Artifact.project_id == pid,
            Artifact.type == "CHARTER",
            Artifact.is_current.is_(True),
            Artifact.deleted_at.is_(None),
        )
    ).scalar()


class TestConcurrentCreate:
    def test_loser_retries_and_gets_next_version(self, pid, monkeypatch):
        winner = version_ledger.create(pid, "charter", EDITOR, "first caller")

        real_load = version_ledger._load_current
        calls = {"n": 0}

        def stale_then_fresh(project_id, artifact_type):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_load(project_id, artifact_type)

        monkeypatch.setattr(version_ledger, "_load_current", stale_then_fresh)
        loser = version_ledger.create(pid, "charter", EDITOR, "second caller")

        assert calls["n"] == 2
        assert loser.version == 2
        assert loser.parent_id == winner.id
        assert _current_count(pid) == 1

    def test_persistent_conflict_surfaces_conflict_error(self, app, pid, monkeypatch):
        version_ledger.create(pid, "charter", EDITOR, "first caller")
        monkeypatch.setattr(version_ledger, "_load_current", lambda project_id, artifact_type: None)

        with pytest.raises(ConflictError):
            version_ledger.create(pid, "charter", EDITOR, "second caller")

        assert _current_count(pid) == 1
        total = db.session.execute(select(func.count(Artifact.id))).scalar()
        assert total == 1

    def test_attempts_follow_config(self, app, pid, monkeypatch):
        version_ledger.create(pid, "charter", EDITOR, "first caller")
        calls = {"n": 0}

        def always_stale(project_id, artifact_type):
            calls["n"] += 1
            return None

        monkeypatch.setattr(version_ledger, "_load_current", always_stale)
        monkeypatch.setitem(app.config, "CURRENT_POINTER_MAX_ATTEMPTS", 2)
        with pytest.raises(ConflictError):
            version_ledger.create(pid, "charter", EDITOR, "x")
        assert calls["n"] == 2


class TestConcurrentSetCurrent:
    def test_stale_set_current_keeps_single_current(self, pid, monkeypatch):
        v1 = version_ledger.create(pid, "charter", EDITOR, "one")
        version_ledger.create(pid, "charter", EDITOR, "two")
        monkeypatch.setattr(version_ledger, "_load_current", lambda project_id, artifact_type: None)

        with pytest.raises(ConflictError):
            version_ledger.set_current(v1.id, EDITOR)
        assert _current_count(pid) == 1
