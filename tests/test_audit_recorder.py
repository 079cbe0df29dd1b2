"""
Audit recorder tests.

Tests cover:
  - one event per state-changing operation with from/to fields
  - best-effort recording: an audit failure never fails the operation
  - list_events filters and ordering
"""

import pytest
from sqlalchemy import func, select

from conftest import APPROVER, EDITOR
from docledger.core.exceptions import StateError
from docledger.models import db
from docledger.models.audit import AuditEvent
from docledger.services import approval_lifecycle, audit_recorder, version_ledger
from docledger.services import change_lane_engine as lanes


def _actions(pid, **filters):
    return [e.action for e in reversed(audit_recorder.list_events(pid, **filters))]


class TestRecording:
    def test_artifact_lifecycle_trail(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "Scope")
        approval_lifecycle.submit(art.id, EDITOR)
        approval_lifecycle.approve(art.id, APPROVER)
        assert _actions(pid, artifact_id=art.id) == [
            "create_artifact", "submit_for_approval", "approve",
        ]

    def test_event_fields(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "Scope")
        approval_lifecycle.submit(art.id, EDITOR)
        event = audit_recorder.list_events(pid, artifact_id=art.id, limit=1)[0]
        assert event.actor_id == EDITOR.user_id
        assert event.actor_email == EDITOR.email
        assert event.from_status == "draft"
        assert event.to_status == "submitted"
        assert event.meta["version"] == 1

    def test_pointer_events_record_current_flags(self, pid):
        v1 = version_ledger.create(pid, "charter", EDITOR, "one")
        v2 = version_ledger.create(pid, "charter", EDITOR, "two")
        event = audit_recorder.list_events(pid, artifact_id=v2.id)[0]
        assert event.action == "create_revision_from_current"
        assert event.meta["from_artifact_id"] == v1.id
        assert event.to_is_current is True

    def test_change_request_trail(self, pid):
        cr = lanes.create_change_request(pid, EDITOR, {"title": "Add vendor"})
        lanes.patch_delivery_status(cr.id, EDITOR, "analysis")
        lanes.submit_for_approval(cr.id, EDITOR)
        lanes.record_decision(cr.id, APPROVER, "approved")
        assert _actions(pid, change_id=cr.id) == [
            "change_create", "change_move", "change_submit", "change_decision",
        ]
        move = audit_recorder.list_events(pid, change_id=cr.id)[2]
        assert (move.from_status, move.to_status) == ("intake", "analysis")

    def test_noop_move_not_recorded(self, pid):
        cr = lanes.create_change_request(pid, EDITOR, {"title": "Add vendor"})
        lanes.patch_delivery_status(cr.id, EDITOR, "intake")
        assert _actions(pid, change_id=cr.id) == ["change_create"]

    def test_refused_operation_not_recorded(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "Scope")
        with pytest.raises(StateError):
            approval_lifecycle.approve(art.id, APPROVER)
        assert _actions(pid, artifact_id=art.id) == ["create_artifact"]


class TestBestEffort:
    def test_audit_failure_does_not_fail_operation(self, pid, monkeypatch):
        def _boom(**kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(audit_recorder, "_build_event", _boom)
        art = version_ledger.create(pid, "charter", EDITOR, "Scope")
        submitted = approval_lifecycle.submit(art.id, EDITOR)

        assert submitted.approval_status == "submitted"
        count = db.session.execute(select(func.count(AuditEvent.id))).scalar()
        assert count == 0

    def test_record_returns_false_on_failure(self, pid, monkeypatch):
        def _bad_meta(**kwargs):
            raise ValueError("bad meta")

        monkeypatch.setattr(audit_recorder, "_build_event", _bad_meta)
        assert audit_recorder.record(action="approve", project_id=pid) is False

    def test_unknown_action_dropped(self, pid):
        assert audit_recorder.record(action="bogus", project_id=pid) is False
        count = db.session.execute(select(func.count(AuditEvent.id))).scalar()
        assert count == 0

    def test_record_returns_true(self, pid):
        assert audit_recorder.record(action="approve", project_id=pid, meta={"k": 1}) is True
        db.session.commit()
        event = audit_recorder.list_events(pid)[0]
        assert event.actor_id == "system"
        assert event.meta == {"k": 1}


class TestListEvents:
    def test_pagination(self, pid):
        for i in range(5):
            audit_recorder.record(action="update_content", project_id=pid, meta={"i": i})
        db.session.commit()
        page = audit_recorder.list_events(pid, limit=2, offset=1)
        assert len(page) == 2

    def test_scoped_to_project(self, pid):
        audit_recorder.record(action="approve", project_id=pid + 1)
        db.session.commit()
        assert audit_recorder.list_events(pid) == []
