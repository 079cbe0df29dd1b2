"""
Version Ledger service tests.

Tests cover:
  - create: v1 / next version under the same root, current pointer
  - create_revision / restore_version from approved or rejected versions
  - set_current idempotence and status guard
  - update_content editability and optimistic concurrency
  - delete_draft_artifact pointer fallback
  - Role checks
"""

import pytest
from sqlalchemy import func, select

from conftest import APPROVER, EDITOR, OUTSIDER, OWNER, VIEWER
from docledger.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDenied,
    StateError,
    ValidationError,
)
from docledger.models import db
from docledger.models.artifact import Artifact
from docledger.services import approval_lifecycle, version_ledger


def _current_rows(project_id, a_type="CHARTER"):
    return db.session.execute(
        select(func.count(Artifact.id)).where(
            Artifact.project_id == project_id,
            Artifact.type == a_type,
            Artifact.is_current.is_(True),
            Artifact.deleted_at.is_(None),
        )
    ).scalar()


def _approved(pid, content="Scope v1"):
    art = version_ledger.create(pid, "charter", EDITOR, content)
    approval_lifecycle.submit(art.id, EDITOR)
    return approval_lifecycle.approve(art.id, APPROVER)


# ═════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════

class TestCreate:
    def test_first_create_is_v1_current_draft(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "Scope")
        assert art.version == 1
        assert art.is_current is True
        assert art.approval_status == "draft"
        assert art.root_id == art.id
        assert art.parent_id is None
        assert art.revision_type == "create"
        assert art.author_id == EDITOR.user_id
        assert art.is_locked is False

    def test_type_alias_is_canonicalized(self, pid):
        art = version_ledger.create(pid, "project-charter", EDITOR, "x")
        assert art.type == "CHARTER"

    def test_unknown_type_rejected(self, pid):
        with pytest.raises(ValidationError):
            version_ledger.create(pid, "shopping_list", EDITOR, "x")

    def test_second_create_supersedes_current(self, pid):
        v1 = version_ledger.create(pid, "charter", EDITOR, "one")
        v2 = version_ledger.create(pid, "charter", EDITOR, "two")
        db.session.refresh(v1)
        assert v2.version == 2
        assert v2.parent_id == v1.id
        assert v2.root_id == v1.id
        assert v2.is_current is True
        assert v1.is_current is False
        assert _current_rows(pid) == 1

    def test_create_carries_content_when_omitted(self, pid):
        version_ledger.create(pid, "wbs", EDITOR, "tree", title="WBS")
        v2 = version_ledger.create(pid, "wbs", EDITOR)
        assert v2.content == "tree"
        assert v2.title == "WBS"

    def test_types_are_independent(self, pid):
        version_ledger.create(pid, "charter", EDITOR, "a")
        wbs = version_ledger.create(pid, "wbs", EDITOR, "b")
        assert wbs.version == 1
        assert _current_rows(pid, "CHARTER") == 1
        assert _current_rows(pid, "WBS") == 1

    def test_viewer_cannot_create(self, pid):
        with pytest.raises(PermissionDenied):
            version_ledger.create(pid, "charter", VIEWER, "x")

    def test_non_member_gets_not_found(self, pid):
        with pytest.raises(NotFoundError):
            version_ledger.create(pid, "charter", OUTSIDER, "x")

    def test_missing_project_id(self):
        with pytest.raises(ValidationError):
            version_ledger.create(None, "charter", OWNER, "x")


# ═════════════════════════════════════════════════════════════════════════
# REVISIONS & RESTORE
# ═════════════════════════════════════════════════════════════════════════

class TestRevisions:
    def test_revision_from_approved(self, pid):
        v1 = _approved(pid)
        v2 = version_ledger.create_revision(v1.id, EDITOR, reason="Scope change")
        db.session.refresh(v1)
        assert v2.version == 2
        assert v2.parent_id == v1.id
        assert v2.content == v1.content
        assert v2.approval_status == "draft"
        assert v2.revision_reason == "Scope change"
        assert v2.is_current is True
        assert v1.is_current is False
        # the baseline stays on the approved version
        assert v1.is_baseline is True
        assert v2.is_baseline is False

    def test_revision_from_draft_refused(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "x")
        with pytest.raises(StateError):
            version_ledger.create_revision(art.id, EDITOR)

    def test_revision_from_non_current_refused(self, pid):
        v1 = _approved(pid)
        version_ledger.create_revision(v1.id, EDITOR)
        with pytest.raises(StateError):
            version_ledger.create_revision(v1.id, EDITOR)

    def test_revision_from_rejected(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "x")
        approval_lifecycle.submit(art.id, EDITOR)
        approval_lifecycle.reject_final(art.id, APPROVER, "Out of scope", "REJECT")
        v2 = version_ledger.create_revision(art.id, EDITOR, revision_type="minor")
        assert v2.revision_type == "minor"
        assert v2.version == 2

    def test_unknown_revision_type(self, pid):
        v1 = _approved(pid)
        with pytest.raises(ValidationError):
            version_ledger.create_revision(v1.id, EDITOR, revision_type="restore")

    def test_restore_round_trip(self, pid):
        v1 = version_ledger.create(pid, "charter", EDITOR, "original")
        v2 = version_ledger.create(pid, "charter", EDITOR, "rewritten")
        v3 = version_ledger.restore_version(v1.id, EDITOR)
        db.session.refresh(v2)
        assert v3.version == 3
        assert v3.content == "original"
        assert v3.parent_id == v1.id
        assert v3.revision_type == "restore"
        assert v3.is_current is True
        assert v2.is_current is False
        assert _current_rows(pid) == 1

    def test_restore_refused_while_current_submitted(self, pid):
        v1 = version_ledger.create(pid, "charter", EDITOR, "one")
        v2 = version_ledger.create(pid, "charter", EDITOR, "two")
        approval_lifecycle.submit(v2.id, EDITOR)
        with pytest.raises(StateError):
            version_ledger.restore_version(v1.id, EDITOR)
        assert _current_rows(pid) == 1


# ═════════════════════════════════════════════════════════════════════════
# SET CURRENT
# ═════════════════════════════════════════════════════════════════════════

class TestSetCurrent:
    def test_moves_pointer_to_older_draft(self, pid):
        v1 = version_ledger.create(pid, "charter", EDITOR, "one")
        v2 = version_ledger.create(pid, "charter", EDITOR, "two")
        result = version_ledger.set_current(v1.id, EDITOR)
        db.session.refresh(v2)
        assert result.id == v1.id
        assert result.is_current is True
        assert v2.is_current is False
        assert _current_rows(pid) == 1

    def test_idempotent_on_current(self, pid):
        from docledger.services.audit_recorder import list_events

        art = version_ledger.create(pid, "charter", EDITOR, "one")
        before = len(list_events(pid, artifact_id=art.id))
        version_ledger.set_current(art.id, EDITOR)
        version_ledger.set_current(art.id, EDITOR)
        assert len(list_events(pid, artifact_id=art.id)) == before
        assert _current_rows(pid) == 1

    def test_refused_for_approved_target(self, pid):
        v1 = _approved(pid)
        version_ledger.create_revision(v1.id, EDITOR)
        with pytest.raises(StateError):
            version_ledger.set_current(v1.id, EDITOR)

    def test_next_version_after_pointer_moved_back(self, pid):
        v1 = version_ledger.create(pid, "charter", EDITOR, "one")
        version_ledger.create(pid, "charter", EDITOR, "two")
        version_ledger.set_current(v1.id, EDITOR)
        v3 = version_ledger.create(pid, "charter", EDITOR, "three")
        assert v3.version == 3
        assert v3.parent_id == v1.id


# ═════════════════════════════════════════════════════════════════════════
# UPDATE CONTENT
# ═════════════════════════════════════════════════════════════════════════

class TestUpdateContent:
    def test_edit_draft(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "one")
        updated = version_ledger.update_content(art.id, EDITOR, {"content": "two", "title": "Charter"})
        assert updated.content == "two"
        assert updated.title == "Charter"

    def test_edit_submitted_refused(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "one")
        approval_lifecycle.submit(art.id, EDITOR)
        with pytest.raises(StateError):
            version_ledger.update_content(art.id, EDITOR, {"content": "two"})
        db.session.refresh(art)
        assert art.content == "one"

    def test_edit_non_current_refused(self, pid):
        v1 = version_ledger.create(pid, "charter", EDITOR, "one")
        version_ledger.create(pid, "charter", EDITOR, "two")
        with pytest.raises(StateError):
            version_ledger.update_content(v1.id, EDITOR, {"content": "x"})

    def test_unknown_field_rejected(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "one")
        with pytest.raises(ValidationError):
            version_ledger.update_content(art.id, EDITOR, {"approval_status": "approved"})

    def test_stale_updated_at_conflicts(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "one")
        stale = art.to_dict()["updated_at"]
        version_ledger.update_content(art.id, EDITOR, {"content": "two"}, expected_updated_at=stale)
        with pytest.raises(ConflictError):
            version_ledger.update_content(art.id, EDITOR, {"content": "three"}, expected_updated_at=stale)
        db.session.refresh(art)
        assert art.content == "two"

    def test_viewer_cannot_edit(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "one")
        with pytest.raises(PermissionDenied):
            version_ledger.update_content(art.id, VIEWER, {"content": "x"})


# ═════════════════════════════════════════════════════════════════════════
# DELETE DRAFT
# ═════════════════════════════════════════════════════════════════════════

class TestDeleteDraft:
    def test_delete_current_draft_falls_back_to_parent(self, pid):
        v1 = version_ledger.create(pid, "charter", EDITOR, "one")
        v2 = version_ledger.create(pid, "charter", EDITOR, "two")
        version_ledger.delete_draft_artifact(v2.id, EDITOR)
        db.session.refresh(v1)
        assert v1.is_current is True
        with pytest.raises(NotFoundError):
            version_ledger.get_artifact(v2.id)
        assert [a.id for a in version_ledger.list_versions(v1.id, EDITOR)] == [v1.id]

    def test_delete_submitted_refused(self, pid):
        art = version_ledger.create(pid, "charter", EDITOR, "one")
        approval_lifecycle.submit(art.id, EDITOR)
        with pytest.raises(StateError):
            version_ledger.delete_draft_artifact(art.id, EDITOR)


# ═════════════════════════════════════════════════════════════════════════
# READS
# ═════════════════════════════════════════════════════════════════════════

class TestReads:
    def test_list_current_one_per_type(self, pid):
        version_ledger.create(pid, "charter", EDITOR, "a")
        version_ledger.create(pid, "charter", EDITOR, "b")
        version_ledger.create(pid, "raid", EDITOR, "c")
        items = version_ledger.list_current(pid, VIEWER)
        assert sorted(a.type for a in items) == ["CHARTER", "RAID"]

    def test_versions_strictly_increase(self, pid):
        v1 = version_ledger.create(pid, "charter", EDITOR, "a")
        version_ledger.create(pid, "charter", EDITOR, "b")
        version_ledger.restore_version(v1.id, EDITOR)
        versions = [a.version for a in version_ledger.list_versions(v1.id, VIEWER)]
        assert versions == [1, 2, 3]

    def test_diff_includes_parent_and_baseline(self, pid):
        v1 = _approved(pid, "approved text")
        v2 = version_ledger.create_revision(v1.id, EDITOR)
        version_ledger.update_content(v2.id, EDITOR, {"content": "new text"})
        diff = version_ledger.get_diff(v2.id, VIEWER)
        assert diff["artifact"]["content"] == "new text"
        assert diff["parent"]["id"] == v1.id
        assert diff["baseline"]["id"] == v1.id
