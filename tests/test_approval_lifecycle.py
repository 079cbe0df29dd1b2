"""
Approval state machine tests.

Tests cover:
  - submit → approve happy path, lock and baseline
  - Self-approval refusal on every decision
  - request_changes / reject_final (confirmation token)
  - Multi-step approval chains
  - available_actions and rename_title
"""

import pytest
from sqlalchemy import select

from conftest import APPROVER, APPROVER_2, EDITOR, OWNER, VIEWER
from docledger.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDenied,
    StateError,
    ValidationError,
)
from docledger.models import db
from docledger.models.artifact import Artifact
from docledger.services import approval_lifecycle, project_service, version_ledger
from docledger.services import change_lane_engine as lanes
from docledger.services.project_service import set_approver


@pytest.fixture()
def draft(pid):
    return version_ledger.create(pid, "charter", EDITOR, "Scope: finance & logistics")


@pytest.fixture()
def submitted(draft):
    return approval_lifecycle.submit(draft.id, EDITOR)


# ═════════════════════════════════════════════════════════════════════════
# HAPPY PATH
# ═════════════════════════════════════════════════════════════════════════

class TestHappyPath:
    def test_submit_locks(self, draft):
        art = approval_lifecycle.submit(draft.id, EDITOR)
        assert art.approval_status == "submitted"
        assert art.is_locked is True
        assert art.submitted_by == EDITOR.user_id
        assert art.submitted_at is not None

    def test_approve_sets_baseline_and_stays_locked(self, submitted):
        art = approval_lifecycle.approve(submitted.id, APPROVER)
        assert art.approval_status == "approved"
        assert art.is_baseline is True
        assert art.is_locked is True
        assert art.approved_by == APPROVER.user_id

    def test_only_newest_approved_is_baseline(self, pid, submitted):
        approval_lifecycle.approve(submitted.id, APPROVER)
        v2 = version_ledger.create_revision(submitted.id, EDITOR)
        approval_lifecycle.submit(v2.id, EDITOR)
        approval_lifecycle.approve(v2.id, APPROVER)
        baselines = db.session.execute(
            select(Artifact.id).where(Artifact.project_id == pid, Artifact.is_baseline.is_(True))
        ).scalars().all()
        assert baselines == [v2.id]

    def test_request_changes_unlocks(self, submitted):
        art = approval_lifecycle.request_changes(submitted.id, APPROVER, "Add risks section")
        assert art.approval_status == "changes_requested"
        assert art.is_locked is False
        assert art.rejection_reason == "Add risks section"
        # editable again, and resubmittable
        version_ledger.update_content(art.id, EDITOR, {"content": "with risks"})
        assert approval_lifecycle.submit(art.id, EDITOR).approval_status == "submitted"

    def test_resubmit_clears_rejection_fields(self, submitted):
        approval_lifecycle.request_changes(submitted.id, APPROVER, "More detail")
        art = approval_lifecycle.submit(submitted.id, EDITOR)
        assert art.rejection_reason is None
        assert art.rejected_by is None


# ═════════════════════════════════════════════════════════════════════════
# PERMISSIONS
# ═════════════════════════════════════════════════════════════════════════

class TestPermissions:
    def test_author_cannot_approve_own_artifact(self, pid, draft):
        set_approver(pid, OWNER, EDITOR.user_id)
        approval_lifecycle.submit(draft.id, EDITOR)
        with pytest.raises(PermissionDenied):
            approval_lifecycle.approve(draft.id, EDITOR)
        db.session.refresh(draft)
        assert draft.approval_status == "submitted"
        assert draft.is_baseline is False

    def test_author_cannot_request_changes_or_reject(self, pid, draft):
        set_approver(pid, OWNER, EDITOR.user_id)
        approval_lifecycle.submit(draft.id, EDITOR)
        with pytest.raises(PermissionDenied):
            approval_lifecycle.request_changes(draft.id, EDITOR, "x")
        with pytest.raises(PermissionDenied):
            approval_lifecycle.reject_final(draft.id, EDITOR, "x", "REJECT")

    def test_non_approver_cannot_approve(self, submitted):
        with pytest.raises(PermissionDenied):
            approval_lifecycle.approve(submitted.id, OWNER)

    def test_inactive_approver_cannot_approve(self, pid, submitted):
        set_approver(pid, OWNER, APPROVER.user_id, is_active=False)
        with pytest.raises(PermissionDenied):
            approval_lifecycle.approve(submitted.id, APPROVER)

    def test_viewer_who_is_not_author_cannot_submit(self, draft):
        with pytest.raises(PermissionDenied):
            approval_lifecycle.submit(draft.id, VIEWER)


# ═════════════════════════════════════════════════════════════════════════
# ILLEGAL TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════

class TestTransitions:
    def test_approve_draft_refused(self, draft):
        with pytest.raises(StateError):
            approval_lifecycle.approve(draft.id, APPROVER)

    def test_double_submit_refused(self, submitted):
        with pytest.raises(StateError):
            approval_lifecycle.submit(submitted.id, EDITOR)

    def test_submit_non_current_refused(self, pid, draft):
        version_ledger.create(pid, "charter", EDITOR, "newer")
        with pytest.raises(StateError):
            approval_lifecycle.submit(draft.id, EDITOR)

    def test_reject_requires_exact_token(self, submitted):
        with pytest.raises(ValidationError):
            approval_lifecycle.reject_final(submitted.id, APPROVER, "No budget", "reject")
        db.session.refresh(submitted)
        assert submitted.approval_status == "submitted"

    def test_reject_requires_reason(self, submitted):
        with pytest.raises(ValidationError):
            approval_lifecycle.reject_final(submitted.id, APPROVER, "  ", "REJECT")

    def test_reject_final(self, submitted):
        art = approval_lifecycle.reject_final(submitted.id, APPROVER, "No budget", "REJECT")
        assert art.approval_status == "rejected"
        assert art.is_locked is False
        with pytest.raises(StateError):
            approval_lifecycle.submit(art.id, EDITOR)

    def test_validate_transition_reports_reason(self, draft):
        result = approval_lifecycle.validate_transition(draft, "approve")
        assert result["valid"] is False
        assert "draft" in result["reason"]
        assert approval_lifecycle.validate_transition(draft, "submit")["valid"] is True


# ═════════════════════════════════════════════════════════════════════════
# APPROVAL CHAIN
# ═════════════════════════════════════════════════════════════════════════

class TestApprovalChain:
    def test_two_step_chain(self, pid, draft):
        approval_lifecycle.configure_approval_steps(
            pid, OWNER, [{"name": "PMO"}, {"name": "Sponsor"}],
        )
        approval_lifecycle.submit(draft.id, EDITOR)

        art = approval_lifecycle.approve(draft.id, APPROVER)
        assert art.approval_status == "submitted"
        progress = approval_lifecycle.approval_progress(draft.id, EDITOR)
        assert [s["complete"] for s in progress["steps"]] == [True, False]

        art = approval_lifecycle.approve(draft.id, APPROVER_2)
        assert art.approval_status == "approved"
        assert art.is_baseline is True

    def test_same_approver_cannot_decide_step_twice(self, pid, draft):
        approval_lifecycle.configure_approval_steps(pid, OWNER, [{"name": "Board", "min_approvals": 2}])
        approval_lifecycle.submit(draft.id, EDITOR)
        approval_lifecycle.approve(draft.id, APPROVER)
        with pytest.raises(ConflictError):
            approval_lifecycle.approve(draft.id, APPROVER)

    def test_typed_steps_override_project_wide(self, pid, draft):
        approval_lifecycle.configure_approval_steps(pid, OWNER, [{"name": "A"}, {"name": "B"}])
        approval_lifecycle.configure_approval_steps(pid, OWNER, [{"name": "Charter"}], artifact_type="charter")
        assert [s.name for s in approval_lifecycle.steps_for(draft)] == ["Charter"]

    def test_only_owner_configures(self, pid):
        with pytest.raises(PermissionDenied):
            approval_lifecycle.configure_approval_steps(pid, EDITOR, [{"name": "X"}])

    def test_min_approvals_must_be_positive(self, pid):
        with pytest.raises(ValidationError):
            approval_lifecycle.configure_approval_steps(pid, OWNER, [{"name": "X", "min_approvals": 0}])


# ═════════════════════════════════════════════════════════════════════════
# ACTIONS & RENAME
# ═════════════════════════════════════════════════════════════════════════

class TestActionsAndRename:
    def test_available_actions(self, draft):
        assert approval_lifecycle.available_actions(draft.id, EDITOR) == ["submit"]
        approval_lifecycle.submit(draft.id, EDITOR)
        assert approval_lifecycle.available_actions(draft.id, EDITOR) == []
        assert approval_lifecycle.available_actions(draft.id, APPROVER) == [
            "approve", "request_changes", "reject_final",
        ]

    def test_rename_draft(self, draft):
        art = approval_lifecycle.rename_title(draft.id, EDITOR, "  Project Charter ")
        assert art.title == "Project Charter"

    def test_rename_locked_refused(self, submitted):
        with pytest.raises(StateError):
            approval_lifecycle.rename_title(submitted.id, EDITOR, "New")

    def test_rename_requires_title(self, draft):
        with pytest.raises(ValidationError):
            approval_lifecycle.rename_title(draft.id, EDITOR, "")


# ═════════════════════════════════════════════════════════════════════════
# APPROVAL INBOX
# ═════════════════════════════════════════════════════════════════════════

def _card_in_review(pid, title="Extend UAT"):
    cr = lanes.create_change_request(pid, EDITOR, {"title": title})
    lanes.patch_delivery_status(cr.id, EDITOR, "analysis")
    return lanes.submit_for_approval(cr.id, EDITOR)


class TestApprovalInbox:
    def test_empty(self, pid):
        inbox = approval_lifecycle.pending_for_approver(APPROVER)
        assert inbox == {"artifacts": [], "change_requests": [], "total": 0}

    def test_lists_submitted_artifacts_and_cards(self, pid, submitted):
        card = _card_in_review(pid)
        lanes.create_change_request(pid, EDITOR, {"title": "Still in intake"})

        inbox = approval_lifecycle.pending_for_approver(APPROVER)
        assert [a["id"] for a in inbox["artifacts"]] == [submitted.id]
        assert inbox["artifacts"][0]["current_step"] is None
        assert [c["id"] for c in inbox["change_requests"]] == [card.id]
        assert inbox["total"] == 2

    def test_non_approver_sees_nothing(self, pid, submitted):
        _card_in_review(pid)
        assert approval_lifecycle.pending_for_approver(VIEWER)["total"] == 0

    def test_inactive_approver_sees_nothing(self, pid, submitted):
        set_approver(pid, OWNER, APPROVER.user_id, is_active=False)
        assert approval_lifecycle.pending_for_approver(APPROVER)["total"] == 0

    def test_own_items_excluded(self, pid, submitted):
        set_approver(pid, OWNER, EDITOR.user_id)
        _card_in_review(pid)
        inbox = approval_lifecycle.pending_for_approver(EDITOR)
        assert inbox["total"] == 0

    def test_decided_items_leave_the_inbox(self, pid, submitted):
        card = _card_in_review(pid)
        approval_lifecycle.approve(submitted.id, APPROVER)
        lanes.record_decision(card.id, APPROVER, "approved")
        assert approval_lifecycle.pending_for_approver(APPROVER_2)["total"] == 0

    def test_step_already_decided_by_actor(self, pid, draft):
        approval_lifecycle.configure_approval_steps(pid, OWNER, [{"name": "Board", "min_approvals": 2}])
        approval_lifecycle.submit(draft.id, EDITOR)
        approval_lifecycle.approve(draft.id, APPROVER)

        assert approval_lifecycle.pending_for_approver(APPROVER)["artifacts"] == []
        pending = approval_lifecycle.pending_for_approver(APPROVER_2)["artifacts"]
        assert [(a["id"], a["current_step"]) for a in pending] == [(draft.id, "Board")]

    def test_scoped_to_approver_projects(self, pid, submitted):
        other = project_service.create_project(OWNER, {"code": "CRM", "name": "CRM"})
        project_service.set_member(other.id, OWNER, EDITOR.user_id, "editor")
        art = version_ledger.create(other.id, "charter", EDITOR, "CRM scope")
        approval_lifecycle.submit(art.id, EDITOR)

        inbox = approval_lifecycle.pending_for_approver(APPROVER)
        assert [a["project_id"] for a in inbox["artifacts"]] == [pid]

    def test_project_filter_requires_membership(self, pid):
        other = project_service.create_project(OWNER, {"code": "CRM", "name": "CRM"})
        with pytest.raises(NotFoundError):
            approval_lifecycle.pending_for_approver(APPROVER, project_id=other.id)
        inbox = approval_lifecycle.pending_for_approver(APPROVER, project_id=pid)
        assert inbox["total"] == 0

    def test_limit(self, pid):
        for title in ("one", "two", "three"):
            _card_in_review(pid, title)
        inbox = approval_lifecycle.pending_for_approver(APPROVER, limit=2)
        assert len(inbox["change_requests"]) == 2
