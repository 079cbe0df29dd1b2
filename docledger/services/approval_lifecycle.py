"""
Approval State Machine — draft / submitted / approved / rejected / changes_requested.

Manages artifact approval transitions with:
  - Transition validation (APPROVAL_TRANSITIONS)
  - Role checks through the role gate (author / owner / editor / approver)
  - Self-approval refusal on every transition out of ``submitted``
  - Optional multi-step approval chains (ApprovalStep / ApprovalDecision)
  - Best-effort audit trail

4 transitions:
  submit, approve, request_changes, reject_final

``pending_for_approver`` lists what an approver still has to decide,
artifacts and change requests alike.

``is_locked`` is derived from ``approval_status`` (models/artifact.py), so
entering draft / changes_requested / rejected unlocks by construction.

Usage:
    from docledger.services.approval_lifecycle import submit, approve

    submit(artifact_id=12, actor=author)
    approve(artifact_id=12, actor=approver)
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import delete, func, or_, select, update

from docledger.core.exceptions import (
    ConflictError,
    PermissionDenied,
    StateError,
    ValidationError,
)
from docledger.models import db
from docledger.models.artifact import (
    APPROVAL_TRANSITIONS,
    ApprovalDecision,
    ApprovalStep,
    Artifact,
    canonical_artifact_type,
)
from docledger.models.change_request import ChangeRequest
from docledger.services.audit_recorder import record
from docledger.services.role_gate import (
    WRITE_ROLES,
    get_role_gate,
    require_approver,
    require_member,
    require_role,
)
from docledger.services.transaction import run_in_transaction
from docledger.services.version_ledger import get_artifact

logger = logging.getLogger(__name__)

# Audit action name per transition
_AUDIT_ACTION = {
    "submit": "submit_for_approval",
    "approve": "approve",
    "request_changes": "request_changes",
    "reject_final": "reject",
}


def validate_transition(artifact: Artifact, action: str) -> dict:
    """
    Validate whether an action is valid for the artifact's current state.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    rule = APPROVAL_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": artifact.approval_status, "to": None,
                "reason": f"Unknown action: {action}"}

    if not artifact.is_current or artifact.is_deleted:
        return {"valid": False, "from": artifact.approval_status, "to": rule["to"],
                "reason": "only the current version can change approval state"}

    if artifact.approval_status not in rule["from"]:
        return {"valid": False, "from": artifact.approval_status, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{artifact.approval_status}'"}

    return {"valid": True, "from": artifact.approval_status, "to": rule["to"], "reason": None}


def _ensure_valid(art: Artifact, action: str) -> dict:
    validation = validate_transition(art, action)
    if not validation["valid"]:
        raise StateError("Artifact", art.id, action, art.approval_status, validation["reason"])
    return validation


def _require_decider(art: Artifact, actor, action: str) -> None:
    """Approver, and not the author."""
    require_approver(art.project_id, actor.user_id, action=action)
    if art.author_id == actor.user_id:
        raise PermissionDenied(actor.user_id, action, "authors cannot decide on their own artifact")


def _audit(art: Artifact, actor, action: str, from_status: str, meta: dict | None = None):
    record(
        action=_AUDIT_ACTION.get(action, action),
        actor=actor,
        project_id=art.project_id,
        artifact_id=art.id,
        from_status=from_status,
        to_status=art.approval_status,
        from_is_current=art.is_current,
        to_is_current=art.is_current,
        meta={"version": art.version, **(meta or {})},
    )


# ── Approval chain ───────────────────────────────────────────────────────────


def steps_for(art: Artifact) -> list[ApprovalStep]:
    """Active approval steps that apply to the artifact, in order.

    Steps bound to the artifact's type win over project-wide ones.
    """
    rows = list(db.session.execute(
        select(ApprovalStep).where(
            ApprovalStep.project_id == art.project_id,
            ApprovalStep.is_active.is_(True),
            or_(ApprovalStep.artifact_type == art.type, ApprovalStep.artifact_type.is_(None)),
        ).order_by(ApprovalStep.step_order, ApprovalStep.id)
    ).scalars())
    typed = [s for s in rows if s.artifact_type == art.type]
    return typed or rows


def _approvals_per_step(artifact_id: int) -> dict[int, int]:
    rows = db.session.execute(
        select(ApprovalDecision.step_id, func.count(ApprovalDecision.id))
        .where(
            ApprovalDecision.artifact_id == artifact_id,
            ApprovalDecision.decision == "approved",
        )
        .group_by(ApprovalDecision.step_id)
    ).all()
    return {step_id: count for step_id, count in rows}


def _current_step(art: Artifact, steps: list[ApprovalStep]) -> ApprovalStep | None:
    counts = _approvals_per_step(art.id)
    for step in steps:
        if counts.get(step.id, 0) < step.min_approvals:
            return step
    return None


def _has_decided(artifact_id: int, step_id: int, user_id: str) -> bool:
    return db.session.execute(
        select(ApprovalDecision.id).where(
            ApprovalDecision.artifact_id == artifact_id,
            ApprovalDecision.step_id == step_id,
            ApprovalDecision.approver_id == user_id,
        )
    ).first() is not None


def approval_progress(artifact_id: int, actor) -> dict:
    """Per-step approval counts for the artifact's current submission."""
    art = get_artifact(artifact_id)
    require_member(art.project_id, actor.user_id)
    steps = steps_for(art)
    counts = _approvals_per_step(art.id)
    current = _current_step(art, steps) if art.approval_status == "submitted" else None
    decisions = db.session.execute(
        select(ApprovalDecision)
        .where(ApprovalDecision.artifact_id == art.id)
        .order_by(ApprovalDecision.created_at, ApprovalDecision.id)
    ).scalars()
    return {
        "artifact_id": art.id,
        "approval_status": art.approval_status,
        "steps": [
            {**s.to_dict(), "approvals": counts.get(s.id, 0),
             "complete": counts.get(s.id, 0) >= s.min_approvals}
            for s in steps
        ],
        "current_step_id": current.id if current else None,
        "decisions": [d.to_dict() for d in decisions],
    }


def configure_approval_steps(project_id: int, actor, steps: list, artifact_type=None) -> list[ApprovalStep]:
    """Replace the project's approval chain (optionally for one artifact type).

    ``steps`` is an ordered list of ``{"name": str, "min_approvals": int}``.
    An empty list removes the chain (single-approver flow).
    """
    require_role(project_id, actor.user_id, {"owner"}, action="configure approval steps")
    a_type = canonical_artifact_type(artifact_type).value if artifact_type else None
    if not isinstance(steps, list):
        raise ValidationError("steps must be a list")

    cleaned = []
    for idx, raw in enumerate(steps, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"steps[{idx - 1}] must be an object")
        name = str(raw.get("name") or "").strip() or f"Step {idx}"
        try:
            min_approvals = int(raw.get("min_approvals", 1))
        except (TypeError, ValueError):
            raise ValidationError(f"steps[{idx - 1}].min_approvals must be an integer") from None
        if min_approvals < 1:
            raise ValidationError(f"steps[{idx - 1}].min_approvals must be at least 1")
        cleaned.append((idx, name, min_approvals))

    def _apply():
        stmt = delete(ApprovalStep).where(ApprovalStep.project_id == project_id)
        if a_type is None:
            stmt = stmt.where(ApprovalStep.artifact_type.is_(None))
        else:
            stmt = stmt.where(ApprovalStep.artifact_type == a_type)
        db.session.execute(stmt)
        created = []
        for order, name, min_approvals in cleaned:
            step = ApprovalStep(
                project_id=project_id,
                artifact_type=a_type,
                step_order=order,
                name=name,
                min_approvals=min_approvals,
            )
            db.session.add(step)
            created.append(step)
        db.session.flush()
        return created

    result = run_in_transaction(_apply)
    logger.info("Approval chain configured: project=%s type=%s steps=%d",
                project_id, a_type or "*", len(result), extra={"project_id": project_id})
    return result


def list_approval_steps(project_id: int, actor) -> list[ApprovalStep]:
    require_member(project_id, actor.user_id)
    return list(db.session.execute(
        select(ApprovalStep)
        .where(ApprovalStep.project_id == project_id)
        .order_by(ApprovalStep.artifact_type, ApprovalStep.step_order)
    ).scalars())


# ── Transitions ──────────────────────────────────────────────────────────────


def submit(artifact_id: int, actor) -> Artifact:
    """draft / changes_requested → submitted (locks the artifact).

    Allowed for the author, or an owner/editor of the project.
    """
    def _apply():
        art = get_artifact(artifact_id)
        role = require_member(art.project_id, actor.user_id)
        if art.author_id != actor.user_id and role not in WRITE_ROLES:
            raise PermissionDenied(actor.user_id, "submit", "only the author or an owner/editor can submit")
        validation = _ensure_valid(art, "submit")

        now = datetime.now(timezone.utc)
        art.approval_status = validation["to"]
        art.submitted_by = actor.user_id
        art.submitted_at = now
        art.rejected_by = None
        art.rejected_at = None
        art.rejection_reason = None
        art.approved_by = None
        art.approved_at = None
        # New submission starts the approval chain from scratch
        db.session.execute(
            delete(ApprovalDecision).where(ApprovalDecision.artifact_id == art.id)
        )
        db.session.flush()
        _audit(art, actor, "submit", validation["from"])
        return art

    art = run_in_transaction(_apply)
    logger.info("Artifact submitted: id=%s v%d", art.id, art.version,
                extra={"project_id": art.project_id, "artifact_id": art.id})
    return art


def _finalize_approval(art: Artifact, actor, now) -> None:
    art.approval_status = "approved"
    art.approved_by = actor.user_id
    art.approved_at = now
    # One baseline per chain: the newest approved version
    db.session.execute(
        update(Artifact)
        .where(
            Artifact.root_id == (art.root_id or art.id),
            Artifact.id != art.id,
            Artifact.is_baseline.is_(True),
        )
        .values(is_baseline=False)
        .execution_options(synchronize_session="fetch")
    )
    art.is_baseline = True
    db.session.flush()


def approve(artifact_id: int, actor) -> Artifact:
    """submitted → approved; the approved version becomes the chain's baseline.

    With an approval chain configured, records this approver's decision on
    the current step and only finalizes once every step is complete; the
    artifact stays ``submitted`` until then.

    Raises:
        PermissionDenied: not an approver, or the author (self-approval).
        StateError: not current / not submitted.
        ConflictError: the approver already decided the current step.
    """
    def _apply():
        art = get_artifact(artifact_id)
        _require_decider(art, actor, "approve")
        validation = _ensure_valid(art, "approve")
        now = datetime.now(timezone.utc)

        steps = steps_for(art)
        if steps:
            step = _current_step(art, steps)
            if step is not None:
                if _has_decided(art.id, step.id, actor.user_id):
                    raise ConflictError(
                        "ApprovalDecision", "approver_id", actor.user_id,
                        reason=f"{actor.user_id} already decided step '{step.name}'",
                    )
                db.session.add(ApprovalDecision(
                    artifact_id=art.id,
                    step_id=step.id,
                    approver_id=actor.user_id,
                    decision="approved",
                ))
                db.session.flush()
                if _current_step(art, steps) is not None:
                    record(
                        action="approval_step_decision",
                        actor=actor,
                        project_id=art.project_id,
                        artifact_id=art.id,
                        from_status="submitted",
                        to_status="submitted",
                        from_is_current=True,
                        to_is_current=True,
                        meta={"step_id": step.id, "step": step.name, "decision": "approved"},
                    )
                    return art

        _finalize_approval(art, actor, now)
        _audit(art, actor, "approve", validation["from"], {"is_baseline": True})
        return art

    art = run_in_transaction(_apply)
    logger.info("Artifact approval recorded: id=%s status=%s", art.id, art.approval_status,
                extra={"project_id": art.project_id, "artifact_id": art.id})
    return art


def _record_step_rejection(art: Artifact, actor, reason: str) -> None:
    steps = steps_for(art)
    if not steps:
        return
    step = _current_step(art, steps)
    if step is None or _has_decided(art.id, step.id, actor.user_id):
        return
    db.session.add(ApprovalDecision(
        artifact_id=art.id,
        step_id=step.id,
        approver_id=actor.user_id,
        decision="rejected",
        reason=reason,
    ))


def _clean_reason(reason, field="reason") -> str:
    text = str(reason or "").strip()
    if not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return text


def request_changes(artifact_id: int, actor, reason: str) -> Artifact:
    """submitted → changes_requested (unlocks for the author to rework)."""
    reason = _clean_reason(reason)

    def _apply():
        art = get_artifact(artifact_id)
        _require_decider(art, actor, "request_changes")
        validation = _ensure_valid(art, "request_changes")
        _record_step_rejection(art, actor, reason)
        art.approval_status = validation["to"]
        art.rejected_by = actor.user_id
        art.rejected_at = datetime.now(timezone.utc)
        art.rejection_reason = reason
        db.session.flush()
        _audit(art, actor, "request_changes", validation["from"], {"reason": reason})
        return art

    art = run_in_transaction(_apply)
    logger.info("Changes requested: id=%s", art.id,
                extra={"project_id": art.project_id, "artifact_id": art.id})
    return art


def reject_final(artifact_id: int, actor, reason: str, confirmation_token: str) -> Artifact:
    """submitted → rejected (terminal for this version; revisable via create_revision).

    ``confirmation_token`` must equal REJECT_CONFIRMATION_TOKEN exactly.
    """
    expected = current_app.config.get("REJECT_CONFIRMATION_TOKEN", "REJECT")
    if confirmation_token != expected:
        raise ValidationError(
            f"Type {expected!r} to confirm the rejection",
            details={"confirmation_token": "mismatch"},
        )
    reason = _clean_reason(reason)

    def _apply():
        art = get_artifact(artifact_id)
        _require_decider(art, actor, "reject_final")
        validation = _ensure_valid(art, "reject_final")
        _record_step_rejection(art, actor, reason)
        art.approval_status = validation["to"]
        art.rejected_by = actor.user_id
        art.rejected_at = datetime.now(timezone.utc)
        art.rejection_reason = reason
        db.session.flush()
        _audit(art, actor, "reject_final", validation["from"], {"reason": reason})
        return art

    art = run_in_transaction(_apply)
    logger.info("Artifact rejected: id=%s", art.id,
                extra={"project_id": art.project_id, "artifact_id": art.id})
    return art


def available_actions(artifact_id: int, actor) -> list[str]:
    """Transitions the actor could perform on the artifact right now."""
    art = get_artifact(artifact_id)
    gate = get_role_gate()
    role = gate.resolve_role(art.project_id, actor.user_id)
    is_approver = gate.is_approver(art.project_id, actor.user_id)

    actions = []
    for action in APPROVAL_TRANSITIONS:
        if not validate_transition(art, action)["valid"]:
            continue
        if action == "submit":
            if art.author_id == actor.user_id or role in WRITE_ROLES:
                actions.append(action)
            continue
        if not is_approver or art.author_id == actor.user_id:
            continue
        if action == "approve":
            steps = steps_for(art)
            step = _current_step(art, steps) if steps else None
            if step is not None and _has_decided(art.id, step.id, actor.user_id):
                continue
        actions.append(action)
    return actions


def rename_title(artifact_id: int, actor, title: str) -> Artifact:
    """Rename an unlocked artifact (author or owner/editor)."""
    title = str(title or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    if len(title) > 255:
        raise ValidationError("title must be at most 255 characters", details={"title": "too long"})

    def _apply():
        art = get_artifact(artifact_id)
        role = require_member(art.project_id, actor.user_id)
        if art.author_id != actor.user_id and role not in WRITE_ROLES:
            raise PermissionDenied(actor.user_id, "rename", "only the author or an owner/editor can rename")
        if art.is_locked:
            raise StateError("Artifact", art.id, "rename", art.approval_status, "artifact is locked")
        before = art.title
        if before == title:
            return art
        art.title = title
        db.session.flush()
        record(
            action="rename_title",
            actor=actor,
            project_id=art.project_id,
            artifact_id=art.id,
            from_status=art.approval_status,
            to_status=art.approval_status,
            from_is_current=art.is_current,
            to_is_current=art.is_current,
            meta={"before": before, "after": title},
        )
        return art

    return run_in_transaction(_apply)


# ── Approval inbox ───────────────────────────────────────────────────────────


def pending_for_approver(actor, project_id: int | None = None, limit: int = 50) -> dict:
    """Items waiting on ``actor``'s decision across their approver projects.

    Artifacts in ``submitted`` the actor did not author (and, with an
    approval chain, has not yet decided on at the current step), plus
    change requests in review awaiting a decision that the actor did not
    request. Oldest submission first.
    """
    project_ids = get_role_gate().approver_projects(actor.user_id)
    if project_id is not None:
        require_member(project_id, actor.user_id)
        project_ids = [p for p in project_ids if p == project_id]
    if not project_ids:
        return {"artifacts": [], "change_requests": [], "total": 0}

    artifacts = []
    rows = db.session.execute(
        Artifact.select_active()
        .where(
            Artifact.project_id.in_(project_ids),
            Artifact.approval_status == "submitted",
            Artifact.author_id != actor.user_id,
        )
        .order_by(Artifact.submitted_at, Artifact.id)
    ).scalars()
    for art in rows:
        steps = steps_for(art)
        step = _current_step(art, steps) if steps else None
        if step is not None and _has_decided(art.id, step.id, actor.user_id):
            continue
        item = art.to_dict(include_content=False)
        item["current_step"] = step.name if step is not None else None
        artifacts.append(item)
        if len(artifacts) >= limit:
            break

    changes = db.session.execute(
        ChangeRequest.select_active()
        .where(
            ChangeRequest.project_id.in_(project_ids),
            ChangeRequest.delivery_lane == "review",
            ChangeRequest.decision_status == "submitted",
            ChangeRequest.requester_id != actor.user_id,
        )
        .order_by(ChangeRequest.submitted_at, ChangeRequest.id)
        .limit(limit)
    ).scalars()
    change_items = [cr.to_dict() for cr in changes]

    return {
        "artifacts": artifacts,
        "change_requests": change_items,
        "total": len(artifacts) + len(change_items),
    }
