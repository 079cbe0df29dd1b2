"""
Change Request Lane Engine — delivery-lane kanban with an approval lock.

Lanes: intake → analysis → review → in_progress → implemented → closed

  - Direct moves follow LANE_TRANSITIONS (models/change_request.py);
    ``review`` is entered only through submit_for_approval.
  - A card whose decision is ``submitted`` is locked: no moves, no edits.
  - WIP limits (CHANGE_WIP_LIMITS) are advisory; exceeding one produces
    a warning on the board and on the move result, never a refusal.
  - Drafts in intake/analysis can be soft-deleted.
  - Decisions (approved / rejected / rework) are recorded by approvers
    through record_decision and move the card out of review.

Transaction policy: every public function commits or rolls back through
services/transaction.py.

Usage:
    from docledger.services import change_lane_engine as lanes

    cr = lanes.create_change_request(project_id, actor, {"title": "Extend UAT"})
    lanes.patch_delivery_status(cr.id, actor, "analysis")
    lanes.submit_for_approval(cr.id, actor)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func, select

from docledger.config import DEFAULT_CHANGE_WIP_LIMITS
from docledger.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDenied,
    StateError,
    ValidationError,
)
from docledger.models import db
from docledger.models.artifact import Artifact
from docledger.models.change_request import (
    DECISION_LANE,
    DELIVERY_LANES,
    LANE_TRANSITIONS,
    ChangeRequest,
    canonical_lane,
    canonical_priority,
    normalize_impact,
)
from docledger.models.project import ProjectMember
from docledger.services.audit_recorder import record
from docledger.services.role_gate import WRITE_ROLES, require_approver, require_member, require_role
from docledger.services.transaction import run_in_transaction, run_with_conflict_retry

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({"title", "summary", "priority", "impact_analysis", "artifact_id"})


@dataclass
class LaneMove:
    """Outcome of a lane move."""

    change: ChangeRequest
    from_lane: str
    to_lane: str
    moved: bool
    wip_warning: dict | None = field(default=None)

    def to_dict(self):
        return {
            "item": self.change.to_dict(),
            "from_lane": self.from_lane,
            "to_lane": self.to_lane,
            "moved": self.moved,
            "wip_warning": self.wip_warning,
        }


# ── Helpers ──────────────────────────────────────────────────────────────────


def get_change_request(change_id: int) -> ChangeRequest:
    if change_id is None:
        raise ValidationError("change_id is required")
    cr = db.session.get(ChangeRequest, change_id)
    if cr is None or cr.is_deleted:
        raise NotFoundError("ChangeRequest", change_id)
    return cr


def wip_limits() -> dict:
    return current_app.config.get("CHANGE_WIP_LIMITS") or DEFAULT_CHANGE_WIP_LIMITS


def _lane_count(project_id: int, lane: str) -> int:
    return db.session.execute(
        select(func.count(ChangeRequest.id)).where(
            ChangeRequest.project_id == project_id,
            ChangeRequest.delivery_lane == lane,
            ChangeRequest.deleted_at.is_(None),
        )
    ).scalar() or 0


def wip_warning(project_id: int, lane: str) -> dict | None:
    """Advisory warning when ``lane`` holds more cards than its WIP limit."""
    limit = wip_limits().get(lane)
    if not limit:
        return None
    count = _lane_count(project_id, lane)
    if count <= limit:
        return None
    return {
        "lane": lane,
        "count": count,
        "limit": limit,
        "message": f"WIP limit exceeded in {lane}: {count}/{limit}",
    }


def _validate_artifact_link(project_id: int, artifact_id):
    if artifact_id in (None, ""):
        return None
    try:
        artifact_id = int(artifact_id)
    except (TypeError, ValueError):
        raise ValidationError("artifact_id must be an integer", details={"artifact_id": artifact_id}) from None
    art = db.session.get(Artifact, artifact_id)
    if art is None or art.is_deleted or art.project_id != project_id:
        raise NotFoundError("Artifact", artifact_id, project_id=project_id)
    return artifact_id


def _requester_name(project_id: int, actor, explicit) -> str | None:
    name = str(explicit or "").strip()
    if name:
        return name[:150]
    display = db.session.execute(
        select(ProjectMember.display_name).where(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == actor.user_id,
        )
    ).scalar_one_or_none()
    return display or actor.email or actor.user_id


def _audit(cr: ChangeRequest, actor, action: str, *, from_status=None, to_status=None, meta=None):
    record(
        action=action,
        actor=actor,
        project_id=cr.project_id,
        change_id=cr.id,
        from_status=from_status,
        to_status=to_status,
        meta=meta,
    )


# ── create / update ──────────────────────────────────────────────────────────


def create_change_request(project_id: int, actor, data: dict) -> ChangeRequest:
    """Create a card in ``intake`` with decision ``draft``.

    Args:
        data: title (required), summary, priority, impact_analysis,
              artifact_id, requester_name.
    """
    if project_id is None:
        raise ValidationError("project_id is required")
    data = data or {}
    title = str(data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    if len(title) > 255:
        raise ValidationError("title must be at most 255 characters", details={"title": "too long"})
    priority = canonical_priority(data.get("priority"))
    impact = normalize_impact(data.get("impact_analysis"))
    require_role(project_id, actor.user_id, WRITE_ROLES, action="create change request")

    def _attempt():
        artifact_id = _validate_artifact_link(project_id, data.get("artifact_id"))
        max_seq = db.session.execute(
            select(func.max(ChangeRequest.seq)).where(ChangeRequest.project_id == project_id)
        ).scalar()
        cr = ChangeRequest(
            project_id=project_id,
            artifact_id=artifact_id,
            seq=(max_seq or 0) + 1,
            title=title,
            summary=(str(data.get("summary") or "").strip() or None),
            priority=priority,
            impact_analysis=impact,
            delivery_lane="intake",
            decision_status="draft",
            requester_id=actor.user_id,
            requester_name=_requester_name(project_id, actor, data.get("requester_name")),
        )
        db.session.add(cr)
        db.session.flush()
        _audit(cr, actor, "change_create", to_status="draft",
               meta={"lane": "intake", "priority": priority})
        return cr

    cr = run_with_conflict_retry(
        _attempt, resource="ChangeRequest", field="seq", key=f"project={project_id}",
    )
    logger.info("Change request created: %s (id=%s)", cr.code, cr.id,
                extra={"project_id": project_id, "change_id": cr.id})
    return cr


def update_change_request(change_id: int, actor, data: dict) -> ChangeRequest:
    """Edit content fields of an unlocked card."""
    data = data or {}
    unknown = set(data) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Unknown field(s): {', '.join(sorted(unknown))}",
            details={k: "not editable" for k in sorted(unknown)},
        )
    if not data:
        raise ValidationError("Nothing to update")

    def _apply():
        cr = get_change_request(change_id)
        require_role(cr.project_id, actor.user_id, WRITE_ROLES, action="edit change request")
        if cr.is_locked:
            raise StateError("ChangeRequest", cr.id, "update", cr.decision_status,
                             "card is locked while awaiting a decision")
        changed = []
        if "title" in data:
            title = str(data["title"] or "").strip()
            if not title:
                raise ValidationError("title is required", details={"title": "required"})
            cr.title = title[:255]
            changed.append("title")
        if "summary" in data:
            cr.summary = str(data["summary"] or "").strip() or None
            changed.append("summary")
        if "priority" in data:
            cr.priority = canonical_priority(data["priority"])
            changed.append("priority")
        if "impact_analysis" in data:
            cr.impact_analysis = normalize_impact(data["impact_analysis"])
            changed.append("impact_analysis")
        if "artifact_id" in data:
            cr.artifact_id = _validate_artifact_link(cr.project_id, data["artifact_id"])
            changed.append("artifact_id")
        db.session.flush()
        _audit(cr, actor, "change_update", from_status=cr.decision_status,
               to_status=cr.decision_status, meta={"fields": changed})
        return cr

    return run_in_transaction(_apply)


# ── Lane moves ───────────────────────────────────────────────────────────────


def validate_lane_move(cr: ChangeRequest, target_lane: str) -> dict:
    """
    Validate a direct move against the allow-table and the approval lock.

    Returns:
        {"valid": bool, "from": str, "to": str, "reason": str|None}
    """
    result = {"valid": False, "from": cr.delivery_lane, "to": target_lane, "reason": None}
    if cr.is_locked:
        result["reason"] = "card is locked while awaiting a decision"
    elif cr.decision_status == "rejected":
        result["reason"] = "rejected change requests cannot move"
    elif target_lane not in LANE_TRANSITIONS.get(cr.delivery_lane, ()):
        if target_lane == "review":
            result["reason"] = "use submit for approval to move a card into review"
        else:
            result["reason"] = f"cannot move from '{cr.delivery_lane}' to '{target_lane}'"
    else:
        result["valid"] = True
    return result


def patch_delivery_status(change_id: int, actor, target_lane) -> LaneMove:
    """Move a card to ``target_lane`` if the allow-table permits it.

    Raises:
        ValidationError: unknown lane.
        StateError: locked card or illegal move; the lane is left unchanged.
    """
    lane = canonical_lane(target_lane)

    def _apply():
        cr = get_change_request(change_id)
        require_role(cr.project_id, actor.user_id, WRITE_ROLES, action="move change request")
        validation = validate_lane_move(cr, lane)
        if not validation["valid"]:
            raise StateError("ChangeRequest", cr.id, "move", cr.delivery_lane, validation["reason"])

        from_lane = cr.delivery_lane
        if from_lane == lane:
            return LaneMove(cr, from_lane, lane, moved=False)

        cr.delivery_lane = lane
        cr.updated_at = datetime.now(timezone.utc)
        db.session.flush()
        warning = wip_warning(cr.project_id, lane)
        _audit(cr, actor, "change_move", from_status=from_lane, to_status=lane,
               meta={"decision_status": cr.decision_status, "wip_warning": warning})
        return LaneMove(cr, from_lane, lane, moved=True, wip_warning=warning)

    move = run_in_transaction(_apply)
    if move.moved:
        logger.info("Change request moved: id=%s %s → %s", change_id, move.from_lane, move.to_lane,
                    extra={"project_id": move.change.project_id, "change_id": change_id})
    if move.wip_warning:
        logger.warning("%s (project=%s)", move.wip_warning["message"], move.change.project_id,
                       extra={"project_id": move.change.project_id, "change_id": change_id})
    return move


def submit_for_approval(change_id: int, actor) -> ChangeRequest:
    """analysis + draft/rework → review + submitted (locks the card)."""
    def _apply():
        cr = get_change_request(change_id)
        require_role(cr.project_id, actor.user_id, WRITE_ROLES, action="submit change request")
        if cr.delivery_lane != "analysis" or cr.decision_status not in ("draft", "rework"):
            raise StateError(
                "ChangeRequest", cr.id, "submit", f"{cr.delivery_lane}/{cr.decision_status}",
                "only draft cards in analysis can be submitted for approval",
            )
        from_status = cr.decision_status
        now = datetime.now(timezone.utc)
        cr.delivery_lane = "review"
        cr.decision_status = "submitted"
        cr.submitted_by = actor.user_id
        cr.submitted_at = now
        cr.decision_by = None
        cr.decision_at = None
        cr.decision_rationale = None
        cr.updated_at = now
        db.session.flush()
        _audit(cr, actor, "change_submit", from_status=from_status, to_status="submitted",
               meta={"from_lane": "analysis", "to_lane": "review"})
        return cr

    cr = run_in_transaction(_apply)
    logger.info("Change request submitted: id=%s", cr.id,
                extra={"project_id": cr.project_id, "change_id": cr.id})
    return cr


def record_decision(change_id: int, actor, decision: str, rationale: str | None = None) -> ChangeRequest:
    """Record an approver's decision on a submitted card.

    approved → in_progress; rejected → analysis (final); rework → analysis.

    Raises:
        PermissionDenied: not an approver, or the requester deciding their own card.
        ConflictError: a decision was already recorded.
        StateError: the card was never submitted.
    """
    decision = str(decision or "").strip().lower()
    if decision not in DECISION_LANE:
        raise ValidationError(
            f"Unknown decision: {decision!r}",
            details={"decision": decision, "allowed": sorted(DECISION_LANE)},
        )
    rationale = str(rationale or "").strip() or None
    if decision in ("rejected", "rework") and not rationale:
        raise ValidationError("rationale is required", details={"rationale": "required"})

    def _apply():
        cr = get_change_request(change_id)
        require_approver(cr.project_id, actor.user_id, action="decide change request")
        if cr.requester_id == actor.user_id:
            raise PermissionDenied(actor.user_id, "decide change request",
                                   "requesters cannot decide on their own change")
        if cr.decision_status in ("approved", "rejected"):
            raise ConflictError(
                "ChangeRequest", "decision_status", cr.decision_status,
                reason=f"Decision already recorded: {cr.decision_status}",
            )
        if cr.delivery_lane != "review" or cr.decision_status != "submitted":
            raise StateError("ChangeRequest", cr.id, "decide",
                             f"{cr.delivery_lane}/{cr.decision_status}",
                             "only cards submitted for approval can be decided")

        now = datetime.now(timezone.utc)
        cr.decision_status = decision
        cr.delivery_lane = DECISION_LANE[decision]
        cr.decision_by = actor.user_id
        cr.decision_at = now
        cr.decision_rationale = rationale
        cr.updated_at = now
        db.session.flush()
        _audit(cr, actor, "change_decision", from_status="submitted", to_status=decision,
               meta={"from_lane": "review", "to_lane": cr.delivery_lane, "rationale": rationale})
        return cr

    cr = run_in_transaction(_apply)
    logger.info("Change request decided: id=%s %s", cr.id, cr.decision_status,
                extra={"project_id": cr.project_id, "change_id": cr.id})
    return cr


def delete_draft(change_id: int, actor) -> ChangeRequest:
    """Soft-delete a draft card in intake or analysis."""
    def _apply():
        cr = get_change_request(change_id)
        require_role(cr.project_id, actor.user_id, WRITE_ROLES, action="delete change request")
        if not cr.is_deletable:
            raise StateError(
                "ChangeRequest", cr.id, "delete", f"{cr.delivery_lane}/{cr.decision_status}",
                "only draft cards in intake or analysis can be deleted",
            )
        cr.soft_delete()
        db.session.flush()
        _audit(cr, actor, "change_delete", from_status=cr.decision_status,
               to_status=cr.decision_status, meta={"lane": cr.delivery_lane})
        return cr

    cr = run_in_transaction(_apply)
    logger.info("Change request deleted: id=%s", cr.id,
                extra={"project_id": cr.project_id, "change_id": cr.id})
    return cr


# ── Board ────────────────────────────────────────────────────────────────────


_PRIORITY_RANK = {"Critical": 0, "High": 1, "Medium": 2, "Low": 3}


def compute_board(project_id: int, actor) -> dict:
    """Cards grouped by lane in pipeline order, with WIP warnings.

    Returns:
        dict with 'lanes' (ordered list) and 'summary' keys.
    """
    require_member(project_id, actor.user_id)
    items = list(db.session.execute(
        ChangeRequest.select_active()
        .where(ChangeRequest.project_id == project_id)
        .order_by(ChangeRequest.updated_at.desc(), ChangeRequest.id)
    ).scalars())
    items.sort(key=lambda c: _PRIORITY_RANK.get(c.priority, 9))

    limits = wip_limits()
    columns = {lane: [] for lane in DELIVERY_LANES}
    for cr in items:
        columns.setdefault(cr.delivery_lane, []).append(cr.to_dict())

    lanes = []
    warnings = []
    for lane in DELIVERY_LANES:
        count = len(columns[lane])
        limit = limits.get(lane)
        over = bool(limit) and count > limit
        lanes.append({
            "lane": lane,
            "items": columns[lane],
            "count": count,
            "wip_limit": limit,
            "over_limit": over,
        })
        if over:
            warnings.append({"lane": lane, "count": count, "limit": limit})

    by_decision = {}
    for cr in items:
        by_decision[cr.decision_status] = by_decision.get(cr.decision_status, 0) + 1

    return {
        "project_id": project_id,
        "lanes": lanes,
        "summary": {
            "total_items": len(items),
            "awaiting_decision": by_decision.get("submitted", 0),
            "by_decision": by_decision,
            "wip_warnings": warnings,
        },
    }
