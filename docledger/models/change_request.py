"""
DocLedger — Change request domain model.

A change request is a kanban card that moves through delivery lanes
while carrying its own approval sub-state (``decision_status``).

Lanes, in pipeline order:
    intake → analysis → review → in_progress → implemented → closed

``review`` is only reachable through submit-for-approval; while the
decision is ``submitted`` the card is locked in place.
"""

import math
from datetime import datetime, timezone

from docledger.core.exceptions import ValidationError
from docledger.models import db
from docledger.models.soft_delete import SoftDeleteMixin

DELIVERY_LANES = ("intake", "analysis", "review", "in_progress", "implemented", "closed")

DECISION_STATUSES = ("draft", "submitted", "approved", "rejected", "rework")

PRIORITIES = ("Low", "Medium", "High", "Critical")

# Allowed direct moves (drag or explicit). ``review`` never appears as a
# target: cards enter it only via submit-for-approval.
LANE_TRANSITIONS = {
    "intake": frozenset({"intake", "analysis"}),
    "analysis": frozenset({"analysis", "intake"}),
    "review": frozenset(),
    "in_progress": frozenset({"in_progress", "implemented"}),
    "implemented": frozenset({"implemented", "closed"}),
    "closed": frozenset({"closed"}),
}

DELETABLE_LANES = frozenset({"intake", "analysis"})

# Decisions recorded by the approval action and the lane each one lands in
DECISION_LANE = {
    "approved": "in_progress",
    "rejected": "analysis",
    "rework": "analysis",
}

# Request-body keys a lane move must never carry
GOVERNANCE_FIELDS = frozenset({
    "decision_status",
    "decision_by",
    "decision_at",
    "decision_rationale",
    "approved_by",
    "approved_at",
    "status",
})

_LANE_ALIASES = {
    "in-progress": "in_progress",
    "in progress": "in_progress",
    "inprogress": "in_progress",
}


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


def canonical_lane(value) -> str:
    """Normalize a lane name; raise ValidationError for unknown lanes."""
    raw = str(value or "").strip().lower()
    if not raw:
        raise ValidationError("delivery_status is required", details={"delivery_status": "required"})
    lane = _LANE_ALIASES.get(raw, raw)
    if lane not in DELIVERY_LANES:
        raise ValidationError(
            f"Unknown delivery lane: {value!r}",
            details={"delivery_status": value, "allowed": list(DELIVERY_LANES)},
        )
    return lane


def canonical_priority(value) -> str:
    raw = str(value or "").strip()
    if not raw:
        return "Medium"
    for p in PRIORITIES:
        if p.lower() == raw.lower():
            return p
    raise ValidationError(
        f"Unknown priority: {value!r}",
        details={"priority": value, "allowed": list(PRIORITIES)},
    )


def normalize_impact(raw) -> dict:
    """Coerce an impact analysis payload into ``{days, cost, risk, highlights}``."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError("impact_analysis must be an object")

    def _number(key):
        val = raw.get(key, 0)
        if val in (None, ""):
            return 0
        try:
            num = float(val)
        except (TypeError, ValueError):
            raise ValidationError(
                f"impact_analysis.{key} must be a number", details={key: val},
            ) from None
        if not math.isfinite(num):
            raise ValidationError(f"impact_analysis.{key} must be a finite number", details={key: val})
        if num < 0:
            raise ValidationError(f"impact_analysis.{key} must not be negative", details={key: val})
        return int(num) if num.is_integer() else num

    highlights = raw.get("highlights") or []
    if isinstance(highlights, str):
        highlights = [h.strip() for h in highlights.splitlines() if h.strip()]
    if not isinstance(highlights, list):
        raise ValidationError("impact_analysis.highlights must be a list")

    return {
        "days": _number("days"),
        "cost": _number("cost"),
        "risk": str(raw.get("risk") or "None identified").strip(),
        "highlights": [str(h) for h in highlights],
    }


class ChangeRequest(SoftDeleteMixin, db.Model):
    """A unit of work moving through the delivery pipeline."""

    __tablename__ = "change_requests"
    __table_args__ = (
        db.UniqueConstraint("project_id", "seq", name="uq_change_requests_project_seq"),
        db.CheckConstraint(
            "decision_status <> 'submitted' OR delivery_lane = 'review'",
            name="ck_change_requests_submitted_in_review",
        ),
        db.Index("ix_change_requests_project_lane", "project_id", "delivery_lane"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    artifact_id = db.Column(
        db.Integer, db.ForeignKey("artifacts.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    seq = db.Column(db.Integer, nullable=False, comment="Per-project number, shown as CR-<seq>")

    # ── Content ──
    title = db.Column(db.String(255), nullable=False)
    summary = db.Column(db.Text, nullable=True)
    priority = db.Column(
        db.String(20), nullable=False, default="Medium",
        comment="Low | Medium | High | Critical",
    )
    impact_analysis = db.Column(
        db.JSON, nullable=False, default=dict,
        comment="{days, cost, risk, highlights}",
    )

    # ── Workflow ──
    delivery_lane = db.Column(
        db.String(20), nullable=False, default="intake",
        comment="intake | analysis | review | in_progress | implemented | closed",
    )
    decision_status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | submitted | approved | rejected | rework",
    )
    submitted_by = db.Column(db.String(64), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decision_by = db.Column(db.String(64), nullable=True)
    decision_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decision_rationale = db.Column(db.Text, nullable=True)

    # ── Audit ──
    requester_id = db.Column(db.String(64), nullable=False)
    requester_name = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    @property
    def code(self) -> str:
        return f"CR-{self.seq:03d}" if self.seq is not None else "CR-?"

    @property
    def is_locked(self) -> bool:
        return self.decision_status == "submitted"

    @property
    def is_deletable(self) -> bool:
        return self.delivery_lane in DELETABLE_LANES and self.decision_status == "draft"

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "project_id": self.project_id,
            "artifact_id": self.artifact_id,
            "title": self.title,
            "summary": self.summary,
            "priority": self.priority,
            "impact_analysis": self.impact_analysis or {},
            "delivery_lane": self.delivery_lane,
            "decision_status": self.decision_status,
            "is_locked": self.is_locked,
            "submitted_by": self.submitted_by,
            "submitted_at": _iso(self.submitted_at),
            "decision_by": self.decision_by,
            "decision_at": _iso(self.decision_at),
            "decision_rationale": self.decision_rationale,
            "requester_id": self.requester_id,
            "requester_name": self.requester_name,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ChangeRequest {self.id}: {self.code} [{self.delivery_lane}/{self.decision_status}]>"
