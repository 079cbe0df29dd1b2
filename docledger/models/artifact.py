"""
DocLedger — Artifact domain model.

Models:
    - Artifact: one row per version of a project document
    - ApprovalStep: optional multi-step approval chain per project
    - ApprovalDecision: one approver's decision on one step of one artifact

Version chain:
    v1 (root_id = own id) ← v2 (parent_id = v1) ← v3 (parent_id = v2) …

At most one non-deleted row per (project_id, type) carries is_current;
the partial unique index ``uq_artifacts_project_type_current`` rejects a
second one, so a lost-update race surfaces as IntegrityError.

Approval lifecycle (APPROVAL_TRANSITIONS):
    draft / changes_requested ──submit──▶ submitted
    submitted ──approve──▶ approved          (baseline)
    submitted ──request_changes──▶ changes_requested
    submitted ──reject_final──▶ rejected
"""

import enum
from datetime import datetime, timezone

from docledger.core.exceptions import ValidationError
from docledger.models import db
from docledger.models.soft_delete import SoftDeleteMixin

__all__ = [
    "APPROVAL_STATUSES",
    "APPROVAL_TRANSITIONS",
    "EDITABLE_STATUSES",
    "LOCKED_STATUSES",
    "REVISABLE_STATUSES",
    "ApprovalDecision",
    "ApprovalStep",
    "Artifact",
    "ArtifactType",
    "canonical_artifact_type",
    "phase_for_type",
]


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# Artifact type: closed set, canonicalized once at the boundary
# ═════════════════════════════════════════════════════════════════════════════

class ArtifactType(str, enum.Enum):
    CHARTER = "CHARTER"
    STAKEHOLDER_REGISTER = "STAKEHOLDER_REGISTER"
    WBS = "WBS"
    SCHEDULE = "SCHEDULE"
    RAID = "RAID"
    CHANGE_REQUESTS = "CHANGE_REQUESTS"
    WEEKLY_REPORT = "WEEKLY_REPORT"
    STATUS_DASHBOARD = "STATUS_DASHBOARD"
    LESSONS_LEARNED = "LESSONS_LEARNED"
    CLOSURE_REPORT = "CLOSURE_REPORT"


# Accepted spellings → canonical type. Anything not listed here (or a
# canonical name) is rejected.
ARTIFACT_TYPE_ALIASES = {
    "PROJECT_CHARTER": ArtifactType.CHARTER,
    "PID": ArtifactType.CHARTER,
    "STAKEHOLDERS": ArtifactType.STAKEHOLDER_REGISTER,
    "STAKEHOLDER_MAP": ArtifactType.STAKEHOLDER_REGISTER,
    "WORK_BREAKDOWN_STRUCTURE": ArtifactType.WBS,
    "ROADMAP": ArtifactType.SCHEDULE,
    "GANTT": ArtifactType.SCHEDULE,
    "RAID_LOG": ArtifactType.RAID,
    "CHANGE_REQUEST": ArtifactType.CHANGE_REQUESTS,
    "CHANGE_LOG": ArtifactType.CHANGE_REQUESTS,
    "STATUS_REPORT": ArtifactType.WEEKLY_REPORT,
    "WEEKLY_STATUS": ArtifactType.WEEKLY_REPORT,
    "DELIVERY_REPORT": ArtifactType.WEEKLY_REPORT,
    "LESSONS": ArtifactType.LESSONS_LEARNED,
    "RETRO": ArtifactType.LESSONS_LEARNED,
    "RETROSPECTIVE": ArtifactType.LESSONS_LEARNED,
    "PROJECT_CLOSURE_REPORT": ArtifactType.CLOSURE_REPORT,
    "CLOSEOUT": ArtifactType.CLOSURE_REPORT,
    "CLOSEOUT_REPORT": ArtifactType.CLOSURE_REPORT,
}

ARTIFACT_PHASES = {
    ArtifactType.CHARTER: "Initiating",
    ArtifactType.STAKEHOLDER_REGISTER: "Initiating",
    ArtifactType.WBS: "Planning",
    ArtifactType.SCHEDULE: "Planning",
    ArtifactType.RAID: "Executing",
    ArtifactType.CHANGE_REQUESTS: "Monitoring & Controlling",
    ArtifactType.WEEKLY_REPORT: "Monitoring & Controlling",
    ArtifactType.STATUS_DASHBOARD: "Monitoring & Controlling",
    ArtifactType.LESSONS_LEARNED: "Closing",
    ArtifactType.CLOSURE_REPORT: "Closing",
}


def canonical_artifact_type(value) -> ArtifactType:
    """Map a caller-supplied type onto ``ArtifactType``.

    Trims, upper-cases and folds spaces/hyphens to underscores, then
    accepts a canonical name or a listed alias.

    Raises:
        ValidationError: the value is empty or not a known type.
    """
    if isinstance(value, ArtifactType):
        return value
    raw = str(value or "").strip()
    if not raw:
        raise ValidationError("type is required", details={"type": "required"})
    key = raw.upper().replace("-", "_").replace(" ", "_")
    while "__" in key:
        key = key.replace("__", "_")
    if key in ArtifactType.__members__:
        return ArtifactType[key]
    if key in ARTIFACT_TYPE_ALIASES:
        return ARTIFACT_TYPE_ALIASES[key]
    raise ValidationError(
        f"Unknown artifact type: {raw!r}",
        details={"type": raw, "allowed": [t.value for t in ArtifactType]},
    )


def phase_for_type(artifact_type) -> str:
    return ARTIFACT_PHASES[canonical_artifact_type(artifact_type)]


# ═════════════════════════════════════════════════════════════════════════════
# Approval status
# ═════════════════════════════════════════════════════════════════════════════

APPROVAL_STATUSES = ("draft", "submitted", "approved", "rejected", "changes_requested")

# Content may be edited only in these states
EDITABLE_STATUSES = frozenset({"draft", "changes_requested"})
# is_locked is derived from these states, never stored
LOCKED_STATUSES = frozenset({"submitted", "approved"})
# A new revision may be spun off a current artifact in these states
REVISABLE_STATUSES = frozenset({"approved", "rejected"})
# set_current only moves the pointer onto unsubmitted material
POINTER_BLOCKED_STATUSES = frozenset({"submitted", "approved", "rejected"})

APPROVAL_TRANSITIONS = {
    "submit": {"from": ["draft", "changes_requested"], "to": "submitted"},
    "approve": {"from": ["submitted"], "to": "approved"},
    "request_changes": {"from": ["submitted"], "to": "changes_requested"},
    "reject_final": {"from": ["submitted"], "to": "rejected"},
}

REVISION_TYPES = ("create", "material", "minor", "restore")


# ═════════════════════════════════════════════════════════════════════════════
# Artifact
# ═════════════════════════════════════════════════════════════════════════════

class Artifact(SoftDeleteMixin, db.Model):
    """One version of a project document."""

    __tablename__ = "artifacts"
    __table_args__ = (
        db.Index(
            "uq_artifacts_project_type_current",
            "project_id", "type",
            unique=True,
            postgresql_where=db.text("is_current IS TRUE AND deleted_at IS NULL"),
            sqlite_where=db.text("is_current = 1 AND deleted_at IS NULL"),
        ),
        db.UniqueConstraint("root_id", "version", name="uq_artifacts_root_version"),
        db.CheckConstraint(
            "NOT is_baseline OR approval_status = 'approved'",
            name="ck_artifacts_baseline_approved",
        ),
        db.CheckConstraint("version > 0", name="ck_artifacts_version_positive"),
        db.Index("ix_artifacts_project_type", "project_id", "type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    type = db.Column(
        db.String(40), nullable=False,
        comment="ArtifactType value: CHARTER | WBS | SCHEDULE | CLOSURE_REPORT | …",
    )

    # ── Content ──
    title = db.Column(db.String(255), nullable=True)
    content = db.Column(db.Text, nullable=False, default="")
    content_structured = db.Column(
        db.JSON, nullable=True,
        comment="Structured document payload (sections, tables)",
    )

    # ── Version chain ──
    version = db.Column(db.Integer, nullable=False, default=1)
    parent_id = db.Column(
        db.Integer, db.ForeignKey("artifacts.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    root_id = db.Column(
        db.Integer, db.ForeignKey("artifacts.id", ondelete="SET NULL"),
        nullable=True, index=True,
        comment="Id of the chain's first version; v1 points at itself",
    )
    revision_type = db.Column(
        db.String(20), nullable=False, default="create",
        comment="create | material | minor | restore",
    )
    revision_reason = db.Column(db.String(500), nullable=True)

    # ── Lifecycle flags ──
    is_current = db.Column(db.Boolean, nullable=False, default=True)
    is_baseline = db.Column(db.Boolean, nullable=False, default=False)

    # ── Approval ──
    approval_status = db.Column(
        db.String(30), nullable=False, default="draft",
        comment="draft | submitted | approved | rejected | changes_requested",
    )
    submitted_by = db.Column(db.String(64), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by = db.Column(db.String(64), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.String(64), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    # ── Audit ──
    author_id = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    @property
    def is_locked(self) -> bool:
        return self.approval_status in LOCKED_STATUSES

    @property
    def is_editable(self) -> bool:
        return (
            self.is_current
            and not self.is_deleted
            and not self.is_locked
            and self.approval_status in EDITABLE_STATUSES
        )

    @property
    def artifact_type(self) -> ArtifactType:
        return ArtifactType(self.type)

    def to_dict(self, include_content=True):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "type": self.type,
            "phase": ARTIFACT_PHASES.get(ArtifactType(self.type)) if self.type else None,
            "title": self.title,
            "version": self.version,
            "parent_id": self.parent_id,
            "root_id": self.root_id,
            "revision_type": self.revision_type,
            "revision_reason": self.revision_reason,
            "is_current": self.is_current,
            "is_baseline": self.is_baseline,
            "is_locked": self.is_locked,
            "approval_status": self.approval_status,
            "submitted_by": self.submitted_by,
            "submitted_at": _iso(self.submitted_at),
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejected_at": _iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "author_id": self.author_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "deleted_at": _iso(self.deleted_at),
        }
        if include_content:
            d["content"] = self.content
            d["content_structured"] = self.content_structured
        return d

    def __repr__(self):
        return f"<Artifact {self.id}: {self.type} v{self.version} [{self.approval_status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# Multi-step approval chain
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalStep(db.Model):
    """
    One ordered step of a project's approval chain.

    ``artifact_type`` NULL means the step applies to every type. A step is
    complete once ``min_approvals`` distinct approvers approved it.
    """

    __tablename__ = "approval_steps"
    __table_args__ = (
        db.UniqueConstraint(
            "project_id", "artifact_type", "step_order", name="uq_approval_steps_order",
        ),
        db.CheckConstraint("min_approvals > 0", name="ck_approval_steps_min_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    artifact_type = db.Column(db.String(40), nullable=True)
    step_order = db.Column(db.Integer, nullable=False, default=1)
    name = db.Column(db.String(100), nullable=False, default="Approval")
    min_approvals = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "artifact_type": self.artifact_type,
            "step_order": self.step_order,
            "name": self.name,
            "min_approvals": self.min_approvals,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<ApprovalStep {self.id}: #{self.step_order} {self.name}>"


class ApprovalDecision(db.Model):
    """An approver's decision on one step for one submission of an artifact."""

    __tablename__ = "approval_decisions"
    __table_args__ = (
        db.UniqueConstraint(
            "artifact_id", "step_id", "approver_id", name="uq_approval_decisions_once",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    artifact_id = db.Column(
        db.Integer, db.ForeignKey("artifacts.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(
        db.Integer, db.ForeignKey("approval_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    approver_id = db.Column(db.String(64), nullable=False)
    decision = db.Column(db.String(20), nullable=False, comment="approved | rejected")
    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "artifact_id": self.artifact_id,
            "step_id": self.step_id,
            "approver_id": self.approver_id,
            "decision": self.decision,
            "reason": self.reason,
            "created_at": _iso(self.created_at),
        }
