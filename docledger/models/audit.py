"""
DocLedger
Audit domain model.

Models:
    - AuditEvent: append-only trail of ledger and lane transitions.

Rows are only ever inserted by services/audit_recorder.py.
"""

from datetime import datetime, timezone

from docledger.models import db

AUDIT_ACTIONS = {
    # Version ledger
    "create_artifact",
    "create_revision_from_current",
    "create_revision",
    "restore_version",
    "set_current",
    "update_content",
    "rename_title",
    "delete_artifact",
    # Approval state machine
    "submit_for_approval",
    "approve",
    "approval_step_decision",
    "request_changes",
    "reject",
    # Change request lanes
    "change_create",
    "change_update",
    "change_move",
    "change_submit",
    "change_decision",
    "change_delete",
}


class AuditEvent(db.Model):
    """
    Immutable audit trail entry.

    Exactly one of ``artifact_id`` / ``change_id`` is normally set.
    ``meta`` carries operation-specific details (versions, reasons, lanes).
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("idx_audit_events_project", "project_id"),
        db.Index("idx_audit_events_artifact", "artifact_id"),
        db.Index("idx_audit_events_change", "change_id"),
        db.Index("idx_audit_events_action", "action"),
        db.Index("idx_audit_events_ts", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=True)
    # Plain ids, no FKs: audit rows outlive the rows they describe
    artifact_id = db.Column(db.Integer, nullable=True)
    change_id = db.Column(db.Integer, nullable=True)

    actor_id = db.Column(db.String(64), nullable=False, default="system")
    actor_email = db.Column(db.String(255), nullable=True)
    action = db.Column(db.String(60), nullable=False)

    from_status = db.Column(db.String(30), nullable=True)
    to_status = db.Column(db.String(30), nullable=True)
    from_is_current = db.Column(db.Boolean, nullable=True)
    to_is_current = db.Column(db.Boolean, nullable=True)

    meta = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "artifact_id": self.artifact_id,
            "change_id": self.change_id,
            "actor_id": self.actor_id,
            "actor_email": self.actor_email,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "from_is_current": self.from_is_current,
            "to_is_current": self.to_is_current,
            "meta": self.meta or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        target = f"artifact={self.artifact_id}" if self.artifact_id else f"change={self.change_id}"
        return f"<AuditEvent {self.id}: {self.action} {target} by {self.actor_id}>"
