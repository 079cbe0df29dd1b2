"""
Audit Recorder — best-effort, append-only event log.

Every ledger and lane operation calls ``record`` after it has applied
its state change and before the caller commits. The event row is
written inside a SAVEPOINT: if anything about recording fails, only the
savepoint is rolled back, the failure is logged, and the primary
operation carries on untouched.

Usage:
    from docledger.services.audit_recorder import record

    record(
        action="approve",
        actor=actor,
        project_id=artifact.project_id,
        artifact_id=artifact.id,
        from_status="submitted",
        to_status="approved",
        meta={"version": artifact.version},
    )
"""

import logging

from sqlalchemy import select

from docledger.models import db
from docledger.models.audit import AUDIT_ACTIONS, AuditEvent

logger = logging.getLogger(__name__)


def _build_event(
    *,
    action,
    actor,
    project_id,
    artifact_id,
    change_id,
    from_status,
    to_status,
    from_is_current,
    to_is_current,
    meta,
) -> AuditEvent:
    return AuditEvent(
        project_id=project_id,
        artifact_id=artifact_id,
        change_id=change_id,
        actor_id=getattr(actor, "user_id", None) or "system",
        actor_email=getattr(actor, "email", None),
        action=action,
        from_status=from_status,
        to_status=to_status,
        from_is_current=from_is_current,
        to_is_current=to_is_current,
        meta=dict(meta or {}),
    )


def record(
    *,
    action: str,
    actor=None,
    project_id: int | None = None,
    artifact_id: int | None = None,
    change_id: int | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    from_is_current: bool | None = None,
    to_is_current: bool | None = None,
    meta: dict | None = None,
) -> bool:
    """Append one audit event. Returns False when the event was dropped.

    Never raises for audit problems; actions outside ``AUDIT_ACTIONS`` are
    dropped. The primary operation's pending changes are flushed first,
    outside the guarded block, so their errors still propagate to the
    caller.
    """
    if action not in AUDIT_ACTIONS:
        logger.warning("Audit event dropped: unknown action %r", action,
                       extra={"event_type": action, "project_id": project_id})
        return False
    db.session.flush()
    try:
        with db.session.begin_nested():
            db.session.add(_build_event(
                action=action,
                actor=actor,
                project_id=project_id,
                artifact_id=artifact_id,
                change_id=change_id,
                from_status=from_status,
                to_status=to_status,
                from_is_current=from_is_current,
                to_is_current=to_is_current,
                meta=meta,
            ))
    except Exception:
        logger.warning(
            "Audit event dropped: %s", action, exc_info=True,
            extra={
                "event_type": action,
                "project_id": project_id,
                "artifact_id": artifact_id,
                "change_id": change_id,
            },
        )
        return False
    return True


def list_events(
    project_id: int,
    *,
    artifact_id: int | None = None,
    change_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditEvent]:
    """Newest-first audit events for a project, optionally narrowed to one entity."""
    stmt = select(AuditEvent).where(AuditEvent.project_id == project_id)
    if artifact_id is not None:
        stmt = stmt.where(AuditEvent.artifact_id == artifact_id)
    if change_id is not None:
        stmt = stmt.where(AuditEvent.change_id == change_id)
    stmt = stmt.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
    return list(db.session.execute(stmt.limit(limit).offset(offset)).scalars())
