"""
Version Ledger — artifact version chains and the "current" pointer.

Owns:
  - creation of v1 / v+1 rows under a shared root
  - revisions and restores spun off approved or rejected versions
  - moving the current pointer between draft versions
  - content edits on the editable current version

Each pointer-moving operation runs read current → demote → insert/promote
inside one transaction (services/transaction.py). The partial unique
index on (project_id, type) WHERE is_current rejects a concurrent second
current row; the whole sequence is then retried from a fresh read.

Usage:
    from docledger.services import version_ledger

    art = version_ledger.create(project_id=1, artifact_type="charter",
                                actor=actor, content="Scope: …")
    version_ledger.update_content(art.id, actor, {"content": "Scope v2"})
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from docledger.core.exceptions import (
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from docledger.models import db
from docledger.models.artifact import (
    POINTER_BLOCKED_STATUSES,
    REVISABLE_STATUSES,
    REVISION_TYPES,
    Artifact,
    canonical_artifact_type,
)
from docledger.services.audit_recorder import record
from docledger.services.role_gate import WRITE_ROLES, require_member, require_role
from docledger.services.transaction import run_in_transaction, run_with_conflict_retry

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset({"title", "content", "content_structured"})


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_artifact(artifact_id: int, *, include_deleted: bool = False) -> Artifact:
    """Load an artifact or raise NotFoundError."""
    if artifact_id is None:
        raise ValidationError("artifact_id is required")
    art = db.session.get(Artifact, artifact_id)
    if art is None or (art.is_deleted and not include_deleted):
        raise NotFoundError("Artifact", artifact_id)
    return art


def _load_current(project_id: int, artifact_type: str) -> Artifact | None:
    return db.session.execute(
        select(Artifact).where(
            Artifact.project_id == project_id,
            Artifact.type == artifact_type,
            Artifact.is_current.is_(True),
            Artifact.deleted_at.is_(None),
        )
    ).scalar_one_or_none()


def _next_version(root_id: int) -> int:
    max_v = db.session.execute(
        select(func.max(Artifact.version)).where(Artifact.root_id == root_id)
    ).scalar()
    return (max_v or 0) + 1


def _demote(current: Artifact | None) -> None:
    if current is None:
        return
    current.is_current = False
    # Flushed on its own so the demotion reaches the database before any
    # insert/promote of the replacement row.
    db.session.flush()


def _pointer_key(project_id, artifact_type) -> str:
    return f"project={project_id},type={artifact_type}"


# ── create ───────────────────────────────────────────────────────────────────


def create(
    project_id: int,
    artifact_type,
    actor,
    content: str | None = None,
    *,
    title: str | None = None,
    content_structured=None,
) -> Artifact:
    """Create the next current version of ``artifact_type`` in a project.

    With an existing current row: demote it and insert v(max+1) under the
    same root with ``parent_id`` pointing at it. Otherwise insert v1 and
    back-fill ``root_id`` with its own id.

    Raises:
        ValidationError, NotFoundError, PermissionDenied, ConflictError
    """
    if project_id is None:
        raise ValidationError("project_id is required")
    a_type = canonical_artifact_type(artifact_type).value
    if content is not None and not isinstance(content, str):
        raise ValidationError("content must be a string", details={"content": "invalid"})
    require_role(project_id, actor.user_id, WRITE_ROLES, action="create artifact")

    def _attempt():
        existing = _load_current(project_id, a_type)
        if existing is not None:
            root_id = existing.root_id or existing.id
            version = _next_version(root_id)
            _demote(existing)
            art = Artifact(
                project_id=project_id,
                type=a_type,
                title=title if title is not None else existing.title,
                content=content if content is not None else (existing.content or ""),
                content_structured=(
                    content_structured if content_structured is not None
                    else existing.content_structured
                ),
                version=version,
                parent_id=existing.id,
                root_id=root_id,
                revision_type="material",
                revision_reason="New draft created",
                is_current=True,
                is_baseline=False,
                approval_status="draft",
                author_id=actor.user_id,
            )
            db.session.add(art)
            db.session.flush()
            record(
                action="create_revision_from_current",
                actor=actor,
                project_id=project_id,
                artifact_id=art.id,
                from_status=existing.approval_status,
                to_status="draft",
                from_is_current=True,
                to_is_current=True,
                meta={"type": a_type, "from_artifact_id": existing.id, "version": version},
            )
            return art

        art = Artifact(
            project_id=project_id,
            type=a_type,
            title=title,
            content=content or "",
            content_structured=content_structured,
            version=1,
            revision_type="create",
            is_current=True,
            is_baseline=False,
            approval_status="draft",
            author_id=actor.user_id,
        )
        db.session.add(art)
        db.session.flush()
        art.root_id = art.id
        db.session.flush()
        record(
            action="create_artifact",
            actor=actor,
            project_id=project_id,
            artifact_id=art.id,
            from_status=None,
            to_status="draft",
            from_is_current=None,
            to_is_current=True,
            meta={"type": a_type, "version": 1},
        )
        return art

    art = run_with_conflict_retry(
        _attempt, resource="Artifact", key=_pointer_key(project_id, a_type),
    )
    logger.info(
        "Artifact created: %s v%d (id=%s)", art.type, art.version, art.id,
        extra={"project_id": project_id, "artifact_id": art.id},
    )
    return art


# ── createRevision / restoreVersion ──────────────────────────────────────────


def _check_revisable(art: Artifact, current: Artifact | None) -> None:
    if not art.is_current:
        raise StateError("Artifact", art.id, "create_revision", art.approval_status,
                         "only the current version can be revised")
    if art.approval_status not in REVISABLE_STATUSES:
        raise StateError("Artifact", art.id, "create_revision", art.approval_status,
                         "only approved or rejected versions can be revised")


def _check_restorable(target: Artifact, current: Artifact | None) -> None:
    if current is not None and current.approval_status == "submitted":
        raise StateError("Artifact", current.id, "restore_version", current.approval_status,
                         "the current version is under review")


def _spin_off(source_id: int, actor, *, revision_type: str, reason: str, action: str,
              precondition=None) -> Artifact:
    """Shared body of create_revision / restore_version.

    Copies ``source_id``'s content into a new current draft at the end of
    its chain. ``precondition(source, current)`` is re-checked against a
    fresh read on every attempt.
    """
    src = get_artifact(source_id)
    project_id, a_type = src.project_id, src.type

    def _attempt():
        template = get_artifact(source_id)
        current = _load_current(project_id, a_type)
        if precondition is not None:
            precondition(template, current)
        root_id = template.root_id or template.id
        version = _next_version(root_id)
        from_status = template.approval_status
        from_is_current = template.is_current
        _demote(current)
        art = Artifact(
            project_id=project_id,
            type=a_type,
            title=template.title,
            content=template.content or "",
            content_structured=template.content_structured,
            version=version,
            parent_id=template.id,
            root_id=root_id,
            revision_type=revision_type,
            revision_reason=reason,
            is_current=True,
            is_baseline=False,
            approval_status="draft",
            author_id=actor.user_id,
        )
        db.session.add(art)
        db.session.flush()
        meta = {
            "from": template.id,
            "to": art.id,
            "version": version,
            "revision_type": revision_type,
            "reason": reason,
        }
        if current is not None and current.id != template.id:
            meta["demoted"] = current.id
        record(
            action=action,
            actor=actor,
            project_id=project_id,
            artifact_id=art.id,
            from_status=from_status,
            to_status="draft",
            from_is_current=from_is_current,
            to_is_current=True,
            meta=meta,
        )
        return art

    return run_with_conflict_retry(
        _attempt, resource="Artifact", key=_pointer_key(project_id, a_type),
    )


def create_revision(
    artifact_id: int,
    actor,
    reason: str | None = None,
    revision_type: str = "material",
) -> Artifact:
    """Spin a new draft off the current approved/rejected version.

    Raises:
        ValidationError: unknown ``revision_type``.
        StateError: the source is not current or not approved/rejected.
    """
    art = get_artifact(artifact_id)
    require_role(art.project_id, actor.user_id, WRITE_ROLES, action="create revision")
    revision_type = (revision_type or "material").strip().lower()
    if revision_type not in REVISION_TYPES or revision_type in ("create", "restore"):
        raise ValidationError(
            f"Unknown revision_type: {revision_type!r}",
            details={"revision_type": revision_type, "allowed": ["material", "minor"]},
        )

    new = _spin_off(
        art.id, actor,
        revision_type=revision_type,
        reason=(reason or "").strip() or "Revision created",
        action="create_revision",
        precondition=_check_revisable,
    )
    logger.info(
        "Revision created: %s v%d from id=%s", new.type, new.version, artifact_id,
        extra={"project_id": new.project_id, "artifact_id": new.id},
    )
    return new


def restore_version(target_id: int, actor, reason: str | None = None) -> Artifact:
    """Create a new current draft whose content is ``target_id``'s verbatim.

    The target may be any non-deleted version of the chain.
    """
    target = get_artifact(target_id)
    require_role(target.project_id, actor.user_id, WRITE_ROLES, action="restore version")
    new = _spin_off(
        target.id, actor,
        revision_type="restore",
        reason=(reason or "").strip() or "Restored a previous version",
        action="restore_version",
        precondition=_check_restorable,
    )
    logger.info(
        "Version restored: %s v%d → v%d", new.type, target.version, new.version,
        extra={"project_id": new.project_id, "artifact_id": new.id},
    )
    return new


# ── setCurrent ───────────────────────────────────────────────────────────────


def set_current(artifact_id: int, actor) -> Artifact:
    """Move the current pointer of the artifact's (project, type) onto it.

    No-op (no row change, no audit event) when already current.

    Raises:
        StateError: the target is submitted, approved or rejected.
    """
    art = get_artifact(artifact_id)
    require_role(art.project_id, actor.user_id, WRITE_ROLES, action="set current version")
    if art.is_current:
        return art
    if art.approval_status in POINTER_BLOCKED_STATUSES:
        raise StateError("Artifact", art.id, "set_current", art.approval_status,
                         "only draft or changes-requested versions can become current")

    project_id, a_type = art.project_id, art.type

    def _attempt():
        target = get_artifact(artifact_id)
        if target.is_current:
            return target
        current = _load_current(project_id, a_type)
        _demote(current)
        target.is_current = True
        db.session.flush()
        record(
            action="set_current",
            actor=actor,
            project_id=project_id,
            artifact_id=target.id,
            from_status=target.approval_status,
            to_status=target.approval_status,
            from_is_current=False,
            to_is_current=True,
            meta={"demoted": current.id if current is not None else None,
                  "version": target.version},
        )
        return target

    art = run_with_conflict_retry(
        _attempt, resource="Artifact", key=_pointer_key(project_id, a_type),
    )
    logger.info("Current pointer moved: %s → v%d (id=%s)", a_type, art.version, art.id,
                extra={"project_id": project_id, "artifact_id": art.id})
    return art


# ── updateContent ────────────────────────────────────────────────────────────


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(
                "expected_updated_at must be an ISO-8601 timestamp",
                details={"expected_updated_at": value},
            ) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def assert_editable(art: Artifact, action: str = "update_content") -> None:
    """Raise StateError unless the artifact is the unlocked, editable current version."""
    if art.is_deleted or not art.is_current:
        raise StateError("Artifact", art.id, action, art.approval_status,
                         "only the current version can be edited")
    if art.is_locked:
        raise StateError("Artifact", art.id, action, art.approval_status, "artifact is locked")
    if not art.is_editable:
        raise StateError("Artifact", art.id, action, art.approval_status,
                         "only draft or changes-requested versions can be edited")


def update_content(artifact_id: int, actor, patch: dict, *, expected_updated_at=None) -> Artifact:
    """Apply ``patch`` (title / content / content_structured) to an editable artifact.

    ``expected_updated_at`` turns the edit into a compare-and-set: when the
    stored ``updated_at`` differs, ConflictError is raised and nothing changes.
    """
    if not isinstance(patch, dict) or not patch:
        raise ValidationError("patch must be a non-empty object")
    unknown = set(patch) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Unknown field(s): {', '.join(sorted(unknown))}",
            details={k: "not editable" for k in sorted(unknown)},
        )
    if "content" in patch and not isinstance(patch["content"], str):
        raise ValidationError("content must be a string", details={"content": "invalid"})
    if "content_structured" in patch and not isinstance(
        patch["content_structured"], (dict, list, type(None))
    ):
        raise ValidationError("content_structured must be an object or array")
    if "title" in patch and patch["title"] is not None and not isinstance(patch["title"], str):
        raise ValidationError("title must be a string", details={"title": "invalid"})

    def _apply():
        art = get_artifact(artifact_id)
        require_role(art.project_id, actor.user_id, WRITE_ROLES, action="edit artifact")
        assert_editable(art)
        if expected_updated_at is not None:
            expected = _parse_timestamp(expected_updated_at)
            if _parse_timestamp(art.updated_at) != expected:
                raise ConflictError(
                    "Artifact", "updated_at", str(expected_updated_at),
                    reason="Artifact was modified by someone else; reload and retry",
                )

        changed = {}
        for key, value in patch.items():
            before = getattr(art, key)
            if before != value:
                changed[key] = {"before_len": len(str(before or "")), "after_len": len(str(value or ""))}
                setattr(art, key, value)
        if not changed:
            return art
        art.updated_at = datetime.now(timezone.utc)
        db.session.flush()
        record(
            action="update_content",
            actor=actor,
            project_id=art.project_id,
            artifact_id=art.id,
            from_status=art.approval_status,
            to_status=art.approval_status,
            from_is_current=True,
            to_is_current=True,
            meta={"fields": changed},
        )
        return art

    return run_in_transaction(_apply)


# ── Drafts ───────────────────────────────────────────────────────────────────


def delete_draft_artifact(artifact_id: int, actor) -> Artifact:
    """Soft-delete a draft version.

    When the draft was current, the pointer falls back to its parent if
    the parent is still present.
    """
    art = get_artifact(artifact_id)
    require_role(art.project_id, actor.user_id, WRITE_ROLES, action="delete artifact")
    if art.approval_status != "draft" or art.is_baseline:
        raise StateError("Artifact", art.id, "delete", art.approval_status,
                         "only non-baseline drafts can be deleted")

    project_id, a_type = art.project_id, art.type

    def _attempt():
        target = get_artifact(artifact_id)
        was_current = target.is_current
        target.is_current = False
        target.soft_delete()
        db.session.flush()
        fallback = None
        if was_current and target.parent_id is not None:
            parent = db.session.get(Artifact, target.parent_id)
            if parent is not None and not parent.is_deleted:
                parent.is_current = True
                db.session.flush()
                fallback = parent.id
        record(
            action="delete_artifact",
            actor=actor,
            project_id=project_id,
            artifact_id=target.id,
            from_status="draft",
            to_status="draft",
            from_is_current=was_current,
            to_is_current=False,
            meta={"version": target.version, "current_fallback": fallback},
        )
        return target

    return run_with_conflict_retry(
        _attempt, resource="Artifact", key=_pointer_key(project_id, a_type),
    )


# ── Reads ────────────────────────────────────────────────────────────────────


def list_current(project_id: int, actor) -> list[Artifact]:
    """Current versions of every artifact type in a project."""
    require_member(project_id, actor.user_id)
    stmt = (
        Artifact.select_active()
        .where(Artifact.project_id == project_id, Artifact.is_current.is_(True))
        .order_by(Artifact.type)
    )
    return list(db.session.execute(stmt).scalars())


def list_versions(artifact_id: int, actor) -> list[Artifact]:
    """Every non-deleted version sharing the artifact's root, oldest first."""
    art = get_artifact(artifact_id)
    require_member(art.project_id, actor.user_id)
    root_id = art.root_id or art.id
    stmt = (
        Artifact.select_active()
        .where(Artifact.root_id == root_id)
        .order_by(Artifact.version)
    )
    return list(db.session.execute(stmt).scalars())


def get_diff(artifact_id: int, actor) -> dict:
    """Content of the artifact, its parent and the chain's baseline, for comparison."""
    art = get_artifact(artifact_id)
    require_member(art.project_id, actor.user_id)

    def _side(row):
        if row is None:
            return None
        return {
            "id": row.id,
            "version": row.version,
            "approval_status": row.approval_status,
            "content": row.content,
            "content_structured": row.content_structured,
        }

    parent = db.session.get(Artifact, art.parent_id) if art.parent_id else None
    baseline = db.session.execute(
        select(Artifact).where(
            Artifact.root_id == (art.root_id or art.id),
            Artifact.is_baseline.is_(True),
        ).order_by(Artifact.version.desc()).limit(1)
    ).scalar_one_or_none()

    return {
        "artifact": _side(art),
        "parent": _side(parent),
        "baseline": _side(baseline),
    }
