"""Project administration: projects, members and approvers.

Commit happens only in this file (via services/transaction.py).
"""

import logging

from sqlalchemy import select

from docledger.core.exceptions import ConflictError, NotFoundError, ValidationError
from docledger.models import db
from docledger.models.project import PROJECT_ROLES, Project, ProjectApprover, ProjectMember
from docledger.services.role_gate import require_member, require_role
from docledger.services.transaction import run_in_transaction

logger = logging.getLogger(__name__)


def get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


def create_project(actor, data: dict) -> Project:
    """Create a project; the creator becomes its owner."""
    data = data or {}
    name = str(data.get("name") or "").strip()
    code = str(data.get("code") or "").strip().upper()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if not code:
        raise ValidationError("code is required", details={"code": "required"})

    def _apply():
        exists = db.session.execute(select(Project.id).where(Project.code == code)).first()
        if exists:
            raise ConflictError("Project", "code", code)
        project = Project(
            code=code,
            name=name,
            description=str(data.get("description") or "").strip() or None,
            created_by=actor.user_id,
        )
        db.session.add(project)
        db.session.flush()
        db.session.add(ProjectMember(
            project_id=project.id,
            user_id=actor.user_id,
            role="owner",
            display_name=data.get("owner_display_name"),
        ))
        db.session.flush()
        return project

    project = run_in_transaction(_apply)
    logger.info("Project created: %s (id=%s)", project.code, project.id,
                extra={"project_id": project.id})
    return project


def set_member(project_id: int, actor, user_id: str, role: str, display_name: str | None = None) -> ProjectMember:
    """Add a member or change their role (owners only)."""
    user_id = str(user_id or "").strip()
    role = str(role or "").strip().lower()
    if not user_id:
        raise ValidationError("user_id is required", details={"user_id": "required"})
    if role not in PROJECT_ROLES:
        raise ValidationError(f"Unknown role: {role!r}", details={"role": role, "allowed": list(PROJECT_ROLES)})

    def _apply():
        get_project(project_id)
        require_role(project_id, actor.user_id, {"owner"}, action="manage members")
        member = db.session.execute(
            select(ProjectMember).where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == user_id,
            )
        ).scalar_one_or_none()
        if member is None:
            member = ProjectMember(project_id=project_id, user_id=user_id)
            db.session.add(member)
        member.role = role
        if display_name is not None:
            member.display_name = display_name
        db.session.flush()
        return member

    return run_in_transaction(_apply)


def set_approver(project_id: int, actor, user_id: str, is_active: bool = True) -> ProjectApprover:
    """Grant or revoke approver status (owners only). Approvers must be members."""
    user_id = str(user_id or "").strip()
    if not user_id:
        raise ValidationError("user_id is required", details={"user_id": "required"})

    def _apply():
        get_project(project_id)
        require_role(project_id, actor.user_id, {"owner"}, action="manage approvers")
        require_member(project_id, user_id)
        approver = db.session.execute(
            select(ProjectApprover).where(
                ProjectApprover.project_id == project_id,
                ProjectApprover.user_id == user_id,
            )
        ).scalar_one_or_none()
        if approver is None:
            approver = ProjectApprover(project_id=project_id, user_id=user_id)
            db.session.add(approver)
        approver.is_active = bool(is_active)
        db.session.flush()
        return approver

    return run_in_transaction(_apply)


def list_members(project_id: int, actor) -> dict:
    require_member(project_id, actor.user_id)
    members = db.session.execute(
        select(ProjectMember).where(ProjectMember.project_id == project_id).order_by(ProjectMember.id)
    ).scalars()
    approvers = db.session.execute(
        select(ProjectApprover).where(ProjectApprover.project_id == project_id).order_by(ProjectApprover.id)
    ).scalars()
    return {
        "members": [m.to_dict() for m in members],
        "approvers": [a.to_dict() for a in approvers],
    }
