"""
Role Gate — resolves an actor's project role and approver status.

The ledger consumes the gate; it never decides membership itself.
``MembershipRoleGate`` reads the project_members / project_approvers
tables. Another implementation (e.g. one backed by an identity service)
can be installed per app:

    app.extensions["role_gate"] = MyRoleGate()

Usage:
    from docledger.services.role_gate import get_role_gate, require_role

    gate = get_role_gate()
    role = gate.resolve_role(project_id=1, user_id="u-1")   # owner | editor | viewer
    if gate.is_approver(project_id=1, user_id="u-2"):
        ...

    # Raises PermissionDenied / NotFoundError
    require_role(1, "u-1", {"owner", "editor"}, action="create artifact")
"""

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import select

from docledger.core.exceptions import NotFoundError, PermissionDenied
from docledger.models import db
from docledger.models.project import ProjectApprover, ProjectMember

WRITE_ROLES = frozenset({"owner", "editor"})


@dataclass(frozen=True)
class Actor:
    """The identity performing an operation, used for checks and audit."""

    user_id: str
    email: str | None = None


class RoleGate:
    """Interface the ledger depends on."""

    def resolve_role(self, project_id: int, user_id: str) -> str:
        """Return ``owner``, ``editor`` or ``viewer``; NotFoundError if not a member."""
        raise NotImplementedError

    def is_approver(self, project_id: int, user_id: str) -> bool:
        raise NotImplementedError

    def approver_projects(self, user_id: str) -> list[int]:
        """Ids of the projects where the user is a member and an active approver."""
        raise NotImplementedError


class MembershipRoleGate(RoleGate):
    """Role gate backed by the project membership tables."""

    def resolve_role(self, project_id: int, user_id: str) -> str:
        role = db.session.execute(
            select(ProjectMember.role).where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == user_id,
            )
        ).scalar_one_or_none()
        if role is None:
            raise NotFoundError("ProjectMember", user_id, project_id=project_id)
        return role

    def is_approver(self, project_id: int, user_id: str) -> bool:
        row = db.session.execute(
            select(ProjectApprover.id).where(
                ProjectApprover.project_id == project_id,
                ProjectApprover.user_id == user_id,
                ProjectApprover.is_active.is_(True),
            )
        ).first()
        return row is not None

    def approver_projects(self, user_id: str) -> list[int]:
        return list(db.session.execute(
            select(ProjectApprover.project_id)
            .join(
                ProjectMember,
                (ProjectMember.project_id == ProjectApprover.project_id)
                & (ProjectMember.user_id == ProjectApprover.user_id),
            )
            .where(
                ProjectApprover.user_id == user_id,
                ProjectApprover.is_active.is_(True),
            )
            .order_by(ProjectApprover.project_id)
        ).scalars())


_default_gate = MembershipRoleGate()


def get_role_gate() -> RoleGate:
    """Return the gate installed on the current app, or the membership gate."""
    return current_app.extensions.get("role_gate") or _default_gate


def require_role(project_id: int, user_id: str, allowed_roles, *, action: str) -> str:
    """Resolve the role and raise PermissionDenied unless it is allowed."""
    role = get_role_gate().resolve_role(project_id, user_id)
    if role not in allowed_roles:
        raise PermissionDenied(user_id, action, f"role '{role}' is not allowed")
    return role


def require_member(project_id: int, user_id: str) -> str:
    return get_role_gate().resolve_role(project_id, user_id)


def require_approver(project_id: int, user_id: str, *, action: str) -> None:
    """Raise PermissionDenied unless the user is an active approver (and a member)."""
    gate = get_role_gate()
    gate.resolve_role(project_id, user_id)
    if not gate.is_approver(project_id, user_id):
        raise PermissionDenied(user_id, action, "not an active approver for this project")
