"""Project domain model: projects, their members and approvers.

These tables back the default role gate (see services/role_gate.py).
User ids are opaque strings issued by the external identity provider.
"""

from datetime import datetime, timezone

from docledger.models import db

PROJECT_ROLES = ("owner", "editor", "viewer")


def _utcnow():
    return datetime.now(timezone.utc)


class Project(db.Model):
    """Container for artifacts and change requests."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    members = db.relationship(
        "ProjectMember", backref="project", lazy="select",
        cascade="all, delete-orphan",
    )
    approvers = db.relationship(
        "ProjectApprover", backref="project", lazy="select",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.code}>"


class ProjectMember(db.Model):
    """A user's role inside one project."""

    __tablename__ = "project_members"
    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),
        db.CheckConstraint(
            "role IN ('owner', 'editor', 'viewer')", name="ck_project_members_role",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.String(64), nullable=False, index=True)
    role = db.Column(
        db.String(20), nullable=False, default="viewer",
        comment="owner | editor | viewer",
    )
    display_name = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role": self.role,
            "display_name": self.display_name,
        }

    def __repr__(self):
        return f"<ProjectMember {self.user_id}@{self.project_id}: {self.role}>"


class ProjectApprover(db.Model):
    """A user allowed to decide on submitted artifacts and change requests."""

    __tablename__ = "project_approvers"
    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_approvers_project_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.String(64), nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<ProjectApprover {self.user_id}@{self.project_id} active={self.is_active}>"
