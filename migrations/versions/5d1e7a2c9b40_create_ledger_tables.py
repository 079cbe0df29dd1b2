"""Create ledger tables: projects, artifacts, approval chain, change requests, audit events

Revision ID: 5d1e7a2c9b40
Revises:
Create Date: 2026-10-19 09:12:31.204117

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5d1e7a2c9b40'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'projects',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
    )

    op.create_table(
        'project_members',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False, comment='owner | editor | viewer'),
        sa.Column('display_name', sa.String(length=150), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'user_id', name='uq_project_members_project_user'),
        sa.CheckConstraint("role IN ('owner', 'editor', 'viewer')", name='ck_project_members_role'),
    )
    with op.batch_alter_table('project_members', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_project_members_project_id'), ['project_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_project_members_user_id'), ['user_id'], unique=False)

    op.create_table(
        'project_approvers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'user_id', name='uq_project_approvers_project_user'),
    )
    with op.batch_alter_table('project_approvers', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_project_approvers_project_id'), ['project_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_project_approvers_user_id'), ['user_id'], unique=False)

    op.create_table(
        'artifacts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=40), nullable=False,
                  comment='ArtifactType value: CHARTER | WBS | SCHEDULE | CLOSURE_REPORT | …'),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('content_structured', sa.JSON(), nullable=True,
                  comment='Structured document payload (sections, tables)'),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('parent_id', sa.Integer(), nullable=True),
        sa.Column('root_id', sa.Integer(), nullable=True,
                  comment="Id of the chain's first version; v1 points at itself"),
        sa.Column('revision_type', sa.String(length=20), nullable=False,
                  comment='create | material | minor | restore'),
        sa.Column('revision_reason', sa.String(length=500), nullable=True),
        sa.Column('is_current', sa.Boolean(), nullable=False),
        sa.Column('is_baseline', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('approval_status', sa.String(length=30), nullable=False,
                  comment='draft | submitted | approved | rejected | changes_requested'),
        sa.Column('submitted_by', sa.String(length=64), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_by', sa.String(length=64), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by', sa.String(length=64), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('author_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['parent_id'], ['artifacts.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['root_id'], ['artifacts.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('root_id', 'version', name='uq_artifacts_root_version'),
        sa.CheckConstraint("NOT is_baseline OR approval_status = 'approved'",
                           name='ck_artifacts_baseline_approved'),
        sa.CheckConstraint('version > 0', name='ck_artifacts_version_positive'),
    )
    with op.batch_alter_table('artifacts', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_artifacts_project_id'), ['project_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_artifacts_parent_id'), ['parent_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_artifacts_root_id'), ['root_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_artifacts_deleted_at'), ['deleted_at'], unique=False)
        batch_op.create_index('ix_artifacts_project_type', ['project_id', 'type'], unique=False)

    # At most one live current version per (project, type)
    op.create_index(
        'uq_artifacts_project_type_current',
        'artifacts',
        ['project_id', 'type'],
        unique=True,
        postgresql_where=sa.text('is_current IS TRUE AND deleted_at IS NULL'),
        sqlite_where=sa.text('is_current = 1 AND deleted_at IS NULL'),
    )

    op.create_table(
        'approval_steps',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=False),
        sa.Column('artifact_type', sa.String(length=40), nullable=True),
        sa.Column('step_order', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('min_approvals', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'artifact_type', 'step_order', name='uq_approval_steps_order'),
        sa.CheckConstraint('min_approvals > 0', name='ck_approval_steps_min_positive'),
    )
    with op.batch_alter_table('approval_steps', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_approval_steps_project_id'), ['project_id'], unique=False)

    op.create_table(
        'approval_decisions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('artifact_id', sa.Integer(), nullable=False),
        sa.Column('step_id', sa.Integer(), nullable=False),
        sa.Column('approver_id', sa.String(length=64), nullable=False),
        sa.Column('decision', sa.String(length=20), nullable=False, comment='approved | rejected'),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['artifact_id'], ['artifacts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['step_id'], ['approval_steps.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('artifact_id', 'step_id', 'approver_id', name='uq_approval_decisions_once'),
    )
    with op.batch_alter_table('approval_decisions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_approval_decisions_artifact_id'), ['artifact_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_approval_decisions_step_id'), ['step_id'], unique=False)

    op.create_table(
        'change_requests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=False),
        sa.Column('artifact_id', sa.Integer(), nullable=True),
        sa.Column('seq', sa.Integer(), nullable=False, comment='Per-project number, shown as CR-<seq>'),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('priority', sa.String(length=20), nullable=False, comment='Low | Medium | High | Critical'),
        sa.Column('impact_analysis', sa.JSON(), nullable=False, comment='{days, cost, risk, highlights}'),
        sa.Column('delivery_lane', sa.String(length=20), nullable=False,
                  comment='intake | analysis | review | in_progress | implemented | closed'),
        sa.Column('decision_status', sa.String(length=20), nullable=False,
                  comment='draft | submitted | approved | rejected | rework'),
        sa.Column('submitted_by', sa.String(length=64), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('decision_by', sa.String(length=64), nullable=True),
        sa.Column('decision_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('decision_rationale', sa.Text(), nullable=True),
        sa.Column('requester_id', sa.String(length=64), nullable=False),
        sa.Column('requester_name', sa.String(length=150), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['artifact_id'], ['artifacts.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'seq', name='uq_change_requests_project_seq'),
        sa.CheckConstraint("decision_status <> 'submitted' OR delivery_lane = 'review'",
                           name='ck_change_requests_submitted_in_review'),
    )
    with op.batch_alter_table('change_requests', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_change_requests_project_id'), ['project_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_change_requests_artifact_id'), ['artifact_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_change_requests_deleted_at'), ['deleted_at'], unique=False)
        batch_op.create_index('ix_change_requests_project_lane', ['project_id', 'delivery_lane'], unique=False)

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=True),
        sa.Column('artifact_id', sa.Integer(), nullable=True),
        sa.Column('change_id', sa.Integer(), nullable=True),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('actor_email', sa.String(length=255), nullable=True),
        sa.Column('action', sa.String(length=60), nullable=False),
        sa.Column('from_status', sa.String(length=30), nullable=True),
        sa.Column('to_status', sa.String(length=30), nullable=True),
        sa.Column('from_is_current', sa.Boolean(), nullable=True),
        sa.Column('to_is_current', sa.Boolean(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('audit_events', schema=None) as batch_op:
        batch_op.create_index('idx_audit_events_project', ['project_id'], unique=False)
        batch_op.create_index('idx_audit_events_artifact', ['artifact_id'], unique=False)
        batch_op.create_index('idx_audit_events_change', ['change_id'], unique=False)
        batch_op.create_index('idx_audit_events_action', ['action'], unique=False)
        batch_op.create_index('idx_audit_events_ts', ['created_at'], unique=False)


def downgrade():
    op.drop_table('audit_events')
    op.drop_table('change_requests')
    op.drop_table('approval_decisions')
    op.drop_table('approval_steps')
    op.drop_index('uq_artifacts_project_type_current', table_name='artifacts')
    op.drop_table('artifacts')
    op.drop_table('project_approvers')
    op.drop_table('project_members')
    op.drop_table('projects')
