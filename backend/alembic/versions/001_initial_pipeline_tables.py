"""Initial pipeline tables

Revision ID: 001_initial_pipeline
Revises:
Create Date: 2026-10-19

Creates:
- users, data_projects, project_memberships (records read for access control)
- pipeline_configs, pipeline_instances
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_pipeline'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ==========================================================================
    # Create Enums
    # ==========================================================================

    user_role_enum = postgresql.ENUM(
        'admin', 'user',
        name='userrole',
        create_type=False,
    )
    user_role_enum.create(op.get_bind(), checkfirst=True)

    project_visibility_enum = postgresql.ENUM(
        'public', 'private',
        name='projectvisibility',
        create_type=False,
    )
    project_visibility_enum.create(op.get_bind(), checkfirst=True)

    pipeline_type_enum = postgresql.ENUM(
        'data', 'visualization', 'training',
        name='pipelinetype',
        create_type=False,
    )
    pipeline_type_enum.create(op.get_bind(), checkfirst=True)

    pipeline_instance_status_enum = postgresql.ENUM(
        'created', 'running', 'succeeded', 'failed', 'canceled', 'archived',
        name='pipelineinstancestatus',
        create_type=False,
    )
    pipeline_instance_status_enum.create(op.get_bind(), checkfirst=True)

    # ==========================================================================
    # Accounts & Projects
    # ==========================================================================

    op.create_table(
        'users',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('role', user_role_enum, nullable=False, server_default='user'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('vcs_access_token', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'data_projects',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('gitlab_id', sa.Integer(), nullable=False),
        sa.Column('visibility', project_visibility_enum, nullable=False, server_default='private'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
    )

    op.create_table(
        'project_memberships',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('data_project_id', sa.UUID(), nullable=False),
        sa.Column('access_level', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['data_project_id'], ['data_projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'data_project_id', name='uq_membership_user_project'),
    )
    op.create_index('ix_project_memberships_user_id', 'project_memberships', ['user_id'], unique=False)
    op.create_index('ix_project_memberships_data_project_id', 'project_memberships', ['data_project_id'], unique=False)

    # ==========================================================================
    # Pipelines
    # ==========================================================================

    op.create_table(
        'pipeline_configs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('data_project_id', sa.UUID(), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('pipeline_type', pipeline_type_enum, nullable=False, server_default='data'),
        sa.Column('source_branch', sa.String(length=255), nullable=False, server_default='master'),
        sa.Column('target_branch_pattern', sa.String(length=255), nullable=False),
        sa.Column('data_operations', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['data_project_id'], ['data_projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('data_project_id', 'slug', name='uq_pipeline_config_project_slug'),
    )
    op.create_index('ix_pipeline_configs_data_project_id', 'pipeline_configs', ['data_project_id'], unique=False)

    # Numbers are unique per configuration; concurrent claims collide here
    op.create_table(
        'pipeline_instances',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('pipeline_config_id', sa.UUID(), nullable=False),
        sa.Column('data_project_id', sa.UUID(), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('number', sa.Integer(), nullable=False),
        sa.Column('target_branch', sa.String(length=255), nullable=False),
        sa.Column('status', pipeline_instance_status_enum, nullable=False, server_default='created'),
        sa.Column('external_run_id', sa.String(length=100), nullable=True),
        sa.Column('secret', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['pipeline_config_id'], ['pipeline_configs.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['data_project_id'], ['data_projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('pipeline_config_id', 'number', name='uq_pipeline_instance_config_number'),
    )
    op.create_index('ix_pipeline_instances_pipeline_config_id', 'pipeline_instances', ['pipeline_config_id'], unique=False)
    op.create_index('ix_pipeline_instances_status', 'pipeline_instances', ['status'], unique=False)


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('pipeline_instances')
    op.drop_table('pipeline_configs')
    op.drop_table('project_memberships')
    op.drop_table('data_projects')
    op.drop_table('users')

    # Drop enums
    op.execute("DROP TYPE IF EXISTS pipelineinstancestatus")
    op.execute("DROP TYPE IF EXISTS pipelinetype")
    op.execute("DROP TYPE IF EXISTS projectvisibility")
    op.execute("DROP TYPE IF EXISTS userrole")
