"""Initial StackFlow schema (roles, users, projects, tickets, comments)

Revision ID: a1f4c2e8d9b3
Revises:
Create Date: 2026-10-19T09:12:44.310527
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1f4c2e8d9b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_ONLY = {
    'postgresql_where': sa.text('is_deleted = false'),
    'sqlite_where': sa.text('is_deleted = 0'),
}


def upgrade() -> None:
    # --- roles ---
    op.create_table(
        'roles',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )

    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(150), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_role_id', 'users', ['role_id'])
    op.create_index('ix_users_is_verified', 'users', ['is_verified'])
    op.create_index('ix_users_is_deleted', 'users', ['is_deleted'])
    op.create_index('uq_users_email_active', 'users', ['email'], unique=True, **ACTIVE_ONLY)
    op.create_index('uq_users_name_active', 'users', [sa.text('lower(name)')], unique=True, **ACTIVE_ONLY)

    # --- projects ---
    op.create_table(
        'projects',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.Enum('Active', 'Completed', 'On_Hold', name='projectstatus'), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_projects_created_by', 'projects', ['created_by'])

    # --- tickets ---
    op.create_table(
        'tickets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('project_id', sa.Integer(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('assigned_to', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('status', sa.Enum('To_Do', 'In_Progress', 'In_Review', 'Done', name='ticketstatus'), nullable=False),
        sa.Column('priority', sa.Enum('Low', 'Medium', 'High', name='ticketpriority'), nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tickets_project_id', 'tickets', ['project_id'])
    op.create_index('ix_tickets_assigned_to', 'tickets', ['assigned_to'])
    op.create_index('ix_tickets_created_by', 'tickets', ['created_by'])
    op.create_index('ix_tickets_status', 'tickets', ['status'])
    op.create_index('idx_ticket_project_status', 'tickets', ['project_id', 'status'])

    # --- comments ---
    op.create_table(
        'comments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('edited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_comments_ticket_id', 'comments', ['ticket_id'])
    op.create_index('ix_comments_created_by', 'comments', ['created_by'])

    # --- seed roles ---
    roles = sa.table(
        'roles',
        sa.column('name', sa.String),
        sa.column('description', sa.Text),
        sa.column('version', sa.Integer),
    )
    op.bulk_insert(roles, [
        {'name': 'Admin', 'description': 'Full control over projects, tickets, users and roles', 'version': 1},
        {'name': 'Developer', 'description': 'Works on assigned tickets', 'version': 1},
        {'name': 'Project Manager', 'description': 'Plans and assigns tickets', 'version': 1},
        {'name': 'Tester', 'description': 'Reviews and verifies tickets', 'version': 1},
    ])


def downgrade() -> None:
    op.drop_table('comments')
    op.drop_table('tickets')
    op.drop_table('projects')
    op.drop_index('uq_users_name_active', table_name='users')
    op.drop_index('uq_users_email_active', table_name='users')
    op.drop_table('users')
    op.drop_table('roles')
    sa.Enum(name='ticketpriority').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='ticketstatus').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='projectstatus').drop(op.get_bind(), checkfirst=True)
