"""School portal initial schema (users, roles, communications, replies, audit)

Revision ID: 3a9d1c7e5b20
Revises:
Create Date: 2026-10-19T09:12:44.518203
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = '3a9d1c7e5b20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ROLE_NAME = sa.Enum('admin', 'office_member', 'teacher', 'viewer', 'parent', name='rolename')
COMMUNICATION_TYPE = sa.Enum(
    'announcement', 'message', 'message_board', 'reminder', 'newsletter', name='communicationtype',
)
TARGET_AUDIENCE = sa.Enum('teachers', 'parents', 'all', name='targetaudience')
PRIORITY = sa.Enum('low', 'medium', 'high', 'critical', name='priority')
COMMUNICATION_STATUS = sa.Enum('draft', 'published', 'archived', name='communicationstatus')
BOARD_TYPE = sa.Enum('teachers', 'parents', 'general', name='boardtype')
AUDIT_EVENT_TYPE = sa.Enum(
    'auth.user.login', 'auth.user.logout', 'auth.user.register', 'auth.user.approved',
    'auth.user.role_assigned', 'auth.user.role_removed', 'auth.user.deactivated',
    'auth.password.changed', 'auth.password.reset', 'auth.token.revoked',
    'communication.created', 'communication.updated', 'communication.deleted',
    'communication.bulk', 'communication.reply.created', 'communication.reply.deleted',
    name='auditeventtype',
)


def upgrade() -> None:
    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=False, server_default=''),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_is_active', 'users', ['is_active'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])

    # --- roles ---
    op.create_table(
        'roles',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', ROLE_NAME, nullable=False),
        sa.Column('display_name', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )

    # --- user_roles ---
    op.create_table(
        'user_roles',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('assigned_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'role_id', name='uq_user_role'),
    )
    op.create_index('ix_user_roles_user_id', 'user_roles', ['user_id'])
    op.create_index('ix_user_roles_role_id', 'user_roles', ['role_id'])

    # --- revoked_tokens ---
    op.create_table(
        'revoked_tokens',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('jti', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_revoked_tokens_jti', 'revoked_tokens', ['jti'], unique=True)

    # --- password_reset_tokens ---
    op.create_table(
        'password_reset_tokens',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('token_hash', sa.String(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_password_reset_tokens_user_id', 'password_reset_tokens', ['user_id'])
    op.create_index('ix_password_reset_tokens_token_hash', 'password_reset_tokens', ['token_hash'], unique=True)

    # --- communications ---
    op.create_table(
        'communications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('summary', sa.String(length=500), nullable=True),
        sa.Column('type', COMMUNICATION_TYPE, nullable=False),
        sa.Column('target_audience', TARGET_AUDIENCE, nullable=False, server_default='all'),
        sa.Column('priority', PRIORITY, nullable=False, server_default='medium'),
        sa.Column('status', COMMUNICATION_STATUS, nullable=False, server_default='draft'),
        sa.Column('is_important', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_pinned', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('source_group', sa.String(), nullable=True),
        sa.Column('board_type', BOARD_TYPE, nullable=True),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_recurring', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('recurring_pattern', sa.String(), nullable=True),
        sa.Column('author_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('view_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reply_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_communications_type', 'communications', ['type'])
    op.create_index('ix_communications_target_audience', 'communications', ['target_audience'])
    op.create_index('ix_communications_status', 'communications', ['status'])
    op.create_index('ix_communications_author_id', 'communications', ['author_id'])
    op.create_index('ix_communications_created_at', 'communications', ['created_at'])
    op.create_index('idx_comm_type_status', 'communications', ['type', 'status'])
    op.create_index('idx_comm_audience_status', 'communications', ['target_audience', 'status'])
    op.create_index('idx_comm_pinned_important', 'communications', ['is_pinned', 'is_important'])

    # --- communication_replies ---
    op.create_table(
        'communication_replies',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('communication_id', sa.Integer(), sa.ForeignKey('communications.id', ondelete='CASCADE'), nullable=False),
        sa.Column('author_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('parent_reply_id', sa.Integer(), sa.ForeignKey('communication_replies.id', ondelete='CASCADE'), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_communication_replies_communication_id', 'communication_replies', ['communication_id'])
    op.create_index('ix_communication_replies_parent_reply_id', 'communication_replies', ['parent_reply_id'])
    op.create_index('idx_reply_comm_created', 'communication_replies', ['communication_id', 'created_at'])

    # --- audit_logs (append-only) ---
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('event_type', AUDIT_EVENT_TYPE, nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('resource_type', sa.String(), nullable=True),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_request_id', 'audit_logs', ['request_id'], unique=True)
    op.create_index('idx_audit_event_timestamp', 'audit_logs', ['event_type', 'timestamp'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('communication_replies')
    op.drop_table('communications')
    op.drop_table('password_reset_tokens')
    op.drop_table('revoked_tokens')
    op.drop_table('user_roles')
    op.drop_table('roles')
    op.drop_table('users')
    op.execute("DROP TYPE IF EXISTS auditeventtype")
    op.execute("DROP TYPE IF EXISTS boardtype")
    op.execute("DROP TYPE IF EXISTS communicationstatus")
    op.execute("DROP TYPE IF EXISTS priority")
    op.execute("DROP TYPE IF EXISTS targetaudience")
    op.execute("DROP TYPE IF EXISTS communicationtype")
    op.execute("DROP TYPE IF EXISTS rolename")
