# models.py - Database models for the school information portal
# - String UUID keys for users, integer keys for communications and replies
# - Flat role set per user via the user_roles join table
# - One polymorphic communications table discriminated by `type`
# - Append-only audit log, token revocation and password reset tokens

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(value):
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _enum(enum_cls):
    # Persist enum values ("message_board"), not member names
    return SQLEnum(enum_cls, values_callable=lambda e: [m.value for m in e])


# ============================================================
# ENUMS
# ============================================================

class RoleName(str, PyEnum):
    ADMIN = "admin"
    OFFICE_MEMBER = "office_member"
    TEACHER = "teacher"
    VIEWER = "viewer"
    PARENT = "parent"


class CommunicationType(str, PyEnum):
    ANNOUNCEMENT = "announcement"
    MESSAGE = "message"
    MESSAGE_BOARD = "message_board"
    REMINDER = "reminder"
    NEWSLETTER = "newsletter"


class TargetAudience(str, PyEnum):
    TEACHERS = "teachers"
    PARENTS = "parents"
    ALL = "all"


class Priority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CommunicationStatus(str, PyEnum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class BoardType(str, PyEnum):
    TEACHERS = "teachers"
    PARENTS = "parents"
    GENERAL = "general"


class AuditEventType(str, PyEnum):
    # Auth events
    USER_LOGIN = "auth.user.login"
    USER_LOGOUT = "auth.user.logout"
    USER_REGISTER = "auth.user.register"
    USER_APPROVED = "auth.user.approved"
    USER_ROLE_ASSIGNED = "auth.user.role_assigned"
    USER_ROLE_REMOVED = "auth.user.role_removed"
    USER_DEACTIVATED = "auth.user.deactivated"
    PASSWORD_CHANGED = "auth.password.changed"
    PASSWORD_RESET = "auth.password.reset"
    TOKEN_REVOKED = "auth.token.revoked"
    # Communication events
    COMMUNICATION_CREATED = "communication.created"
    COMMUNICATION_UPDATED = "communication.updated"
    COMMUNICATION_DELETED = "communication.deleted"
    COMMUNICATION_BULK = "communication.bulk"
    REPLY_CREATED = "communication.reply.created"
    REPLY_DELETED = "communication.reply.deleted"


# ============================================================
# USERS & ROLES
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    # Accounts start inactive until an administrator approves them
    is_active = Column(Boolean, default=False, nullable=False, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    role_assignments = relationship(
        "UserRoleAssignment", back_populates="user",
        foreign_keys="UserRoleAssignment.user_id", cascade="all, delete",
    )
    communications = relationship("Communication", back_populates="author")


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(_enum(RoleName), unique=True, nullable=False)
    display_name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    assignments = relationship("UserRoleAssignment", back_populates="role")


class UserRoleAssignment(Base):
    """Many-to-many assignment of roles to users"""
    __tablename__ = "user_roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_by = Column(String, ForeignKey("users.id"), nullable=True)
    assigned_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User", back_populates="role_assignments", foreign_keys=[user_id])
    role = relationship("Role", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )


# ============================================================
# TOKENS
# ============================================================

class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    jti = Column(String, unique=True, nullable=False, index=True)  # JWT ID
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)  # When the token would have expired


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String, unique=True, nullable=False, index=True)  # sha256 of the raw token
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# COMMUNICATIONS
# ============================================================

class Communication(Base):
    """Announcements, messages, board posts, reminders and newsletters in one table"""
    __tablename__ = "communications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    summary = Column(String(500), nullable=True)

    type = Column(_enum(CommunicationType), nullable=False, index=True)
    target_audience = Column(_enum(TargetAudience), nullable=False, default=TargetAudience.ALL, index=True)
    priority = Column(_enum(Priority), nullable=False, default=Priority.MEDIUM)
    status = Column(_enum(CommunicationStatus), nullable=False, default=CommunicationStatus.DRAFT, index=True)

    is_important = Column(Boolean, nullable=False, default=False)
    is_pinned = Column(Boolean, nullable=False, default=False)

    # message / message_board only
    source_group = Column(String, nullable=True)
    board_type = Column(_enum(BoardType), nullable=True)

    # reminder only
    due_date = Column(DateTime(timezone=True), nullable=True)
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurring_pattern = Column(String, nullable=True)

    author_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    view_count = Column(Integer, nullable=False, default=0)
    reply_count = Column(Integer, nullable=False, default=0)  # derived from communication_replies
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    author = relationship("User", back_populates="communications")
    replies = relationship(
        "CommunicationReply", back_populates="communication",
        cascade="all, delete", order_by="CommunicationReply.created_at",
    )

    __table_args__ = (
        Index("idx_comm_type_status", "type", "status"),
        Index("idx_comm_audience_status", "target_audience", "status"),
        Index("idx_comm_pinned_important", "is_pinned", "is_important"),
    )


class CommunicationReply(Base):
    __tablename__ = "communication_replies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    communication_id = Column(
        Integer, ForeignKey("communications.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    author_id = Column(String, ForeignKey("users.id"), nullable=True)
    parent_reply_id = Column(
        Integer, ForeignKey("communication_replies.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    communication = relationship("Communication", back_populates="replies")
    author = relationship("User")
    child_replies = relationship("CommunicationReply", cascade="all, delete")

    __table_args__ = (
        Index("idx_reply_comm_created", "communication_id", "created_at"),
    )


# ============================================================
# AUDIT LOGS (Append-only - never update or delete)
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
    event_type = Column(_enum(AuditEventType), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    request_id = Column(String, index=True, unique=True)

    __table_args__ = (
        Index("idx_audit_event_timestamp", "event_type", "timestamp"),
    )
