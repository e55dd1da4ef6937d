# auth.py — Authentication and identity resolution for the school portal
# Features:
# - JWT access/refresh tokens with JTI for revocation
# - Flat role set per user, resolved from the database on every request
# - Accounts start inactive until approved by the privileged tier
# - One-shot password reset tokens (sha256 stored, raw token never persisted)
# - Audit log helper shared by the routers

import os
import uuid
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, FrozenSet

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, EmailStr, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import ApiError, ErrorKind
from models import (
    User, Role, RoleName, UserRoleAssignment, AuditLog, AuditEventType,
    RevokedToken, PasswordResetToken, as_utc, utcnow,
)
from permissions import is_privileged

logger = logging.getLogger("school-portal.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
PASSWORD_RESET_EXPIRE_MINUTES = int(os.getenv("PASSWORD_RESET_EXPIRE_MINUTES", "60"))
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
WEAK_PASSWORDS = {
    "12345678", "password", "password123", "admin123",
    "qwerty123", "87654321", "abc12345", "123456789",
}

ROLE_DISPLAY_NAMES = {
    RoleName.ADMIN: ("Administrator", "Full access to every portal feature"),
    RoleName.OFFICE_MEMBER: ("Office Member", "School office staff; same privileges as administrators"),
    RoleName.TEACHER: ("Teacher", "Posts messages and board posts for staff"),
    RoleName.VIEWER: ("Viewer", "Reads published communications"),
    RoleName.PARENT: ("Parent", "Reads communications addressed to families"),
}

security = HTTPBearer(auto_error=False)


def check_password_policy(password: str) -> str:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"Password cannot exceed {MAX_PASSWORD_LENGTH} characters")
    if not any(c.isalpha() for c in password) or not any(c.isdigit() for c in password):
        raise ValueError("Password must contain at least one letter and one digit")
    if password.lower() in WEAK_PASSWORDS:
        raise ValueError("Password is too common")
    return password


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class ApiModel(BaseModel):
    """camelCase on the wire; snake_case also accepted on input"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserRegister(ApiModel):
    email: EmailStr
    password: str
    display_name: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return check_password_policy(v)


class UserLogin(ApiModel):
    email: EmailStr
    password: str


class TokenResponse(ApiModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class RefreshRequest(ApiModel):
    refresh_token: str


class ChangePasswordRequest(ApiModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return check_password_policy(v)


class ForgotPasswordRequest(ApiModel):
    email: EmailStr


class ResetPasswordRequest(ApiModel):
    token: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return check_password_policy(v)


class Identity(BaseModel):
    """The authenticated caller, threaded explicitly into every core check."""
    id: str
    email: str
    display_name: str = ""
    roles: FrozenSet[str] = frozenset()
    is_active: bool = False
    token_jti: Optional[str] = None
    token_expires_at: Optional[datetime] = None


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password, token, role and reset-token handling"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise ApiError(ErrorKind.UNAUTHENTICATED, "Token expired")
        except JWTError:
            raise ApiError(ErrorKind.UNAUTHENTICATED, "Invalid token")

    @staticmethod
    def token_claims(user: User) -> Dict[str, Any]:
        # Roles are deliberately absent: they are re-read on every request
        return {"sub": user.id, "email": user.email}

    # ---- roles ------------------------------------------------------------

    @staticmethod
    async def ensure_roles(db: AsyncSession) -> None:
        """Create any missing role rows. Safe to call on every startup."""
        result = await db.execute(select(Role.name))
        existing = {RoleName(name) for name in result.scalars().all()}
        missing = [name for name in RoleName if name not in existing]
        for name in missing:
            display_name, description = ROLE_DISPLAY_NAMES[name]
            db.add(Role(name=name, display_name=display_name, description=description))
        if missing:
            await db.commit()
            logger.info(f"Created roles: {', '.join(n.value for n in missing)}")

    @staticmethod
    async def resolve_roles(db: AsyncSession, user_id: str) -> FrozenSet[str]:
        stmt = (
            select(Role.name)
            .join(UserRoleAssignment, UserRoleAssignment.role_id == Role.id)
            .where(UserRoleAssignment.user_id == user_id)
        )
        result = await db.execute(stmt)
        return frozenset(RoleName(name).value for name in result.scalars().all())

    @staticmethod
    async def assign_role(db: AsyncSession, user_id: str, role_name: RoleName,
                          assigned_by: Optional[str] = None) -> bool:
        """Add ``role_name`` to the user. Returns False if it was already assigned.

        Does not commit; the caller owns the transaction.
        """
        result = await db.execute(select(Role).where(Role.name == role_name))
        role = result.scalar_one_or_none()
        if role is None:
            await AuthService.ensure_roles(db)
            result = await db.execute(select(Role).where(Role.name == role_name))
            role = result.scalar_one()

        stmt = select(UserRoleAssignment).where(
            UserRoleAssignment.user_id == user_id,
            UserRoleAssignment.role_id == role.id,
        )
        if (await db.execute(stmt)).scalar_one_or_none():
            return False
        db.add(UserRoleAssignment(user_id=user_id, role_id=role.id, assigned_by=assigned_by))
        return True

    @staticmethod
    async def remove_role(db: AsyncSession, user_id: str, role_name: RoleName) -> bool:
        stmt = (
            select(UserRoleAssignment)
            .join(Role, UserRoleAssignment.role_id == Role.id)
            .where(UserRoleAssignment.user_id == user_id, Role.name == role_name)
        )
        assignment = (await db.execute(stmt)).scalar_one_or_none()
        if assignment is None:
            return False
        await db.delete(assignment)
        return True

    # ---- accounts ---------------------------------------------------------

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession,
                            request: Optional[Request] = None) -> User:
        email = user_data.email.lower()
        stmt = select(User).where(User.email == email)
        result = await db.execute(stmt)
        if result.scalar_one_or_none():
            raise ApiError(ErrorKind.VALIDATION, "User already exists")

        display_name = (
            user_data.display_name
            or " ".join(p for p in (user_data.first_name, user_data.last_name) if p)
            or email.split("@")[0]
        )
        new_user = User(
            email=email,
            display_name=display_name,
            first_name=user_data.first_name,
            last_name=user_data.last_name,
            password_hash=AuthService.hash_password(user_data.password),
            is_active=False,
        )
        db.add(new_user)
        await db.flush()

        add_audit_log(db, AuditEventType.USER_REGISTER, user_id=new_user.id,
                      resource_type="user", resource_id=new_user.id, request=request)
        await db.commit()
        await db.refresh(new_user)
        logger.info(f"Registered user={new_user.id} (pending approval)")
        return new_user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession,
                                request: Optional[Request] = None) -> Optional[User]:
        stmt = select(User).where(User.email == email.lower())
        result = await db.execute(stmt)
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            return None

        if not user.is_active:
            raise ApiError(ErrorKind.UNAUTHENTICATED, "Account is awaiting administrator approval")

        user.last_login_at = utcnow()
        db.add(user)
        add_audit_log(db, AuditEventType.USER_LOGIN, user_id=user.id, request=request)
        await db.commit()
        return user

    # ---- token revocation -------------------------------------------------

    @staticmethod
    async def is_token_revoked(jti: str, db: AsyncSession) -> bool:
        stmt = select(RevokedToken).where(RevokedToken.jti == jti)
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def revoke_token(jti: str, user_id: str, expires_at: datetime, db: AsyncSession) -> None:
        revoked = RevokedToken(jti=jti, user_id=user_id, expires_at=expires_at)
        db.add(revoked)
        await db.commit()

    # ---- password reset ---------------------------------------------------

    @staticmethod
    def _hash_reset_token(raw_token: str) -> str:
        return hashlib.sha256(raw_token.encode()).hexdigest()

    @staticmethod
    async def create_reset_token(db: AsyncSession, user: User) -> tuple:
        """Issue a reset token, voiding any earlier unused ones. Returns (raw_token, expires_at)."""
        now = utcnow()
        stmt = select(PasswordResetToken).where(
            PasswordResetToken.user_id == user.id,
            PasswordResetToken.used_at.is_(None),
        )
        for old in (await db.execute(stmt)).scalars().all():
            old.used_at = now

        raw_token = secrets.token_urlsafe(32)
        expires_at = now + timedelta(minutes=PASSWORD_RESET_EXPIRE_MINUTES)
        db.add(PasswordResetToken(
            user_id=user.id,
            token_hash=AuthService._hash_reset_token(raw_token),
            expires_at=expires_at,
        ))
        await db.commit()
        return raw_token, expires_at

    @staticmethod
    async def consume_reset_token(db: AsyncSession, raw_token: str, new_password: str,
                                  request: Optional[Request] = None) -> User:
        stmt = select(PasswordResetToken).where(
            PasswordResetToken.token_hash == AuthService._hash_reset_token(raw_token)
        )
        reset = (await db.execute(stmt)).scalar_one_or_none()
        now = utcnow()
        if reset is None or reset.used_at is not None or as_utc(reset.expires_at) <= now:
            raise ApiError(ErrorKind.VALIDATION, "Invalid or expired reset token")

        user = await db.get(User, reset.user_id)
        if user is None or not user.is_active:
            raise ApiError(ErrorKind.VALIDATION, "Invalid or expired reset token")

        user.password_hash = AuthService.hash_password(new_password)
        reset.used_at = now
        add_audit_log(db, AuditEventType.PASSWORD_RESET, user_id=user.id, request=request)
        await db.commit()
        return user


# ============================================================
# AUDIT
# ============================================================

def add_audit_log(db: AsyncSession, event_type: AuditEventType, user_id: Optional[str] = None,
                  resource_type: Optional[str] = None, resource_id=None,
                  metadata: Optional[Dict[str, Any]] = None,
                  request: Optional[Request] = None) -> AuditLog:
    """Stage an audit row in the caller's transaction (no commit)."""
    audit = AuditLog(
        event_type=event_type,
        user_id=user_id,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        event_metadata=metadata,
        ip_address=request.client.host if request and request.client else None,
        user_agent=request.headers.get("user-agent") if request else None,
        request_id=str(uuid.uuid4()),
    )
    db.add(audit)
    return audit


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> Identity:
    if credentials is None:
        raise ApiError(ErrorKind.UNAUTHENTICATED, "Authentication required")

    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise ApiError(ErrorKind.UNAUTHENTICATED, "Invalid token type")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise ApiError(ErrorKind.UNAUTHENTICATED, "Token has been revoked")

    user_id = payload.get("sub")
    if not user_id:
        raise ApiError(ErrorKind.UNAUTHENTICATED, "Invalid token")

    user = await db.get(User, user_id)
    if not user or not user.is_active:
        raise ApiError(ErrorKind.UNAUTHENTICATED, "User not found or inactive")

    exp = payload.get("exp")
    return Identity(
        id=user.id,
        email=user.email,
        display_name=user.display_name or "",
        roles=await AuthService.resolve_roles(db, user.id),
        is_active=user.is_active,
        token_jti=jti,
        token_expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )


async def require_privileged(user: Identity = Depends(get_current_user)) -> Identity:
    """Admin or office member"""
    if not is_privileged(user):
        logger.info(f"Privileged route denied for user={user.id} roles={sorted(user.roles)}")
        raise ApiError(ErrorKind.FORBIDDEN_ROLE)
    return user
