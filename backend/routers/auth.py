# routers/auth.py — Registration, login, token refresh/revocation and password reset
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    ChangePasswordRequest, ForgotPasswordRequest, ResetPasswordRequest,
    Identity, get_current_user, add_audit_log,
    ACCESS_TOKEN_EXPIRE_MINUTES, ENVIRONMENT,
)
from database import get_db_session
from errors import ApiError, ErrorKind, success_body
from models import User, AuditEventType

logger = logging.getLogger("school-portal.auth")

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _user_summary(user_obj, roles) -> dict:
    return {
        "id": user_obj.id,
        "email": user_obj.email,
        "displayName": user_obj.display_name or "",
        "firstName": user_obj.first_name,
        "lastName": user_obj.last_name,
        "roles": sorted(roles),
        "isActive": user_obj.is_active,
    }


async def _build_token_response(user_obj, db: AsyncSession) -> dict:
    """Build token response from a user ORM instance"""
    token_data = AuthService.token_claims(user_obj)
    roles = await AuthService.resolve_roles(db, user_obj.id)
    return TokenResponse(
        access_token=AuthService.create_access_token(token_data),
        refresh_token=AuthService.create_refresh_token(token_data),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=_user_summary(user_obj, roles),
    ).model_dump(by_alias=True)


@router.post("/register", status_code=201)
async def register(
    user_data: UserRegister,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new account. It stays inactive (and token-less) until approved."""
    user = await AuthService.register_user(user_data, db, request)
    return success_body(
        _user_summary(user, frozenset()),
        message="Registration received. An administrator must approve the account before login.",
    )


@router.post("/login")
async def login(
    credentials: UserLogin,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    user = await AuthService.authenticate_user(
        credentials.email, credentials.password, db, request
    )
    if not user:
        logger.info(f"Failed login for {credentials.email}")
        raise ApiError(ErrorKind.UNAUTHENTICATED, "Invalid credentials")
    return success_body(await _build_token_response(user, db))


@router.post("/refresh")
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Refresh access token using a refresh token"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise ApiError(ErrorKind.UNAUTHENTICATED, "Invalid token type. Expected refresh token.")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise ApiError(ErrorKind.UNAUTHENTICATED, "Refresh token has been revoked")

    user = await db.get(User, payload.get("sub"))
    if not user or not user.is_active:
        raise ApiError(ErrorKind.UNAUTHENTICATED, "User not found or inactive")

    return success_body(await _build_token_response(user, db))


@router.post("/logout")
async def logout(
    request: Request,
    user: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Logout and revoke the presented access token"""
    if user.token_jti:
        add_audit_log(db, AuditEventType.TOKEN_REVOKED, user_id=user.id, request=request)
        add_audit_log(db, AuditEventType.USER_LOGOUT, user_id=user.id, request=request)
        await AuthService.revoke_token(user.token_jti, user.id, user.token_expires_at, db)

    return success_body({"status": "logged_out"}, message="Session terminated")


@router.get("/me")
async def get_current_user_info(
    user: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get current authenticated user information"""
    user_obj = await db.get(User, user.id)
    return success_body(_user_summary(user_obj, user.roles))


@router.post("/change-password")
async def change_password(
    password_data: ChangePasswordRequest,
    request: Request,
    user: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Change current user's password"""
    user_obj = await db.get(User, user.id)
    if not user_obj:
        raise ApiError(ErrorKind.NOT_FOUND, "User not found")

    if not AuthService.verify_password(password_data.current_password, user_obj.password_hash):
        raise ApiError(ErrorKind.UNAUTHENTICATED, "Current password is incorrect")

    user_obj.password_hash = AuthService.hash_password(password_data.new_password)
    db.add(user_obj)
    add_audit_log(db, AuditEventType.PASSWORD_CHANGED, user_id=user.id, request=request)
    await db.commit()

    return success_body({"status": "password_changed"}, message="Password updated successfully")


@router.post("/forgot-password")
async def forgot_password(
    data: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Issue a one-shot reset token. The response never reveals whether the email exists."""
    stmt = select(User).where(User.email == data.email.lower())
    user = (await db.execute(stmt)).scalar_one_or_none()

    body = {}
    if user and user.is_active:
        raw_token, expires_at = await AuthService.create_reset_token(db, user)
        logger.info(f"Password reset token issued for user={user.id}")
        # Delivery is out of band; development builds hand the token back directly
        if ENVIRONMENT == "development":
            body = {"resetToken": raw_token, "expiresAt": expires_at.isoformat()}

    return success_body(body, message="If the email exists, reset instructions have been sent")


@router.post("/reset-password")
async def reset_password(
    data: ResetPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    await AuthService.consume_reset_token(db, data.token, data.new_password, request)
    return success_body({"status": "password_reset"}, message="Password has been reset")
