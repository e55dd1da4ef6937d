# routers/users.py — Account approval, role assignment and deactivation
import os
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auth import ApiModel, AuthService, Identity, require_privileged, add_audit_log
from database import get_db_session
from errors import ApiError, ErrorKind, success_body
from models import User, Role, RoleName, UserRoleAssignment, AuditEventType
from permissions import PRIVILEGED_ROLES

router = APIRouter(prefix="/api/v1/users", tags=["Users"])

DEFAULT_APPROVAL_ROLE = RoleName(os.getenv("DEFAULT_APPROVAL_ROLE", RoleName.OFFICE_MEMBER.value))


# --- Schemas ---

class UserOut(ApiModel):
    id: str
    email: str
    display_name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    roles: list
    is_active: bool
    last_login_at: Optional[str] = None
    created_at: str


class ApproveRequest(ApiModel):
    role: Optional[RoleName] = None


class RoleAssign(ApiModel):
    role: RoleName


# --- Helpers ---

def _user_to_out(u: User) -> dict:
    return UserOut(
        id=u.id,
        email=u.email,
        display_name=u.display_name or "",
        first_name=u.first_name,
        last_name=u.last_name,
        roles=sorted(a.role.name.value for a in u.role_assignments),
        is_active=u.is_active,
        last_login_at=u.last_login_at.isoformat() if u.last_login_at else None,
        created_at=u.created_at.isoformat() if u.created_at else "",
    ).model_dump(by_alias=True)


async def _get_user(db: AsyncSession, user_id: str) -> User:
    stmt = (
        select(User)
        .where(User.id == user_id)
        .options(selectinload(User.role_assignments).selectinload(UserRoleAssignment.role))
        .execution_options(populate_existing=True)
    )
    target = (await db.execute(stmt)).scalar_one_or_none()
    if not target:
        raise ApiError(ErrorKind.NOT_FOUND, "User not found")
    return target


# --- Endpoints ---

@router.get("")
async def list_users(
    current_user: Identity = Depends(require_privileged),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    role: Optional[RoleName] = None,
    pending: Optional[bool] = None,
):
    """List accounts; ``pending=true`` returns those awaiting approval"""
    stmt = (
        select(User)
        .options(selectinload(User.role_assignments).selectinload(UserRoleAssignment.role))
        .order_by(User.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    if pending is not None:
        stmt = stmt.where(User.is_active.is_(not pending))
    if role:
        stmt = stmt.where(User.role_assignments.any(UserRoleAssignment.role.has(Role.name == role)))

    result = await db.execute(stmt)
    return success_body([_user_to_out(u) for u in result.scalars().all()])


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    current_user: Identity = Depends(require_privileged),
    db: AsyncSession = Depends(get_db_session),
):
    return success_body(_user_to_out(await _get_user(db, user_id)))


@router.post("/{user_id}/approve")
async def approve_user(
    user_id: str,
    request: Request,
    data: Optional[ApproveRequest] = Body(default=None),
    current_user: Identity = Depends(require_privileged),
    db: AsyncSession = Depends(get_db_session),
):
    """Activate a pending account and assign its first role in one transaction"""
    target = await _get_user(db, user_id)
    if target.is_active:
        raise ApiError(ErrorKind.VALIDATION, "User is already active")

    role = (data.role if data else None) or DEFAULT_APPROVAL_ROLE
    target.is_active = True
    await AuthService.assign_role(db, target.id, role, assigned_by=current_user.id)
    add_audit_log(
        db, AuditEventType.USER_APPROVED, user_id=current_user.id,
        resource_type="user", resource_id=user_id, metadata={"role": role.value},
        request=request,
    )
    await db.commit()

    return success_body(_user_to_out(await _get_user(db, user_id)), message="User approved")


@router.post("/{user_id}/roles")
async def assign_role(
    user_id: str,
    data: RoleAssign,
    request: Request,
    current_user: Identity = Depends(require_privileged),
    db: AsyncSession = Depends(get_db_session),
):
    await _get_user(db, user_id)
    added = await AuthService.assign_role(db, user_id, data.role, assigned_by=current_user.id)
    if added:
        add_audit_log(
            db, AuditEventType.USER_ROLE_ASSIGNED, user_id=current_user.id,
            resource_type="user", resource_id=user_id, metadata={"role": data.role.value},
            request=request,
        )
    await db.commit()

    message = "Role assigned" if added else "Role already assigned"
    return success_body(_user_to_out(await _get_user(db, user_id)), message=message)


@router.delete("/{user_id}/roles/{role}")
async def remove_role(
    user_id: str,
    role: RoleName,
    request: Request,
    current_user: Identity = Depends(require_privileged),
    db: AsyncSession = Depends(get_db_session),
):
    if user_id == current_user.id and role.value in PRIVILEGED_ROLES:
        raise ApiError(ErrorKind.VALIDATION, "Cannot remove your own privileged role")

    await _get_user(db, user_id)
    removed = await AuthService.remove_role(db, user_id, role)
    if not removed:
        raise ApiError(ErrorKind.NOT_FOUND, f"User does not hold role {role.value}")

    add_audit_log(
        db, AuditEventType.USER_ROLE_REMOVED, user_id=current_user.id,
        resource_type="user", resource_id=user_id, metadata={"role": role.value},
        request=request,
    )
    await db.commit()
    return success_body(_user_to_out(await _get_user(db, user_id)), message="Role removed")


@router.delete("/{user_id}")
async def deactivate_user(
    user_id: str,
    request: Request,
    current_user: Identity = Depends(require_privileged),
    db: AsyncSession = Depends(get_db_session),
):
    """Deactivate a user; accounts are never deleted"""
    if user_id == current_user.id:
        raise ApiError(ErrorKind.VALIDATION, "Cannot deactivate yourself")

    target = await _get_user(db, user_id)
    target.is_active = False
    add_audit_log(
        db, AuditEventType.USER_DEACTIVATED, user_id=current_user.id,
        resource_type="user", resource_id=user_id, request=request,
    )
    await db.commit()

    return success_body({"id": user_id, "isActive": False}, message="User deactivated")
