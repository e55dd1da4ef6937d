# routers/communications.py — Announcements, messages, board posts, reminders, newsletters
import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import Field
from sqlalchemy import select, func, and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auth import ApiModel, Identity, get_current_user, add_audit_log
from bulk import bulk_apply
from communications import (
    apply_fields, validate_create, validate_update, validate_reply,
)
from database import get_db_session
from errors import ApiError, ErrorKind, success_body
from models import (
    Communication, CommunicationReply, CommunicationType, CommunicationStatus,
    Priority, BoardType, TargetAudience, AuditEventType, as_utc, utcnow,
)
from permissions import (
    Operation, can_create, can_read, can_mutate, is_privileged, readable_audiences,
)

logger = logging.getLogger("school-portal.communications")

router = APIRouter(prefix="/api/v1/communications", tags=["Communications"])

SORT_COLUMNS = {
    "createdAt": Communication.created_at,
    "updatedAt": Communication.updated_at,
    "publishedAt": Communication.published_at,
    "viewCount": Communication.view_count,
    "replyCount": Communication.reply_count,
}


# --- Schemas ---

class AuthorOut(ApiModel):
    id: str
    email: str
    display_name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class ReplyOut(ApiModel):
    id: int
    communication_id: int
    parent_reply_id: Optional[int] = None
    content: str
    author_id: Optional[str] = None
    author: Optional[AuthorOut] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CommunicationOut(ApiModel):
    id: int
    title: str
    content: str
    summary: Optional[str] = None
    type: str
    target_audience: str
    priority: str
    status: str
    is_important: bool
    is_pinned: bool
    source_group: Optional[str] = None
    board_type: Optional[str] = None
    due_date: Optional[str] = None
    is_recurring: bool = False
    recurring_pattern: Optional[str] = None
    author_id: Optional[str] = None
    author: Optional[AuthorOut] = None
    published_at: Optional[str] = None
    expires_at: Optional[str] = None
    view_count: int = 0
    reply_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    replies: Optional[List[ReplyOut]] = None


class BulkRequest(ApiModel):
    action: str
    ids: List[int] = Field(..., min_length=1)
    target_priority: Optional[str] = None


def _iso(value) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def _enum_value(value) -> Optional[str]:
    return value.value if hasattr(value, "value") else value


def _author_out(user) -> Optional[AuthorOut]:
    if user is None:
        return None
    return AuthorOut(
        id=user.id, email=user.email, display_name=user.display_name or "",
        first_name=user.first_name, last_name=user.last_name,
    )


def _reply_out(r) -> ReplyOut:
    return ReplyOut(
        id=r.id, communication_id=r.communication_id, parent_reply_id=r.parent_reply_id,
        content=r.content, author_id=r.author_id, author=_author_out(r.author),
        created_at=_iso(r.created_at), updated_at=_iso(r.updated_at),
    )


def _communication_out(c, include_replies: bool = False) -> dict:
    return CommunicationOut(
        id=c.id, title=c.title, content=c.content, summary=c.summary,
        type=_enum_value(c.type),
        target_audience=_enum_value(c.target_audience),
        priority=_enum_value(c.priority),
        status=_enum_value(c.status),
        is_important=c.is_important, is_pinned=c.is_pinned,
        source_group=c.source_group, board_type=_enum_value(c.board_type),
        due_date=_iso(c.due_date), is_recurring=bool(c.is_recurring),
        recurring_pattern=c.recurring_pattern,
        author_id=c.author_id, author=_author_out(c.author),
        published_at=_iso(c.published_at), expires_at=_iso(c.expires_at),
        view_count=c.view_count or 0, reply_count=c.reply_count or 0,
        created_at=_iso(c.created_at), updated_at=_iso(c.updated_at),
        replies=[_reply_out(r) for r in c.replies] if include_replies else None,
    ).model_dump(by_alias=True)


async def _load(db: AsyncSession, communication_id: int, with_replies: bool = False) -> Communication:
    options = [selectinload(Communication.author)]
    if with_replies:
        options.append(selectinload(Communication.replies).selectinload(CommunicationReply.author))
    stmt = (
        select(Communication)
        .where(Communication.id == communication_id)
        .options(*options)
        .execution_options(populate_existing=True)
    )
    record = (await db.execute(stmt)).scalar_one_or_none()
    if record is None:
        raise ApiError(ErrorKind.NOT_FOUND, f"Communication {communication_id} not found")
    return record


def _deny(decision, user: Identity, action: str):
    logger.info(f"Denied {action} for user={user.id}: {decision.reason.value}")
    raise ApiError(decision.reason)


async def _refresh_reply_count(db: AsyncSession, communication: Communication) -> None:
    await db.flush()
    count = (await db.execute(
        select(func.count(CommunicationReply.id)).where(
            CommunicationReply.communication_id == communication.id
        )
    )).scalar() or 0
    communication.reply_count = count


# ============================================================
# LIST
# ============================================================

def _visibility_clause(user: Identity, include_expired: bool, now):
    unexpired = or_(Communication.expires_at.is_(None), Communication.expires_at > now)
    if is_privileged(user):
        return None if include_expired else unexpired
    audiences = [TargetAudience(a) for a in readable_audiences(user)]
    return or_(
        and_(
            Communication.status == CommunicationStatus.PUBLISHED,
            Communication.target_audience.in_(audiences),
            unexpired,
        ),
        Communication.author_id == user.id,
    )


def _parse_types(raw: Optional[str]) -> List[CommunicationType]:
    if not raw:
        return []
    try:
        return [CommunicationType(t.strip()) for t in raw.split(",") if t.strip()]
    except ValueError:
        allowed = ", ".join(t.value for t in CommunicationType)
        raise ApiError(ErrorKind.VALIDATION, f"type: must be one of {allowed}")


async def _stats(db: AsyncSession, conditions: list) -> Dict[str, Any]:
    async def grouped(column, enum_cls):
        rows = (await db.execute(
            select(column, func.count(Communication.id)).where(*conditions).group_by(column)
        )).all()
        counts = {member.value: 0 for member in enum_cls}
        for value, count in rows:
            counts[_enum_value(value)] = count
        return counts

    async def count(*extra):
        return (await db.execute(
            select(func.count(Communication.id)).where(*conditions, *extra)
        )).scalar() or 0

    return {
        "total": await count(),
        "byType": await grouped(Communication.type, CommunicationType),
        "byStatus": await grouped(Communication.status, CommunicationStatus),
        "byPriority": await grouped(Communication.priority, Priority),
        "pinned": await count(Communication.is_pinned.is_(True)),
        "important": await count(Communication.is_important.is_(True)),
    }


@router.get("")
async def list_communications(
    type: Optional[str] = Query(None, description="Comma-separated communication types"),
    status: Optional[CommunicationStatus] = Query(None),
    priority: Optional[Priority] = Query(None),
    board_type: Optional[BoardType] = Query(None, alias="boardType"),
    source_group: Optional[str] = Query(None, alias="sourceGroup"),
    target_audience: Optional[TargetAudience] = Query(None, alias="targetAudience"),
    is_pinned: Optional[bool] = Query(None, alias="isPinned"),
    is_important: Optional[bool] = Query(None, alias="isImportant"),
    author_id: Optional[str] = Query(None, alias="authorId"),
    search: Optional[str] = Query(None, max_length=200),
    include_expired: bool = Query(True, alias="includeExpired"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sort_by: str = Query(default="createdAt", alias="sortBy", pattern=r"^(createdAt|updatedAt|publishedAt|viewCount|replyCount)$"),
    sort_order: str = Query(default="desc", alias="sortOrder", pattern=r"^(asc|desc)$"),
    db: AsyncSession = Depends(get_db_session),
    user: Identity = Depends(get_current_user),
):
    conditions = []
    visibility = _visibility_clause(user, include_expired, utcnow())
    if visibility is not None:
        conditions.append(visibility)

    types = _parse_types(type)
    if types:
        conditions.append(Communication.type.in_(types))
    if status:
        conditions.append(Communication.status == status)
    if priority:
        conditions.append(Communication.priority == priority)
    if board_type:
        conditions.append(Communication.board_type == board_type)
    if source_group:
        conditions.append(Communication.source_group == source_group)
    if target_audience:
        conditions.append(Communication.target_audience == target_audience)
    if is_pinned is not None:
        conditions.append(Communication.is_pinned.is_(is_pinned))
    if is_important is not None:
        conditions.append(Communication.is_important.is_(is_important))
    if author_id:
        conditions.append(Communication.author_id == author_id)
    if search:
        term = search.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{term}%"
        conditions.append(or_(
            Communication.title.ilike(pattern, escape="\\"),
            Communication.content.ilike(pattern, escape="\\"),
            Communication.summary.ilike(pattern, escape="\\"),
        ))

    sort_column = SORT_COLUMNS[sort_by]
    order = sort_column.asc() if sort_order == "asc" else sort_column.desc()
    query = (
        select(Communication)
        .where(*conditions)
        .options(selectinload(Communication.author))
        .order_by(Communication.is_pinned.desc(), Communication.is_important.desc(), order, Communication.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    records = (await db.execute(query)).scalars().all()
    stats = await _stats(db, conditions)

    total = stats["total"]
    total_pages = (total + limit - 1) // limit
    return success_body({
        "communications": [_communication_out(c) for c in records],
        "stats": stats,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": total_pages,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        },
    })


# ============================================================
# BULK
# ============================================================

@router.post("/bulk")
async def bulk_operation(
    data: BulkRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    user: Identity = Depends(get_current_user),
):
    outcome = await bulk_apply(db, data.action, data.ids, user, target_priority=data.target_priority)
    if not outcome:
        raise ApiError.from_outcome(outcome)
    result = outcome.value

    add_audit_log(
        db, AuditEventType.COMMUNICATION_BULK, user_id=user.id, resource_type="communication",
        metadata={
            "action": result.action.value,
            "success": result.success,
            "failed": [f.to_dict() for f in result.failed],
        },
        request=request,
    )
    await db.commit()

    body = {"success": result.ok, "data": result.to_dict(), "message": result.message}
    if result.error_kind is not None:
        body["error"] = result.error_kind.value
    return JSONResponse(status_code=result.http_status, content=body)


# ============================================================
# SINGLE RECORD
# ============================================================

@router.get("/{communication_id}")
async def get_communication(
    communication_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: Identity = Depends(get_current_user),
):
    record = await _load(db, communication_id, with_replies=True)
    decision = can_read(user, record)
    if not decision:
        _deny(decision, user, f"read of communication {communication_id}")

    await db.execute(
        update(Communication)
        .where(Communication.id == communication_id)
        .values(view_count=Communication.view_count + 1)
    )
    # ORM-enabled UPDATE synchronizes record.view_count in the session
    await db.commit()
    return success_body(_communication_out(record, include_replies=True))


@router.post("", status_code=201)
async def create_communication(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db_session),
    user: Identity = Depends(get_current_user),
):
    audience = payload.get("targetAudience", payload.get("target_audience", TargetAudience.ALL.value))
    decision = can_create(user, payload.get("type"), audience)
    if not decision:
        _deny(decision, user, f"create of {payload.get('type')} for {audience}")

    outcome = validate_create(payload)
    if not outcome:
        raise ApiError.from_outcome(outcome)

    record = Communication(author_id=user.id, **outcome.value)
    db.add(record)
    await db.flush()
    add_audit_log(
        db, AuditEventType.COMMUNICATION_CREATED, user_id=user.id,
        resource_type="communication", resource_id=record.id,
        metadata={"type": _enum_value(record.type), "status": _enum_value(record.status)},
        request=request,
    )
    await db.commit()

    record = await _load(db, record.id)
    return success_body(_communication_out(record), message="Communication created")


@router.patch("/{communication_id}")
@router.put("/{communication_id}")
async def update_communication(
    communication_id: int,
    request: Request,
    changes: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db_session),
    user: Identity = Depends(get_current_user),
):
    record = await _load(db, communication_id)
    decision = can_mutate(user, record, Operation.UPDATE)
    if not decision:
        _deny(decision, user, f"update of communication {communication_id}")

    outcome = validate_update(record, changes)
    if not outcome:
        raise ApiError.from_outcome(outcome)
    values = outcome.value

    # Authors outside the privileged tier cannot retarget their post beyond what they may create
    if not is_privileged(user):
        decision = can_create(user, values["type"], values["target_audience"])
        if not decision:
            _deny(decision, user, f"update of communication {communication_id}")

    previous_status = _enum_value(record.status)
    apply_fields(record, values)
    add_audit_log(
        db, AuditEventType.COMMUNICATION_UPDATED, user_id=user.id,
        resource_type="communication", resource_id=communication_id,
        metadata={"fields": sorted(changes.keys()), "from_status": previous_status,
                  "to_status": _enum_value(values["status"])},
        request=request,
    )
    await db.commit()

    record = await _load(db, communication_id)
    return success_body(_communication_out(record), message="Communication updated")


@router.delete("/{communication_id}")
async def delete_communication(
    communication_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    user: Identity = Depends(get_current_user),
):
    record = await _load(db, communication_id)
    decision = can_mutate(user, record, Operation.DELETE)
    if not decision:
        _deny(decision, user, f"delete of communication {communication_id}")

    await db.delete(record)
    add_audit_log(
        db, AuditEventType.COMMUNICATION_DELETED, user_id=user.id,
        resource_type="communication", resource_id=communication_id,
        metadata={"type": _enum_value(record.type), "title": record.title},
        request=request,
    )
    await db.commit()
    return success_body({"id": communication_id}, message="Communication deleted")


# ============================================================
# REPLIES
# ============================================================

@router.get("/{communication_id}/replies")
async def list_replies(
    communication_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: Identity = Depends(get_current_user),
):
    record = await _load(db, communication_id)
    decision = can_read(user, record)
    if not decision:
        _deny(decision, user, f"replies of communication {communication_id}")

    result = await db.execute(
        select(CommunicationReply)
        .where(CommunicationReply.communication_id == communication_id)
        .options(selectinload(CommunicationReply.author))
        .order_by(CommunicationReply.created_at.asc(), CommunicationReply.id.asc())
    )
    return success_body([_reply_out(r).model_dump(by_alias=True) for r in result.scalars().all()])


@router.post("/{communication_id}/replies", status_code=201)
async def create_reply(
    communication_id: int,
    request: Request,
    payload: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db_session),
    user: Identity = Depends(get_current_user),
):
    record = await _load(db, communication_id)
    decision = can_read(user, record)
    if not decision:
        _deny(decision, user, f"reply to communication {communication_id}")

    outcome = validate_reply(payload)
    if not outcome:
        raise ApiError.from_outcome(outcome)
    values = outcome.value

    parent_id = values["parent_reply_id"]
    if parent_id is not None:
        parent = await db.get(CommunicationReply, parent_id)
        if parent is None or parent.communication_id != communication_id:
            raise ApiError(ErrorKind.VALIDATION, "parentReplyId: reply not found on this communication")

    reply = CommunicationReply(
        communication_id=communication_id,
        author_id=user.id,
        parent_reply_id=parent_id,
        content=values["content"],
    )
    db.add(reply)
    await _refresh_reply_count(db, record)
    add_audit_log(
        db, AuditEventType.REPLY_CREATED, user_id=user.id,
        resource_type="communication_reply", resource_id=reply.id,
        metadata={"communication_id": communication_id},
        request=request,
    )
    await db.commit()

    result = await db.execute(
        select(CommunicationReply)
        .where(CommunicationReply.id == reply.id)
        .options(selectinload(CommunicationReply.author))
    )
    return success_body(_reply_out(result.scalar_one()).model_dump(by_alias=True), message="Reply added")


@router.delete("/{communication_id}/replies/{reply_id}")
async def delete_reply(
    communication_id: int,
    reply_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    user: Identity = Depends(get_current_user),
):
    record = await _load(db, communication_id)
    reply = await db.get(CommunicationReply, reply_id)
    if reply is None or reply.communication_id != communication_id:
        raise ApiError(ErrorKind.NOT_FOUND, f"Reply {reply_id} not found")

    if not is_privileged(user) and reply.author_id != user.id:
        logger.info(f"Denied reply delete for user={user.id}: {ErrorKind.NOT_OWNER.value}")
        raise ApiError(ErrorKind.NOT_OWNER, "Can only delete your own replies")

    await db.delete(reply)
    await _refresh_reply_count(db, record)
    add_audit_log(
        db, AuditEventType.REPLY_DELETED, user_id=user.id,
        resource_type="communication_reply", resource_id=reply_id,
        metadata={"communication_id": communication_id},
        request=request,
    )
    await db.commit()
    return success_body({"id": reply_id, "replyCount": record.reply_count}, message="Reply deleted")
