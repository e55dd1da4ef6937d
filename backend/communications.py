"""
Unified communication model: payload variants, validation and status lifecycle.

Every communication kind lives in one table discriminated by ``type``. Payloads
are validated as a tagged union: a shared base plus a type-keyed extension
(board fields for messages, schedule fields for reminders). Validation and
status transitions return ``Outcome`` values; pydantic errors never escape.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import (
    BaseModel, ConfigDict, Field, TypeAdapter, ValidationError,
    field_validator, model_validator,
)
from pydantic.alias_generators import to_camel

from errors import ErrorKind, Outcome
from models import (
    BoardType, CommunicationStatus, CommunicationType, Priority, TargetAudience,
    as_utc, utcnow,
)

TITLE_MAX = 255
CONTENT_MAX = 50_000
SUMMARY_MAX = 500
REPLY_MAX = 10_000

# announcement/newsletter keep the three-level scale; "critical" is for
# reminders and board posts
STANDARD_PRIORITY_TYPES = frozenset({
    CommunicationType.ANNOUNCEMENT.value,
    CommunicationType.NEWSLETTER.value,
})

MESSAGE_FIELDS = ("source_group", "board_type")
REMINDER_FIELDS = ("due_date", "is_recurring", "recurring_pattern")
TYPE_SPECIFIC_DEFAULTS = {
    "source_group": None,
    "board_type": None,
    "due_date": None,
    "is_recurring": False,
    "recurring_pattern": None,
}

UPDATABLE_FIELDS = (
    "title", "content", "summary", "type", "target_audience", "priority", "status",
    "is_important", "is_pinned", "published_at", "expires_at",
) + MESSAGE_FIELDS + REMINDER_FIELDS
_FIELD_BY_ALIAS = {to_camel(name): name for name in UPDATABLE_FIELDS}


def priority_allowed(comm_type, priority) -> bool:
    comm_type = getattr(comm_type, "value", comm_type)
    return not (comm_type in STANDARD_PRIORITY_TYPES and Priority(priority) is Priority.CRITICAL)


# ============================================================
# PAYLOAD VARIANTS
# ============================================================

class PayloadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CommunicationBase(PayloadModel):
    title: str = Field(..., max_length=TITLE_MAX)
    content: str = Field(..., max_length=CONTENT_MAX)
    summary: Optional[str] = Field(default=None, max_length=SUMMARY_MAX)
    target_audience: TargetAudience = TargetAudience.ALL
    priority: Priority = Priority.MEDIUM
    status: CommunicationStatus = CommunicationStatus.DRAFT
    is_important: bool = False
    is_pinned: bool = False
    published_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @field_validator("title", "content")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("summary")
    @classmethod
    def blank_summary_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @field_validator("published_at", "expires_at")
    @classmethod
    def utc_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class _StandardPriority(CommunicationBase):
    @field_validator("priority")
    @classmethod
    def no_critical(cls, v: Priority) -> Priority:
        if v is Priority.CRITICAL:
            raise ValueError("critical priority is only available for reminders and message board posts")
        return v


class AnnouncementPayload(_StandardPriority):
    type: Literal["announcement"]


class NewsletterPayload(_StandardPriority):
    type: Literal["newsletter"]


class _BoardPost(CommunicationBase):
    board_type: BoardType = BoardType.GENERAL
    # Open set: named offices and teams come and go
    source_group: Optional[str] = None

    @field_validator("board_type", mode="before")
    @classmethod
    def default_board(cls, v):
        return BoardType.GENERAL if v is None else v

    @field_validator("source_group")
    @classmethod
    def blank_group_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class MessagePayload(_BoardPost):
    type: Literal["message"]


class MessageBoardPayload(_BoardPost):
    type: Literal["message_board"]


class ReminderPayload(CommunicationBase):
    type: Literal["reminder"]
    due_date: Optional[datetime] = None
    is_recurring: bool = False
    # Human-readable ("every other Friday"), not parsed
    recurring_pattern: Optional[str] = Field(default=None, max_length=255)

    @field_validator("due_date")
    @classmethod
    def utc_due_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @model_validator(mode="after")
    def pattern_needs_recurrence(self):
        if not self.is_recurring:
            self.recurring_pattern = None
        elif self.recurring_pattern is not None:
            self.recurring_pattern = self.recurring_pattern.strip() or None
        return self


CommunicationPayload = Annotated[
    Union[
        AnnouncementPayload,
        MessagePayload,
        MessageBoardPayload,
        ReminderPayload,
        NewsletterPayload,
    ],
    Field(discriminator="type"),
]

_payload_adapter = TypeAdapter(CommunicationPayload)
_VARIANT_TAGS = {t.value for t in CommunicationType}


class ReplyPayload(PayloadModel):
    content: str = Field(..., max_length=REPLY_MAX)
    parent_reply_id: Optional[int] = None

    @field_validator("content")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v


# ============================================================
# ERROR FORMATTING
# ============================================================

def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in _VARIANT_TAGS]
        field = ".".join(to_camel(p) for p in loc)
        msg = str(err.get("msg", "")).removeprefix("Value error, ")
        parts.append(f"{field}: {msg}" if field else msg)
    return "; ".join(parts) or "Invalid payload"


def _parse(payload: Any) -> Outcome:
    try:
        return Outcome.success(_payload_adapter.validate_python(payload))
    except ValidationError as exc:
        return Outcome.failure(ErrorKind.VALIDATION, describe_validation_error(exc))


def check_window(published_at: Optional[datetime], expires_at: Optional[datetime]) -> Optional[Outcome]:
    """Failure ``Outcome`` when ``expires_at`` does not follow ``published_at``, else None."""
    if published_at is not None and expires_at is not None and expires_at <= published_at:
        return Outcome.failure(ErrorKind.VALIDATION, "expiresAt: must be after publishedAt")
    return None


def _columns(variant: BaseModel) -> Dict[str, Any]:
    values = dict(TYPE_SPECIFIC_DEFAULTS)
    values.update(variant.model_dump())
    return values


# ============================================================
# STATUS LIFECYCLE
# ============================================================

_STAMP, _CLEAR, _KEEP = "stamp", "clear", "keep"

# (from, to) -> effect on published_at. Anything leaving "archived" is absent.
TRANSITIONS = {
    (CommunicationStatus.DRAFT, CommunicationStatus.PUBLISHED): _STAMP,
    (CommunicationStatus.PUBLISHED, CommunicationStatus.DRAFT): _CLEAR,
    (CommunicationStatus.PUBLISHED, CommunicationStatus.ARCHIVED): _KEEP,
    (CommunicationStatus.DRAFT, CommunicationStatus.ARCHIVED): _CLEAR,
    (CommunicationStatus.DRAFT, CommunicationStatus.DRAFT): _CLEAR,
    (CommunicationStatus.PUBLISHED, CommunicationStatus.PUBLISHED): _STAMP,
}


def _transition(current, target, published_at: Optional[datetime], now: Optional[datetime]) -> Outcome:
    try:
        current = CommunicationStatus(current)
        target = CommunicationStatus(target)
    except ValueError:
        return Outcome.failure(ErrorKind.VALIDATION, f"status: unknown status '{target}'")

    effect = TRANSITIONS.get((current, target))
    if effect is None:
        return Outcome.failure(
            ErrorKind.INVALID_TRANSITION,
            f"Cannot move a communication from {current.value} to {target.value}",
        )

    published_at = as_utc(published_at)
    if effect == _STAMP:
        published_at = published_at or as_utc(now) or utcnow()
    elif effect == _CLEAR:
        published_at = None
    return Outcome.success({"status": target, "published_at": published_at})


def plan_transition(record, target, now: Optional[datetime] = None) -> Outcome:
    """Compute the ``{status, published_at}`` pair for moving ``record`` to ``target``.

    Both fields must be written together (see ``apply_fields``) so a published
    row never exists without a publication date.
    """
    return _transition(record.status, target, record.published_at, now)


def apply_fields(record, fields: Dict[str, Any]) -> None:
    for name, value in fields.items():
        setattr(record, name, value)


# ============================================================
# VALIDATION ENTRY POINTS
# ============================================================

def normalize_for_create(values: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Published records get ``published_at`` (``now`` when unset); drafts carry none."""
    planned = _transition(CommunicationStatus.DRAFT, values["status"], values.get("published_at"), now)
    values.update(planned.value)
    return values


def validate_create(payload: Any, now: Optional[datetime] = None) -> Outcome:
    """Validate a new communication and return its column values.

    New records start as draft or published. Drafts carry no publication
    date; published records get ``now`` unless one was supplied.
    """
    parsed = _parse(payload)
    if not parsed:
        return parsed
    variant = parsed.value

    if variant.status is CommunicationStatus.ARCHIVED:
        return Outcome.failure(ErrorKind.VALIDATION, "status: new communications must be draft or published")

    values = normalize_for_create(_columns(variant), now)
    problem = check_window(values["published_at"], values["expires_at"])
    if problem is not None:
        return problem
    return Outcome.success(values)


def _record_fields(record) -> Dict[str, Any]:
    values = {}
    for name in UPDATABLE_FIELDS:
        value = getattr(record, name)
        if isinstance(value, datetime):
            value = as_utc(value)
        elif isinstance(value, Enum):
            value = value.value
        values[name] = value
    return values


def normalize_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Map camelCase or snake_case keys onto column names, dropping unknown keys."""
    normalized = {}
    for key, value in changes.items():
        name = key if key in UPDATABLE_FIELDS else _FIELD_BY_ALIAS.get(key)
        if name:
            normalized[name] = value
    return normalized


def validate_update(record, changes: Any, now: Optional[datetime] = None) -> Outcome:
    """Merge ``changes`` over ``record``, re-validate the full variant and
    return every column value to write (status lifecycle included)."""
    if not isinstance(changes, dict):
        return Outcome.failure(ErrorKind.VALIDATION, "Request body must be a JSON object")

    changes = normalize_changes(changes)
    merged = _record_fields(record)
    merged.update(changes)

    target_status = merged.pop("status")
    merged["status"] = CommunicationStatus.DRAFT.value  # placeholder; lifecycle decides below

    parsed = _parse(merged)
    if not parsed:
        return parsed
    values = _columns(parsed.value)
    # Full-body PUTs echo the stored status and date back; only real changes
    # go through the lifecycle
    current = CommunicationStatus(record.status)
    status_changed = "status" in changes and getattr(target_status, "value", target_status) != current.value
    date_changed = "published_at" in changes and values["published_at"] != as_utc(record.published_at)
    if status_changed or date_changed:
        planned = _transition(current, target_status, values["published_at"], now)
    else:
        planned = Outcome.success({"status": current, "published_at": values["published_at"]})
    if not planned:
        return planned
    values.update(planned.value)

    problem = check_window(values["published_at"], values["expires_at"])
    if problem is not None:
        return problem
    return Outcome.success(values)


def validate_reply(payload: Any) -> Outcome:
    try:
        reply = ReplyPayload.model_validate(payload)
    except ValidationError as exc:
        return Outcome.failure(ErrorKind.VALIDATION, describe_validation_error(exc))
    return Outcome.success(reply.model_dump())
