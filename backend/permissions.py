# permissions.py - Authorization rules for communications
#
# Roles are a flat set per identity. admin and office_member form the
# privileged tier and are interchangeable for every check below; there is no
# numeric role ladder. Every check returns a Decision instead of raising.

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional

from errors import ErrorKind
from models import (
    RoleName, CommunicationType, CommunicationStatus, TargetAudience,
    as_utc, utcnow,
)


class Scope(str, Enum):
    ALL = "all"
    OWN = "own"


class Operation(str, Enum):
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[ErrorKind] = None
    scope: Optional[Scope] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW_ALL = Decision(allowed=True, scope=Scope.ALL)


def _deny(reason: ErrorKind) -> Decision:
    return Decision(allowed=False, reason=reason)


# ============================================================
# RULE TABLE
# ============================================================

PRIVILEGED_ROLES: FrozenSet[str] = frozenset({RoleName.ADMIN.value, RoleName.OFFICE_MEMBER.value})

# Teachers post to staff-facing boards only. "students" mirrors the audience
# list teachers are allowed to target; the audience enum itself never accepts it.
TEACHER_CREATABLE_TYPES: FrozenSet[str] = frozenset({
    CommunicationType.MESSAGE.value,
    CommunicationType.MESSAGE_BOARD.value,
})
TEACHER_TARGET_AUDIENCES: FrozenSet[str] = frozenset({TargetAudience.TEACHERS.value, "students"})

TEACHER_READ_AUDIENCES: FrozenSet[str] = frozenset({TargetAudience.TEACHERS.value, TargetAudience.ALL.value})
FAMILY_READ_AUDIENCES: FrozenSet[str] = frozenset({TargetAudience.PARENTS.value, TargetAudience.ALL.value})


def _value(v) -> Optional[str]:
    if v is None:
        return None
    return v.value if isinstance(v, Enum) else str(v)


def _roles(identity) -> FrozenSet[str]:
    return frozenset(_value(r) for r in (identity.roles or ()))


def _authenticated(identity) -> bool:
    return identity is not None and bool(getattr(identity, "is_active", False))


def is_privileged(identity) -> bool:
    return _authenticated(identity) and bool(_roles(identity) & PRIVILEGED_ROLES)


def is_teacher(identity) -> bool:
    return _authenticated(identity) and RoleName.TEACHER.value in _roles(identity)


def readable_audiences(identity) -> FrozenSet[str]:
    """Audiences whose published records this identity may read.

    The privileged tier reads everything and never reaches this table.
    """
    if not _authenticated(identity):
        return frozenset()
    if is_teacher(identity):
        return TEACHER_READ_AUDIENCES
    return FAMILY_READ_AUDIENCES


def _is_author(identity, record) -> bool:
    return record.author_id is not None and record.author_id == identity.id


def _is_expired(record, now: datetime) -> bool:
    expires_at = as_utc(record.expires_at)
    return expires_at is not None and expires_at < now


# ============================================================
# CHECKS
# ============================================================

def can_create(identity, comm_type, target_audience) -> Decision:
    if not _authenticated(identity):
        return _deny(ErrorKind.UNAUTHENTICATED)
    if is_privileged(identity):
        return ALLOW_ALL
    if is_teacher(identity):
        if _value(target_audience) not in TEACHER_TARGET_AUDIENCES:
            return _deny(ErrorKind.FORBIDDEN_AUDIENCE)
        if _value(comm_type) not in TEACHER_CREATABLE_TYPES:
            return _deny(ErrorKind.FORBIDDEN_ROLE)
        return Decision(allowed=True, scope=Scope.OWN)
    return _deny(ErrorKind.FORBIDDEN_ROLE)


def can_read(identity, record, now: Optional[datetime] = None) -> Decision:
    if not _authenticated(identity):
        return _deny(ErrorKind.UNAUTHENTICATED)
    if is_privileged(identity):
        return ALLOW_ALL
    if _is_author(identity, record):
        return Decision(allowed=True, scope=Scope.OWN)

    now = as_utc(now) or utcnow()
    visible = (
        _value(record.status) == CommunicationStatus.PUBLISHED.value
        and _value(record.target_audience) in readable_audiences(identity)
        and not _is_expired(record, now)
    )
    if not visible:
        return _deny(ErrorKind.FORBIDDEN_AUDIENCE)
    return Decision(allowed=True, scope=Scope.ALL)


def can_mutate(identity, record, operation) -> Decision:
    try:
        operation = Operation(_value(operation))
    except ValueError:
        return _deny(ErrorKind.VALIDATION)
    if not _authenticated(identity):
        return _deny(ErrorKind.UNAUTHENTICATED)
    if is_privileged(identity):
        return ALLOW_ALL
    if not _is_author(identity, record):
        return _deny(ErrorKind.NOT_OWNER)
    if operation is Operation.UPDATE:
        return Decision(allowed=True, scope=Scope.OWN)
    # Authors outside the privileged tier cannot delete, even their own records
    return _deny(ErrorKind.FORBIDDEN_ROLE)


def can_bulk(identity) -> Decision:
    if not _authenticated(identity):
        return _deny(ErrorKind.UNAUTHENTICATED)
    if is_privileged(identity):
        return ALLOW_ALL
    return _deny(ErrorKind.FORBIDDEN_ROLE)
