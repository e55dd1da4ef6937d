# bulk.py - Apply one action to many communications with per-item isolation
#
# Items are processed sequentially in input order and each one is committed on
# its own. A failing item is rolled back and reported; it never aborts the loop
# or undoes items already committed.

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from communications import apply_fields, check_window, plan_transition, priority_allowed
from errors import ErrorKind, Outcome, status_for
from models import Communication, CommunicationStatus, Priority, as_utc, utcnow
from permissions import can_bulk

logger = logging.getLogger("school-portal.bulk")


class BulkAction(str, Enum):
    PUBLISH = "publish"
    ARCHIVE = "archive"
    DRAFT = "draft"
    DELETE = "delete"
    UPDATE_PRIORITY = "update_priority"


STATUS_ACTIONS = {
    BulkAction.PUBLISH: CommunicationStatus.PUBLISHED,
    BulkAction.ARCHIVE: CommunicationStatus.ARCHIVED,
    BulkAction.DRAFT: CommunicationStatus.DRAFT,
}


@dataclass
class BulkFailure:
    id: Any
    error: str
    kind: ErrorKind

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "error": self.error, "code": self.kind.value}


@dataclass
class BulkResult:
    action: BulkAction
    success: List[Any] = field(default_factory=list)
    failed: List[BulkFailure] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return len(self.success) + len(self.failed)

    @property
    def ok(self) -> bool:
        """False only when every item failed."""
        return bool(self.success) or not self.failed

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        """Shared failure kind when every item failed, else None."""
        if self.success or not self.failed:
            return None
        kinds = {f.kind for f in self.failed}
        if ErrorKind.INTERNAL in kinds:
            return ErrorKind.INTERNAL
        if len(kinds) == 1:
            return kinds.pop()
        return ErrorKind.VALIDATION

    @property
    def http_status(self) -> int:
        if not self.failed:
            return 200
        if self.success:
            return 207
        return status_for(self.error_kind)

    @property
    def message(self) -> str:
        return (
            f"Bulk operation completed. {len(self.success)}/{self.total_processed} "
            f"items processed successfully."
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalProcessed": self.total_processed,
            "totalSuccess": len(self.success),
            "totalFailed": len(self.failed),
            "results": {
                "success": list(self.success),
                "failed": [f.to_dict() for f in self.failed],
            },
        }


def _parse_request(action, ids, target_priority) -> Outcome:
    try:
        action = BulkAction(action)
    except ValueError:
        allowed = ", ".join(a.value for a in BulkAction)
        return Outcome.failure(ErrorKind.VALIDATION, f"Invalid action. Must be one of: {allowed}")

    if not ids or not isinstance(ids, (list, tuple)):
        return Outcome.failure(ErrorKind.VALIDATION, "ids must be a non-empty list")

    priority = None
    if action is BulkAction.UPDATE_PRIORITY:
        if target_priority is None:
            return Outcome.failure(ErrorKind.VALIDATION, "targetPriority is required for update_priority")
        try:
            priority = Priority(target_priority)
        except ValueError:
            return Outcome.failure(ErrorKind.VALIDATION, f"Invalid targetPriority '{target_priority}'")
    return Outcome.success((action, priority))


async def _apply_one(db: AsyncSession, action: BulkAction, item_id, priority: Optional[Priority],
                     now: datetime) -> Outcome:
    record = await db.get(Communication, item_id)
    if record is None:
        return Outcome.failure(ErrorKind.NOT_FOUND, f"Communication {item_id} not found")

    if action is BulkAction.DELETE:
        await db.delete(record)
        return Outcome.success()

    if action is BulkAction.UPDATE_PRIORITY:
        if not priority_allowed(record.type, priority):
            return Outcome.failure(
                ErrorKind.VALIDATION,
                f"Priority '{priority.value}' is not available for {record.type.value} communications",
            )
        record.priority = priority
        return Outcome.success()

    planned = plan_transition(record, STATUS_ACTIONS[action], now)
    if not planned:
        return planned
    problem = check_window(planned.value["published_at"], as_utc(record.expires_at))
    if problem is not None:
        return problem
    apply_fields(record, planned.value)
    return Outcome.success()


async def bulk_apply(db: AsyncSession, action, ids, identity,
                     target_priority=None, now: Optional[datetime] = None) -> Outcome:
    """Run ``action`` over ``ids``; returns ``Outcome[BulkResult]``.

    Request-level problems (unknown action, empty ids, missing or unknown
    ``target_priority``, caller outside the privileged tier) fail the whole
    call before any record is read.
    """
    parsed = _parse_request(action, ids, target_priority)
    if not parsed:
        return parsed
    action, priority = parsed.value

    decision = can_bulk(identity)
    if not decision:
        logger.info(f"Bulk {action.value} denied for user={getattr(identity, 'id', None)}: {decision.reason.value}")
        return Outcome.failure(decision.reason)

    now = now or utcnow()
    result = BulkResult(action=action)

    for item_id in ids:
        try:
            outcome = await _apply_one(db, action, item_id, priority, now)
            if outcome:
                await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Bulk {action.value} failed on communication {item_id}: {e}", exc_info=True)
            outcome = Outcome.failure(ErrorKind.INTERNAL, "Failed to persist change")

        if outcome:
            result.success.append(item_id)
        else:
            logger.warning(f"Bulk {action.value} skipped communication {item_id}: {outcome.message}")
            result.failed.append(BulkFailure(id=item_id, error=outcome.message, kind=outcome.error))

    logger.info(
        f"Bulk {action.value} by user={identity.id}: "
        f"{len(result.success)} ok, {len(result.failed)} failed"
    )
    return Outcome.success(result)
