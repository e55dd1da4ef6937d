# tests/test_communication_model.py — Payload validation and status lifecycle
from datetime import datetime, timedelta, timezone

import pytest

from communications import (
    normalize_for_create, plan_transition, priority_allowed, validate_create, validate_reply,
    validate_update,
)
from errors import ErrorKind
from models import (
    BoardType, Communication, CommunicationStatus, CommunicationType, Priority, TargetAudience,
)

NOW = datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)


def stored(status=CommunicationStatus.DRAFT, published_at=None, **overrides):
    values = dict(
        id=7, title="Staff meeting", content="Library, 15:30.", summary=None,
        type=CommunicationType.MESSAGE, target_audience=TargetAudience.TEACHERS,
        priority=Priority.MEDIUM, status=status, is_important=False, is_pinned=False,
        source_group="Year 3 team", board_type=BoardType.TEACHERS,
        due_date=None, is_recurring=False, recurring_pattern=None,
        published_at=published_at, expires_at=None, author_id="teacher",
    )
    values.update(overrides)
    return Communication(**values)


class TestCreate:
    def test_announcement_defaults(self):
        outcome = validate_create({"type": "announcement", "title": "  Snow day ", "content": "School closed."})
        assert outcome
        values = outcome.value
        assert values["title"] == "Snow day"
        assert values["target_audience"] is TargetAudience.ALL
        assert values["priority"] is Priority.MEDIUM
        assert values["status"] is CommunicationStatus.DRAFT
        assert values["published_at"] is None
        assert values["board_type"] is None

    def test_reminder_blank_title_is_validation_error(self):
        outcome = validate_create({"type": "reminder", "title": "   ", "content": "Bring PE kit"})
        assert not outcome
        assert outcome.error is ErrorKind.VALIDATION
        assert "title" in outcome.message

    def test_blank_content_rejected(self):
        outcome = validate_create({"type": "newsletter", "title": "March", "content": ""})
        assert outcome.error is ErrorKind.VALIDATION

    def test_missing_type_rejected(self):
        outcome = validate_create({"title": "x", "content": "y"})
        assert outcome.error is ErrorKind.VALIDATION

    def test_unknown_type_rejected(self):
        outcome = validate_create({"type": "event", "title": "x", "content": "y"})
        assert outcome.error is ErrorKind.VALIDATION

    def test_length_limits(self):
        assert not validate_create({"type": "announcement", "title": "x" * 256, "content": "y"})
        assert not validate_create({"type": "announcement", "title": "x", "content": "y" * 50_001})
        assert not validate_create({"type": "announcement", "title": "x", "content": "y", "summary": "s" * 501})
        assert validate_create({"type": "announcement", "title": "x" * 255, "content": "y" * 50_000})

    @pytest.mark.parametrize("comm_type", ["announcement", "newsletter"])
    def test_critical_priority_rejected_for_standard_types(self, comm_type):
        outcome = validate_create({"type": comm_type, "title": "x", "content": "y", "priority": "critical"})
        assert outcome.error is ErrorKind.VALIDATION
        assert "critical" in outcome.message

    @pytest.mark.parametrize("comm_type", ["reminder", "message", "message_board"])
    def test_critical_priority_allowed_elsewhere(self, comm_type):
        outcome = validate_create({"type": comm_type, "title": "x", "content": "y", "priority": "critical"})
        assert outcome
        assert outcome.value["priority"] is Priority.CRITICAL

    def test_message_board_defaults_board_type(self):
        outcome = validate_create({"type": "message_board", "title": "Lost property", "content": "Blue coat"})
        assert outcome.value["board_type"] is BoardType.GENERAL
        assert outcome.value["source_group"] is None

    def test_message_keeps_source_group_and_camel_case_keys(self):
        outcome = validate_create({
            "type": "message", "title": "Planning", "content": "Thursday",
            "sourceGroup": "Maths department", "boardType": "teachers", "targetAudience": "teachers",
        })
        assert outcome.value["source_group"] == "Maths department"
        assert outcome.value["board_type"] is BoardType.TEACHERS
        assert outcome.value["target_audience"] is TargetAudience.TEACHERS

    def test_type_specific_fields_ignored_for_other_types(self):
        outcome = validate_create({
            "type": "announcement", "title": "x", "content": "y",
            "boardType": "teachers", "isRecurring": True, "recurringPattern": "weekly",
        })
        assert outcome.value["board_type"] is None
        assert outcome.value["is_recurring"] is False
        assert outcome.value["recurring_pattern"] is None

    def test_reminder_fields(self):
        outcome = validate_create({
            "type": "reminder", "title": "Library books", "content": "Return by Friday",
            "dueDate": "2026-03-06T15:00:00Z", "isRecurring": True, "recurringPattern": " every Friday ",
        })
        values = outcome.value
        assert values["due_date"] == datetime(2026, 3, 6, 15, 0, tzinfo=timezone.utc)
        assert values["is_recurring"] is True
        assert values["recurring_pattern"] == "every Friday"

    def test_recurring_pattern_dropped_when_not_recurring(self):
        outcome = validate_create({
            "type": "reminder", "title": "x", "content": "y", "recurringPattern": "daily",
        })
        assert outcome.value["recurring_pattern"] is None

    def test_published_create_gets_publication_date(self):
        outcome = validate_create({"type": "announcement", "title": "x", "content": "y", "status": "published"}, now=NOW)
        assert outcome.value["status"] is CommunicationStatus.PUBLISHED
        assert outcome.value["published_at"] == NOW

    def test_published_create_keeps_supplied_date(self):
        when = NOW - timedelta(days=1)
        outcome = validate_create({
            "type": "announcement", "title": "x", "content": "y",
            "status": "published", "publishedAt": when.isoformat(),
        }, now=NOW)
        assert outcome.value["published_at"] == when

    def test_draft_create_drops_publication_date(self):
        outcome = validate_create({
            "type": "announcement", "title": "x", "content": "y", "publishedAt": NOW.isoformat(),
        })
        assert outcome.value["published_at"] is None

    def test_archived_create_rejected(self):
        outcome = validate_create({"type": "announcement", "title": "x", "content": "y", "status": "archived"})
        assert outcome.error is ErrorKind.VALIDATION

    def test_expiry_must_follow_publication(self):
        outcome = validate_create({
            "type": "announcement", "title": "x", "content": "y", "status": "published",
            "publishedAt": NOW.isoformat(), "expiresAt": (NOW - timedelta(hours=1)).isoformat(),
        }, now=NOW)
        assert outcome.error is ErrorKind.VALIDATION
        assert "expiresAt" in outcome.message

    def test_non_dict_payload(self):
        assert validate_create(["not", "a", "dict"]).error is ErrorKind.VALIDATION


class TestTransitions:
    def test_draft_to_published_stamps_date(self):
        outcome = plan_transition(stored(), "published", now=NOW)
        assert outcome.value == {"status": CommunicationStatus.PUBLISHED, "published_at": NOW}

    def test_published_to_published_keeps_date(self):
        earlier = NOW - timedelta(days=3)
        outcome = plan_transition(stored(CommunicationStatus.PUBLISHED, earlier), "published", now=NOW)
        assert outcome.value["published_at"] == earlier

    def test_published_to_draft_clears_date(self):
        outcome = plan_transition(stored(CommunicationStatus.PUBLISHED, NOW), "draft", now=NOW)
        assert outcome.value == {"status": CommunicationStatus.DRAFT, "published_at": None}

    def test_published_to_archived_keeps_date(self):
        outcome = plan_transition(stored(CommunicationStatus.PUBLISHED, NOW), "archived")
        assert outcome.value == {"status": CommunicationStatus.ARCHIVED, "published_at": NOW}

    def test_draft_to_archived_has_no_date(self):
        outcome = plan_transition(stored(), "archived")
        assert outcome.value == {"status": CommunicationStatus.ARCHIVED, "published_at": None}

    def test_draft_to_draft_is_noop(self):
        assert plan_transition(stored(), "draft").value["status"] is CommunicationStatus.DRAFT

    @pytest.mark.parametrize("target", ["draft", "published", "archived"])
    def test_archived_is_terminal(self, target):
        outcome = plan_transition(stored(CommunicationStatus.ARCHIVED, NOW), target)
        assert outcome.error is ErrorKind.INVALID_TRANSITION

    def test_unknown_status(self):
        assert plan_transition(stored(), "closed").error is ErrorKind.VALIDATION

    @pytest.mark.parametrize("start", [CommunicationStatus.DRAFT, CommunicationStatus.PUBLISHED])
    @pytest.mark.parametrize("target", ["draft", "published", "archived"])
    def test_published_always_has_date_and_draft_never_does(self, start, target):
        published_at = NOW if start is CommunicationStatus.PUBLISHED else None
        values = plan_transition(stored(start, published_at), target, now=NOW).value
        if values["status"] is CommunicationStatus.PUBLISHED:
            assert values["published_at"] is not None
        if values["status"] is CommunicationStatus.DRAFT:
            assert values["published_at"] is None


class TestUpdate:
    def test_merges_changes_over_record(self):
        outcome = validate_update(stored(), {"title": "Staff meeting moved"})
        values = outcome.value
        assert values["title"] == "Staff meeting moved"
        assert values["content"] == "Library, 15:30."
        assert values["source_group"] == "Year 3 team"
        assert values["status"] is CommunicationStatus.DRAFT

    def test_blank_title_rejected(self):
        assert validate_update(stored(), {"title": " "}).error is ErrorKind.VALIDATION

    def test_status_change_goes_through_lifecycle(self):
        outcome = validate_update(stored(), {"status": "published"}, now=NOW)
        assert outcome.value["status"] is CommunicationStatus.PUBLISHED
        assert outcome.value["published_at"] == NOW

    def test_archived_record_cannot_be_republished(self):
        outcome = validate_update(stored(CommunicationStatus.ARCHIVED, NOW), {"status": "published"})
        assert outcome.error is ErrorKind.INVALID_TRANSITION

    def test_archived_record_content_can_still_be_edited(self):
        outcome = validate_update(stored(CommunicationStatus.ARCHIVED, NOW), {"content": "Minutes attached"})
        assert outcome.value["status"] is CommunicationStatus.ARCHIVED
        assert outcome.value["published_at"] == NOW

    def test_full_body_edit_of_archived_record_echoing_status(self):
        outcome = validate_update(stored(CommunicationStatus.ARCHIVED, NOW), {
            "title": "Staff meeting (minutes)",
            "status": "archived",
            "publishedAt": NOW.isoformat(),
        })
        assert outcome
        assert outcome.value["title"] == "Staff meeting (minutes)"
        assert outcome.value["status"] is CommunicationStatus.ARCHIVED
        assert outcome.value["published_at"] == NOW

    def test_archived_record_publication_date_is_frozen(self):
        outcome = validate_update(stored(CommunicationStatus.ARCHIVED, NOW), {
            "status": "archived",
            "publishedAt": (NOW - timedelta(days=3)).isoformat(),
        })
        assert outcome.error is ErrorKind.INVALID_TRANSITION

    def test_publishing_draft_past_its_expiry_rejected(self):
        record = stored(expires_at=NOW - timedelta(days=1))
        outcome = validate_update(record, {"status": "published"}, now=NOW)
        assert outcome.error is ErrorKind.VALIDATION
        assert "expiresAt" in outcome.message

    def test_explicit_publication_date_after_expiry_rejected(self):
        record = stored(CommunicationStatus.PUBLISHED, NOW - timedelta(days=2), expires_at=NOW)
        outcome = validate_update(record, {"publishedAt": (NOW + timedelta(hours=1)).isoformat()})
        assert outcome.error is ErrorKind.VALIDATION

    def test_type_change_revalidates_whole_variant(self):
        record = stored(priority=Priority.CRITICAL)
        outcome = validate_update(record, {"type": "announcement"})
        assert outcome.error is ErrorKind.VALIDATION

    def test_type_change_clears_fields_of_old_variant(self):
        outcome = validate_update(stored(), {"type": "reminder", "dueDate": "2026-03-10T09:00:00+00:00"})
        values = outcome.value
        assert values["board_type"] is None
        assert values["source_group"] is None
        assert values["due_date"] == datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)

    def test_snake_case_keys_accepted(self):
        outcome = validate_update(stored(), {"is_pinned": True})
        assert outcome.value["is_pinned"] is True

    def test_expiry_checked_against_merged_publication(self):
        record = stored(CommunicationStatus.PUBLISHED, NOW)
        outcome = validate_update(record, {"expiresAt": (NOW - timedelta(minutes=5)).isoformat()})
        assert outcome.error is ErrorKind.VALIDATION

    def test_naive_stored_datetimes_are_treated_as_utc(self):
        record = stored(CommunicationStatus.PUBLISHED, NOW.replace(tzinfo=None))
        outcome = validate_update(record, {"expiresAt": (NOW + timedelta(days=1)).isoformat()})
        assert outcome
        assert outcome.value["published_at"] == NOW


class TestReplies:
    def test_valid_reply(self):
        outcome = validate_reply({"content": "  Thanks! ", "parentReplyId": 3})
        assert outcome.value == {"content": "Thanks!", "parent_reply_id": 3}

    def test_blank_reply(self):
        assert validate_reply({"content": "   "}).error is ErrorKind.VALIDATION

    def test_reply_length_limit(self):
        assert validate_reply({"content": "x" * 10_000})
        assert not validate_reply({"content": "x" * 10_001})


def test_priority_allowed_table():
    assert not priority_allowed(CommunicationType.ANNOUNCEMENT, Priority.CRITICAL)
    assert not priority_allowed("newsletter", "critical")
    assert priority_allowed(CommunicationType.REMINDER, Priority.CRITICAL)
    assert priority_allowed(CommunicationType.ANNOUNCEMENT, Priority.HIGH)


class TestNormalizeForCreate:
    def test_published_keeps_supplied_date(self):
        earlier = NOW - timedelta(days=1)
        values = normalize_for_create({"status": "published", "published_at": earlier}, now=NOW)
        assert values["status"] is CommunicationStatus.PUBLISHED
        assert values["published_at"] == earlier

    def test_published_without_date_is_stamped(self):
        values = normalize_for_create({"status": CommunicationStatus.PUBLISHED}, now=NOW)
        assert values["published_at"] == NOW

    def test_draft_drops_date(self):
        values = normalize_for_create({"status": "draft", "published_at": NOW}, now=NOW)
        assert values["status"] is CommunicationStatus.DRAFT
        assert values["published_at"] is None
