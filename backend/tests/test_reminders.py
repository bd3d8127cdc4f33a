from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from reminder_delivery.errors import DeliveryConflictError, DeliveryNotFoundError
from reminder_delivery.reminders import (
    EscalationRule,
    InMemoryReminderRepository,
    ReminderRecord,
    ReminderRepository,
    SqlAlchemyReminderRepository,
    create_reminder_repository,
    rule_from_json,
    rule_to_json,
)

BASE = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _record(reminder_id: str = "rem-1", *, status: str = "pending", changed: datetime = BASE) -> ReminderRecord:
    return ReminderRecord(
        reminder_id=reminder_id,
        recipient_id="U1",
        message="Submit the quarterly report",
        timezone="Asia/Tokyo",
        scheduled_instant=BASE + timedelta(hours=1),
        status=status,  # type: ignore[arg-type]
        status_changed_at=changed,
        created_at=BASE,
        updated_at=BASE,
        escalation_rule=EscalationRule(
            secondary_recipient_id="U2",
            timeout_minutes=30,
            triggers=frozenset({"timeout", "declined"}),
            decline_message="{recipient} said no",
        ),
    )


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request: pytest.FixtureRequest, tmp_path: Path) -> ReminderRepository:
    if request.param == "inmemory":
        return InMemoryReminderRepository()
    return SqlAlchemyReminderRepository(f"sqlite:///{tmp_path / 'reminders.db'}")


def test_create_and_get_round_trip_rule(repository: ReminderRepository) -> None:
    record = _record()

    repository.create(record)

    assert repository.get("rem-1") == record
    assert repository.get("missing") is None


def test_create_rejects_duplicate_reminder(repository: ReminderRepository) -> None:
    repository.create(_record())

    with pytest.raises(DeliveryConflictError):
        repository.create(_record())


def test_transition_is_compare_and_set(repository: ReminderRepository) -> None:
    repository.create(_record())
    later = BASE + timedelta(minutes=5)

    updated = repository.transition("rem-1", expected="pending", new_status="sent", at=later)
    stale = repository.transition("rem-1", expected="pending", new_status="expired", at=later)

    assert updated is not None
    assert updated.status == "sent"
    assert updated.status_changed_at == later
    assert stale is None
    current = repository.get("rem-1")
    assert current is not None and current.status == "sent"


def test_transition_records_response_and_error(repository: ReminderRepository) -> None:
    repository.create(_record(status="sent"))

    updated = repository.transition(
        "rem-1",
        expected="sent",
        new_status="declined",
        at=BASE,
        response="declined",
        error="store unavailable",
    )

    assert updated is not None
    assert updated.last_response == "declined"
    assert updated.escalation_error == "store unavailable"


def test_transition_unknown_reminder_raises(repository: ReminderRepository) -> None:
    with pytest.raises(DeliveryNotFoundError):
        repository.transition("missing", expected="pending", new_status="sent", at=BASE)


def test_set_escalation_error_keeps_status(repository: ReminderRepository) -> None:
    repository.create(_record(status="sent"))

    repository.set_escalation_error("rem-1", "disk full", at=BASE + timedelta(minutes=1))

    current = repository.get("rem-1")
    assert current is not None
    assert current.status == "sent"
    assert current.escalation_error == "disk full"
    assert current.updated_at == BASE + timedelta(minutes=1)
    with pytest.raises(DeliveryNotFoundError):
        repository.set_escalation_error("missing", "x", at=BASE)


def test_list_non_terminal_orders_by_status_change(repository: ReminderRepository) -> None:
    repository.create(_record("rem-b", status="sent", changed=BASE + timedelta(minutes=2)))
    repository.create(_record("rem-a", status="escalated", changed=BASE + timedelta(minutes=1)))
    repository.create(_record("rem-done", status="acknowledged"))
    repository.create(_record("rem-c", status="pending", changed=BASE + timedelta(minutes=2)))

    listed = [record.reminder_id for record in repository.list_non_terminal()]

    assert listed == ["rem-a", "rem-b", "rem-c"]


def test_reset_clears_records(repository: ReminderRepository) -> None:
    repository.create(_record())

    repository.reset()

    assert repository.get("rem-1") is None


def test_rule_json_round_trip_and_empty() -> None:
    rule = _record().escalation_rule
    assert rule_from_json(rule_to_json(rule)) == rule
    assert rule_to_json(None) is None
    assert rule_from_json(None) is None


def test_escalation_rule_validation() -> None:
    with pytest.raises(ValueError):
        EscalationRule(secondary_recipient_id="U2", timeout_minutes=0)
    with pytest.raises(ValueError):
        EscalationRule(secondary_recipient_id="U2", timeout_minutes=5, triggers=frozenset({"sometimes"}))
    rule = EscalationRule(secondary_recipient_id="U2", timeout_minutes=5, triggers=frozenset({"no_response"}))
    assert rule.escalates_on_timeout and not rule.escalates_on_decline


def test_terminal_flag() -> None:
    assert replace(_record(), status="escalated_declined").is_terminal
    assert not _record().is_terminal


def test_create_reminder_repository_backends(tmp_path: Path) -> None:
    assert isinstance(create_reminder_repository(backend="inmemory", database_url=""), InMemoryReminderRepository)
    assert isinstance(
        create_reminder_repository(backend="Postgres", database_url=f"sqlite:///{tmp_path / 'r.db'}"),
        SqlAlchemyReminderRepository,
    )
    with pytest.raises(RuntimeError):
        create_reminder_repository(backend="postgres", database_url="")
    with pytest.raises(RuntimeError):
        create_reminder_repository(backend="redis", database_url="")
