from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from reminder_delivery.delivery_store import DeliveryQueueItem, DeliveryStore, InMemoryDeliveryStore, QueueIndexes
from reminder_delivery.delivery_store_backends import SqlAlchemyDeliveryStore, create_delivery_store
from reminder_delivery.errors import DeliveryConflictError

BASE = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
LEASE = timedelta(minutes=5)


def _item(
    *,
    item_id: str = "item-1",
    reminder_id: str = "rem-1",
    recipient_id: str = "U1",
    due: datetime = BASE + timedelta(minutes=10),
    attempt: int = 0,
) -> DeliveryQueueItem:
    return DeliveryQueueItem(
        item_id=item_id,
        reminder_id=reminder_id,
        recipient_id=recipient_id,
        due_instant=due,
        recipient_timezone="UTC",
        recipient_display_time="Jun 01, 2024, 12:10 PM UTC",
        message_content="stand-up in ten",
        attempt=attempt,
        max_attempts=3,
        created_at=BASE,
        updated_at=BASE,
    )


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> DeliveryStore:
    if request.param == "inmemory":
        return InMemoryDeliveryStore()
    return SqlAlchemyDeliveryStore(f"sqlite:///{tmp_path / 'delivery.db'}")


def test_put_writes_primary_and_every_index(store: DeliveryStore) -> None:
    item = _item()

    store.put(item)

    assert store.get("item-1") == item
    assert store.find_by_reminder("rem-1") == item
    assert [found.item_id for found in store.list_by_recipient("U1")] == ["item-1"]
    assert list(store.scan_due(BASE + timedelta(minutes=10))) == ["item-1"]
    assert [live.item_id for live in store.iter_live()] == ["item-1"]


def test_put_rejects_second_live_item_for_reminder(store: DeliveryStore) -> None:
    store.put(_item())

    with pytest.raises(DeliveryConflictError) as exc_info:
        store.put(_item(item_id="item-2"))

    assert exc_info.value.reminder_id == "rem-1"
    assert store.get("item-2") is None
    assert [live.item_id for live in store.iter_live()] == ["item-1"]


def test_remove_moves_item_to_history_in_one_commit(store: DeliveryStore) -> None:
    item = _item()
    store.put(item)

    assert store.remove(item, outcome="delivered", recorded_at=BASE) is True

    assert store.get("item-1") is None
    assert store.find_by_reminder("rem-1") is None
    assert store.list_by_recipient("U1") == []
    assert list(store.scan_due(BASE + timedelta(days=1))) == []
    history = store.list_history("delivered")
    assert len(history) == 1
    assert history[0].item.item_id == "item-1"
    assert history[0].recorded_at == BASE
    assert store.count_history("failed") == 0


def test_remove_is_idempotent(store: DeliveryStore) -> None:
    item = _item()
    store.put(item)
    store.remove(item, outcome="cancelled", recorded_at=BASE)

    assert store.remove(item, outcome="cancelled", recorded_at=BASE) is False
    assert store.count_history("cancelled") == 1


def test_reminder_slot_is_free_after_remove(store: DeliveryStore) -> None:
    first = _item()
    store.put(first)
    store.remove(first, outcome="cancelled", recorded_at=BASE)

    store.put(_item(item_id="item-2"))

    assert store.find_by_reminder("rem-1").item_id == "item-2"  # type: ignore[union-attr]


def test_scan_due_orders_by_instant_then_id_with_inclusive_cutoff(store: DeliveryStore) -> None:
    store.put(_item(item_id="b", reminder_id="rem-b", due=BASE + timedelta(minutes=5)))
    store.put(_item(item_id="a", reminder_id="rem-a", due=BASE + timedelta(minutes=5)))
    store.put(_item(item_id="c", reminder_id="rem-c", due=BASE + timedelta(minutes=1)))
    store.put(_item(item_id="d", reminder_id="rem-d", due=BASE + timedelta(minutes=6)))

    assert list(store.scan_due(BASE + timedelta(minutes=5))) == ["c", "a", "b"]
    assert list(store.scan_due(BASE)) == []


def test_move_due_index_replaces_due_entry_and_primary(store: DeliveryStore) -> None:
    item = _item(due=BASE)
    store.put(item)
    retry_at = BASE + timedelta(minutes=1)
    moved = replace(item, attempt=1, next_retry_instant=retry_at, last_error="boom")

    store.move_due_index(moved, item.indexed_instant, retry_at)

    assert list(store.scan_due(BASE)) == []
    assert list(store.scan_due(retry_at)) == ["item-1"]
    stored = store.get("item-1")
    assert stored is not None
    assert stored.attempt == 1
    assert stored.last_error == "boom"
    assert stored.indexed_instant == retry_at


def test_move_due_index_reports_missing_item(store: DeliveryStore) -> None:
    assert store.move_due_index(_item(), BASE, BASE + timedelta(minutes=1)) is False
    assert list(store.scan_due(BASE + timedelta(minutes=1))) == []


def test_move_due_index_is_conditional_on_attempt(store: DeliveryStore) -> None:
    item = _item(due=BASE)
    store.put(item)
    retry_at = BASE + timedelta(minutes=1)
    first = replace(item, attempt=1, next_retry_instant=retry_at, last_error="first")
    late = replace(item, attempt=1, next_retry_instant=retry_at + timedelta(minutes=1), last_error="late")

    assert store.move_due_index(first, item.indexed_instant, retry_at, expected_attempt=0) is True
    assert store.move_due_index(late, item.indexed_instant, late.indexed_instant, expected_attempt=0) is False

    stored = store.get("item-1")
    assert stored is not None
    assert stored.attempt == 1
    assert stored.last_error == "first"
    assert list(store.scan_due(retry_at + timedelta(minutes=5))) == ["item-1"]
    assert list(store.scan_due(retry_at)) == ["item-1"]


def test_remove_is_conditional_on_attempt(store: DeliveryStore) -> None:
    item = _item(attempt=1)
    store.put(item)
    exhausted = replace(item, attempt=2, last_error="boom")

    assert store.remove(exhausted, outcome="failed", recorded_at=BASE, expected_attempt=0) is False
    assert store.get("item-1") == item
    assert store.count_history("failed") == 0

    assert store.remove(exhausted, outcome="failed", recorded_at=BASE, expected_attempt=1) is True
    assert store.get("item-1") is None
    assert [record.item.attempt for record in store.list_history("failed")] == [2]


def test_claim_is_conditional_on_attempt_and_lease(store: DeliveryStore) -> None:
    store.put(_item())

    assert store.claim("item-1", 1, now=BASE, lease=LEASE) is False
    assert store.claim("item-1", 0, now=BASE, lease=LEASE) is True
    assert store.claim("item-1", 0, now=BASE + timedelta(minutes=1), lease=LEASE) is False
    assert store.claim("item-1", 0, now=BASE + LEASE, lease=LEASE) is True
    assert store.claim("missing", 0, now=BASE, lease=LEASE) is False

    stored = store.get("item-1")
    assert stored is not None
    assert stored.claimed_attempt == 0
    assert stored.claimed_at == BASE + LEASE


def test_prune_history_removes_only_old_records(store: DeliveryStore) -> None:
    old = _item(item_id="old", reminder_id="rem-old")
    fresh = _item(item_id="fresh", reminder_id="rem-fresh")
    store.put(old)
    store.put(fresh)
    store.remove(old, outcome="delivered", recorded_at=BASE - timedelta(days=40))
    store.remove(fresh, outcome="failed", recorded_at=BASE - timedelta(days=2))

    removed = store.prune_history(BASE - timedelta(days=30))

    assert removed == 1
    assert store.count_history("delivered") == 0
    assert [record.item.item_id for record in store.list_history("failed")] == ["fresh"]


def test_reset_clears_live_items_and_history(store: DeliveryStore) -> None:
    first = _item()
    store.put(first)
    store.remove(first, outcome="delivered", recorded_at=BASE)
    store.put(_item(item_id="item-2", reminder_id="rem-2"))

    store.reset()

    assert list(store.iter_live()) == []
    assert store.count_history("delivered") == 0


def test_history_keeps_terminal_copy_across_backends(tmp_path: Path) -> None:
    store = SqlAlchemyDeliveryStore(f"sqlite:///{tmp_path / 'history.db'}")
    item = replace(_item(), attempt=3, last_error="http_503: HTTP 503: Service Unavailable")
    store.put(_item())

    store.remove(item, outcome="failed", recorded_at=BASE)

    record = store.list_history("failed")[0]
    assert record.item.attempt == 3
    assert record.item.last_error == "http_503: HTTP 503: Service Unavailable"
    assert record.item.due_instant == item.due_instant


def test_scan_due_skips_entries_removed_mid_iteration() -> None:
    store = InMemoryDeliveryStore()
    first = _item(item_id="a", reminder_id="rem-a", due=BASE)
    second = _item(item_id="b", reminder_id="rem-b", due=BASE + timedelta(seconds=1))
    store.put(first)
    store.put(second)

    scan = store.scan_due(BASE + timedelta(minutes=1))
    assert next(scan) == "a"
    store.remove(second, outcome="cancelled", recorded_at=BASE)

    assert list(scan) == []


def test_in_memory_key_layout_matches_persisted_families() -> None:
    item = _item()

    keys = QueueIndexes.keys_for(item)

    assert keys == [
        ("queue", "item-1"),
        ("queue_by_instant", 1717243800000, "item-1"),
        ("queue_by_recipient", "U1", "item-1"),
        ("queue_by_reminder", "rem-1"),
    ]


def test_concurrent_claims_grant_exactly_one_worker() -> None:
    store = InMemoryDeliveryStore()
    store.put(_item())
    barrier = threading.Barrier(8)
    results: list[bool] = []
    lock = threading.Lock()

    def _claim() -> None:
        barrier.wait()
        granted = store.claim("item-1", 0, now=BASE, lease=LEASE)
        with lock:
            results.append(granted)

    threads = [threading.Thread(target=_claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert results.count(False) == 7


def test_create_delivery_store_selects_backend(tmp_path: Path) -> None:
    assert isinstance(create_delivery_store(backend="inmemory", database_url=""), InMemoryDeliveryStore)
    assert isinstance(
        create_delivery_store(backend="POSTGRES", database_url=f"sqlite:///{tmp_path / 'x.db'}"),
        SqlAlchemyDeliveryStore,
    )
    with pytest.raises(RuntimeError):
        create_delivery_store(backend="postgres", database_url="")
    with pytest.raises(RuntimeError):
        create_delivery_store(backend="redis", database_url="")
