from __future__ import annotations

import pytest

from callqueue import settings
from callqueue.app import CallQueueService
from callqueue.auto_manager import AutoQueueManager
from callqueue.availability import OperatorAvailability
from callqueue.errors import NotFoundError, ValidationError
from callqueue.processor import QueueProcessor
from callqueue.queue.models import COMPLETED, FAILED, WAITING

from conftest import FakeDispatcher, FakeQueueStore, wait_until


@pytest.fixture()
def service(store: FakeQueueStore, dispatcher: FakeDispatcher) -> CallQueueService:
    availability = OperatorAvailability(total_units=2)
    processor = QueueProcessor(store, dispatcher, max_concurrent=2, max_allowed=15, poll_interval=0.01)
    auto_manager = AutoQueueManager(processor, availability, check_interval=0.02)
    return CallQueueService(
        store=store,
        availability=availability,
        processor=processor,
        auto_manager=auto_manager,
    )


def test_enqueue_adds_waiting_entries(service: CallQueueService, store: FakeQueueStore) -> None:
    store.add_agent(1)
    for phone_number_id in (1, 2, 3):
        store.add_phone_number(phone_number_id)

    result = service.enqueue([1, 2, 3], agent_id=1, priority=2)

    assert result == {"added": 3}
    entries = service.list_entries(WAITING)
    assert [e.phone_number_id for e in entries] == [1, 2, 3]
    assert all(e.priority == 2 and e.retry_count == 0 for e in entries)
    assert all(e.max_retries == settings.MAX_RETRIES for e in entries)


def test_enqueue_unknown_agent(service: CallQueueService, store: FakeQueueStore) -> None:
    with pytest.raises(NotFoundError):
        service.enqueue([1], agent_id=42)
    assert store.entries == {}


def test_set_max_concurrent_surfaces_validation_error(service: CallQueueService) -> None:
    assert service.set_max_concurrent(15) == {"max_concurrent": 15}

    with pytest.raises(ValidationError):
        service.set_max_concurrent(16)
    assert service.status()["max_concurrent"] == 15


def test_status_shape(service: CallQueueService) -> None:
    assert service.status() == {
        "is_running": False,
        "is_paused": False,
        "active_workers": 0,
        "max_concurrent": 2,
        "max_allowed": 15,
    }


def test_service_drains_queue_and_stops(service: CallQueueService, store: FakeQueueStore) -> None:
    store.seed(4)

    service.start(auto_queue=False)
    try:
        assert store.reset_calls == [settings.STUCK_PROCESSING_MINUTES]
        assert wait_until(lambda: service.stats()["completed"] == 4)
    finally:
        service.stop(timeout=3)

    assert service.status()["is_running"] is False
    assert store.closed is True


def test_busy_operators_pause_the_running_queue(service: CallQueueService, store: FakeQueueStore) -> None:
    service.availability.mark_busy("1000")
    service.availability.mark_busy("2000")
    store.seed(2)

    service.start(auto_queue=True)
    try:
        assert service.status()["is_paused"] is True
        assert service.auto_status() == {"is_running": True, "last_state": "paused"}
        assert store.count(WAITING) == 2

        service.availability.mark_available("1000")
        assert wait_until(lambda: store.count(COMPLETED) == 2)
        assert service.auto_status()["last_state"] == "active"
    finally:
        service.stop(timeout=3)


def test_requeue_failed_entry(service: CallQueueService, store: FakeQueueStore) -> None:
    entry = store.seed(1)[0]
    store.mark_failed(entry.id, 3, "provider unavailable")

    assert service.requeue(entry.id) is True
    assert store.get_entry(entry.id).status == WAITING
    assert store.get_entry(entry.id).retry_count == 0
    assert service.requeue(entry.id) is False


def test_snapshot_survives_store_outage(service: CallQueueService, store: FakeQueueStore) -> None:
    store.fail_reads = True

    snapshot = service.snapshot()

    assert snapshot["stats"] is None
    assert snapshot["queue"]["is_running"] is False
    assert snapshot["auto_manager"]["last_state"] == "active"
    assert snapshot["availability"]["total_units"] == 2
    assert snapshot["operators"] == []


def test_snapshot_counts(service: CallQueueService, store: FakeQueueStore) -> None:
    entries = store.seed(3)
    store.mark_failed(entries[0].id, 3, "boom")

    stats = service.snapshot()["stats"]

    assert stats == {"waiting": 2, "processing": 0, "completed": 0, FAILED: 1, "total": 3}


def test_validate_config_lists_problems(monkeypatch) -> None:
    monkeypatch.setattr(settings, "DATABASE_URL", None)
    monkeypatch.setattr(settings, "ELEVENLABS_API_KEY", None)
    monkeypatch.setattr(settings, "MAX_CONCURRENT_CALLS", 20)

    with pytest.raises(ValueError) as excinfo:
        settings.validate_config()

    message = str(excinfo.value)
    assert "DATABASE_URL is required" in message
    assert "ELEVENLABS_API_KEY is required" in message
    assert "MAX_CONCURRENT_CALLS" in message
