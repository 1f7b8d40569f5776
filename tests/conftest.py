from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest

from callqueue.errors import DispatchError
from callqueue.queue.models import (
    Agent, CallHandle, CallRecord, PhoneNumber, QueueEntry,
    COMPLETED, FAILED, PROCESSING, QUEUE_STATUSES, WAITING,
)


class FakeQueueStore:
    """In-memory stand-in for QueueStore with the same claim semantics."""

    def __init__(self) -> None:
        self.entries: Dict[int, QueueEntry] = {}
        self.agents: Dict[int, Agent] = {}
        self.phone_numbers: Dict[int, PhoneNumber] = {}
        self.calls: List[CallRecord] = []
        self.next_entries_calls = 0
        self.fail_reads = False
        self.fail_completions = 0
        self.reset_calls: List[int] = []
        self.closed = False
        self._lock = threading.Lock()
        self._next_id = 1

    # helpers for tests

    def add_agent(self, agent_id: int = 1, name: str = "Sales agent") -> Agent:
        agent = Agent(id=agent_id, agent_id=f"agent_{agent_id}", phone_number_id=f"phnum_{agent_id}", name=name)
        self.agents[agent_id] = agent
        return agent

    def add_phone_number(self, phone_number_id: int, phone: Optional[str] = None) -> PhoneNumber:
        number = PhoneNumber(id=phone_number_id, phone=phone or f"+4930000{phone_number_id:04d}")
        self.phone_numbers[phone_number_id] = number
        return number

    def seed(self, count: int, agent_id: int = 1, priority: int = 0, max_retries: int = 3) -> List[QueueEntry]:
        if agent_id not in self.agents:
            self.add_agent(agent_id)
        entries = []
        for _ in range(count):
            number = self.add_phone_number(len(self.phone_numbers) + 1)
            entries.append(self.add_to_queue(number.id, agent_id, priority=priority, max_retries=max_retries))
        return entries

    def count(self, status: str) -> int:
        return sum(1 for entry in self.entries.values() if entry.status == status)

    # QueueStore interface

    def add_to_queue(self, phone_number_id, agent_id, priority=0, max_retries=3, scheduled_at=None):
        with self._lock:
            entry = QueueEntry(
                id=self._next_id,
                phone_number_id=phone_number_id,
                agent_id=agent_id,
                priority=priority,
                max_retries=max_retries,
                scheduled_at=scheduled_at,
                created_at=datetime.now(),
            )
            self.entries[entry.id] = entry
            self._next_id += 1
            return replace(entry)

    def get_entry(self, entry_id):
        entry = self.entries.get(entry_id)
        return replace(entry) if entry else None

    def list_entries(self, status=None, limit=100):
        entries = [e for e in self.entries.values() if status is None or e.status == status]
        entries.sort(key=lambda e: (-e.priority, e.id))
        return [replace(e) for e in entries[:limit]]

    def get_next_entries(self, limit):
        self.next_entries_calls += 1
        if self.fail_reads:
            raise ConnectionError("database unavailable")
        now = datetime.now()
        with self._lock:
            waiting = [
                e for e in self.entries.values()
                if e.status == WAITING and (e.scheduled_at is None or e.scheduled_at <= now)
            ]
        waiting.sort(key=lambda e: (-e.priority, e.id))
        return [replace(e) for e in waiting[:limit]]

    def mark_processing(self, entry_id):
        with self._lock:
            entry = self.entries.get(entry_id)
            if entry is None or entry.status != WAITING:
                return False
            entry.status = PROCESSING
            entry.started_at = datetime.now()
            return True

    def update_entry(self, entry_id, **fields):
        with self._lock:
            entry = self.entries[entry_id]
            for key, value in fields.items():
                setattr(entry, key, value)

    def mark_completed(self, entry_id):
        if self.fail_completions:
            self.fail_completions -= 1
            raise ConnectionError("database unavailable")
        self.update_entry(entry_id, status=COMPLETED, completed_at=datetime.now(), error_message=None)

    def mark_retry(self, entry_id, retry_count, error, delay_seconds=0):
        scheduled_at = datetime.now() + timedelta(seconds=delay_seconds) if delay_seconds > 0 else None
        self.update_entry(entry_id, status=WAITING, retry_count=retry_count, error_message=error,
                          scheduled_at=scheduled_at)

    def mark_failed(self, entry_id, retry_count, error):
        self.update_entry(entry_id, status=FAILED, retry_count=retry_count, error_message=error,
                          completed_at=datetime.now())

    def requeue_entry(self, entry_id):
        with self._lock:
            entry = self.entries.get(entry_id)
            if entry is None or entry.status != FAILED:
                return False
            entry.status = WAITING
            entry.retry_count = 0
            entry.error_message = None
            return True

    def reset_stuck_processing(self, minutes=30):
        self.reset_calls.append(minutes)
        cutoff = datetime.now() - timedelta(minutes=minutes)
        reset = 0
        with self._lock:
            for entry in self.entries.values():
                if entry.status != PROCESSING or entry.started_at > cutoff:
                    continue
                reset += 1
                if any(c.phone_number_id == entry.phone_number_id and c.created_at >= entry.started_at
                       for c in self.calls):
                    entry.status = COMPLETED
                    entry.completed_at = datetime.now()
                    entry.error_message = None
                    continue
                entry.retry_count += 1
                entry.error_message = "Interrupted while processing"
                if entry.retry_count >= entry.max_retries:
                    entry.status = FAILED
                    entry.completed_at = datetime.now()
                else:
                    entry.status = WAITING
        return reset

    def get_stats(self):
        if self.fail_reads:
            raise ConnectionError("database unavailable")
        stats = {status: self.count(status) for status in QUEUE_STATUSES}
        stats["total"] = len(self.entries)
        return stats

    def get_agent(self, agent_id):
        return self.agents.get(agent_id)

    def get_phone_number(self, phone_number_id):
        number = self.phone_numbers.get(phone_number_id)
        return replace(number) if number else None

    def update_phone_number(self, phone_number_id, **fields):
        with self._lock:
            number = self.phone_numbers[phone_number_id]
            for key, value in fields.items():
                setattr(number, key, value)

    def create_call(self, agent_id, phone_number_id, to_number, conversation_id=None, call_sid=None):
        with self._lock:
            call = CallRecord(
                id=len(self.calls) + 1,
                agent_id=agent_id,
                phone_number_id=phone_number_id,
                to_number=to_number,
                conversation_id=conversation_id,
                call_sid=call_sid,
                created_at=datetime.now(),
            )
            self.calls.append(call)
            return call

    def close(self):
        self.closed = True


class FakeDispatcher:
    """Records outbound calls; can block until released and can fail."""

    def __init__(self, fail: bool = False, block: bool = False, delay: float = 0.0,
                 error: Optional[Exception] = None) -> None:
        self.fail = fail
        self.error = error
        self.delay = delay
        self.calls: List[int] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.release = threading.Event()
        if not block:
            self.release.set()
        self._lock = threading.Lock()

    def initiate_call(self, agent, phone_number):
        with self._lock:
            self.calls.append(phone_number.id)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.release.wait(5)
            if self.delay:
                time.sleep(self.delay)
            if self.error is not None:
                raise self.error
            if self.fail:
                raise DispatchError("provider unavailable")
            return CallHandle(conversation_id=f"conv_{phone_number.id}_{len(self.calls)}")
        finally:
            with self._lock:
                self.in_flight -= 1


class FakeSignal:
    """Availability signal driven by a list of samples (last one repeats)."""

    def __init__(self, *samples) -> None:
        self.samples = list(samples) or [True]
        self.reads = 0

    def is_any_available(self) -> bool:
        index = min(self.reads, len(self.samples) - 1)
        self.reads += 1
        sample = self.samples[index]
        if isinstance(sample, Exception):
            raise sample
        return sample


def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture()
def store() -> FakeQueueStore:
    return FakeQueueStore()


@pytest.fixture()
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()
