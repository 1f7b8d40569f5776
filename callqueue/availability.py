"""Operator availability tracking.

Operators (PBX extensions, or transfers from the AI agent to the operator
ring group) are tracked as busy units. Anything not marked busy counts as
available, so the signal is only as good as the feeds updating it: webhooks,
manual overrides and the optional 3CX poller all write here.
"""
import threading
from datetime import datetime
from typing import Dict, Any, Optional

from callqueue import settings
from callqueue.logging_conf import logger


class OperatorAvailability:
    """Thread-safe busy set over a fixed number of operators."""

    def __init__(self, total_units: Optional[int] = None, transfer_timeout: Optional[float] = None):
        self.total_units = settings.TOTAL_OPERATORS if total_units is None else total_units
        self.transfer_timeout = (
            settings.TRANSFER_TIMEOUT_SECONDS if transfer_timeout is None else transfer_timeout
        )
        self._busy = set()
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def mark_busy(self, unit_id: str) -> None:
        with self._lock:
            if unit_id in self._busy:
                return
            self._busy.add(unit_id)
            busy = len(self._busy)
        logger.info(f"Operator {unit_id} marked as busy ({busy} busy)")

    def mark_available(self, unit_id: str) -> None:
        with self._lock:
            if unit_id not in self._busy:
                return
            self._busy.discard(unit_id)
            busy = len(self._busy)
        logger.info(f"Operator {unit_id} marked as available ({busy} busy)")

    def register_transfer(self, call_id: str) -> None:
        """Count a call transferred to the operator group as one busy operator.

        The transfer is released automatically after ``transfer_timeout``
        seconds in case the completion event never arrives.
        """
        unit_id = f"transfer-{call_id}"
        self.mark_busy(unit_id)

        timer = threading.Timer(self.transfer_timeout, self.complete_transfer, args=(call_id,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(unit_id, None)
            self._timers[unit_id] = timer
        if previous:
            previous.cancel()
        timer.start()

    def complete_transfer(self, call_id: str) -> None:
        unit_id = f"transfer-{call_id}"
        with self._lock:
            timer = self._timers.pop(unit_id, None)
        if timer and timer is not threading.current_thread():
            timer.cancel()
        self.mark_available(unit_id)

    def reset(self) -> None:
        """Forget all busy operators and pending transfers."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._busy.clear()
        for timer in timers:
            timer.cancel()
        logger.info("All operator statuses reset")

    def is_any_available(self) -> bool:
        return self.get_status()["is_any_available"]

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            busy_units = len(self._busy)
        # Busy can exceed total when an operator is counted by two feeds
        available_units = max(0, self.total_units - busy_units)
        return {
            "total_units": self.total_units,
            "busy_units": busy_units,
            "available_units": available_units,
            "is_any_available": available_units > 0,
            "last_checked": datetime.now(),
        }
