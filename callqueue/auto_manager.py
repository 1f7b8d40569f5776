"""Automatic queue manager that pauses/resumes the queue on operator availability."""
import threading
from typing import Dict, Any, Optional

from callqueue import settings
from callqueue.logging_conf import logger

ACTIVE = "active"
PAUSED = "paused"


class AutoQueueManager:
    """Pauses the queue when every operator is busy and resumes it when one frees up.

    Only transitions act on the processor: repeated samples with the same
    availability do nothing, so a manual resume is not undone until the
    signal actually changes again.

    ``signal`` is anything with an ``is_any_available()`` method.
    """

    def __init__(self, processor, signal, check_interval: Optional[float] = None):
        self.processor = processor
        self.signal = signal
        self.check_interval = (
            settings.AVAILABILITY_CHECK_INTERVAL if check_interval is None else check_interval
        )
        self.last_state = ACTIVE
        self.running = False
        self.thread = None
        self._stop_event = threading.Event()
        self._check_lock = threading.Lock()

    def start(self):
        """Sample once right away, then every ``check_interval`` seconds."""
        if self.running:
            logger.warning("Auto queue manager is already running")
            return

        self.running = True
        self._stop_event.clear()
        self.check_once()
        self.thread = threading.Thread(target=self._run, name="auto-queue-manager", daemon=True)
        self.thread.start()
        logger.info(f"Auto queue manager started (interval: {self.check_interval}s)")

    def stop(self):
        if not self.running:
            return

        self.running = False
        self._stop_event.set()
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=10)
        self.thread = None
        logger.info("Auto queue manager stopped")

    def _run(self):
        while not self._stop_event.wait(self.check_interval):
            self.check_once()

    def check_once(self) -> Optional[str]:
        """Take one availability sample. Returns "paused"/"resumed" when it acted."""
        with self._check_lock:
            try:
                any_available = bool(self.signal.is_any_available())
            except Exception as e:
                logger.error(f"Operator availability check failed, keeping queue as is: {e}")
                return None

            try:
                if self.last_state == ACTIVE and not any_available:
                    logger.info("All operators busy, pausing queue")
                    self.processor.pause()
                    self.last_state = PAUSED
                    return "paused"

                if self.last_state == PAUSED and any_available:
                    logger.info("Operator available, resuming queue")
                    self.processor.resume()
                    self.last_state = ACTIVE
                    return "resumed"
            except Exception as e:
                logger.error(f"Failed to change queue state: {e}", exc_info=True)
            return None

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.running,
            "last_state": self.last_state,
        }
