"""Main application - wires the call queue together and runs it."""
import signal
import sys
import threading
from typing import Dict, Any, List, Optional

from callqueue.logging_conf import logger
from callqueue import settings
from callqueue.auto_manager import AutoQueueManager
from callqueue.availability import OperatorAvailability
from callqueue.elevenlabs_client import ElevenLabsClient
from callqueue.errors import NotFoundError
from callqueue.processor import QueueProcessor
from callqueue.queue.store import QueueStore
from callqueue.tcx_monitor import TcxMonitor


class CallQueueService:
    """Composition root for the outbound call queue.

    Owns the store, processor, availability tracking and auto manager, and
    exposes the operations the dashboard calls. Components can be passed in;
    anything omitted is built from settings.
    """

    def __init__(
        self,
        store=None,
        dispatcher=None,
        availability: Optional[OperatorAvailability] = None,
        processor: Optional[QueueProcessor] = None,
        auto_manager: Optional[AutoQueueManager] = None,
        tcx_monitor: Optional[TcxMonitor] = None,
    ):
        self.store = store or QueueStore()
        self.availability = availability or OperatorAvailability()
        self.processor = processor or QueueProcessor(self.store, dispatcher or ElevenLabsClient())
        self.auto_manager = auto_manager or AutoQueueManager(self.processor, self.availability)
        if tcx_monitor is None and settings.TCX_API_URL:
            tcx_monitor = TcxMonitor(self.availability)
        self.tcx_monitor = tcx_monitor
        self.running = False

    # ============ Lifecycle ============

    def start(self, auto_queue: Optional[bool] = None):
        """Recover stuck entries, then start polling and availability management."""
        if self.running:
            return

        if auto_queue is None:
            auto_queue = settings.AUTO_QUEUE_ENABLED

        logger.info("=" * 50)
        logger.info("Outbound Call Queue")
        logger.info("=" * 50)
        logger.info(f"Max concurrent calls: {self.processor.max_concurrent}/{self.processor.max_allowed}")
        logger.info(f"Poll interval: {self.processor.poll_interval}s")
        logger.info(f"Automatic pause/resume: {'on' if auto_queue else 'off'}")
        logger.info("=" * 50)

        # Reset any entries stuck in processing by a previous run
        try:
            self.store.reset_stuck_processing(settings.STUCK_PROCESSING_MINUTES)
        except Exception as e:
            logger.error(f"Failed to reset stuck queue entries: {e}", exc_info=True)

        self.running = True
        if self.tcx_monitor:
            self.tcx_monitor.start()
        # First availability sample decides pause state before anything is claimed
        if auto_queue:
            self.auto_manager.start()
        self.processor.start()

    def stop(self, timeout: Optional[float] = 30):
        """Stop everything and give in-flight calls ``timeout`` seconds to settle."""
        if not self.running:
            return
        self.running = False

        self.auto_manager.stop()
        if self.tcx_monitor:
            self.tcx_monitor.stop()
        self.processor.stop()
        if not self.processor.wait_idle(timeout):
            logger.warning(f"{self.processor.active_workers} call(s) still in flight at shutdown")
        self.availability.reset()

        close = getattr(self.store, "close", None)
        if close:
            close()
        logger.info("Stopped")

    # ============ Queue ============

    def enqueue(self, phone_number_ids: List[int], agent_id: int, priority: int = 0) -> Dict[str, int]:
        """Queue phone numbers to be called by an agent."""
        if self.store.get_agent(agent_id) is None:
            raise NotFoundError(f"Agent {agent_id} not found")

        added = 0
        for phone_number_id in phone_number_ids:
            self.store.add_to_queue(
                phone_number_id,
                agent_id,
                priority=priority,
                max_retries=settings.MAX_RETRIES,
            )
            added += 1

        logger.info(f"Queued {added} phone number(s) for agent {agent_id} (priority {priority})")
        return {"added": added}

    def requeue(self, entry_id: int) -> bool:
        """Give a failed entry another full set of attempts."""
        requeued = self.store.requeue_entry(entry_id)
        if requeued:
            logger.info(f"Queue entry {entry_id} re-queued")
        return requeued

    def list_entries(self, status: Optional[str] = None, limit: int = 100):
        return self.store.list_entries(status, limit)

    def stats(self) -> Dict[str, int]:
        return self.store.get_stats()

    def status(self) -> Dict[str, Any]:
        return self.processor.get_status().to_dict()

    def start_queue(self):
        self.processor.start()

    def stop_queue(self):
        self.processor.stop()

    def pause_queue(self):
        self.processor.pause()

    def resume_queue(self):
        self.processor.resume()

    def set_max_concurrent(self, max_concurrent: int) -> Dict[str, int]:
        self.processor.set_max_concurrent(max_concurrent)
        return {"max_concurrent": max_concurrent}

    # ============ Operator availability ============

    def start_auto_manager(self):
        self.auto_manager.start()

    def stop_auto_manager(self):
        self.auto_manager.stop()

    def auto_status(self) -> Dict[str, Any]:
        return self.auto_manager.get_status()

    def availability_status(self) -> Dict[str, Any]:
        return self.availability.get_status()

    def operator_statuses(self) -> List[Dict[str, Any]]:
        """Per-extension PBX states, empty when 3CX polling is not configured."""
        return self.tcx_monitor.get_all_statuses() if self.tcx_monitor else []

    def snapshot(self) -> Dict[str, Any]:
        """Everything the dashboard shows, in one read-only view."""
        try:
            stats = self.stats()
        except Exception as e:
            logger.error(f"Failed to read queue stats: {e}")
            stats = None
        return {
            "queue": self.status(),
            "stats": stats,
            "auto_manager": self.auto_status(),
            "availability": self.availability_status(),
            "operators": self.operator_statuses(),
        }


def main():
    """Entry point."""
    try:
        settings.validate_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    service = CallQueueService()
    stopped = threading.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        stopped.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service.store.create_tables()
    service.start()
    try:
        while not stopped.wait(1):
            pass
    finally:
        service.stop()


if __name__ == "__main__":
    main()
