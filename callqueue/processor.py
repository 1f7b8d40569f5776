"""Queue processor that places outbound calls with bounded concurrency."""
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from callqueue import settings
from callqueue.errors import MissingReferenceError, ValidationError
from callqueue.logging_conf import logger
from callqueue.queue.models import QueueEntry, WorkerPoolState, NUMBER_CALLING, NUMBER_FAILED


class QueueProcessor:
    """Polls the call queue and dispatches up to ``max_concurrent`` calls at a time.

    A background thread ticks every ``poll_interval`` seconds. Each tick claims
    as many waiting entries as there are free slots and hands each one to a
    dispatch thread without waiting for it. ``pause()`` stops new claims while
    the loop keeps ticking; ``stop()`` ends the loop. Neither interrupts calls
    already being placed.
    """

    def __init__(
        self,
        store,
        dispatcher,
        max_concurrent: Optional[int] = None,
        max_allowed: Optional[int] = None,
        poll_interval: Optional[float] = None,
        retry_delay: Optional[float] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.max_allowed = settings.MAX_ALLOWED_CONCURRENT if max_allowed is None else max_allowed
        self.max_concurrent = settings.MAX_CONCURRENT_CALLS if max_concurrent is None else max_concurrent
        self.poll_interval = settings.POLL_INTERVAL if poll_interval is None else poll_interval
        self.retry_delay = settings.RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        if isinstance(self.max_allowed, bool) or not isinstance(self.max_allowed, int) or self.max_allowed < 1:
            raise ValidationError(
                f"Max allowed concurrent calls must be a positive integer, got {self.max_allowed!r}"
            )
        self._check_limit(self.max_concurrent)

        self.running = False
        self.paused = False
        self.active_workers = 0

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._poll_lock = threading.Lock()
        self._stop_event = threading.Event()
        self.thread = None
        self.executor = None

    # ============ Lifecycle ============

    def start(self):
        """Start the poll loop in a background thread."""
        if self.running:
            logger.warning("Queue processor is already running")
            return

        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._run, name="queue-poller", daemon=True)
        self.thread.start()
        logger.info(
            f"Queue processor started (max concurrent: {self.max_concurrent}, "
            f"poll interval: {self.poll_interval}s)"
        )

    def stop(self):
        """Stop the poll loop. Calls already being placed run to completion."""
        if not self.running:
            return

        self.running = False
        self._stop_event.set()
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=self.poll_interval + 10)
        self.thread = None

        if self.executor:
            self.executor.shutdown(wait=False)
            self.executor = None
        logger.info(f"Queue processor stopped ({self.active_workers} call(s) still in flight)")

    def pause(self):
        """Stop claiming new entries; the poll loop keeps running."""
        if self.paused:
            return
        self.paused = True
        logger.info("Queue processor paused")

    def resume(self):
        if not self.paused:
            return
        self.paused = False
        logger.info("Queue processor resumed")

    def set_max_concurrent(self, max_concurrent: int):
        """Change the concurrency limit used by subsequent polls.

        Lowering it below the number of running calls does not cancel them;
        new claims wait until enough of them finish.
        """
        self._check_limit(max_concurrent)
        self.max_concurrent = max_concurrent
        logger.info(f"Max concurrent calls set to {max_concurrent}")

    def get_status(self) -> WorkerPoolState:
        with self._lock:
            return WorkerPoolState(
                is_running=self.running,
                is_paused=self.paused,
                active_workers=self.active_workers,
                max_concurrent=self.max_concurrent,
                max_allowed=self.max_allowed,
            )

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no call is in flight. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self.active_workers == 0, timeout)

    # ============ Polling ============

    def _run(self):
        """Main poll loop."""
        logger.info("Queue poll thread started")

        while self.running:
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Queue poll error: {e}", exc_info=True)

            self._stop_event.wait(self.poll_interval)

        logger.info("Queue poll thread stopped")

    def poll_once(self) -> int:
        """Run one poll tick. Returns the number of calls launched."""
        with self._poll_lock:
            if self.paused:
                logger.debug("Queue paused, not claiming entries")
                return 0

            with self._lock:
                available_slots = self.max_concurrent - self.active_workers
            if available_slots <= 0:
                return 0

            try:
                entries = self.store.get_next_entries(available_slots)
            except Exception as e:
                logger.error(f"Failed to read call queue, skipping this poll: {e}", exc_info=True)
                return 0

            launched = 0
            for entry in entries[:available_slots]:
                if self.paused:
                    break

                try:
                    claimed = self.store.mark_processing(entry.id)
                except Exception as e:
                    logger.error(f"Failed to claim queue entry {entry.id}: {e}", exc_info=True)
                    continue
                if not claimed:
                    continue  # Already claimed by another worker

                with self._lock:
                    self.active_workers += 1
                self._submit(entry)
                launched += 1

            if launched:
                logger.info(f"Launched {launched} call(s), {self.active_workers} active")
            return launched

    def _submit(self, entry: QueueEntry):
        if self.executor is None:
            self.executor = ThreadPoolExecutor(
                max_workers=self.max_allowed, thread_name_prefix="call-dispatch"
            )
        try:
            self.executor.submit(self._process_entry, entry)
        except RuntimeError as e:
            # Executor shut down between claim and submit; hand the entry back
            logger.error(f"Could not start dispatch for entry {entry.id}: {e}")
            try:
                self._handle_failure(entry, f"Dispatch not started: {e}")
            finally:
                self._release_worker()

    # ============ Dispatch ============

    def _process_entry(self, entry: QueueEntry):
        """Dispatch one claimed entry. Never raises."""
        try:
            self._dispatch(entry)
        except Exception as e:
            logger.error(f"Unexpected error processing queue entry {entry.id}: {e}", exc_info=True)
        finally:
            self._release_worker()

    def _release_worker(self):
        with self._idle:
            self.active_workers -= 1
            self._idle.notify_all()

    def _dispatch(self, entry: QueueEntry):
        agent = None
        phone_number = None
        try:
            agent = self.store.get_agent(entry.agent_id)
            phone_number = self.store.get_phone_number(entry.phone_number_id)

            if agent is None:
                raise MissingReferenceError(f"Agent {entry.agent_id} not found")
            if phone_number is None:
                raise MissingReferenceError(f"Phone number {entry.phone_number_id} not found")

            logger.info(f"Initiating call to {phone_number.phone} via agent {agent.name} (entry {entry.id})")
            handle = self.dispatcher.initiate_call(agent, phone_number)

        except MissingReferenceError as e:
            self._fail_permanently(entry, phone_number, str(e))
            return
        except Exception as e:
            logger.error(f"Failed to process queue entry {entry.id}: {e}")
            self._handle_failure(entry, str(e)[:500] or e.__class__.__name__)
            return

        # The call is placed; from here on nothing may put the entry back in the queue
        try:
            call = self.store.create_call(
                agent_id=agent.id,
                phone_number_id=phone_number.id,
                to_number=phone_number.phone,
                conversation_id=handle.conversation_id,
                call_sid=handle.call_sid,
            )
            self.store.update_phone_number(
                phone_number.id,
                status=NUMBER_CALLING,
                last_call_id=call.id,
                call_count=phone_number.call_count + 1,
            )
        except Exception as e:
            logger.error(
                f"Call {handle.conversation_id} started but could not be recorded: {e}", exc_info=True
            )

        self.store.mark_completed(entry.id)
        logger.info(f"Call initiated successfully: {handle.conversation_id} (entry {entry.id})")

    def _handle_failure(self, entry: QueueEntry, error: str):
        """Spend one retry; fail the entry once the budget is used up."""
        retry_count = entry.retry_count + 1

        if retry_count >= entry.max_retries:
            self.store.mark_failed(entry.id, min(retry_count, entry.max_retries), error)
            self._mark_number_failed(entry.phone_number_id)
            return

        self.store.mark_retry(entry.id, retry_count, error, delay_seconds=self.retry_delay or 0)

    def _fail_permanently(self, entry: QueueEntry, phone_number, error: str):
        """Fail without touching the retry budget."""
        self.store.mark_failed(entry.id, entry.retry_count, error)
        if phone_number is not None:
            self._mark_number_failed(phone_number.id)

    def _mark_number_failed(self, phone_number_id: int):
        try:
            self.store.update_phone_number(phone_number_id, status=NUMBER_FAILED)
        except Exception as e:
            logger.error(f"Failed to mark phone number {phone_number_id} as failed: {e}")

    def _check_limit(self, max_concurrent):
        if isinstance(max_concurrent, bool) or not isinstance(max_concurrent, int):
            raise ValidationError(f"Max concurrent calls must be an integer, got {max_concurrent!r}")
        if max_concurrent < 1 or max_concurrent > self.max_allowed:
            raise ValidationError(f"Max concurrent calls must be between 1 and {self.max_allowed}")
