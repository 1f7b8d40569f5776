"""PostgreSQL-backed call queue store."""
import threading

from psycopg2.pool import ThreadedConnectionPool
from psycopg2.extras import RealDictCursor
from typing import List, Optional, Dict, Any
from contextlib import contextmanager

from callqueue import settings
from callqueue.logging_conf import logger
from callqueue.queue.models import (
    QueueEntry, Agent, PhoneNumber, CallRecord,
    WAITING, PROCESSING, COMPLETED, FAILED, QUEUE_STATUSES, CALL_INITIATED,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS agents (
    id SERIAL PRIMARY KEY,
    agent_id VARCHAR(255) NOT NULL UNIQUE,
    phone_number_id VARCHAR(255) NOT NULL,
    name VARCHAR(255) NOT NULL,
    description TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS phone_numbers (
    id SERIAL PRIMARY KEY,
    phone VARCHAR(50) NOT NULL,
    metadata TEXT,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    agent_id INTEGER,
    last_call_id INTEGER,
    call_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS calls (
    id SERIAL PRIMARY KEY,
    conversation_id VARCHAR(255) UNIQUE,
    call_sid VARCHAR(255),
    agent_id INTEGER NOT NULL,
    phone_number_id INTEGER,
    to_number VARCHAR(50) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'initiated',
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS call_queue (
    id SERIAL PRIMARY KEY,
    phone_number_id INTEGER NOT NULL,
    agent_id INTEGER NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'waiting',
    priority INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    error_message TEXT,
    scheduled_at TIMESTAMP,
    started_at TIMESTAMP,
    completed_at TIMESTAMP,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS call_queue_claim_idx ON call_queue (status, priority DESC, id);
CREATE INDEX IF NOT EXISTS calls_phone_number_idx ON calls (phone_number_id, created_at);
"""

# Columns update_entry may touch; keeps caller-supplied keys out of the SQL text
ENTRY_COLUMNS = {
    "status", "priority", "retry_count", "max_retries", "error_message",
    "scheduled_at", "started_at", "completed_at",
}
PHONE_NUMBER_COLUMNS = {"status", "last_call_id", "call_count", "agent_id"}


class QueueStore:
    """Database connection pool and operations for the outbound call queue.

    The poll loop and every dispatch thread run statements concurrently, so
    each ``cursor()`` block checks out its own pooled connection and commits
    or rolls back only that connection.
    """

    def __init__(self, database_url: Optional[str] = None, max_connections: Optional[int] = None):
        self.database_url = database_url or settings.DATABASE_URL
        self.max_connections = settings.DB_MAX_CONNECTIONS if max_connections is None else max_connections
        self._pool = None
        self._pool_lock = threading.Lock()

    @property
    def pool(self) -> ThreadedConnectionPool:
        """Get or create the connection pool."""
        with self._pool_lock:
            if self._pool is None or self._pool.closed:
                self._pool = ThreadedConnectionPool(1, self.max_connections, self.database_url)
            return self._pool

    def close(self):
        """Close all pooled connections."""
        with self._pool_lock:
            if self._pool and not self._pool.closed:
                self._pool.closeall()
            self._pool = None

    @contextmanager
    def cursor(self):
        """Context manager for a cursor on a checked-out connection with auto-commit/rollback."""
        pool = self.pool
        conn = pool.getconn()
        try:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            try:
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()
        finally:
            # Broken connections are dropped instead of going back to the pool
            pool.putconn(conn, close=bool(conn.closed))

    def create_tables(self) -> None:
        """Create the queue tables if they do not exist yet."""
        with self.cursor() as cur:
            cur.execute(SCHEMA_SQL)

    # ============ Queue entries ============

    def add_to_queue(
        self,
        phone_number_id: int,
        agent_id: int,
        priority: int = 0,
        max_retries: int = 3,
        scheduled_at=None,
    ) -> QueueEntry:
        """Insert a new waiting entry."""
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO call_queue
                    (phone_number_id, agent_id, status, priority, retry_count, max_retries, scheduled_at)
                VALUES (%s, %s, %s, %s, 0, %s, %s)
                RETURNING *
            """, (phone_number_id, agent_id, WAITING, priority, max_retries, scheduled_at))
            return QueueEntry.from_row(cur.fetchone())

    def get_entry(self, entry_id: int) -> Optional[QueueEntry]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM call_queue WHERE id = %s", (entry_id,))
            row = cur.fetchone()
            return QueueEntry.from_row(row) if row else None

    def list_entries(self, status: Optional[str] = None, limit: int = 100) -> List[QueueEntry]:
        """List entries for the dashboard, highest priority first."""
        with self.cursor() as cur:
            if status:
                cur.execute("""
                    SELECT * FROM call_queue
                    WHERE status = %s
                    ORDER BY priority DESC, id ASC
                    LIMIT %s
                """, (status, limit))
            else:
                cur.execute("""
                    SELECT * FROM call_queue
                    ORDER BY priority DESC, id ASC
                    LIMIT %s
                """, (limit,))
            return [QueueEntry.from_row(row) for row in cur.fetchall()]

    def get_next_entries(self, limit: int) -> List[QueueEntry]:
        """Fetch up to ``limit`` due waiting entries without claiming them."""
        if limit <= 0:
            return []
        with self.cursor() as cur:
            cur.execute("""
                SELECT * FROM call_queue
                WHERE status = %s
                  AND (scheduled_at IS NULL OR scheduled_at <= NOW())
                ORDER BY priority DESC, id ASC
                LIMIT %s
            """, (WAITING, limit))
            return [QueueEntry.from_row(row) for row in cur.fetchall()]

    def mark_processing(self, entry_id: int) -> bool:
        """Mark entry as processing (atomic claim).

        Returns False when the entry is no longer waiting, i.e. another
        worker claimed it first.
        """
        with self.cursor() as cur:
            cur.execute("""
                UPDATE call_queue
                SET status = %s, started_at = NOW(), updated_at = NOW()
                WHERE id = %s AND status = %s
                RETURNING id
            """, (PROCESSING, entry_id, WAITING))
            return cur.fetchone() is not None

    def update_entry(self, entry_id: int, **fields) -> None:
        """Set the given columns on an entry. Re-applying the same values is harmless."""
        unknown = set(fields) - ENTRY_COLUMNS
        if unknown:
            raise ValueError(f"Unknown queue entry fields: {sorted(unknown)}")
        if not fields:
            return
        columns = sorted(fields)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        with self.cursor() as cur:
            cur.execute(
                f"UPDATE call_queue SET {assignments}, updated_at = NOW() WHERE id = %s",
                [fields[column] for column in columns] + [entry_id],
            )

    def mark_completed(self, entry_id: int) -> None:
        with self.cursor() as cur:
            cur.execute("""
                UPDATE call_queue
                SET status = %s, completed_at = NOW(), error_message = NULL, updated_at = NOW()
                WHERE id = %s
            """, (COMPLETED, entry_id))

    def mark_retry(self, entry_id: int, retry_count: int, error: str, delay_seconds: float = 0) -> None:
        """Put entry back in the waiting pool after a failed attempt.

        With a delay the entry becomes due ``delay_seconds`` after the
        database's NOW(), the same clock ``get_next_entries`` compares against.
        """
        with self.cursor() as cur:
            cur.execute("""
                UPDATE call_queue
                SET status = %s,
                    retry_count = %s,
                    error_message = %s,
                    scheduled_at = CASE WHEN %s > 0 THEN NOW() + make_interval(secs => %s) ELSE NULL END,
                    updated_at = NOW()
                WHERE id = %s
            """, (WAITING, retry_count, error, delay_seconds, delay_seconds, entry_id))
        logger.warning(f"Queue entry {entry_id} will be retried (attempt {retry_count}): {error}")

    def mark_failed(self, entry_id: int, retry_count: int, error: str) -> None:
        with self.cursor() as cur:
            cur.execute("""
                UPDATE call_queue
                SET status = %s, retry_count = %s, error_message = %s,
                    completed_at = NOW(), updated_at = NOW()
                WHERE id = %s
            """, (FAILED, retry_count, error, entry_id))
        logger.warning(f"Queue entry {entry_id} failed: {error}")

    def requeue_entry(self, entry_id: int) -> bool:
        """Manually put a failed entry back in the queue with a fresh retry budget."""
        with self.cursor() as cur:
            cur.execute("""
                UPDATE call_queue
                SET status = %s, retry_count = 0, error_message = NULL,
                    scheduled_at = NULL, started_at = NULL, completed_at = NULL,
                    updated_at = NOW()
                WHERE id = %s AND status = %s
                RETURNING id
            """, (WAITING, entry_id, FAILED))
            return cur.fetchone() is not None

    def reset_stuck_processing(self, minutes: int = 30) -> int:
        """Release entries left in 'processing' by a crashed run.

        An entry whose call was already recorded after it was claimed is
        completed, never dialed again. The rest count one spent attempt;
        entries that run out of retries become failed instead of waiting.
        """
        with self.cursor() as cur:
            cur.execute("""
                UPDATE call_queue q
                SET status = %s, completed_at = NOW(), error_message = NULL, updated_at = NOW()
                WHERE q.status = %s
                  AND q.started_at < NOW() - make_interval(mins => %s)
                  AND EXISTS (
                      SELECT 1 FROM calls c
                      WHERE c.phone_number_id = q.phone_number_id
                        AND c.created_at >= q.started_at
                  )
                RETURNING q.id
            """, (COMPLETED, PROCESSING, minutes))
            completed = len(cur.fetchall())

            cur.execute("""
                UPDATE call_queue
                SET retry_count = retry_count + 1,
                    status = CASE WHEN retry_count + 1 >= max_retries THEN %s ELSE %s END,
                    completed_at = CASE WHEN retry_count + 1 >= max_retries THEN NOW() ELSE NULL END,
                    error_message = 'Interrupted while processing',
                    updated_at = NOW()
                WHERE status = %s
                  AND started_at < NOW() - make_interval(mins => %s)
                RETURNING id
            """, (FAILED, WAITING, PROCESSING, minutes))
            released = len(cur.fetchall())

        if completed:
            logger.warning(f"Completed {completed} stuck queue entries whose call was already placed")
        if released:
            logger.warning(f"Reset {released} stuck queue entries")
        return completed + released

    def get_stats(self) -> Dict[str, int]:
        """Count entries per status."""
        stats = {status: 0 for status in QUEUE_STATUSES}
        with self.cursor() as cur:
            cur.execute("SELECT status, COUNT(*) AS count FROM call_queue GROUP BY status")
            for row in cur.fetchall():
                if row["status"] in stats:
                    stats[row["status"]] = row["count"]
        stats["total"] = sum(stats[status] for status in QUEUE_STATUSES)
        return stats

    # ============ Agents, phone numbers, calls ============

    def get_agent(self, agent_id: int) -> Optional[Agent]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM agents WHERE id = %s", (agent_id,))
            row = cur.fetchone()
            return Agent.from_row(row) if row else None

    def get_phone_number(self, phone_number_id: int) -> Optional[PhoneNumber]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM phone_numbers WHERE id = %s", (phone_number_id,))
            row = cur.fetchone()
            return PhoneNumber.from_row(row) if row else None

    def update_phone_number(self, phone_number_id: int, **fields) -> None:
        unknown = set(fields) - PHONE_NUMBER_COLUMNS
        if unknown:
            raise ValueError(f"Unknown phone number fields: {sorted(unknown)}")
        if not fields:
            return
        columns = sorted(fields)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        with self.cursor() as cur:
            cur.execute(
                f"UPDATE phone_numbers SET {assignments}, updated_at = NOW() WHERE id = %s",
                [fields[column] for column in columns] + [phone_number_id],
            )

    def create_call(
        self,
        agent_id: int,
        phone_number_id: int,
        to_number: str,
        conversation_id: Optional[str] = None,
        call_sid: Optional[str] = None,
    ) -> CallRecord:
        """Record an accepted outbound call."""
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO calls (conversation_id, call_sid, agent_id, phone_number_id, to_number, status)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
            """, (conversation_id, call_sid, agent_id, phone_number_id, to_number, CALL_INITIATED))
            return CallRecord.from_row(cur.fetchone())
