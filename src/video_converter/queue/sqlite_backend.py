"""SQLite implementations of MessageBroker and VideoStateStore.

This module provides the local, crash-safe implementation using:
- sqlite-utils for table access
- One connection per thread, WAL mode for concurrent readers
- BEGIN IMMEDIATE transactions for atomic receive
- Exponential backoff retry for database lock handling
- Conflict-safe upserts for per-video claims
"""

import json
import logging
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sqlite_utils import Database

from ..errors import PersistenceError
from .backends import Delivery, MessageBroker, VideoStateStore
from .models import MessageStatus, ProcessedVideoRecord, RetryPolicy, VideoStatus

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- Completion records (idempotency source of truth)
CREATE TABLE IF NOT EXISTS processed_videos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    video_id INTEGER NOT NULL,
    status TEXT NOT NULL,
    processed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_processed_video ON processed_videos(video_id, status);

-- Error audit trail (write-only for the pipeline)
CREATE TABLE IF NOT EXISTS process_errors_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    error_details TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Per-video in-progress claims
CREATE TABLE IF NOT EXISTS video_claims (
    video_id INTEGER PRIMARY KEY,
    worker_id TEXT NOT NULL,
    claimed_at TEXT NOT NULL
);

-- Message queue
CREATE TABLE IF NOT EXISTS messages (
    message_id TEXT PRIMARY KEY,
    queue TEXT NOT NULL,
    original_queue TEXT NOT NULL,
    body BLOB NOT NULL,
    status TEXT NOT NULL,
    attempt_count INTEGER DEFAULT 0,
    available_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    delivered_at TEXT,
    acked_at TEXT,
    last_heartbeat TEXT,
    consumer_id TEXT,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_receive ON messages(queue, status, available_at);
"""


def _timestamp(dt: Optional[datetime] = None) -> str:
    # Fixed precision keeps string comparison in SQL chronological
    return (dt or datetime.now()).isoformat(timespec="microseconds")


def _owner_clause(consumer_id: Optional[str]):
    if consumer_id is None:
        return "", []
    return " AND consumer_id = ?", [consumer_id]


class SQLiteDatabase:
    """Shared SQLite database with one connection per thread.

    sqlite3 connections cannot be shared across threads, so every worker
    thread lazily opens its own connection to the same file.
    """

    def __init__(self, db_path: Union[str, Path], busy_timeout_s: float = 30.0):
        """Initialize database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_s: How long a connection waits for a write lock

        Creates schema if database doesn't exist.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_s = busy_timeout_s
        self._local = threading.local()

        self.db.executescript(SCHEMA_SQL)

    @property
    def db(self) -> Database:
        """sqlite-utils Database bound to the calling thread's connection."""
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout_s)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            db = Database(conn)
            self._local.db = db
        return db

    def close(self) -> None:
        """Close the calling thread's connection."""
        db = getattr(self._local, "db", None)
        if db is not None:
            db.conn.close()
            self._local.db = None


class SQLiteVideoStore(VideoStateStore):
    """Processed-video records, per-video claims and the error log."""

    def __init__(self, database: SQLiteDatabase):
        self.database = database

    @property
    def db(self) -> Database:
        return self.database.db

    def is_processed(self, video_id: int) -> bool:
        try:
            row = self.db.execute(
                "SELECT EXISTS(SELECT 1 FROM processed_videos WHERE video_id = ? AND status = ?)",
                [video_id, VideoStatus.SUCCESS.value],
            ).fetchone()
        except sqlite3.Error as e:
            # Attempt the job rather than silently skipping it
            logger.error("Error checking if video %s is processed: %s", video_id, e)
            return False
        return bool(row[0])

    def mark_processed(self, video_id: int) -> None:
        """Insert one success record. Not idempotent: callers gate on is_processed()."""
        try:
            self.db["processed_videos"].insert({
                "video_id": video_id,
                "status": VideoStatus.SUCCESS.value,
                "processed_at": _timestamp(),
            })
        except sqlite3.Error as e:
            logger.error("Error marking video %s as processed: %s", video_id, e)
            raise PersistenceError("Failed to mark video as processed", details=str(e)) from e

    def claim(self, video_id: int, worker_id: str, ttl_s: int) -> bool:
        """Insert or take over an expired claim in one statement.

        Raises:
            PersistenceError: If the database rejects the statement
        """
        now = datetime.now()
        cutoff = now - timedelta(seconds=ttl_s)
        try:
            with self.db.conn:
                cursor = self.db.execute("""
                    INSERT INTO video_claims (video_id, worker_id, claimed_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(video_id) DO UPDATE
                    SET worker_id = excluded.worker_id,
                        claimed_at = excluded.claimed_at
                    WHERE video_claims.claimed_at < ?
                       OR video_claims.worker_id = excluded.worker_id
                """, (video_id, worker_id, _timestamp(now), _timestamp(cutoff)))
                return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise PersistenceError("Failed to claim video", details=str(e)) from e

    def release(self, video_id: int, worker_id: str) -> None:
        try:
            with self.db.conn:
                self.db.execute(
                    "DELETE FROM video_claims WHERE video_id = ? AND worker_id = ?",
                    (video_id, worker_id),
                )
        except sqlite3.Error as e:
            # The claim expires after its TTL
            logger.warning("Failed to release claim on video %s: %s", video_id, e)

    def get_claim(self, video_id: int) -> Optional[Dict[str, Any]]:
        rows = list(self.db["video_claims"].rows_where("video_id = ?", [video_id]))
        return rows[0] if rows else None

    def record_error(self, error_details: str, created_at: datetime) -> None:
        try:
            self.db["process_errors_log"].insert({
                "error_details": error_details,
                "created_at": _timestamp(created_at),
            })
        except sqlite3.Error as e:
            raise PersistenceError("Failed to store error log", details=str(e)) from e

    def list_errors(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent error records first, with error_details decoded."""
        rows = self.db["process_errors_log"].rows_where(order_by="id DESC", limit=limit)
        items = []
        for row in rows:
            item = dict(row)
            item["error_details"] = json.loads(item["error_details"])
            items.append(item)
        return items

    def list_processed(self, limit: Optional[int] = None) -> List[ProcessedVideoRecord]:
        rows = self.db["processed_videos"].rows_where(order_by="id", limit=limit)
        return [ProcessedVideoRecord(**row) for row in rows]


class SQLiteBroker(MessageBroker):
    """SQLite-based message queue with atomic receive.

    Features:
    - Atomic receive via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Exponential backoff retry for database lock contention
    - Redelivery delay and dead-lettering from a RetryPolicy
    - Heartbeats and crash recovery via reset_stale_deliveries()
    """

    def __init__(self, database: SQLiteDatabase, retry_policy: Optional[RetryPolicy] = None):
        self.database = database
        self.retry_policy = retry_policy or RetryPolicy()

    @property
    def db(self) -> Database:
        return self.database.db

    def publish(self, queue: str, body: Union[bytes, str], message_id: Optional[str] = None) -> str:
        if isinstance(body, str):
            body = body.encode("utf-8")
        message_id = message_id or str(uuid.uuid4())
        now = _timestamp()

        self.db["messages"].insert({
            "message_id": message_id,
            "queue": queue,
            "original_queue": queue,
            "body": body,
            "status": MessageStatus.PENDING.value,
            "attempt_count": 0,
            "available_at": now,
            "created_at": now,
        })
        return message_id

    def receive(self, queue: str, consumer_id: str) -> Optional[Delivery]:
        return self._receive_with_retry(queue, consumer_id, max_retries=3)

    def _receive_with_retry(
        self, queue: str, consumer_id: str, max_retries: int = 3
    ) -> Optional[Delivery]:
        """Receive with exponential backoff on SQLITE_BUSY.

        BEGIN IMMEDIATE takes the write lock before the SELECT runs, so two
        consumers can never claim the same message.
        """
        for attempt in range(max_retries):
            conn = self.db.conn
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    now = _timestamp()
                    rows = conn.execute("""
                        UPDATE messages
                        SET status = ?,
                            consumer_id = ?,
                            delivered_at = ?,
                            last_heartbeat = ?
                        WHERE message_id = (
                            SELECT message_id FROM messages
                            WHERE queue = ? AND status = ? AND available_at <= ?
                            ORDER BY available_at ASC, created_at ASC
                            LIMIT 1
                        )
                        RETURNING message_id, queue, body, attempt_count
                    """, (
                        MessageStatus.DELIVERED.value,
                        consumer_id,
                        now,
                        now,
                        queue,
                        MessageStatus.PENDING.value,
                        now,
                    )).fetchall()
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise

                if not rows:
                    return None

                message_id, queue_name, body, attempt_count = rows[0]
                return Delivery(
                    message_id=message_id,
                    queue=queue_name,
                    body=bytes(body),
                    attempt_count=attempt_count,
                    broker=self,
                    consumer_id=consumer_id,
                )

            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    # 100ms, 200ms, 400ms
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise

        return None

    def ack(self, message_id: str, consumer_id: Optional[str] = None) -> None:
        owner_sql, owner_params = _owner_clause(consumer_id)
        with self.db.conn:
            cursor = self.db.execute(f"""
                UPDATE messages
                SET status = ?, acked_at = ?, consumer_id = NULL
                WHERE message_id = ? AND status = ?{owner_sql}
            """, [
                MessageStatus.ACKED.value,
                _timestamp(),
                message_id,
                MessageStatus.DELIVERED.value,
                *owner_params,
            ])
        if cursor.rowcount == 0:
            logger.warning("Ignoring ack for message %s: not held by %s", message_id, consumer_id)

    def nack(
        self,
        message_id: str,
        error: Optional[str] = None,
        count_attempt: bool = True,
        consumer_id: Optional[str] = None,
    ) -> None:
        """Return a delivery to the queue or dead-letter it.

        - Attempts left: back to 'pending' after the policy's backoff
        - Attempts exhausted: moved to the dead-letter queue, or 'failed'
        - count_attempt=False: redelivered after the capped delay, attempts unchanged
        """
        policy = self.retry_policy
        owner_sql, owner_params = _owner_clause(consumer_id)
        error_snippet = error[:500] if error else None

        with self.db.conn:
            row = self.db.execute(
                f"SELECT attempt_count FROM messages WHERE message_id = ? AND status = ?{owner_sql}",
                [message_id, MessageStatus.DELIVERED.value, *owner_params],
            ).fetchone()
            if row is None:
                logger.warning("Ignoring nack for message %s: not held by %s", message_id, consumer_id)
                return

            attempts = row[0] + (1 if count_attempt else 0)

            if count_attempt and policy.is_exhausted(attempts):
                if policy.dead_letter_queue:
                    status, queue_sql, params = (
                        MessageStatus.DEAD_LETTERED.value, "queue = ?,", [policy.dead_letter_queue]
                    )
                else:
                    status, queue_sql, params = MessageStatus.FAILED.value, "", []

                self.db.execute(f"""
                    UPDATE messages
                    SET status = ?,
                        {queue_sql}
                        attempt_count = ?,
                        last_error = ?,
                        consumer_id = NULL
                    WHERE message_id = ?
                """, [status, *params, attempts, error_snippet, message_id])
                logger.warning(
                    "Message %s exhausted %d attempts, now %s", message_id, attempts, status
                )
                return

            delay = policy.backoff_s(attempts) if count_attempt else policy.backoff_cap_s
            self.db.execute("""
                UPDATE messages
                SET status = ?,
                    attempt_count = ?,
                    available_at = ?,
                    last_error = ?,
                    consumer_id = NULL
                WHERE message_id = ?
            """, (
                MessageStatus.PENDING.value,
                attempts,
                _timestamp(datetime.now() + timedelta(seconds=delay)),
                error_snippet,
                message_id,
            ))

    def touch(self, message_id: str, consumer_id: Optional[str] = None) -> None:
        owner_sql, owner_params = _owner_clause(consumer_id)
        with self.db.conn:
            self.db.execute(f"""
                UPDATE messages
                SET last_heartbeat = ?
                WHERE message_id = ? AND status = ?{owner_sql}
            """, [_timestamp(), message_id, MessageStatus.DELIVERED.value, *owner_params])

    def reset_stale_deliveries(self, timeout_s: int) -> int:
        """Crash recovery: reset deliveries whose heartbeat stopped.

        Resets to 'pending' without incrementing attempt_count.
        """
        cutoff = _timestamp(datetime.now() - timedelta(seconds=timeout_s))

        with self.db.conn:
            rows = self.db.execute("""
                UPDATE messages
                SET status = ?, consumer_id = NULL, available_at = ?
                WHERE status = ?
                  AND COALESCE(last_heartbeat, delivered_at) < ?
                RETURNING message_id
            """, (
                MessageStatus.PENDING.value,
                _timestamp(),
                MessageStatus.DELIVERED.value,
                cutoff,
            )).fetchall()

        for (message_id,) in rows:
            logger.warning("Reset stale delivery %s (crash recovery)", message_id)
        return len(rows)

    def retry_dead_letters(self, queue: Optional[str] = None) -> int:
        """Move dead-lettered and failed messages back to their original queue."""
        sql = """
            UPDATE messages
            SET status = ?,
                queue = original_queue,
                attempt_count = 0,
                available_at = ?,
                last_error = NULL
            WHERE status IN (?, ?)
        """
        params = [
            MessageStatus.PENDING.value,
            _timestamp(),
            MessageStatus.DEAD_LETTERED.value,
            MessageStatus.FAILED.value,
        ]
        if queue:
            sql += " AND original_queue = ?"
            params.append(queue)

        with self.db.conn:
            cursor = self.db.execute(sql, params)
            return cursor.rowcount

    def purge(self, include_unfinished: bool = False) -> int:
        """Delete acked messages, or every message with include_unfinished."""
        with self.db.conn:
            if include_unfinished:
                cursor = self.db.execute("DELETE FROM messages")
            else:
                cursor = self.db.execute(
                    "DELETE FROM messages WHERE status = ?", [MessageStatus.ACKED.value]
                )
            return cursor.rowcount

    def get_message(self, message_id: str) -> Dict[str, Any]:
        """Message row as dict, or empty dict if not found."""
        rows = list(self.db["messages"].rows_where("message_id = ?", [message_id]))
        return rows[0] if rows else {}

    def get_stats(self, queue: Optional[str] = None) -> Dict[str, int]:
        sql = "SELECT status, COUNT(*) FROM messages"
        params: List[Any] = []
        if queue:
            sql += " WHERE original_queue = ?"
            params.append(queue)
        sql += " GROUP BY status"

        stats = {status.value: 0 for status in MessageStatus}
        for status, count in self.db.execute(sql, params).fetchall():
            stats[status] = count
        stats["total"] = sum(stats.values())
        return stats
