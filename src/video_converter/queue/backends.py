from __future__ import annotations

"""Abstract base classes for the broker, the video state store and worker pools.

These abstractions keep the handler independent from storage and transport.
The bundled implementations are SQLite based (see sqlite_backend.py); a
RabbitMQ or Postgres backend only has to satisfy the same interfaces.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional


@dataclass
class Delivery:
    """One delivery of a queued message to a consumer.

    A delivery is settled exactly once, by ack() or nack(). Anything left
    unsettled by the handler is handed back to the broker by the consumer.
    """

    message_id: str
    queue: str
    body: bytes
    attempt_count: int
    broker: "MessageBroker" = field(repr=False)
    consumer_id: Optional[str] = None
    settled: bool = False

    @property
    def redelivered(self) -> bool:
        return self.attempt_count > 0

    def ack(self) -> None:
        self.broker.ack(self.message_id, consumer_id=self.consumer_id)
        self.settled = True

    def nack(self, error: Optional[str] = None, count_attempt: bool = True) -> None:
        self.broker.nack(
            self.message_id, error=error, count_attempt=count_attempt, consumer_id=self.consumer_id
        )
        self.settled = True


class MessageBroker(ABC):
    """Abstract at-least-once message transport.

    Implementations must provide:
    - Atomic receive (two consumers never get the same pending message)
    - Redelivery of nacked and stale deliveries under a RetryPolicy
    - Heartbeat support for long-running deliveries
    """

    @abstractmethod
    def publish(self, queue: str, body: bytes, message_id: Optional[str] = None) -> str:
        """Append a message to queue and return its message_id."""
        pass

    @abstractmethod
    def receive(self, queue: str, consumer_id: str) -> Optional[Delivery]:
        """Atomically claim the next available message of queue.

        Returns:
            Delivery, or None if nothing is available right now
        """
        pass

    @abstractmethod
    def ack(self, message_id: str, consumer_id: Optional[str] = None) -> None:
        """Positive acknowledgment; the message is never delivered again.

        With consumer_id, only a delivery still held by that consumer is settled.
        """
        pass

    @abstractmethod
    def nack(
        self,
        message_id: str,
        error: Optional[str] = None,
        count_attempt: bool = True,
        consumer_id: Optional[str] = None,
    ) -> None:
        """Hand a delivery back for redelivery according to the retry policy.

        Args:
            message_id: Message identifier
            error: Reason stored with the message (truncated)
            count_attempt: If False, redeliver without using up an attempt
            consumer_id: Only settle a delivery still held by this consumer
        """
        pass

    @abstractmethod
    def touch(self, message_id: str, consumer_id: Optional[str] = None) -> None:
        """Refresh the heartbeat of an in-flight delivery."""
        pass

    @abstractmethod
    def reset_stale_deliveries(self, timeout_s: int) -> int:
        """Crash recovery: make deliveries without recent heartbeat available again.

        Returns:
            Count of reset messages
        """
        pass

    @abstractmethod
    def get_stats(self, queue: Optional[str] = None) -> Dict[str, int]:
        """Message counts per status."""
        pass


class VideoStateStore(ABC):
    """Abstract persistent record of per-video processing state.

    Responsibilities:
    - Answer "was this video already converted?"
    - Append completion records
    - Hold short-lived per-video claims
    - Append error records for observability
    """

    @abstractmethod
    def is_processed(self, video_id: int) -> bool:
        """True if a success record exists. Storage errors yield False."""
        pass

    @abstractmethod
    def mark_processed(self, video_id: int) -> None:
        """Append a success record.

        Raises:
            PersistenceError: If the insert fails
        """
        pass

    @abstractmethod
    def claim(self, video_id: int, worker_id: str, ttl_s: int) -> bool:
        """Take the in-progress claim for video_id.

        Returns:
            False if another worker holds a claim younger than ttl_s
        """
        pass

    @abstractmethod
    def release(self, video_id: int, worker_id: str) -> None:
        """Drop the claim if worker_id still holds it."""
        pass

    @abstractmethod
    def record_error(self, error_details: str, created_at: datetime) -> None:
        """Append one serialized error context."""
        pass


class WorkerPool(ABC):
    """Abstract concurrency manager for running jobs in parallel."""

    @abstractmethod
    def submit(self, fn: Callable, *args, **kwargs) -> Any:
        """Submit task to worker pool.

        Returns:
            Future or task handle
        """
        pass

    @abstractmethod
    def shutdown(self, wait: bool = True) -> None:
        """Graceful shutdown.

        Args:
            wait: If True, wait for pending tasks to complete
        """
        pass
