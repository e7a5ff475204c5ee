"""Bounded worker pool and the consumer loop.

This module provides concurrent job handling with:
- ThreadPoolExecutor for I/O and subprocess bound conversions
- A bounded backlog so the consumer stops receiving under load
- Heartbeat threads from receive until the delivery is settled
- A tqdm progress bar while draining the queue
- Settling of every delivery the handler left unacknowledged
- Graceful shutdown handling
"""

import logging
import multiprocessing
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from tqdm import tqdm

from .backends import Delivery, MessageBroker, WorkerPool

logger = logging.getLogger(__name__)


class BoundedWorkerPool(WorkerPool):
    """ThreadPoolExecutor with a cap on queued work.

    At most ``n_workers + backlog`` tasks are accepted at once; submit()
    blocks until a slot frees up, which pushes back on the consumer instead
    of buffering unbounded deliveries in memory.
    """

    def __init__(self, n_workers: int = None, backlog: int = 8):
        """Initialize worker pool.

        Args:
            n_workers: Number of concurrent jobs (default: CPU count)
            backlog: Tasks accepted beyond the running ones
        """
        self.n_workers = n_workers or multiprocessing.cpu_count()
        self.backlog = backlog
        self._slots = threading.BoundedSemaphore(self.n_workers + self.backlog)
        self._executor = None

    def __enter__(self):
        """Create worker pool on context entry."""
        self._executor = ThreadPoolExecutor(
            max_workers=self.n_workers, thread_name_prefix="converter"
        )
        return self

    def __exit__(self, *args):
        """Shutdown worker pool on context exit."""
        self.shutdown(wait=True)

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Submit task, blocking while the pool and backlog are full."""
        if not self._executor:
            raise RuntimeError("Worker pool not initialized (use with statement)")

        self._slots.acquire()
        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except BaseException:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())
        return future

    def shutdown(self, wait: bool = True):
        """Graceful shutdown.

        Args:
            wait: If True, wait for pending tasks to complete
        """
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None


class ConversionConsumer:
    """Receives deliveries from one queue and runs a handler on each in a pool.

    The handler returns an outcome with an ``acknowledged`` flag. Deliveries
    the handler left unsettled are nacked here so the broker's retry policy
    applies; a ``claimed_elsewhere`` outcome is nacked without using up an
    attempt.
    """

    def __init__(
        self,
        broker: MessageBroker,
        handler: Callable[[Delivery], Any],
        pool: WorkerPool,
        queue: str,
        consumer_id: str,
        poll_interval_s: float = 1.0,
        heartbeat_interval_s: float = 60.0,
    ):
        self.broker = broker
        self.handler = handler
        self.pool = pool
        self.queue = queue
        self.consumer_id = consumer_id
        self.poll_interval_s = poll_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.stats: Dict[str, int] = {}
        self._stats_lock = threading.Lock()
        self._stop = threading.Event()

    def stop(self) -> None:
        """Stop receiving; in-flight deliveries still finish."""
        self._stop.set()

    def run(
        self,
        max_messages: Optional[int] = None,
        stop_when_empty: bool = False,
        show_progress: bool = False,
    ) -> Dict[str, int]:
        """Consume until stopped.

        Args:
            max_messages: Stop after receiving this many deliveries
            stop_when_empty: Stop at the first empty poll (drain mode)
            show_progress: Show a progress bar of finished deliveries

        Returns:
            Count of deliveries per handler outcome
        """
        received = 0
        futures = []
        logger.info("Consuming from %s as %s", self.queue, self.consumer_id)

        total = max_messages
        if stop_when_empty:
            pending = self.broker.get_stats(self.queue).get("pending", 0)
            total = pending if max_messages is None else min(pending, max_messages)
        progress = tqdm(total=total, desc="Converting", unit="job", disable=not show_progress)

        while not self._stop.is_set():
            if max_messages is not None and received >= max_messages:
                logger.info("Reached max_messages limit (%d)", max_messages)
                break

            delivery = self.broker.receive(self.queue, self.consumer_id)
            if delivery is None:
                if stop_when_empty:
                    break
                self._stop.wait(self.poll_interval_s)
                continue

            received += 1
            # Covers the time spent waiting for a pool slot
            heartbeat = self._start_heartbeat(delivery)
            try:
                futures.append(self.pool.submit(self.process_delivery, delivery, heartbeat))
            except BaseException:
                _stop_heartbeat(heartbeat)
                raise
            futures = [f for f in futures if not self._reap(f, progress)]

        for future in futures:
            future.exception()  # Wait
            self._reap(future, progress)
        progress.close()

        logger.info("Consumer stopped after %d deliveries: %s", received, self.stats)
        return dict(self.stats)

    def process_delivery(self, delivery: Delivery, heartbeat=None) -> Any:
        """Run the handler, then stop the heartbeat and settle the delivery."""
        if heartbeat is None:
            heartbeat = self._start_heartbeat(delivery)
        outcome = None
        try:
            outcome = self.handler(delivery)
        finally:
            _stop_heartbeat(heartbeat)
            self._settle(delivery, outcome)

        self._count(getattr(outcome, "value", str(outcome)))
        return outcome

    def _start_heartbeat(self, delivery: Delivery):
        return _start_heartbeat(
            self.broker, delivery.message_id, self.heartbeat_interval_s, consumer_id=self.consumer_id
        )

    def _settle(self, delivery: Delivery, outcome: Any) -> None:
        if delivery.settled:
            return
        count_attempt = getattr(outcome, "value", None) != "claimed_elsewhere"
        try:
            delivery.nack(error=f"handler outcome: {getattr(outcome, 'value', outcome)}",
                          count_attempt=count_attempt)
        except Exception as e:
            # Stale-delivery recovery picks it up later
            logger.error("Failed to nack message %s: %s", delivery.message_id, e)

    def _reap(self, future: Future, progress=None) -> bool:
        """Log the failure of a finished task. Returns False while it is running."""
        if not future.done():
            return False
        exc = future.exception()
        if exc is not None:
            logger.error("Delivery task crashed: %r", exc)
            self._count("crashed")
        if progress is not None:
            progress.update(1)
        return True

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] = self.stats.get(key, 0) + 1


def _start_heartbeat(
    broker: MessageBroker, message_id: str, interval_s: float, consumer_id: Optional[str] = None
):
    """Start background thread refreshing the delivery heartbeat.

    Returns:
        Tuple of (thread, stop_event) for cleanup

    Thread is daemon so it won't block process exit.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        while not stop_event.wait(interval_s):
            try:
                broker.touch(message_id, consumer_id=consumer_id)
            except Exception as e:
                # Log but don't crash thread
                logger.warning("Heartbeat failed for %s: %s", message_id, e)

    thread = threading.Thread(target=heartbeat_loop, daemon=True, name=f"heartbeat-{message_id[:8]}")
    thread.start()
    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data):
    """Stop heartbeat thread, waiting up to 5s for clean shutdown."""
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)
