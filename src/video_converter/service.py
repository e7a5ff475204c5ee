"""Wiring of the conversion worker and queue management operations.

Usage:
    config = resolve_config()

    # Publish a job
    service.enqueue_job(config, video_id=1, path="media/uploads/1")

    # Consume until SIGINT/SIGTERM (or until empty with drain=True)
    service.run_worker(config)

    # Inspect the queue
    stats = service.get_queue_stats(config)
"""

import logging
import signal
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .ffmpeg_runner import FfmpegRunner
from .handler import VideoConverter, default_worker_id
from .models import ConverterConfig
from .queue import (
    BoundedWorkerPool,
    ConversionConsumer,
    Job,
    SQLiteBroker,
    SQLiteDatabase,
    SQLiteVideoStore,
)
from .reporter import ErrorReporter
from .transcoder import DashTranscoder

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Explicitly wired dependencies of one worker process."""
    database: SQLiteDatabase
    store: SQLiteVideoStore
    broker: SQLiteBroker
    converter: VideoConverter


def build_components(config: ConverterConfig, transcoder: Optional[DashTranscoder] = None) -> Components:
    database = _open_database(config)
    store = SQLiteVideoStore(database)
    broker = SQLiteBroker(database, retry_policy=config.queue.retry)
    converter = VideoConverter(
        store=store,
        broker=broker,
        transcoder=transcoder or DashTranscoder.from_config(config.transcoder),
        confirmation_queue=config.queue.confirmation_queue,
        reporter=ErrorReporter(store),
        merge_config=config.merge,
        output_dir_name=config.transcoder.output_dir_name,
        worker_id=config.worker.worker_id,
        claim_ttl_s=config.worker.claim_ttl_s,
    )
    return Components(database=database, store=store, broker=broker, converter=converter)


def run_worker(
    config: ConverterConfig,
    drain: bool = False,
    max_messages: Optional[int] = None,
    components: Optional[Components] = None,
    progress: bool = False,
) -> Dict[str, int]:
    """Consume the conversion queue with a bounded worker pool.

    Args:
        config: Resolved configuration
        drain: Stop once the queue is empty instead of polling forever
        max_messages: Stop after this many deliveries
        components: Pre-built dependencies (default: built from config)
        progress: Show a progress bar of finished deliveries

    Returns:
        Count of deliveries per handler outcome
    """
    components = components or build_components(config)
    consumer_id = config.worker.worker_id or default_worker_id()

    reset = components.broker.reset_stale_deliveries(config.queue.stale_timeout_s)
    if reset:
        logger.warning("Recovered %d stale deliveries", reset)

    with BoundedWorkerPool(n_workers=config.worker.n_workers, backlog=config.worker.backlog) as pool:
        consumer = ConversionConsumer(
            broker=components.broker,
            handler=components.converter.handle,
            pool=pool,
            queue=config.queue.conversion_queue,
            consumer_id=consumer_id,
            poll_interval_s=config.queue.poll_interval_s,
            heartbeat_interval_s=config.queue.heartbeat_interval_s,
        )
        logger.info(
            "Worker %s started with %d workers (backlog %d)",
            consumer_id, pool.n_workers, pool.backlog,
        )
        previous = _install_stop_handlers(consumer)
        try:
            return consumer.run(
                max_messages=max_messages, stop_when_empty=drain, show_progress=progress
            )
        finally:
            _restore_handlers(previous)


def _install_stop_handlers(consumer: ConversionConsumer) -> Dict[int, Any]:
    # signal.signal only works in the main thread
    if threading.current_thread() is not threading.main_thread():
        return {}

    def _stop(signum, _frame):
        logger.info("Received signal %s, finishing in-flight jobs", signum)
        consumer.stop()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _stop)
    return previous


def _restore_handlers(previous: Dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _open_database(config: ConverterConfig) -> SQLiteDatabase:
    return SQLiteDatabase(config.database.path, busy_timeout_s=config.database.busy_timeout_s)


def _open_broker(config: ConverterConfig) -> SQLiteBroker:
    return SQLiteBroker(_open_database(config), retry_policy=config.queue.retry)


def enqueue_job(config: ConverterConfig, video_id: int, path: str) -> str:
    """Publish a conversion job and return its message id."""
    job = Job(video_id=video_id, path=path)
    broker = _open_broker(config)
    message_id = broker.publish(config.queue.conversion_queue, job.model_dump_json())
    logger.info("Enqueued video %s (message_id=%s)", video_id, message_id)
    return message_id


def get_queue_stats(config: ConverterConfig) -> Dict[str, Dict[str, int]]:
    """Message counts per status for the conversion and confirmation queues."""
    broker = _open_broker(config)
    return {
        config.queue.conversion_queue: broker.get_stats(config.queue.conversion_queue),
        config.queue.confirmation_queue: broker.get_stats(config.queue.confirmation_queue),
    }


def retry_dead_letters(config: ConverterConfig) -> int:
    """Requeue dead-lettered and failed conversion jobs with fresh attempts."""
    broker = _open_broker(config)
    count = broker.retry_dead_letters(config.queue.conversion_queue)
    logger.info("Requeued %d dead-lettered jobs", count)
    return count


def clear_queue(config: ConverterConfig, include_unfinished: bool = False) -> int:
    """Delete acked messages (or all messages) and return how many were removed."""
    broker = _open_broker(config)
    return broker.purge(include_unfinished=include_unfinished)


def list_errors(config: ConverterConfig, limit: int = 20) -> List[Dict[str, Any]]:
    return SQLiteVideoStore(_open_database(config)).list_errors(limit=limit)


def check_ffmpeg(config: ConverterConfig) -> bool:
    runner = FfmpegRunner(ffmpeg_path=config.transcoder.ffmpeg_path)
    return runner.check_ffmpeg()
