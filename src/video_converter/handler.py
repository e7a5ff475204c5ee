"""Job handler: drives one delivery through the conversion pipeline.

Pipeline for a delivery:
    deserialize → idempotency check → claim → merge chunks → DASH transcode
    → mark processed → ack → publish confirmation

Acknowledgment rules:
- Ack only for a duplicate (video already processed) or after the
  completion record was written.
- Every other outcome leaves the delivery unsettled; the consumer hands it
  back to the broker, whose retry policy decides on redelivery.
"""

import logging
import os
import socket
from enum import Enum
from pathlib import Path
from typing import Optional

from .chunks import merge_chunks
from .errors import ConversionError, FailureStage, MalformedJobError, MergeError, PersistenceError
from .models import MergeConfig
from .queue.backends import Delivery, MessageBroker, VideoStateStore
from .queue.models import ConfirmationMessage, Job
from .reporter import ErrorReporter
from .transcoder import DashTranscoder

logger = logging.getLogger(__name__)


class HandleOutcome(str, Enum):
    """What happened to one delivery."""

    COMPLETED = "completed"  # Converted, marked, acked
    DUPLICATE = "duplicate"  # Already processed, acked
    MALFORMED = "malformed"  # Unreadable body, not acked
    FAILED = "failed"  # A stage failed, not acked
    CLAIMED_ELSEWHERE = "claimed_elsewhere"  # Another delivery is converting it, not acked

    @property
    def acknowledged(self) -> bool:
        return self in (HandleOutcome.COMPLETED, HandleOutcome.DUPLICATE)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class VideoConverter:
    """Converts uploaded chunk directories to MPEG-DASH, at most once per video."""

    def __init__(
        self,
        store: VideoStateStore,
        broker: MessageBroker,
        transcoder: DashTranscoder,
        confirmation_queue: str,
        reporter: Optional[ErrorReporter] = None,
        merge_config: Optional[MergeConfig] = None,
        output_dir_name: str = "mpeg-dash",
        worker_id: Optional[str] = None,
        claim_ttl_s: int = 7200,
    ):
        self.store = store
        self.broker = broker
        self.transcoder = transcoder
        self.confirmation_queue = confirmation_queue
        self.reporter = reporter or ErrorReporter(store)
        self.merge_config = merge_config or MergeConfig()
        self.output_dir_name = output_dir_name
        self.worker_id = worker_id or default_worker_id()
        self.claim_ttl_s = claim_ttl_s

    def handle(self, delivery: Delivery) -> HandleOutcome:
        """Handle one delivery. Never raises; failures are logged and reported."""
        try:
            return self._handle(delivery)
        except Exception as e:
            logger.exception("Unexpected error handling message %s", delivery.message_id)
            self.reporter.report(self._peek_job(delivery), FailureStage.INTERNAL, e)
            return HandleOutcome.FAILED

    def _handle(self, delivery: Delivery) -> HandleOutcome:
        try:
            job = Job.from_message(delivery.body)
        except MalformedJobError as e:
            self.reporter.report(None, e.stage, e)
            return HandleOutcome.MALFORMED

        if self.store.is_processed(job.video_id):
            logger.warning("Video %s already processed", job.video_id)
            delivery.ack()
            return HandleOutcome.DUPLICATE

        owner = f"{self.worker_id}:{delivery.message_id}"
        try:
            claimed = self.store.claim(job.video_id, owner, self.claim_ttl_s)
        except PersistenceError as e:
            logger.warning("Could not claim video %s, continuing unclaimed: %s", job.video_id, e)
            claimed = None

        if claimed is False:
            logger.info("Video %s is being converted by another delivery", job.video_id)
            return HandleOutcome.CLAIMED_ELSEWHERE

        try:
            # A concurrent delivery may have finished between the check and the claim
            if claimed and self.store.is_processed(job.video_id):
                logger.warning("Video %s already processed", job.video_id)
                delivery.ack()
                return HandleOutcome.DUPLICATE

            try:
                self.process_video(job)
            except ConversionError as e:
                self.reporter.report(job, e.stage, e)
                return HandleOutcome.FAILED

            try:
                self.store.mark_processed(job.video_id)
            except PersistenceError as e:
                # No record yet: redelivery must retry the whole job
                self.reporter.report(job, FailureStage.MARK_PROCESSED, e)
                return HandleOutcome.FAILED
        finally:
            if claimed:
                self.store.release(job.video_id, owner)

        delivery.ack()
        logger.info("Video %s marked as processed", job.video_id)

        self._publish_confirmation(job)
        return HandleOutcome.COMPLETED

    def process_video(self, job: Job) -> None:
        """Merge the job's chunks and convert them to DASH.

        Raises:
            MergeError, OutputDirectoryError, TranscodeError
        """
        upload_dir = Path(job.path)
        merged_file = upload_dir / self.merge_config.merged_file_name
        dash_dir = upload_dir / self.output_dir_name

        logger.info("Merging chunks in %s", upload_dir)
        try:
            result = merge_chunks(
                upload_dir,
                merged_file,
                pattern=self.merge_config.chunk_pattern,
                require_contiguous=self.merge_config.require_contiguous,
            )
        except MergeError:
            self._remove_partial(merged_file)
            raise
        logger.info(
            "Merged %d chunks (%d bytes) for video %s",
            result.chunk_count, result.bytes_written, job.video_id,
        )

        self.transcoder.convert(merged_file, dash_dir)

    def _publish_confirmation(self, job: Job) -> None:
        """Fire-and-forget: the video is already marked, so failure is non-fatal."""
        body = ConfirmationMessage.for_job(job).to_body()
        try:
            self.broker.publish(self.confirmation_queue, body)
        except Exception as e:
            logger.warning("Failed to publish confirmation for video %s: %s", job.video_id, e)
            self.reporter.report(job, FailureStage.CONFIRM, e, message="Failed to publish confirmation")
            return
        logger.info("Confirmation for video %s sent to %s", job.video_id, self.confirmation_queue)

    @staticmethod
    def _remove_partial(merged_file: Path) -> None:
        try:
            merged_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove partial merged file %s: %s", merged_file, e)

    @staticmethod
    def _peek_job(delivery: Delivery) -> Optional[Job]:
        try:
            return Job.from_message(delivery.body)
        except MalformedJobError:
            return None
