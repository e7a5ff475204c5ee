"""Best-effort persistence of failure context."""

import logging
from typing import Optional, Union

from .errors import FailureStage, TranscodeError
from .queue.backends import VideoStateStore
from .queue.models import ErrorContext, Job

logger = logging.getLogger(__name__)


class ErrorReporter:
    """Serializes failure context and appends it to the error log.

    report() never raises: an error log that cannot be written is logged
    locally and dropped so it cannot take the handler down with it.
    """

    def __init__(self, store: VideoStateStore):
        self.store = store

    def report(
        self,
        job: Optional[Job],
        stage: Union[FailureStage, str],
        cause: BaseException,
        message: Optional[str] = None,
    ) -> Optional[ErrorContext]:
        """Record one failure.

        Args:
            job: The job being handled, None if it could not be deserialized
            stage: Pipeline stage that failed
            cause: Underlying exception
            message: Summary; defaults to the exception's own message

        Returns:
            The context that was built, or None if even that failed
        """
        try:
            context = ErrorContext(
                video_id=job.video_id if job else None,
                path=job.path if job else None,
                stage=FailureStage(stage).value,
                error=message or getattr(cause, "message", None) or type(cause).__name__,
                details=str(cause),
                output=cause.output if isinstance(cause, TranscodeError) else None,
            )
            serialized = context.to_json()
        except Exception:
            logger.exception("Failed to serialize error context for stage %s", stage)
            return None

        logger.error("Processing error: %s", serialized)

        try:
            self.store.record_error(serialized, context.time)
        except Exception as e:
            logger.error("Error storing error log in database: %s", e)
            return context

        logger.info("Error log stored for video %s (stage=%s)", context.video_id, context.stage)
        return context
