"""Pydantic models for messages and persisted pipeline state.

This module defines the type-safe models shared by the handler, the
state store and the broker. All models use Pydantic for validation and
serialization.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError

from ..errors import MalformedJobError


class VideoStatus(str, Enum):
    """Status of a row in processed_videos."""

    SUCCESS = "success"


class MessageStatus(str, Enum):
    """Broker message states.

    State transitions:
        pending → delivered        (consumer receives)
        delivered → acked          (handler acknowledged)
        delivered → pending        (nack with attempts left, or stale reset)
        delivered → dead_lettered  (attempts exhausted, dead-letter queue set)
        delivered → failed         (attempts exhausted, no dead-letter queue)
        dead_lettered/failed → pending  (manual retry via `queue retry`)
    """

    PENDING = "pending"
    DELIVERED = "delivered"
    ACKED = "acked"
    DEAD_LETTERED = "dead_lettered"
    FAILED = "failed"


class Job(BaseModel):
    """One unit of work: the upload directory of a single video.

    Built from an inbound body like ``{"video_id": 1, "path": "media/uploads/1"}``.
    """

    video_id: int = Field(..., strict=True, description="Video identifier")
    path: str = Field(..., strict=True, min_length=1, description="Upload directory holding the chunks")

    class Config:
        """Pydantic configuration."""

        frozen = True

    @classmethod
    def from_message(cls, body: Union[bytes, str]) -> "Job":
        """Deserialize an inbound message body.

        Raises:
            MalformedJobError: If the body is not JSON or misses/mistypes a field
        """
        try:
            return cls.model_validate_json(body)
        except ValidationError as e:
            raise MalformedJobError("Failed to unmarshal job", details=str(e)) from e


class ConfirmationMessage(BaseModel):
    """Downstream notification emitted after a video is converted."""

    video_id: int
    path: str

    @classmethod
    def for_job(cls, job: Job) -> "ConfirmationMessage":
        return cls(video_id=job.video_id, path=job.path)

    def to_body(self) -> bytes:
        return json.dumps({"video_id": self.video_id, "path": self.path}).encode("utf-8")


class ProcessedVideoRecord(BaseModel):
    """Completion record; its existence is what makes a job a duplicate."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    video_id: int
    status: VideoStatus = Field(default=VideoStatus.SUCCESS)
    processed_at: datetime = Field(default_factory=datetime.now)

    class Config:
        """Pydantic configuration."""

        use_enum_values = True


class ErrorContext(BaseModel):
    """Structured failure context serialized into process_errors_log."""

    video_id: Optional[int] = Field(default=None, description="None when the body was unreadable")
    path: Optional[str] = Field(default=None)
    stage: str = Field(..., description="Pipeline stage that failed")
    error: str = Field(..., description="Short failure summary")
    details: str = Field(default="", description="Underlying cause")
    output: Optional[str] = Field(default=None, description="Captured transcoder output")
    time: datetime = Field(default_factory=datetime.now)

    def to_json(self) -> str:
        return self.model_dump_json()


class RetryPolicy(BaseModel):
    """Redelivery policy applied by the broker to unacknowledged deliveries.

    A delivery that is handed back without an ack becomes available again
    after an exponential backoff. Once ``max_attempts`` deliveries have been
    used up the message goes to ``dead_letter_queue``, or is marked failed
    when no dead-letter queue is configured.
    """

    max_attempts: int = Field(default=5, ge=1, description="Deliveries before dead-lettering")
    backoff_base_s: float = Field(default=2.0, ge=0.0, description="Delay after the first failure")
    backoff_cap_s: float = Field(default=300.0, ge=0.0, description="Upper bound for the delay")
    dead_letter_queue: Optional[str] = Field(
        default="video_conversion_dead_letter", description="None = mark exhausted messages failed"
    )

    def backoff_s(self, attempt_count: int) -> float:
        """Delay before redelivery after ``attempt_count`` failed attempts."""
        if attempt_count <= 0:
            return 0.0
        return min(self.backoff_cap_s, self.backoff_base_s * (2 ** (attempt_count - 1)))

    def is_exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts
