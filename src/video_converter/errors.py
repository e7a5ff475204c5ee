"""Failure stages and the exception taxonomy of the conversion pipeline.

Every failure that aborts a job carries the pipeline stage it happened in.
The handler uses the stage when it writes the error record, so the audit
trail tells you where a job died without parsing messages.
"""

from enum import Enum
from typing import Optional


class FailureStage(str, Enum):
    """Pipeline stage recorded with each error."""

    DESERIALIZE = "deserialize"
    MERGE = "merge"
    PREPARE_OUTPUT = "prepare_output"
    TRANSCODE = "transcode"
    MARK_PROCESSED = "mark_processed"
    CONFIRM = "confirm"  # Non-fatal
    INTERNAL = "internal"


class ConversionError(Exception):
    """Base class for failures that abort a job."""

    stage = FailureStage.INTERNAL

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class MalformedJobError(ConversionError):
    """Inbound message body is not a valid job."""

    stage = FailureStage.DESERIALIZE


class MergeError(ConversionError):
    """Chunk discovery, read or write failed."""

    stage = FailureStage.MERGE

    def __init__(self, message: str, details: Optional[str] = None, chunk: Optional[str] = None):
        super().__init__(message, details)
        self.chunk = chunk


class OutputDirectoryError(ConversionError):
    """The DASH output directory could not be created."""

    stage = FailureStage.PREPARE_OUTPUT


class TranscodeError(ConversionError):
    """ffmpeg exited non-zero or was killed."""

    stage = FailureStage.TRANSCODE

    def __init__(
        self,
        message: str,
        output: str = "",
        returncode: Optional[int] = None,
        error_type: Optional[str] = None,
    ):
        super().__init__(message, details=f"exit status {returncode}, output: {output}")
        self.output = output
        self.returncode = returncode
        self.error_type = error_type


class PersistenceError(ConversionError):
    """Writing pipeline state to the database failed."""

    stage = FailureStage.MARK_PROCESSED
