"""Message broker, video state store and worker pool."""

from .backends import Delivery, MessageBroker, VideoStateStore, WorkerPool
from .models import (
    ConfirmationMessage,
    ErrorContext,
    Job,
    MessageStatus,
    ProcessedVideoRecord,
    RetryPolicy,
    VideoStatus,
)
from .sqlite_backend import SQLiteBroker, SQLiteDatabase, SQLiteVideoStore
from .worker import BoundedWorkerPool, ConversionConsumer

__all__ = [
    "Delivery",
    "MessageBroker",
    "VideoStateStore",
    "WorkerPool",
    "ConfirmationMessage",
    "ErrorContext",
    "Job",
    "MessageStatus",
    "ProcessedVideoRecord",
    "RetryPolicy",
    "VideoStatus",
    "SQLiteBroker",
    "SQLiteDatabase",
    "SQLiteVideoStore",
    "BoundedWorkerPool",
    "ConversionConsumer",
]
