"""Pydantic models for configuration."""

from typing import Literal, Optional

from pydantic import BaseModel, Field

from .queue.models import RetryPolicy


class DatabaseConfig(BaseModel):
    """SQLite database holding pipeline state and the message queue."""

    path: str = Field(default="videoconverter.db", description="SQLite database file")
    busy_timeout_s: float = Field(
        default=30.0, gt=0.0, description="How long a connection waits on a locked database"
    )


class QueueConfig(BaseModel):
    """Queue names and delivery behaviour."""

    conversion_queue: str = Field(default="video_conversion_queue", description="Inbound jobs")
    confirmation_queue: str = Field(
        default="video-confirmation_queue", description="Outbound confirmations"
    )
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Sleep between polls when the queue is empty"
    )
    stale_timeout_s: int = Field(
        default=600, gt=0, description="Delivery is stale after this long without heartbeat"
    )
    heartbeat_interval_s: int = Field(
        default=60, gt=0, description="How often in-flight deliveries refresh their heartbeat"
    )
    retry: RetryPolicy = Field(default_factory=RetryPolicy, description="Redelivery policy")


class MergeConfig(BaseModel):
    """Chunk reassembly settings."""

    chunk_pattern: str = Field(default="*.chunk", description="Glob matching chunk files")
    merged_file_name: str = Field(default="merged.mp4", description="Merged input artifact name")
    require_contiguous: bool = Field(
        default=False, description="Fail the merge when the numbered chunk sequence has gaps"
    )


class TranscoderConfig(BaseModel):
    """FFmpeg DASH conversion settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg executable (None = bundled imageio-ffmpeg binary)"
    )
    output_dir_name: str = Field(default="mpeg-dash", description="DASH output directory name")
    manifest_name: str = Field(default="output.mpd", description="DASH manifest file name")
    global_timeout_s: Optional[int] = Field(
        default=None, gt=0, description="Kill ffmpeg after N seconds (None = no deadline)"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save ffmpeg logs and commands on failure for debugging"
    )
    ffmpeg_loglevel: str = Field(
        default="info", description="FFmpeg log level: error, warning, info, verbose"
    )
    temp_dir: Optional[str] = Field(
        default=None, description="Directory for failure artifacts (None = TMPDIR or /tmp)"
    )


class WorkerConfig(BaseModel):
    """Bounded worker pool settings."""

    n_workers: Optional[int] = Field(
        default=None, gt=0, description="Concurrent jobs (None = CPU count)"
    )
    backlog: int = Field(
        default=8, ge=0, description="Deliveries buffered beyond the running jobs"
    )
    claim_ttl_s: int = Field(
        default=7200, gt=0, description="A per-video claim older than this is abandoned"
    )
    worker_id: Optional[str] = Field(
        default=None, description="Consumer identity (None = hostname + pid)"
    )


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    format: str = Field(default="%(asctime)s %(levelname)s %(name)s %(message)s")


class ConverterConfig(BaseModel):
    """Complete application configuration with validation."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    transcoder: TranscoderConfig = Field(default_factory=TranscoderConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "ConverterConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "ConverterConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if "db" in cli_args:
            config_dict["database"]["path"] = cli_args["db"]
        if "workers" in cli_args:
            config_dict["worker"]["n_workers"] = cli_args["workers"]
        if "backlog" in cli_args:
            config_dict["worker"]["backlog"] = cli_args["backlog"]
        if "log_level" in cli_args:
            config_dict["logging"]["level"] = cli_args["log_level"]
        if "ffmpeg" in cli_args:
            config_dict["transcoder"]["ffmpeg_path"] = cli_args["ffmpeg"]

        return ConverterConfig.from_dict(config_dict)
