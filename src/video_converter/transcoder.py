"""DASH conversion of a merged upload."""

import logging
from pathlib import Path
from typing import Union

from .errors import OutputDirectoryError, TranscodeError
from .ffmpeg_runner import FfmpegResult, FfmpegRunner
from .models import TranscoderConfig

logger = logging.getLogger(__name__)


class DashTranscoder:
    """Runs ffmpeg on a merged input and removes the input afterwards."""

    def __init__(self, runner: FfmpegRunner, manifest_name: str = "output.mpd"):
        self.runner = runner
        self.manifest_name = manifest_name

    @classmethod
    def from_config(cls, config: TranscoderConfig) -> "DashTranscoder":
        runner = FfmpegRunner(
            ffmpeg_path=config.ffmpeg_path,
            global_timeout_s=config.global_timeout_s,
            kill_grace_period_s=config.kill_grace_period_s,
            save_artifacts_on_failure=config.save_artifacts_on_failure,
            ffmpeg_loglevel=config.ffmpeg_loglevel,
            temp_dir=config.temp_dir,
        )
        return cls(runner, manifest_name=config.manifest_name)

    def convert(self, input_file: Union[str, Path], output_dir: Union[str, Path]) -> FfmpegResult:
        """Convert input_file into a DASH manifest plus segments in output_dir.

        On success the input file is deleted; a failed delete is only logged.

        Raises:
            OutputDirectoryError: output_dir could not be created
            TranscodeError: ffmpeg could not be started or exited non-zero
        """
        input_path = Path(input_file)
        output_path = Path(output_dir)

        try:
            output_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputDirectoryError("Failed to create output directory", details=str(e)) from e

        try:
            result = self.runner.convert_to_dash(str(input_path), str(output_path), self.manifest_name)
        except (OSError, RuntimeError) as e:
            # Missing executable or spawn failure
            raise TranscodeError(f"Failed to start ffmpeg: {e}", output=str(e)) from e

        if not result.success:
            error_type = result.error_type.value if result.error_type else None
            raise TranscodeError(
                "Failed to convert to MPEG-DASH",
                output=result.output,
                returncode=result.returncode,
                error_type=error_type,
            )

        logger.info("Converted to MPEG-DASH: %s (%.1fs)", output_path, result.duration_s)

        try:
            input_path.unlink()
            logger.info("Removed merged file %s", input_path)
        except OSError as e:
            logger.warning("Failed to remove merged file %s: %s", input_path, e)

        return result
