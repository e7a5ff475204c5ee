from pathlib import Path
from unittest.mock import MagicMock

import pytest

from video_converter.errors import FailureStage, OutputDirectoryError, TranscodeError
from video_converter.ffmpeg_runner import FfmpegErrorType, FfmpegResult
from video_converter.models import TranscoderConfig
from video_converter.transcoder import DashTranscoder


def _runner(success=True, output="", returncode=0, error_type=None):
    runner = MagicMock()
    runner.convert_to_dash.return_value = FfmpegResult(
        success=success, returncode=returncode, output=output, duration_s=0.1, error_type=error_type
    )
    return runner


class TestDashTranscoder:
    def test_success_removes_input(self, tmp_path):
        merged = tmp_path / "merged.mp4"
        merged.write_bytes(b"video")
        runner = _runner()

        DashTranscoder(runner).convert(merged, tmp_path / "mpeg-dash")

        assert (tmp_path / "mpeg-dash").is_dir()
        assert not merged.exists()
        runner.convert_to_dash.assert_called_once_with(
            str(merged), str(tmp_path / "mpeg-dash"), "output.mpd"
        )

    def test_existing_output_dir_is_reused(self, tmp_path):
        merged = tmp_path / "merged.mp4"
        merged.write_bytes(b"video")
        (tmp_path / "mpeg-dash").mkdir()

        DashTranscoder(_runner()).convert(merged, tmp_path / "mpeg-dash")

        assert not merged.exists()

    def test_failure_keeps_input_and_carries_output(self, tmp_path):
        merged = tmp_path / "merged.mp4"
        merged.write_bytes(b"video")
        runner = _runner(
            success=False, output="Invalid data found", returncode=1,
            error_type=FfmpegErrorType.PERMANENT,
        )

        with pytest.raises(TranscodeError) as exc_info:
            DashTranscoder(runner).convert(merged, tmp_path / "mpeg-dash")

        error = exc_info.value
        assert error.stage == FailureStage.TRANSCODE
        assert error.output == "Invalid data found"
        assert error.returncode == 1
        assert error.error_type == "permanent"
        assert merged.exists()

    def test_output_dir_failure(self, tmp_path):
        blocker = tmp_path / "mpeg-dash"
        blocker.write_text("not a directory")
        runner = _runner()

        with pytest.raises(OutputDirectoryError) as exc_info:
            DashTranscoder(runner).convert(tmp_path / "merged.mp4", blocker)

        assert exc_info.value.stage == FailureStage.PREPARE_OUTPUT
        runner.convert_to_dash.assert_not_called()

    def test_spawn_failure(self, tmp_path):
        runner = MagicMock()
        runner.convert_to_dash.side_effect = FileNotFoundError("ffmpeg")

        with pytest.raises(TranscodeError, match="Failed to start ffmpeg"):
            DashTranscoder(runner).convert(tmp_path / "merged.mp4", tmp_path / "out")

    def test_missing_input_after_success_is_not_an_error(self, tmp_path):
        DashTranscoder(_runner()).convert(tmp_path / "gone.mp4", tmp_path / "out")

    def test_from_config(self):
        config = TranscoderConfig(ffmpeg_path="/bin/ffmpeg", manifest_name="x.mpd", global_timeout_s=30)
        transcoder = DashTranscoder.from_config(config)

        assert transcoder.manifest_name == "x.mpd"
        assert transcoder.runner.ffmpeg_path == "/bin/ffmpeg"
        assert transcoder.runner.global_timeout_s == 30
