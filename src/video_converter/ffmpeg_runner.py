"""FFmpeg runner with process isolation, timeout enforcement and failure artifacts.

This module runs one ffmpeg invocation at a time per runner instance,
captures its combined stdout/stderr, classifies failures and preserves
debugging artifacts.

Key Features:
- Process isolation with subprocess.Popen
- Optional global timeout with process tree cleanup (psutil)
- Combined output capture for error reports
- Error classification (permanent / transient / timeout)
- Artifact preservation on failure
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)


class FfmpegErrorType(Enum):
    """FFmpeg error classification."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # Disk I/O stall, resource exhaustion
    TIMEOUT = "timeout"         # Global timeout exceeded, process tree killed


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    output: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    artifacts_saved: List[Path] = field(default_factory=list)


class FfmpegRunner:
    """FFmpeg orchestration with timeout and zombie prevention.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=3600)
        >>> result = runner.convert_to_dash("merged.mp4", "mpeg-dash")
        >>> if not result.success:
        ...     print(result.error_type, result.output)
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        global_timeout_s: Optional[int] = None,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "info",
        temp_dir: Optional[str] = None,
    ):
        """Initialize FFmpeg runner.

        Args:
            ffmpeg_path: ffmpeg executable (None = imageio-ffmpeg binary)
            global_timeout_s: Maximum duration of one invocation (None = unbounded)
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            temp_dir: Directory for artifacts (None = TMPDIR or /tmp)
        """
        self.ffmpeg_path = ffmpeg_path
        self.global_timeout_s = global_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir

    def build_dash_command(
        self,
        input_file: str,
        output_dir: str,
        manifest_name: str = "output.mpd",
    ) -> List[str]:
        """Command converting one input file into a DASH manifest plus segments."""
        return [
            self.get_ffmpeg_exe(),
            "-y",
            "-i", str(input_file),
            "-f", "dash",
            "-loglevel", self.ffmpeg_loglevel,
            str(Path(output_dir) / manifest_name),
        ]

    def convert_to_dash(
        self,
        input_file: str,
        output_dir: str,
        manifest_name: str = "output.mpd",
    ) -> FfmpegResult:
        """Convert input_file to MPEG-DASH inside output_dir (which must exist)."""
        cmd = self.build_dash_command(input_file, output_dir, manifest_name)
        return self._run_ffmpeg(cmd)

    def _run_ffmpeg(self, cmd: List[str]) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement.

        Args:
            cmd: FFmpeg command as list

        Returns:
            FfmpegResult with execution details
        """
        start_time = time.time()
        logger.debug("Running: %s", " ".join(cmd))

        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
        )

        timed_out = False
        try:
            output, _ = process.communicate(timeout=self.global_timeout_s)
            returncode = process.returncode
        except subprocess.TimeoutExpired:
            timed_out = True
            output = self._kill_process_tree(process)
            output += f"\nffmpeg killed after {self.global_timeout_s}s timeout"
            returncode = -1
        except BaseException:
            # Never leave an orphaned ffmpeg behind
            self._kill_process_tree(process)
            raise

        duration = time.time() - start_time
        output = output or ""

        error_type = None
        if timed_out:
            error_type = FfmpegErrorType.TIMEOUT
        elif returncode != 0:
            error_type = self._classify_error(output)

        artifacts = []
        if returncode != 0 and self.save_artifacts_on_failure:
            artifacts = self._save_failure_artifacts(cmd, output)

        return FfmpegResult(
            success=(returncode == 0),
            returncode=returncode,
            output=output,
            duration_s=duration,
            error_type=error_type,
            artifacts_saved=artifacts,
        )

    def _kill_process_tree(self, process: subprocess.Popen) -> str:
        """Kill ffmpeg and all its children, then collect remaining output.

        Kill sequence:
        1. SIGTERM to the process and its children
        2. Wait grace period
        3. SIGKILL survivors
        """
        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            procs = []

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            output, _ = process.communicate(timeout=self.kill_grace_period_s)
        except (subprocess.TimeoutExpired, ValueError, OSError) as e:
            logger.warning("Could not collect ffmpeg output after kill: %s", e)
            output = ""
        return output or ""

    def _classify_error(self, output: str) -> FfmpegErrorType:
        """Classify FFmpeg error from its output."""
        output_lower = output.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "end of file",
            "corrupt",
        ]
        for pattern in permanent_patterns:
            if pattern in output_lower:
                return FfmpegErrorType.PERMANENT

        # Everything else (I/O errors, disk full, unknown) may succeed on redelivery
        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], output: str) -> List[Path]:
        """Save debugging artifacts on FFmpeg failure.

        Creates:
        - ffmpeg_error_{timestamp}.log: Command + combined output
        - ffmpeg_cmd_{timestamp}.sh: Reproducible command script

        Artifact write failures are logged and skipped.
        """
        artifacts = []
        temp_dir = self._get_temp_dir()
        stamp = f"{int(time.time())}_{os.getpid()}"

        log_path = temp_dir / f"ffmpeg_error_{stamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")
                f.write("OUTPUT:\n")
                f.write(output or "(empty)\n")
            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save ffmpeg error log: %s", e)

        script_path = temp_dir / f"ffmpeg_cmd_{stamp}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n")
                f.write("# Generated: " + time.ctime() + "\n\n")

                escaped_cmd = []
                for arg in cmd:
                    if " " in arg or any(c in arg for c in ["$", "`", '"', "\\"]):
                        escaped_cmd.append(f"'{arg}'")
                    else:
                        escaped_cmd.append(arg)
                f.write(" \\\n  ".join(escaped_cmd) + "\n")

            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save ffmpeg command script: %s", e)

        return artifacts

    def _get_temp_dir(self) -> Path:
        """Get artifact directory."""
        if self.temp_dir:
            temp_dir = Path(self.temp_dir)
        elif "TMPDIR" in os.environ:
            temp_dir = Path(os.environ["TMPDIR"])
        else:
            temp_dir = Path("/tmp")

        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir

    def get_ffmpeg_exe(self) -> str:
        """Get FFmpeg executable path."""
        if self.ffmpeg_path:
            return self.ffmpeg_path
        return imageio_ffmpeg.get_ffmpeg_exe()

    def check_ffmpeg(self) -> bool:
        """Verify the configured ffmpeg runs."""
        try:
            subprocess.run(
                [self.get_ffmpeg_exe(), "-version"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=True,
            )
            return True
        except (subprocess.CalledProcessError, RuntimeError, OSError):
            return False
