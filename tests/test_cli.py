from unittest.mock import patch

import pytest

from video_converter.cli import main


@pytest.fixture(autouse=True)
def no_log_handlers():
    """Keep the CLI from attaching handlers to captured streams."""
    with patch("video_converter.cli.setup_logging"):
        yield


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["video-converter", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_run_help():
    with patch("sys.argv", ["video-converter", "run", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    with patch("sys.argv", ["video-converter"]):
        main()
        captured = capsys.readouterr()
        assert "usage:" in captured.out.lower()


def test_cli_enqueue_requires_video_id():
    with pytest.raises(SystemExit) as exc_info:
        main(["enqueue", "--path", "media/uploads/1"])
    assert exc_info.value.code == 2


def test_cli_check_command_ffmpeg_found(capsys):
    """Test check command when ffmpeg is found."""
    with patch("video_converter.service.check_ffmpeg", return_value=True):
        main(["check"])
    captured = capsys.readouterr()
    assert "ffmpeg found" in captured.out.lower()


def test_cli_check_command_ffmpeg_not_found(capsys):
    """Test check command when ffmpeg is not found."""
    with patch("video_converter.service.check_ffmpeg", return_value=False):
        with pytest.raises(SystemExit) as exc_info:
            main(["check"])
    assert exc_info.value.code == 1
    captured = capsys.readouterr()
    assert "not found" in captured.out.lower()


def test_cli_enqueue_and_status(tmp_path, capsys):
    db = str(tmp_path / "cli.db")

    main(["enqueue", "--db", db, "--video-id", "1", "--path", "media/uploads/1"])
    main(["queue", "status", "--db", db])

    out = capsys.readouterr().out
    assert "Enqueued video 1" in out
    assert "QUEUE STATUS: video_conversion_queue" in out
    assert "pending:" in out


def test_cli_run_passes_options(tmp_path, capsys):
    db = str(tmp_path / "cli.db")

    with patch("video_converter.service.run_worker", return_value={"completed": 2}) as mock_run:
        main(["run", "--db", db, "--workers", "2", "--drain", "--max-messages", "5"])

    config = mock_run.call_args.args[0]
    assert config.worker.n_workers == 2
    assert config.database.path == db
    assert mock_run.call_args.kwargs == {"drain": True, "max_messages": 5, "progress": True}
    assert "completed:" in capsys.readouterr().out


def test_cli_errors_empty(tmp_path, capsys):
    main(["errors", "--db", str(tmp_path / "cli.db")])
    assert "No errors recorded." in capsys.readouterr().out


def test_cli_queue_clear_all(tmp_path, capsys):
    db = str(tmp_path / "cli.db")
    main(["enqueue", "--db", db, "--video-id", "1", "--path", "p"])

    main(["queue", "clear", "--all", "--db", db])

    assert "Deleted 1 messages" in capsys.readouterr().out


def test_cli_invalid_workers_exits(tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        main(["run", "--db", str(tmp_path / "cli.db"), "--workers", "0"])
    assert exc_info.value.code == 2
