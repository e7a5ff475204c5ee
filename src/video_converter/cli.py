import argparse
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from . import service
from .config import resolve_config
from .logging_utils import setup_logging


def _add_common_args(parser):
    parser.add_argument("--config", type=str, help="Config file (default: config/default.yaml)")
    parser.add_argument("--db", type=str, help="SQLite database path")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level",
    )
    parser.add_argument("--ffmpeg", type=str, help="ffmpeg executable")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="video-converter", description="Chunked upload to MPEG-DASH conversion worker"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # RUN
    run_parser = subparsers.add_parser("run", help="Consume the conversion queue")
    _add_common_args(run_parser)
    run_parser.add_argument("--workers", "-w", type=int, help="Number of parallel conversions")
    run_parser.add_argument("--backlog", type=int, help="Deliveries buffered beyond the workers")
    run_parser.add_argument(
        "--drain", action="store_true", help="Exit once the queue is empty"
    )
    run_parser.add_argument("--max-messages", type=int, help="Exit after N deliveries")

    # ENQUEUE
    enqueue_parser = subparsers.add_parser("enqueue", help="Publish a conversion job")
    _add_common_args(enqueue_parser)
    enqueue_parser.add_argument("--video-id", type=int, required=True, help="Video id")
    enqueue_parser.add_argument(
        "--path", type=str, required=True, help="Directory holding the uploaded chunks"
    )

    # QUEUE subcommands (status, retry, clear)
    queue_parser = subparsers.add_parser("queue", help="Manage the message queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    status_parser = queue_subparsers.add_parser("status", help="Show queue status")
    _add_common_args(status_parser)

    retry_parser = queue_subparsers.add_parser("retry", help="Requeue dead-lettered jobs")
    _add_common_args(retry_parser)

    clear_parser = queue_subparsers.add_parser("clear", help="Delete acknowledged messages")
    _add_common_args(clear_parser)
    clear_parser.add_argument(
        "--all", action="store_true", dest="include_unfinished",
        help="Also delete pending, in-flight and dead-lettered messages",
    )

    # ERRORS
    errors_parser = subparsers.add_parser("errors", help="Show recent error records")
    _add_common_args(errors_parser)
    errors_parser.add_argument("--limit", type=int, default=20, help="Number of records")

    # CHECK FFMPEG
    check_parser = subparsers.add_parser("check", help="Verify dependencies")
    _add_common_args(check_parser)

    return parser, queue_parser


def _load_config(args):
    # Convert args to dict, filtering None
    cli_dict = {
        k: v for k, v in vars(args).items()
        if v is not None and k in ("db", "workers", "backlog", "log_level", "ffmpeg")
    }
    config_path = Path(args.config) if getattr(args, "config", None) else None
    try:
        config = resolve_config(cli_dict, config_path=config_path)
    except ValidationError as e:
        print(f"❌ Invalid configuration:\n{e}", file=sys.stderr)
        sys.exit(2)
    setup_logging(config.logging)
    return config


def _print_stats(title, stats):
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)
    for key, value in stats.items():
        print(f"{key + ':':<22}{value}")
    print("=" * 60)


def main(argv=None):
    parser, queue_parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    if args.command == "queue" and args.queue_command is None:
        queue_parser.print_help()
        return

    config = _load_config(args)

    if args.command == "run":
        stats = service.run_worker(
            config, drain=args.drain, max_messages=args.max_messages, progress=args.drain
        )
        _print_stats("WORKER SUMMARY", stats or {"deliveries": 0})

    elif args.command == "enqueue":
        message_id = service.enqueue_job(config, video_id=args.video_id, path=args.path)
        print(f"✅ Enqueued video {args.video_id} (message {message_id})")

    elif args.command == "queue":
        if args.queue_command == "status":
            for queue_name, stats in service.get_queue_stats(config).items():
                _print_stats(f"QUEUE STATUS: {queue_name}", stats)

        elif args.queue_command == "retry":
            count = service.retry_dead_letters(config)
            print(f"Requeued {count} dead-lettered jobs")

        elif args.queue_command == "clear":
            count = service.clear_queue(config, include_unfinished=args.include_unfinished)
            print(f"Deleted {count} messages")

    elif args.command == "errors":
        records = service.list_errors(config, limit=args.limit)
        if not records:
            print("No errors recorded.")
        for record in records:
            print(f"[{record['created_at']}] {json.dumps(record['error_details'])}")

    elif args.command == "check":
        print("Checking dependencies...")
        if service.check_ffmpeg(config):
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)


if __name__ == "__main__":
    main()
