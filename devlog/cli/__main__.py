"""
devlog CLI - durable hook event queue and decaying developer memory.

Usage:
    devlog enqueue [--event-type T] [--session-id S]  < hook.json
    devlog daemon [--extractor REF]
    devlog status [--json]
    devlog failed [--json]
    devlog retry EVENT_ID
    devlog decay {daily,weekly,monthly}
    devlog promote
    devlog archive YYYY-MM
    devlog memory [--long] [--json]
"""

import argparse
import logging
import sys

from devlog.cli.commands.daemon import cmd_daemon
from devlog.cli.commands.memory import cmd_archive, cmd_decay, cmd_memory, cmd_promote
from devlog.cli.commands.queue import cmd_enqueue, cmd_failed, cmd_retry, cmd_status
from devlog.config import load_config
from devlog.protocols import ConfigError, DevlogError

logger = logging.getLogger(__name__)

COMMANDS = {
    "enqueue": cmd_enqueue,
    "daemon": cmd_daemon,
    "status": cmd_status,
    "failed": cmd_failed,
    "retry": cmd_retry,
    "decay": cmd_decay,
    "promote": cmd_promote,
    "archive": cmd_archive,
    "memory": cmd_memory,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devlog",
        description="Durable hook event queue and decaying developer memory",
    )
    parser.add_argument("--base-dir", "-d", default=None, help="devlog home (default: $DEVLOG_HOME or ~/.devlog)")
    parser.add_argument("--config", default=None, help="Config file (default: <base>/config.json)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # enqueue
    p_enqueue = subparsers.add_parser("enqueue", help="Enqueue a hook event read from stdin")
    p_enqueue.add_argument("--event-type", "-t", help="Event type (default: from the JSON)")
    p_enqueue.add_argument("--session-id", "-s", help="Session id (default: from the JSON)")

    # daemon
    p_daemon = subparsers.add_parser("daemon", help="Run the daemon in the foreground")
    p_daemon.add_argument("--extractor", "-x", help="Extractor name or module:attr")

    # status
    p_status = subparsers.add_parser("status", help="Show queue and daemon status")
    p_status.add_argument("--json", "-j", action="store_true")

    # failed
    p_failed = subparsers.add_parser("failed", help="List failed events")
    p_failed.add_argument("--json", "-j", action="store_true")

    # retry
    p_retry = subparsers.add_parser("retry", help="Requeue a failed event")
    p_retry.add_argument("event_id", help="Event id")

    # decay
    p_decay = subparsers.add_parser("decay", help="Run one decay pass now")
    p_decay.add_argument("granularity", choices=["daily", "weekly", "monthly"])

    # promote
    subparsers.add_parser("promote", help="Evaluate promotion candidates now")

    # archive
    p_archive = subparsers.add_parser("archive", help="Archive a closed month of short-term memory")
    p_archive.add_argument("year_month", help="Month to archive, YYYY-MM")

    # memory
    p_memory = subparsers.add_parser("memory", help="Show stored memory")
    p_memory.add_argument("--long", "-l", action="store_true", help="Show long-term memory")
    p_memory.add_argument("--json", "-j", action="store_true")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.base_dir, args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.command != "daemon":
        logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    try:
        return COMMANDS[args.command](args, config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except DevlogError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
