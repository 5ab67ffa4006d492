"""Daemon command."""

from devlog.config import DevlogConfig
from devlog.daemon.scheduler import run_daemon


def cmd_daemon(args, config: DevlogConfig) -> int:
    """Run the drain and decay scheduler in the foreground."""
    if args.extractor:
        config.extractor = args.extractor
    return run_daemon(config)
