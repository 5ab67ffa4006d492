"""CLI command modules for devlog.

Each module contains related command handlers used by __main__.py.
"""

from devlog.cli.commands.daemon import cmd_daemon
from devlog.cli.commands.memory import cmd_archive, cmd_decay, cmd_memory, cmd_promote
from devlog.cli.commands.queue import cmd_enqueue, cmd_failed, cmd_retry, cmd_status

__all__ = [
    "cmd_archive",
    "cmd_daemon",
    "cmd_decay",
    "cmd_enqueue",
    "cmd_failed",
    "cmd_memory",
    "cmd_promote",
    "cmd_retry",
    "cmd_status",
]
