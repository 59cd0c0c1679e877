import shlex
import sys
from typing import Any, List, Sequence

from podsshd.config import config


def log_error(message: str) -> None:
    print(f"[pod-sshd] {message}", file=sys.stderr, flush=True)


def log_debug(message: str) -> None:
    if config.DEBUG:
        print(f"[pod-sshd] debug: {message}", file=sys.stderr, flush=True)


def split_command(raw: Any) -> List[str]:
    """Split an SSH exec request into a command vector using shell-word rules."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return shlex.split(raw or "")


def format_command(command: Sequence[str]) -> str:
    return shlex.join(command)
