import queue
import threading
from dataclasses import dataclass, field
from typing import Any, List, Optional

from podsshd.config import DEFAULT_SHELL, FAILURE_EXIT_CODE
from podsshd.context import RequestContext
from podsshd.remote import CommandCancelled, RemoteCommandChannel, RemoteExitError, TargetIdentity
from podsshd.utils import format_command, log_debug, log_error


@dataclass(frozen=True)
class WindowSize:
    width: int
    height: int


class TerminalSizeQueue:
    """Single-pass sequence of terminal sizes for one session.

    Yields the size captured at session start, then every reported resize
    until ``close()`` is called. Resizes that pile up before the consumer
    catches up collapse into the latest one.
    """

    _CLOSED = object()

    def __init__(self, initial: WindowSize):
        self._initial: Optional[WindowSize] = initial
        self._changes: "queue.Queue[Any]" = queue.Queue()
        self._done = False

    def push(self, size: WindowSize) -> None:
        self._changes.put(size)

    def close(self) -> None:
        self._changes.put(self._CLOSED)

    def __iter__(self):
        return self

    def __next__(self) -> WindowSize:
        if self._initial is not None:
            size, self._initial = self._initial, None
            return size
        if self._done:
            raise StopIteration
        item = self._changes.get()
        while True:
            if item is self._CLOSED:
                self._done = True
                raise StopIteration
            try:
                newer = self._changes.get_nowait()
            except queue.Empty:
                return item
            if newer is self._CLOSED:
                self._done = True
                return item
            item = newer


class ChannelReader:
    """``read(n)`` view of an SSH channel's stdin."""

    def __init__(self, channel):
        self.channel = channel

    def read(self, size: int) -> bytes:
        return self.channel.recv(size)


class ChannelWriter:
    """``write(data)`` view of an SSH channel's stdout or stderr."""

    def __init__(self, channel, stderr: bool = False):
        self.channel = channel
        self.stderr = stderr

    def write(self, data: bytes) -> int:
        if self.stderr:
            self.channel.sendall_stderr(data)
        else:
            self.channel.sendall(data)
        return len(data)


@dataclass
class TerminalSession:
    """Per-channel state gathered from SSH requests before the command starts."""

    channel: Any
    target: TargetIdentity
    context: RequestContext
    command: List[str] = field(default_factory=list)
    pty: bool = False
    window: WindowSize = field(default_factory=lambda: WindowSize(80, 24))
    resizes: Optional[TerminalSizeQueue] = None

    def request_pty(self, width: int, height: int) -> None:
        self.pty = True
        self.window = WindowSize(width, height)
        self.resizes = TerminalSizeQueue(self.window)

    def resize(self, width: int, height: int) -> None:
        self.window = WindowSize(width, height)
        if self.resizes is not None:
            self.resizes.push(self.window)

    def write_line(self, message: str) -> None:
        try:
            self.channel.sendall(f"{message}\n".encode("utf-8"))
        except Exception as exc:
            log_debug(f"could not report to client: {exc}")

    def exit(self, code: int) -> None:
        try:
            self.channel.send_exit_status(code)
        except Exception as exc:
            log_debug(f"could not send exit status {code}: {exc}")
        finally:
            self.channel.close()


def run_terminal_session(session: TerminalSession, runner: RemoteCommandChannel) -> int:
    """Bridge one SSH shell/exec channel to a remote command.

    Returns the exit status reported to the client: 0 on a clean remote
    exit, the remote code on a non-zero exit, FAILURE_EXIT_CODE otherwise.
    """
    command = session.command or list(DEFAULT_SHELL)
    channel = session.channel
    stderr = None if session.pty else ChannelWriter(channel, stderr=True)
    resizes = session.resizes if session.pty else None

    log_debug(f"session {session.target.describe()}: {format_command(command)} pty={session.pty}")
    try:
        runner.execute(
            session.target,
            command,
            stdin=ChannelReader(channel),
            stdout=ChannelWriter(channel),
            stderr=stderr,
            tty=session.pty,
            resizes=resizes,
            context=session.context,
        )
        code = 0
    except RemoteExitError as exc:
        session.write_line(str(exc))
        code = exc.code
    except CommandCancelled as exc:
        # Client hung up or the connection closed.
        log_debug(f"session {session.target.describe()} ended: {exc}")
        session.write_line(str(exc))
        code = FAILURE_EXIT_CODE
    except Exception as exc:
        log_error(f"session {session.target.describe()} failed: {exc}")
        session.write_line(str(exc))
        code = FAILURE_EXIT_CODE
    finally:
        if session.resizes is not None:
            session.resizes.close()
        session.context.cancel()

    session.exit(code)
    return code


def start_terminal_session(session: TerminalSession, runner: RemoteCommandChannel) -> threading.Thread:
    thread = threading.Thread(target=run_terminal_session, args=(session, runner), daemon=True)
    thread.start()
    return thread
