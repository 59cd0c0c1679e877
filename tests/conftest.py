import io
import json
import time

import pytest

from podsshd.remote import RemoteCommandChannel, TargetIdentity

SUCCESS = json.dumps({"metadata": {}, "status": "Success"}).encode()


def exit_doc(code: int) -> bytes:
    return json.dumps({
        "metadata": {},
        "status": "Failure",
        "message": f"command terminated with non-zero exit code: exit status {code}",
        "reason": "NonZeroExitCode",
        "details": {"causes": [{"reason": "ExitCode", "message": str(code)}]},
    }).encode()


def stat_text(name: str, mode: int, size: int = 0, mtime: int = 1700000000, kind: str = "regular file") -> bytes:
    return f"name: {name}\nmode: {mode:x}\nsize: {size}\nmod: {mtime}\ntype: {kind}\n".encode()


class FakeStream:
    """Stands in for kubernetes' WSClient in binary mode."""

    def __init__(self, stdout=b"", stderr=b"", status=SUCCESS, wait_for_stdin=False, wait_for_resizes=0, hang=False):
        self.stdout = stdout
        self.stderr = stderr
        self.status = status
        self.wait_for_stdin = wait_for_stdin
        self.wait_for_resizes = wait_for_resizes
        self.hang = hang
        self.written_stdin = bytearray()
        self.stdin_closed = False
        self.resizes = []
        self.closed = False
        self._open = True
        self._channels = {}

    def is_open(self):
        return self._open

    def update(self, timeout=0):
        if not self._open:
            return
        pending = (
            self.hang
            or (self.wait_for_stdin and not self.stdin_closed)
            or len(self.resizes) < self.wait_for_resizes
        )
        if pending:
            time.sleep(min(timeout or 0, 0.005))
            return
        for channel, data in ((1, self.stdout), (2, self.stderr), (3, self.status)):
            if data:
                self._channels[channel] = data
        self._open = False

    def read_channel(self, channel, timeout=0):
        return self._channels.pop(channel, b"")

    def write_stdin(self, data):
        self.written_stdin += data

    def close_channel(self, channel):
        if channel == 0:
            self.stdin_closed = True

    def write_channel(self, channel, data):
        if channel == 4:
            self.resizes.append(json.loads(data))

    def close(self):
        self._open = False
        self.closed = True


class FakeTransport:
    """Records every exec request; ``responder(command)`` picks the stream."""

    def __init__(self, responder=None):
        self.responder = responder or (lambda command: FakeStream())
        self.calls = []
        self.streams = []

    @property
    def commands(self):
        return [call["command"] for call in self.calls]

    def open(self, target, command, stdin, stdout, stderr, tty):
        self.calls.append({
            "target": target,
            "command": list(command),
            "stdin": stdin,
            "stdout": stdout,
            "stderr": stderr,
            "tty": tty,
        })
        stream = self.responder(list(command))
        self.streams.append(stream)
        return stream


class FakeChannel:
    """Subset of paramiko.Channel used by the session handler."""

    def __init__(self, stdin=b"", chanid=0):
        self._stdin = io.BytesIO(stdin)
        self._chanid = chanid
        self.sent = bytearray()
        self.sent_stderr = bytearray()
        self.exit_status = None
        self.closed = False

    def get_id(self):
        return self._chanid

    def recv(self, size):
        return self._stdin.read(size)

    def sendall(self, data):
        self.sent += data

    def sendall_stderr(self, data):
        self.sent_stderr += data

    def send_exit_status(self, status):
        self.exit_status = status

    def close(self):
        self.closed = True


@pytest.fixture
def target():
    return TargetIdentity(namespace="default", pod="web-0", container="app")


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def runner(transport):
    return RemoteCommandChannel(transport, poll_interval=0.01)
