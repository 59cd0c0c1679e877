import io
import json
import threading
import time

import pytest
from kubernetes import client as k8s_client
from kubernetes.client.rest import ApiException
from kubernetes.stream import ws_client
from websocket import WebSocketConnectionClosedException

from podsshd import remote
from podsshd.context import RequestContext
from podsshd.remote import (
    CommandCancelled, KubernetesExecTransport, RemoteCommandChannel, RemoteExitError,
    TransportError, exit_status,
)
from podsshd.terminal import WindowSize

from conftest import FakeStream, FakeTransport, exit_doc


def test_execute_opens_one_stream_for_the_target(runner, transport, target):
    assert runner.execute(target, ["ls", "/"]) == 0

    assert len(transport.calls) == 1
    call = transport.calls[0]
    assert call["target"] == target
    assert call["command"] == ["ls", "/"]
    assert call["stdin"] is False
    assert call["stdout"] is False
    assert call["stderr"] is True
    assert call["tty"] is False


def test_stdout_is_delivered(target):
    transport = FakeTransport(lambda command: FakeStream(stdout=b"hello\n"))
    out = io.BytesIO()

    RemoteCommandChannel(transport, poll_interval=0.01).execute(target, ["echo", "hello"], stdout=out)

    assert out.getvalue() == b"hello\n"
    assert transport.calls[0]["stdout"] is True


def test_non_zero_exit_carries_code_and_captured_stderr(target):
    transport = FakeTransport(
        lambda command: FakeStream(stderr=b"permission denied\n", status=exit_doc(2))
    )
    runner = RemoteCommandChannel(transport, poll_interval=0.01)

    with pytest.raises(RemoteExitError) as info:
        runner.execute(target, ["cat", "/root/secret"])

    assert info.value.code == 2
    assert info.value.command == ["cat", "/root/secret"]
    assert "exit code 2" in str(info.value)
    assert "permission denied" in str(info.value)


def test_wired_stderr_is_forwarded_not_captured(target):
    transport = FakeTransport(lambda command: FakeStream(stderr=b"oops", status=exit_doc(1)))
    err = io.BytesIO()

    with pytest.raises(RemoteExitError) as info:
        RemoteCommandChannel(transport, poll_interval=0.01).execute(target, ["false"], stderr=err)

    assert err.getvalue() == b"oops"
    assert info.value.stderr == b""
    assert str(info.value) == "command terminated with exit code 1"


def test_stdin_is_sent_then_closed(target):
    transport = FakeTransport(lambda command: FakeStream(wait_for_stdin=True))

    RemoteCommandChannel(transport, poll_interval=0.01).execute(
        target, ["dd", "of=/tmp/x"], stdin=io.BytesIO(b"payload")
    )

    stream = transport.streams[0]
    assert transport.calls[0]["stdin"] is True
    assert bytes(stream.written_stdin) == b"payload"
    assert stream.stdin_closed
    assert stream.closed


def test_tty_merges_stderr_and_forwards_resizes(target):
    transport = FakeTransport(lambda command: FakeStream(wait_for_resizes=2))
    sizes = [WindowSize(80, 24), WindowSize(120, 40)]

    RemoteCommandChannel(transport, poll_interval=0.01).execute(
        target, ["sh"], stdout=io.BytesIO(), stderr=io.BytesIO(), tty=True, resizes=sizes
    )

    call = transport.calls[0]
    assert call["tty"] is True
    assert call["stderr"] is False
    assert transport.streams[0].resizes == [
        {"Width": 80, "Height": 24},
        {"Width": 120, "Height": 40},
    ]


def test_cancel_stops_a_hanging_command_promptly(target):
    transport = FakeTransport(lambda command: FakeStream(hang=True))
    runner = RemoteCommandChannel(transport, poll_interval=0.01)
    context = RequestContext()
    threading.Timer(0.05, context.cancel).start()

    started = time.monotonic()
    with pytest.raises(CommandCancelled):
        runner.execute(target, ["sleep", "infinity"], context=context)

    assert time.monotonic() - started < 2
    assert transport.streams[0].closed


def test_cancelled_context_never_opens_a_stream(runner, transport, target):
    context = RequestContext()
    context.cancel()

    with pytest.raises(CommandCancelled):
        runner.execute(target, ["ls"], context=context)

    assert transport.calls == []


def test_broken_websocket_is_a_transport_error(target):
    class Broken(FakeStream):
        def update(self, timeout=0):
            raise WebSocketConnectionClosedException("connection lost")

    transport = FakeTransport(lambda command: Broken())

    with pytest.raises(TransportError) as info:
        RemoteCommandChannel(transport, poll_interval=0.01).execute(target, ["ls"])

    assert not isinstance(info.value, CommandCancelled)
    assert transport.streams[0].closed


@pytest.mark.parametrize("raw", [b"", None, b"not json"])
def test_missing_or_malformed_status_is_a_transport_error(raw):
    with pytest.raises(TransportError):
        exit_status(raw)


def test_failure_status_without_exit_code_is_a_transport_error():
    raw = json.dumps({"status": "Failure", "message": "container not found"})

    with pytest.raises(TransportError, match="container not found"):
        exit_status(raw)


def test_exit_status_reads_exit_code_cause():
    assert exit_status(exit_doc(127)) == 127
    assert exit_status(b'{"metadata":{},"status":"Success"}') == 0


def test_operation_name_prefixes_the_message():
    error = RemoteExitError(1, stderr=b"No such file or directory", command=["stat", "/x"])

    wrapped = error.for_operation("stat")

    assert wrapped.code == 1
    assert str(wrapped).startswith("stat failed: command terminated with exit code 1")
    assert "No such file or directory" in str(wrapped)


class _CoreApi:
    def connect_get_namespaced_pod_exec(self, *args, **kwargs):
        raise AssertionError("called through stream() only")


def test_kubernetes_transport_passes_exec_options(monkeypatch, target):
    captured = {}

    def fake_stream(func, *args, **kwargs):
        captured.update(func=func, args=args, kwargs=kwargs)
        return "ws"

    monkeypatch.setattr(remote, "stream", fake_stream)
    api = _CoreApi()

    ws = KubernetesExecTransport(api).open(target, ["ls"], stdin=True, stdout=True, stderr=False, tty=True)

    assert ws == "ws"
    assert captured["func"] == api.connect_get_namespaced_pod_exec
    assert captured["args"] == ("web-0", "default")
    assert captured["kwargs"] == {
        "container": "app",
        "command": ["ls"],
        "stdin": True,
        "stdout": True,
        "stderr": False,
        "tty": True,
        "_preload_content": False,
        "binary": True,
    }


def test_kubernetes_transport_wraps_api_errors(monkeypatch, target):
    def fake_stream(func, *args, **kwargs):
        raise ApiException(status=404, reason="Not Found")

    monkeypatch.setattr(remote, "stream", fake_stream)

    with pytest.raises(TransportError, match="Not Found"):
        KubernetesExecTransport(_CoreApi()).open(target, ["ls"], False, True, True, False)


def test_kubernetes_exec_streams_keep_no_copy_of_the_output(monkeypatch, target):
    created = []

    class RecordingClient:
        def __init__(self, configuration, url, headers, capture_all, binary=False):
            created.append({"url": url, "capture_all": capture_all, "binary": binary})

    monkeypatch.setattr(ws_client, "WSClient", RecordingClient)
    api = k8s_client.CoreV1Api(
        k8s_client.ApiClient(k8s_client.Configuration(host="https://cluster.example"))
    )

    ws = KubernetesExecTransport(api).open(
        target, ["cat", "/big"], stdin=False, stdout=True, stderr=True, tty=False
    )

    assert isinstance(ws, RecordingClient)
    assert len(created) == 1
    assert created[0]["capture_all"] is False
    assert created[0]["binary"] is True
    assert created[0]["url"].startswith("wss://cluster.example/api/v1/namespaces/default/pods/web-0/exec")
    assert "container=app" in created[0]["url"]
