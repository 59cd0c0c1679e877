import functools
import io
import json
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence

from kubernetes.client.rest import ApiException
from kubernetes.stream import ws_client
from kubernetes.stream.stream import _websocket_request
from kubernetes.stream.ws_client import (
    ERROR_CHANNEL, RESIZE_CHANNEL, STDERR_CHANNEL, STDIN_CHANNEL, STDOUT_CHANNEL
)
from websocket import WebSocketException

from podsshd.config import BUFFER_SIZE, POLL_INTERVAL
from podsshd.context import RequestContext
from podsshd.utils import format_command, log_debug


@dataclass(frozen=True)
class TargetIdentity:
    namespace: str
    pod: str
    container: str

    def describe(self) -> str:
        return f"{self.namespace}/{self.pod}/{self.container}"


class TransportError(Exception):
    """The exec stream could not be established or broke before completion."""


class CommandCancelled(TransportError):
    """The request context was cancelled while the remote command ran."""


class RemoteExitError(Exception):
    """The remote command ran and terminated with a non-zero status."""

    def __init__(
        self,
        code: int,
        stderr: bytes = b"",
        command: Sequence[str] = (),
        operation: Optional[str] = None,
    ):
        self.code = code
        self.stderr = stderr
        self.command = list(command)
        self.operation = operation
        message = f"command terminated with exit code {code}"
        captured = stderr.decode("utf-8", errors="replace").strip()
        if captured:
            message = f"{operation or 'exec'} failed: {message}\n{captured}"
        super().__init__(message)

    def for_operation(self, operation: str) -> "RemoteExitError":
        return RemoteExitError(self.code, self.stderr, self.command, operation)


def exit_status(raw: Any) -> int:
    """Translate the exec error-channel Status document into an exit code.

    ``Success`` is 0, ``NonZeroExitCode`` yields the code carried in its
    ``ExitCode`` cause. Anything else (including a missing document) is a
    transport failure.
    """
    if not raw:
        raise TransportError("exec stream closed without an exit status")
    try:
        status = json.loads(raw)
    except ValueError as exc:
        raise TransportError(f"malformed exec status: {raw!r}") from exc

    if status.get("status") == "Success":
        return 0
    if status.get("reason") == "NonZeroExitCode":
        causes = (status.get("details") or {}).get("causes") or []
        for cause in causes:
            if cause.get("reason") != "ExitCode":
                continue
            try:
                return int(cause.get("message"))
            except (TypeError, ValueError) as exc:
                raise TransportError(f"malformed exit code: {cause!r}") from exc
    raise TransportError(status.get("message") or "exec failed")


def uncaptured_websocket_call(configuration, _method, url, **kwargs):
    # WSClient otherwise copies every stdout/stderr frame into a buffer that
    # read_channel never clears. stream() has no way to pass this through.
    kwargs["capture_all"] = False
    return ws_client.websocket_call(configuration, _method, url, **kwargs)


stream = functools.partial(_websocket_request, uncaptured_websocket_call, None)


class KubernetesExecTransport:
    """Opens pod exec streams through the cluster API websocket endpoint."""

    def __init__(self, core_api):
        self.core_api = core_api

    def open(
        self,
        target: TargetIdentity,
        command: Sequence[str],
        stdin: bool,
        stdout: bool,
        stderr: bool,
        tty: bool,
    ):
        try:
            return stream(
                self.core_api.connect_get_namespaced_pod_exec,
                target.pod,
                target.namespace,
                container=target.container,
                command=list(command),
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                tty=tty,
                _preload_content=False,
                binary=True,
            )
        except ApiException as exc:
            raise TransportError(
                f"exec {format_command(command)} in {target.describe()}: {exc.reason or exc}"
            ) from exc


class RemoteCommandChannel:
    """Runs one command per call against the target container.

    ``stdin`` is any object with ``read(n)`` returning ``b""`` at end of
    input; ``stdout`` and ``stderr`` are objects with ``write(data)``. A
    stream that is not supplied is not exchanged with the remote side.
    With ``tty`` the remote stderr is merged into stdout; without it an
    unwired stderr is captured and attached to ``RemoteExitError``.
    """

    def __init__(self, transport, poll_interval: float = POLL_INTERVAL):
        self.transport = transport
        self.poll_interval = poll_interval

    def execute(
        self,
        target: TargetIdentity,
        command: Sequence[str],
        stdin: Any = None,
        stdout: Any = None,
        stderr: Any = None,
        tty: bool = False,
        resizes: Optional[Iterable[Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> int:
        if context is None:
            context = RequestContext()
        command = list(command)

        captured: Optional[io.BytesIO] = None
        if tty:
            stderr = None
        elif stderr is None:
            captured = io.BytesIO()
            stderr = captured

        if context.cancelled:
            raise CommandCancelled(f"cancelled before start: {format_command(command)}")

        log_debug(f"exec in {target.describe()}: {format_command(command)} tty={tty}")
        ws = self.transport.open(
            target,
            command,
            stdin=stdin is not None,
            stdout=stdout is not None,
            stderr=not tty,
            tty=tty,
        )
        try:
            if stdin is not None:
                self._start_pump(self._pump_stdin, ws, stdin)
            if tty and resizes is not None:
                self._start_pump(self._pump_resizes, ws, resizes)
            raw_status = self._run(ws, stdout, stderr, context)
        except (WebSocketException, OSError) as exc:
            if context.cancelled:
                raise CommandCancelled(f"cancelled: {format_command(command)}") from exc
            raise TransportError(f"exec stream failed: {exc}") from exc
        finally:
            try:
                ws.close()
            except Exception:
                pass

        code = exit_status(raw_status)
        if code != 0:
            raise RemoteExitError(
                code,
                stderr=captured.getvalue() if captured is not None else b"",
                command=command,
            )
        return code

    def _run(self, ws, stdout: Any, stderr: Any, context: RequestContext) -> Any:
        while ws.is_open():
            if context.cancelled:
                raise CommandCancelled("command cancelled")
            ws.update(timeout=self.poll_interval)
            self._drain(ws, stdout, stderr)
        self._drain(ws, stdout, stderr)
        return ws.read_channel(ERROR_CHANNEL)

    @staticmethod
    def _drain(ws, stdout: Any, stderr: Any) -> None:
        data = ws.read_channel(STDOUT_CHANNEL)
        if data and stdout is not None:
            stdout.write(data)
        data = ws.read_channel(STDERR_CHANNEL)
        if data and stderr is not None:
            stderr.write(data)

    @staticmethod
    def _start_pump(target: Callable[[Any, Any], None], ws, source: Any) -> None:
        thread = threading.Thread(target=target, args=(ws, source), daemon=True)
        thread.start()

    @staticmethod
    def _pump_stdin(ws, stdin: Any) -> None:
        try:
            while ws.is_open():
                chunk = stdin.read(BUFFER_SIZE)
                if not chunk:
                    break
                ws.write_stdin(chunk)
            if ws.is_open():
                # EOF reaches the remote process only on v5 channel streams.
                ws.close_channel(STDIN_CHANNEL)
        except Exception as exc:
            log_debug(f"stdin pump stopped: {exc}")

    @staticmethod
    def _pump_resizes(ws, resizes: Iterable[Any]) -> None:
        try:
            for size in resizes:
                if not ws.is_open():
                    break
                payload = json.dumps({"Width": size.width, "Height": size.height})
                ws.write_channel(RESIZE_CHANNEL, payload.encode("utf-8"))
        except Exception as exc:
            log_debug(f"resize pump stopped: {exc}")
