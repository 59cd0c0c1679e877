import socket
import threading
from typing import Dict, Optional

import paramiko

from podsshd.config import BANNER_TIMEOUT, HOST_KEY_BITS, LISTEN_BACKLOG, ServerConfig
from podsshd.context import RequestContext
from podsshd.remote import RemoteCommandChannel, TargetIdentity
from podsshd.sftp import RemoteSFTPServer
from podsshd.terminal import TerminalSession, start_terminal_session
from podsshd.utils import log_debug, log_error, split_command


def resolve_target(config: ServerConfig, username: str) -> TargetIdentity:
    """Map the SSH login name onto the container commands run in.

    A configured container pins every session to it; otherwise the user
    name is the container name.
    """
    return TargetIdentity(
        namespace=config.NAMESPACE or "",
        pod=config.POD or "",
        container=config.CONTAINER or username,
    )


class PodSSHServer(paramiko.ServerInterface):
    """SSH request handling for one client connection.

    Authentication is accepted as-is; the login name only selects the
    target container.
    """

    def __init__(self, config: ServerConfig, runner: RemoteCommandChannel, context: Optional[RequestContext] = None):
        self.config = config
        self.runner = runner
        self.context = context or RequestContext()
        self.target: Optional[TargetIdentity] = None
        self.sessions: Dict[int, TerminalSession] = {}
        self.lock = threading.Lock()

    # ----- authentication -----

    def get_allowed_auths(self, username):
        return "none,password,publickey"

    def _accept(self, username: str) -> int:
        self.target = resolve_target(self.config, username)
        log_debug(f"user {username!r} mapped to {self.target.describe()}")
        return paramiko.AUTH_SUCCESSFUL

    def check_auth_none(self, username):
        return self._accept(username)

    def check_auth_password(self, username, password):
        return self._accept(username)

    def check_auth_publickey(self, username, key):
        return self._accept(username)

    # ----- channels -----

    def check_channel_request(self, kind, chanid):
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def _session(self, channel) -> TerminalSession:
        with self.lock:
            session = self.sessions.get(channel.get_id())
            if session is None:
                session = TerminalSession(
                    channel=channel,
                    target=self.target,
                    context=self.context.child(),
                )
                self.sessions[channel.get_id()] = session
            return session

    def _forget(self, chanid: int) -> None:
        with self.lock:
            self.sessions.pop(chanid, None)

    def _start(self, channel, command) -> bool:
        session = self._session(channel)
        session.command = command
        chanid = channel.get_id()
        session.context.on_cancel(lambda: self._forget(chanid))
        start_terminal_session(session, self.runner)
        return True

    def check_channel_pty_request(self, channel, term, width, height, pixelwidth, pixelheight, modes):
        self._session(channel).request_pty(width, height)
        return True

    def check_channel_window_change_request(self, channel, width, height, pixelwidth, pixelheight):
        with self.lock:
            session = self.sessions.get(channel.get_id())
        if session is None:
            return False
        session.resize(width, height)
        return True

    def check_channel_shell_request(self, channel):
        return self._start(channel, [])

    def check_channel_exec_request(self, channel, command):
        try:
            argv = split_command(command)
        except ValueError as exc:
            log_error(f"rejected exec request {command!r}: {exc}")
            return False
        return self._start(channel, argv)


def load_host_key(path: Optional[str]) -> paramiko.PKey:
    if path:
        return paramiko.RSAKey.from_private_key_file(path)
    log_error("no host key configured, generating an ephemeral RSA key")
    return paramiko.RSAKey.generate(HOST_KEY_BITS)


def handle_connection(
    client: socket.socket,
    address,
    config: ServerConfig,
    runner: RemoteCommandChannel,
    host_key: paramiko.PKey,
) -> None:
    context = RequestContext()
    transport = paramiko.Transport(client)
    try:
        transport.banner_timeout = BANNER_TIMEOUT
        transport.add_server_key(host_key)
        transport.set_subsystem_handler("sftp", paramiko.SFTPServer, RemoteSFTPServer, runner)
        server = PodSSHServer(config, runner, context)
        transport.start_server(server=server)
        log_debug(f"connection from {address[0]}:{address[1]}")
        transport.join()
    except (paramiko.SSHException, EOFError, OSError) as exc:
        log_error(f"connection from {address[0]}:{address[1]} failed: {exc}")
    finally:
        context.cancel()
        transport.close()


def serve_forever(config: ServerConfig, runner: RemoteCommandChannel, host_key: paramiko.PKey) -> None:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    listener.bind((config.LISTEN_HOST, config.LISTEN_PORT))
    listener.listen(LISTEN_BACKLOG)
    log_error(f"starting ssh server on {config.LISTEN_HOST}:{config.LISTEN_PORT}...")
    try:
        while True:
            client, address = listener.accept()
            thread = threading.Thread(
                target=handle_connection,
                args=(client, address, config, runner, host_key),
                daemon=True,
            )
            thread.start()
    finally:
        listener.close()
