"""
Backend implementation on top of asyncssh.

asyncssh is a coroutine library; this backend runs it on a private event
loop that is only stepped from inside backend calls, so nothing happens
between calls and the caller keeps full control of when I/O is done.

Execution model:
- Each multi-step operation becomes a task keyed by the operation and its
  arguments. A retry with the same arguments finds the same task.
- Non-blocking mode runs a few zero-timeout loop iterations and returns
  ERROR_EAGAIN while the task is pending.
- Blocking mode runs the loop until the task finishes or the timeout
  expires. A timeout returns ERROR_TIMEOUT and leaves the task running, so
  the operation can be resumed.

Authentication is bridged through an asyncssh.SSHClient whose auth
callbacks wait for the caller's next userauth_* attempt.

Limits of the bridge:
- Session channels are opened together with their exec/shell/subsystem
  request; pty, env and X11 requests ride along with it.
- Receive windows are managed by asyncssh; adjust_receive_window() only
  resumes delivery that was paused because the local buffer was full.
- Host-based authentication is not supported.
- Partial authentication success is not reported by asyncssh.
- The negotiated key exchange algorithm is not exposed.
"""
from __future__ import annotations

import asyncio
import getpass
import logging
import socket
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import asyncssh
from asyncssh.compression import get_compression_algs
from asyncssh.encryption import get_encryption_algs
from asyncssh.kex import get_kex_algs
from asyncssh.mac import get_mac_algs
from asyncssh.public_key import get_public_key_algs

from rawssh.backend import Backend, KbdintResponder
from rawssh.codes import (
    CHANNEL_FLUSH_ALL,
    CHANNEL_FLUSH_EXTENDED_DATA,
    ERROR_AGENT_PROTOCOL,
    ERROR_AUTHENTICATION_FAILED,
    ERROR_BAD_USE,
    ERROR_BANNER_RECV,
    ERROR_CHANNEL_CLOSED,
    ERROR_CHANNEL_FAILURE,
    ERROR_CHANNEL_REQUEST_DENIED,
    ERROR_EAGAIN,
    ERROR_FILE,
    ERROR_HOSTKEY_SIGN,
    ERROR_INVALID_MAC,
    ERROR_KEX_FAILURE,
    ERROR_METHOD_NOT_SUPPORTED,
    ERROR_NONE,
    ERROR_PASSWORD_EXPIRED,
    ERROR_PROTO,
    ERROR_REQUEST_DENIED,
    ERROR_SOCKET_DISCONNECT,
    ERROR_SOCKET_RECV,
    ERROR_SOCKET_TIMEOUT,
    ERROR_TIMEOUT,
    ERROR_ZLIB,
    EXTENDED_DATA_IGNORE,
    EXTENDED_DATA_MERGE,
    EXTENDED_DATA_NORMAL,
    METHOD_COMP_CS,
    METHOD_COMP_SC,
    METHOD_CRYPT_CS,
    METHOD_CRYPT_SC,
    METHOD_HOSTKEY,
    METHOD_KEX,
    METHOD_LANG_CS,
    METHOD_LANG_SC,
    METHOD_MAC_CS,
    METHOD_MAC_SC,
    SESSION_BLOCK_INBOUND,
    STREAM_DEFAULT,
    code_name,
)
from rawssh.config import KeepaliveConfig, SessionConfig

logger = logging.getLogger(__name__)

# Zero-timeout loop iterations per non-blocking call
_NONBLOCKING_STEPS = 4

# Wake-up interval for waits that poll state asyncssh does not signal
_POLL_INTERVAL = 0.05

_PREFERRED_AUTH = "publickey,keyboard-interactive,password"

_NEGOTIATED_INFO = {
    METHOD_CRYPT_CS: "send_cipher",
    METHOD_CRYPT_SC: "recv_cipher",
    METHOD_MAC_CS: "send_mac",
    METHOD_MAC_SC: "recv_mac",
    METHOD_COMP_CS: "send_compression",
    METHOD_COMP_SC: "recv_compression",
}

_SUPPORTED_ALGS: dict[int, Callable[[], list[bytes]]] = {
    METHOD_KEX: get_kex_algs,
    METHOD_HOSTKEY: get_public_key_algs,
    METHOD_CRYPT_CS: get_encryption_algs,
    METHOD_CRYPT_SC: get_encryption_algs,
    METHOD_MAC_CS: get_mac_algs,
    METHOD_MAC_SC: get_mac_algs,
    METHOD_COMP_CS: get_compression_algs,
    METHOD_COMP_SC: get_compression_algs,
}

# pty mode opcode that terminates the encoded mode list
_TTY_OP_END = 0


def _decode_term_modes(modes: bytes) -> dict[int, int]:
    """Parse RFC 4254 encoded terminal modes into asyncssh's dict form."""
    result: dict[int, int] = {}
    index = 0
    while index + 5 <= len(modes):
        opcode = modes[index]
        if opcode == _TTY_OP_END:
            break
        result[opcode] = int.from_bytes(modes[index + 1:index + 5], "big")
        index += 5
    return result


@dataclass
class _AuthAttempt:
    """One userauth_* call waiting for asyncssh to ask for its method."""
    method: str
    username: str
    credential: Any
    future: asyncio.Future


class _BridgeClient(asyncssh.SSHClient):
    """
    SSH client whose auth callbacks are answered by userauth_* calls.

    asyncssh asks for methods in its preference order, restarting the
    order after every failure. A callback for a method other than the one
    the caller is attempting declines it if the attempted method is still
    to come; otherwise the attempt fails with ERROR_METHOD_NOT_SUPPORTED.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self.conn: asyncssh.SSHClientConnection | None = None
        # Resolves once the transport is negotiated and auth has begun
        self.ready: asyncio.Future = loop.create_future()
        self.authenticated = False
        self.offered: list[str] = []
        self._attempt: _AuthAttempt | None = None
        self._answered: _AuthAttempt | None = None
        self._attempt_event = asyncio.Event()
        self._new_round = True
        self._password_expired = False

    def connection_made(self, conn: asyncssh.SSHClientConnection) -> None:
        self.conn = conn

    def connection_lost(self, exc: Exception | None) -> None:
        error = exc or asyncssh.ConnectionLost("Connection closed")
        if not self.ready.done():
            self.ready.set_exception(error)
        for attempt in (self._attempt, self._answered):
            if attempt is not None and not attempt.future.done():
                attempt.future.set_exception(error)
        self._attempt = self._answered = None
        self._attempt_event.set()

    def auth_completed(self) -> None:
        self.authenticated = True
        self._settle(ERROR_NONE)
        if not self.ready.done():
            self.ready.set_result(None)

    def offer(self, attempt: _AuthAttempt) -> None:
        self._attempt = attempt
        self._attempt_event.set()

    def _settle(self, code: int) -> None:
        attempt, self._answered = self._answered, None
        if attempt is not None and not attempt.future.done():
            if code == ERROR_AUTHENTICATION_FAILED and self._password_expired:
                code = ERROR_PASSWORD_EXPIRED
            attempt.future.set_result(code)
        self._password_expired = False

    async def _next_attempt(self, method: str) -> _AuthAttempt | None:
        if self._answered is not None:
            # Asked again after answering: the server rejected the answer
            self._settle(ERROR_AUTHENTICATION_FAILED)
            self._new_round = True

        # Methods asyncssh will still ask for in this round (private state)
        remaining = [
            m.decode("ascii") for m in getattr(self.conn, "_auth_methods", [])
        ]
        if self._new_round:
            self.offered = [method] + remaining
            self._new_round = False
        if not self.ready.done():
            self.ready.set_result(None)

        while True:
            attempt = self._attempt
            if attempt is None or attempt.future.done():
                self._attempt_event.clear()
                await self._attempt_event.wait()
                continue
            if attempt.method == method:
                self._attempt = None
                self._answered = attempt
                if self.conn is not None:
                    # asyncssh keeps the login name on the connection
                    self.conn._username = attempt.username
                return attempt
            if attempt.method in remaining:
                return None
            self._attempt = None
            attempt.future.set_result(ERROR_METHOD_NOT_SUPPORTED)

    async def public_key_auth_requested(self) -> list[Any] | None:
        attempt = await self._next_attempt("publickey")
        return [attempt.credential] if attempt is not None else None

    async def password_auth_requested(self) -> str | None:
        attempt = await self._next_attempt("password")
        return attempt.credential if attempt is not None else None

    def password_change_requested(self, prompt: str, lang: str) -> Any:
        self._password_expired = True
        return NotImplemented

    async def kbdint_auth_requested(self) -> str | None:
        attempt = await self._next_attempt("keyboard-interactive")
        return "" if attempt is not None else None

    def kbdint_challenge_received(
        self,
        name: str,
        instructions: str,
        lang: str,
        prompts: list[tuple[str, bool]],
    ) -> list[str] | None:
        attempt = self._answered
        if attempt is None:
            return None
        try:
            return list(attempt.credential(name, instructions, list(prompts)))
        except Exception:
            logger.warning("Keyboard-interactive responder failed", exc_info=True)
            return None


class _ChannelSink(asyncssh.SSHClientSession):
    """Buffers channel data per stream until the caller reads it."""

    def __init__(self, window: int) -> None:
        self.chan: Any = None
        self.window = window
        self.initial_send_window = 0
        self.buffers: dict[int, bytearray] = {STREAM_DEFAULT: bytearray()}
        self.extended_mode = EXTENDED_DATA_NORMAL
        self.eof = False
        self.closed = False
        self.exc: Exception | None = None
        self._changed = asyncio.Event()

    def connection_made(self, chan: Any) -> None:
        self.chan = chan
        self.initial_send_window = chan._send_window or 0

    def data_received(self, data: bytes, datatype: int | None) -> None:
        stream = STREAM_DEFAULT if datatype is None else datatype
        if stream != STREAM_DEFAULT:
            if self.extended_mode == EXTENDED_DATA_IGNORE:
                return
            if self.extended_mode == EXTENDED_DATA_MERGE:
                stream = STREAM_DEFAULT
        self.buffers.setdefault(stream, bytearray()).extend(data)
        if self.buffered() >= self.window:
            self.chan.pause_reading()
        self._changed.set()

    def eof_received(self) -> bool:
        self.eof = True
        self._changed.set()
        # Keep our side open for writing
        return True

    def connection_lost(self, exc: Exception | None) -> None:
        self.eof = True
        self.closed = True
        self.exc = exc
        self._changed.set()

    def buffered(self) -> int:
        return sum(len(buffer) for buffer in self.buffers.values())

    def take(self, stream: int, size: int) -> bytes:
        buffer = self.buffers.setdefault(stream, bytearray())
        data = bytes(buffer[:size])
        del buffer[:size]
        if data and self.chan is not None and self.buffered() < self.window:
            self.chan.resume_reading()
        return data

    async def wait_for(self, predicate: Callable[[], bool]) -> None:
        while not predicate():
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), _POLL_INTERVAL)
            except asyncio.TimeoutError:
                pass


@dataclass
class _ChannelHandle:
    """Backend state of one channel."""
    kind: str
    window: int
    packet: int
    sink: _ChannelSink | None = None
    env: dict[str, str] = field(default_factory=dict)
    pty: tuple[str, bytes, tuple[int, int, int, int]] | None = None
    x11: tuple[bool] | None = None
    agent: bool = False
    extended_mode: int = EXTENDED_DATA_NORMAL
    closing: bool = False


@dataclass
class _ForwardHandle:
    """A remote listener and its queue of accepted channels."""
    maxsize: int
    window: int
    packet: int
    listener: Any = None
    pending: deque = field(default_factory=deque)

    def session_factory(self, orig_host: str, orig_port: int) -> _ChannelSink:
        if len(self.pending) >= self.maxsize:
            raise asyncssh.ChannelOpenError(
                asyncssh.OPEN_RESOURCE_SHORTAGE, "Forward queue full",
            )
        sink = _ChannelSink(self.window)
        handle = _ChannelHandle("forwarded-tcpip", self.window, self.packet, sink)
        self.pending.append(handle)
        return sink


@dataclass
class _AgentHandle:
    client: Any
    keys: list[Any] = field(default_factory=list)


class AsyncSSHBackend(Backend):
    """
    Backend driving asyncssh on a private event loop.

    Usage:
        session = Session(Transport(sock), AsyncSSHBackend(config), config)
    """

    def __init__(self, config: SessionConfig | None = None) -> None:
        self._config = config if config is not None else SessionConfig()
        self._loop = asyncio.new_event_loop()
        self._blocking = self._config.blocking
        self._timeout_ms = self._config.timeout_ms
        self._ops: dict[tuple[Any, ...], asyncio.Future] = {}
        self._client: _BridgeClient | None = None
        self._connect_task: asyncio.Future | None = None
        self._error = ""
        self._block = 0
        self._keepalive_due = 0.0
        self._closed = False

    # ------------------------------------------------------------------
    # Loop driving
    # ------------------------------------------------------------------

    def _step(self) -> None:
        for _ in range(_NONBLOCKING_STEPS):
            self._loop.call_soon(self._loop.stop)
            self._loop.run_forever()

    def _drive(self, future: asyncio.Future) -> None:
        if self._blocking:
            timeout = self._timeout_ms / 1000 if self._timeout_ms else None
            self._loop.run_until_complete(asyncio.wait({future}, timeout=timeout))
            return
        for _ in range(_NONBLOCKING_STEPS):
            if future.done():
                return
            self._loop.call_soon(self._loop.stop)
            self._loop.run_forever()

    def _incomplete(self) -> int:
        self._block = SESSION_BLOCK_INBOUND
        if self._blocking:
            self._error = "Operation timed out"
            return ERROR_TIMEOUT
        self._error = "Would block"
        return ERROR_EAGAIN

    def _run(
        self,
        key: tuple[Any, ...],
        factory: Callable[[], Awaitable[Any]],
    ) -> tuple[int, Any]:
        """
        Start the operation for key, or resume it, and drive the loop.

        Returns:
            (0, result), (ERROR_EAGAIN/ERROR_TIMEOUT, None) while pending,
            or (error code, None)
        """
        future = self._ops.get(key)
        if future is None:
            future = asyncio.ensure_future(factory(), loop=self._loop)
            self._ops[key] = future
            logger.debug("Started %s", key[0])
        self._drive(future)
        if not future.done():
            return self._incomplete(), None

        del self._ops[key]
        self._block = 0
        if future.cancelled():
            return self._set_error(ERROR_SOCKET_DISCONNECT, "Operation cancelled"), None
        exc = future.exception()
        if exc is not None:
            return self._map_exception(exc, key[0]), None
        return ERROR_NONE, future.result()

    def _wait_until(self, predicate: Callable[[], bool], sink: _ChannelSink) -> int:
        """Wait for channel state without registering a resumable operation."""
        self._step()
        if predicate():
            self._block = 0
            return ERROR_NONE
        if not self._blocking:
            return self._incomplete()
        task = self._loop.create_task(sink.wait_for(predicate))
        self._drive(task)
        if not task.done():
            task.cancel()
            self._loop.run_until_complete(asyncio.wait({task}))
            return self._incomplete()
        self._block = 0
        return ERROR_NONE

    def _set_error(self, code: int, message: str) -> int:
        self._error = message
        return code

    def _map_exception(self, exc: BaseException, operation: str) -> int:
        """Map asyncssh and socket exceptions to codes."""
        logger.debug("%s failed: %r", operation, exc)
        message = str(exc) or type(exc).__name__

        if isinstance(exc, asyncssh.PermissionDenied):
            code = ERROR_AUTHENTICATION_FAILED
        elif isinstance(exc, asyncssh.HostKeyNotVerifiable):
            code = ERROR_HOSTKEY_SIGN
        elif isinstance(exc, asyncssh.KeyExchangeFailed):
            code = ERROR_KEX_FAILURE
        elif isinstance(exc, asyncssh.MACError):
            code = ERROR_INVALID_MAC
        elif isinstance(exc, asyncssh.CompressionError):
            code = ERROR_ZLIB
        elif isinstance(exc, asyncssh.ProtocolNotSupported):
            code = ERROR_BANNER_RECV
        elif isinstance(exc, asyncssh.ProtocolError):
            code = ERROR_PROTO
        elif isinstance(exc, asyncssh.DisconnectError):
            code = ERROR_SOCKET_DISCONNECT
        elif isinstance(exc, asyncssh.ChannelOpenError):
            if exc.code in (
                asyncssh.OPEN_REQUEST_SESSION_FAILED,
                asyncssh.OPEN_REQUEST_PTY_FAILED,
                asyncssh.OPEN_REQUEST_X11_FORWARDING_FAILED,
            ):
                code = ERROR_CHANNEL_REQUEST_DENIED
            else:
                code = ERROR_CHANNEL_FAILURE
        elif isinstance(exc, asyncssh.ChannelListenError):
            code = ERROR_REQUEST_DENIED
        elif isinstance(exc, (asyncssh.KeyImportError, asyncssh.KeyEncryptionError)):
            code = ERROR_FILE
        elif isinstance(exc, BrokenPipeError):
            code = ERROR_CHANNEL_CLOSED
        elif isinstance(exc, (asyncio.TimeoutError, socket.timeout)):
            code = ERROR_SOCKET_TIMEOUT
        elif isinstance(exc, ConnectionError):
            code = ERROR_SOCKET_DISCONNECT
        elif isinstance(exc, OSError):
            code = ERROR_SOCKET_RECV
        else:
            code = ERROR_PROTO
        return self._set_error(code, message)

    def _connected(self) -> asyncssh.SSHClientConnection | None:
        client = self._client
        if client is None or client.conn is None or not client.ready.done():
            self._set_error(ERROR_BAD_USE, "Handshake has not completed")
            return None
        if client.ready.exception() is not None or self._closed:
            self._set_error(ERROR_SOCKET_DISCONNECT, "Connection is closed")
            return None
        return client.conn

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def set_blocking(self, blocking: bool) -> None:
        self._blocking = blocking

    def set_timeout(self, timeout_ms: int) -> None:
        self._timeout_ms = timeout_ms

    def handshake(self, sock: socket.socket) -> int:
        if self._client is None:
            client = self._client = _BridgeClient(self._loop)
            try:
                peer = sock.getpeername()[0]
            except (OSError, IndexError, TypeError):
                peer = "localhost"
            options = self._config.to_asyncssh_options()

            async def connect() -> asyncssh.SSHClientConnection:
                # asyncssh.connect returns an awaitable wrapper, not a coroutine
                return await asyncssh.connect(
                    peer,
                    sock=sock,
                    config=None,
                    known_hosts=None,
                    client_factory=lambda: client,
                    username=self._config.username or getpass.getuser(),
                    client_keys=[],
                    agent_path=None,
                    password=None,
                    preferred_auth=_PREFERRED_AUTH,
                    public_key_auth=True,
                    kbdint_auth=True,
                    password_auth=True,
                    **options,
                )

            self._connect_task = self._loop.create_task(connect())
            self._connect_task.add_done_callback(self._connect_done)
        client = self._client
        rc, _ = self._run(("handshake",), lambda: client.ready)
        return rc

    def _connect_done(self, task: asyncio.Future) -> None:
        # Surfaces connect failures that happen before any auth callback
        if task.cancelled():
            return
        exc = task.exception()
        client = self._client
        if exc is not None and client is not None and not client.ready.done():
            client.ready.set_exception(exc)

    def disconnect(self, reason: int, description: str) -> int:
        conn = self._connected()
        if conn is None:
            return ERROR_SOCKET_DISCONNECT if self._client else ERROR_BAD_USE
        if not self._closed:
            conn.disconnect(reason, description)
            self._closed = True
        rc, _ = self._run(("disconnect",), conn.wait_closed)
        return rc

    def free(self) -> int:
        if self._loop.is_closed():
            return ERROR_NONE
        client = self._client
        if client is not None and client.conn is not None:
            client.conn.abort()
        tasks = asyncio.all_tasks(self._loop)
        for task in tasks:
            task.cancel()
        if tasks:
            self._loop.run_until_complete(
                asyncio.gather(*tasks, return_exceptions=True),
            )
        self._ops.clear()
        self._loop.close()
        self._closed = True
        return ERROR_NONE

    def error_message(self) -> str:
        return self._error

    def banner(self) -> str | None:
        conn = self._client.conn if self._client else None
        return conn.get_extra_info("server_version") if conn is not None else None

    def hostkey(self) -> tuple[bytes, str] | None:
        conn = self._client.conn if self._client else None
        key = conn.get_server_host_key() if conn is not None else None
        if key is None:
            return None
        return key.public_data, key.get_algorithm()

    def methods(self, method_type: int) -> str | None:
        conn = self._client.conn if self._client else None
        if conn is None:
            return None
        if method_type == METHOD_HOSTKEY:
            hostkey = self.hostkey()
            return hostkey[1] if hostkey else None
        if method_type in (METHOD_LANG_CS, METHOD_LANG_SC):
            return ""
        info = _NEGOTIATED_INFO.get(method_type)
        return conn.get_extra_info(info) if info else None

    def supported_algs(self, method_type: int) -> list[str]:
        algs = _SUPPORTED_ALGS.get(method_type)
        if algs is None:
            return []
        return [alg.decode("ascii") for alg in algs()]

    def method_pref(self, method_type: int, prefs: list[str]) -> int:
        supported = self.supported_algs(method_type)
        if not supported:
            return self._set_error(
                ERROR_METHOD_NOT_SUPPORTED, f"Method type {method_type} is not configurable",
            )
        if not any(pref in supported for pref in prefs):
            return self._set_error(
                ERROR_METHOD_NOT_SUPPORTED, f"None of {prefs} is supported",
            )
        # Applied at connect time through SessionConfig.to_asyncssh_options()
        return ERROR_NONE

    def block_directions(self) -> int:
        return self._block

    def keepalive_config(self, want_reply: bool, interval: int) -> None:
        self._config.keepalive = (
            KeepaliveConfig(interval_sec=interval, want_reply=want_reply)
            if interval else None
        )
        if self._client is not None:
            logger.debug("Keepalive change applies to the next connection")
        self._keepalive_due = time.monotonic() + interval

    def keepalive_send(self) -> tuple[int, int]:
        if self._connected() is None:
            return ERROR_SOCKET_DISCONNECT if self._client else ERROR_BAD_USE, 0
        keepalive = self._config.keepalive
        if keepalive is None or not keepalive.interval_sec:
            return ERROR_NONE, 0
        # asyncssh sends keepalives on its own timer while the loop runs
        self._step()
        now = time.monotonic()
        if now >= self._keepalive_due:
            self._keepalive_due = now + keepalive.interval_sec
        return ERROR_NONE, int(self._keepalive_due - now + 0.5)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def userauth_list(self, username: str) -> tuple[int, list[str]]:
        if self._connected() is None:
            return ERROR_BAD_USE, []
        client = self._client
        if client.authenticated:
            return ERROR_NONE, []
        return ERROR_NONE, list(client.offered)

    def userauth_authenticated(self) -> bool:
        return self._client is not None and self._client.authenticated

    def userauth_partial(self) -> bool:
        return False

    def _userauth(
        self,
        key: tuple[Any, ...],
        method: str,
        username: str,
        credential: Callable[[], Any],
    ) -> int:
        if self._connected() is None:
            return ERROR_BAD_USE
        client = self._client

        if key not in self._ops:
            # A different attempt replaces any that was never answered
            for stale in [k for k in self._ops if k[0] == "auth"]:
                self._ops.pop(stale).cancel()
            try:
                value = credential()
            except (OSError, asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as exc:
                return self._map_exception(exc, f"userauth_{method}")

        def start() -> asyncio.Future:
            attempt = _AuthAttempt(method, username, value, self._loop.create_future())
            client.offer(attempt)
            return attempt.future

        rc, code = self._run(key, start)
        if rc == ERROR_NONE and code:
            self._set_error(code, f"{method} authentication failed: {code_name(code)}")
        return rc or code

    def userauth_password(self, username: str, password: str) -> int:
        return self._userauth(
            ("auth", "password", username, password),
            "password", username, lambda: password,
        )

    def userauth_publickey_fromfile(
        self,
        username: str,
        public_key_path: str | None,
        private_key_path: str,
        passphrase: str | None,
    ) -> int:
        return self._userauth(
            ("auth", "publickey", username, private_key_path),
            "publickey",
            username,
            lambda: asyncssh.read_private_key(private_key_path, passphrase),
        )

    def userauth_publickey_frommemory(
        self,
        username: str,
        public_key: bytes | None,
        private_key: bytes,
        passphrase: str | None,
    ) -> int:
        return self._userauth(
            ("auth", "publickey", username, private_key),
            "publickey",
            username,
            lambda: asyncssh.import_private_key(private_key, passphrase),
        )

    def userauth_hostbased_fromfile(
        self,
        username: str,
        public_key_path: str,
        private_key_path: str,
        passphrase: str | None,
        hostname: str,
        local_username: str,
    ) -> int:
        return self._set_error(
            ERROR_METHOD_NOT_SUPPORTED, "Host-based authentication is not supported",
        )

    def userauth_keyboard_interactive(
        self,
        username: str,
        responder: KbdintResponder,
    ) -> int:
        return self._userauth(
            ("auth", "keyboard-interactive", username, id(responder)),
            "keyboard-interactive",
            username,
            lambda: responder,
        )

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def channel_open_session(self, window_size: int, packet_size: int) -> tuple[int, Any]:
        if self._connected() is None:
            return ERROR_SOCKET_DISCONNECT, None
        # Opened together with its process request in channel_process_startup
        return ERROR_NONE, _ChannelHandle("session", window_size, packet_size)

    def channel_direct_tcpip(
        self, host: str, port: int, shost: str, sport: int,
    ) -> tuple[int, Any]:
        conn = self._connected()
        if conn is None:
            return ERROR_SOCKET_DISCONNECT, None
        window = self._config.window_size
        packet = self._config.max_packet_size

        async def open_tcpip() -> _ChannelHandle:
            sink = _ChannelSink(window)
            await conn.create_connection(
                lambda: sink, host, port, shost, sport,
                window=window, max_pktsize=packet,
            )
            return _ChannelHandle("direct-tcpip", window, packet, sink)

        return self._run(("direct_tcpip", host, port, shost, sport), open_tcpip)

    def _unstarted(self, channel: _ChannelHandle, operation: str) -> int:
        if channel.sink is not None:
            return self._set_error(
                ERROR_METHOD_NOT_SUPPORTED,
                f"{operation} after the process request is not supported",
            )
        return ERROR_NONE

    def channel_request_pty(
        self,
        channel: _ChannelHandle,
        term: str,
        modes: bytes,
        width: int,
        height: int,
        width_px: int,
        height_px: int,
    ) -> int:
        rc = self._unstarted(channel, "request_pty")
        if rc == ERROR_NONE:
            channel.pty = (term, modes, (width, height, width_px, height_px))
        return rc

    def channel_pty_size(
        self,
        channel: _ChannelHandle,
        width: int,
        height: int,
        width_px: int,
        height_px: int,
    ) -> int:
        if channel.sink is None or channel.sink.chan is None:
            if channel.pty is None:
                return self._set_error(ERROR_CHANNEL_REQUEST_DENIED, "No pty requested")
            channel.pty = (channel.pty[0], channel.pty[1], (width, height, width_px, height_px))
            return ERROR_NONE
        try:
            channel.sink.chan.change_terminal_size(width, height, width_px, height_px)
        except OSError as exc:
            return self._map_exception(exc, "pty_size")
        self._step()
        return ERROR_NONE

    def channel_setenv(self, channel: _ChannelHandle, name: str, value: str) -> int:
        rc = self._unstarted(channel, "setenv")
        if rc == ERROR_NONE:
            channel.env[name] = value
        return rc

    def channel_x11_req(
        self,
        channel: _ChannelHandle,
        single_connection: bool,
        auth_proto: str | None,
        auth_cookie: str | None,
        screen: int,
    ) -> int:
        rc = self._unstarted(channel, "x11_req")
        if rc == ERROR_NONE:
            channel.x11 = (single_connection,)
        return rc

    def channel_request_auth_agent(self, channel: _ChannelHandle) -> int:
        rc = self._unstarted(channel, "request_auth_agent")
        if rc:
            return rc
        if not self._config.agent_forwarding:
            return self._set_error(
                ERROR_CHANNEL_REQUEST_DENIED,
                "Agent forwarding is disabled in SessionConfig",
            )
        channel.agent = True
        return ERROR_NONE

    def channel_process_startup(
        self, channel: _ChannelHandle, request: str, message: str | None,
    ) -> int:
        conn = self._connected()
        if conn is None:
            return ERROR_SOCKET_DISCONNECT
        if channel.kind != "session":
            return self._set_error(
                ERROR_CHANNEL_REQUEST_DENIED, f"{request} on a {channel.kind} channel",
            )

        async def start() -> _ChannelSink:
            sink = _ChannelSink(channel.window)
            sink.extended_mode = channel.extended_mode
            options: dict[str, Any] = {
                "command": message if request == "exec" else None,
                "subsystem": message if request == "subsystem" else None,
                "env": dict(channel.env),
                "encoding": None,
                "window": channel.window,
                "max_pktsize": channel.packet,
                "request_pty": False,
            }
            if channel.pty is not None:
                term, modes, size = channel.pty
                options.update(
                    request_pty=True,
                    term_type=term,
                    term_size=size,
                    term_modes=_decode_term_modes(modes),
                )
            if channel.x11 is not None:
                options.update(
                    x11_forwarding=True, x11_single_connection=channel.x11[0],
                )
            await conn.create_session(lambda: sink, **options)
            return sink

        rc, sink = self._run(("process_startup", id(channel), request, message), start)
        if rc == ERROR_NONE:
            channel.sink = sink
        return rc

    def channel_signal(self, channel: _ChannelHandle, signame: str) -> int:
        if channel.sink is None or channel.sink.chan is None:
            return self._set_error(ERROR_BAD_USE, "Channel has no running process")
        try:
            channel.sink.chan.send_signal(signame)
        except OSError as exc:
            return self._map_exception(exc, "signal")
        self._step()
        return ERROR_NONE

    def _sink(self, channel: _ChannelHandle, operation: str) -> _ChannelSink | None:
        if channel.sink is None:
            self._set_error(ERROR_BAD_USE, f"{operation}: channel has no running process")
        return channel.sink

    def channel_read(
        self, channel: _ChannelHandle, stream_id: int, size: int,
    ) -> tuple[int, bytes]:
        sink = self._sink(channel, "channel_read")
        if sink is None:
            return ERROR_BAD_USE, b""
        buffer = sink.buffers.setdefault(stream_id, bytearray())
        rc = self._wait_until(lambda: bool(buffer) or sink.eof, sink)
        if rc:
            return rc, b""
        return ERROR_NONE, sink.take(stream_id, size)

    def channel_write(self, channel: _ChannelHandle, stream_id: int, data: bytes) -> int:
        sink = self._sink(channel, "channel_write")
        if sink is None:
            return ERROR_BAD_USE
        if sink.closed:
            return self._set_error(ERROR_CHANNEL_CLOSED, "Channel is closed")

        def window() -> int:
            return sink.chan._send_window or 0

        rc = self._wait_until(lambda: window() > 0 or sink.closed, sink)
        if rc:
            return rc
        if sink.closed:
            return self._set_error(ERROR_CHANNEL_CLOSED, "Channel is closed")
        chunk = data[:window()]
        try:
            sink.chan.write(chunk, None if stream_id == STREAM_DEFAULT else stream_id)
        except OSError as exc:
            return self._map_exception(exc, "channel_write")
        self._step()
        return len(chunk)

    def channel_flush(self, channel: _ChannelHandle, stream_id: int) -> int:
        sink = channel.sink
        if sink is None:
            return ERROR_NONE
        if stream_id == CHANNEL_FLUSH_ALL:
            streams = list(sink.buffers)
        elif stream_id == CHANNEL_FLUSH_EXTENDED_DATA:
            streams = [s for s in sink.buffers if s != STREAM_DEFAULT]
        else:
            streams = [stream_id]
        return sum(len(sink.take(stream, len(sink.buffers.get(stream, b""))))
                   for stream in streams)

    def channel_window_read(self, channel: _ChannelHandle) -> tuple[int, int, int]:
        sink = channel.sink
        if sink is None or sink.chan is None:
            return channel.window, 0, channel.window
        return sink.chan.get_recv_window(), len(sink.buffers[STREAM_DEFAULT]), channel.window

    def channel_window_write(self, channel: _ChannelHandle) -> tuple[int, int]:
        sink = channel.sink
        if sink is None or sink.chan is None:
            return 0, 0
        return sink.chan._send_window or 0, sink.initial_send_window

    def channel_receive_window_adjust(
        self, channel: _ChannelHandle, adjustment: int, force: bool,
    ) -> tuple[int, int]:
        sink = channel.sink
        if sink is None or sink.chan is None:
            return ERROR_NONE, channel.window
        if sink.buffered() < sink.window:
            sink.chan.resume_reading()
        self._step()
        return ERROR_NONE, sink.chan.get_recv_window()

    def channel_handle_extended_data(self, channel: _ChannelHandle, mode: int) -> int:
        channel.extended_mode = mode
        sink = channel.sink
        if sink is None:
            return ERROR_NONE
        sink.extended_mode = mode
        if mode == EXTENDED_DATA_NORMAL:
            return ERROR_NONE
        for stream in [s for s in sink.buffers if s != STREAM_DEFAULT]:
            data = sink.take(stream, len(sink.buffers[stream]))
            if mode == EXTENDED_DATA_MERGE:
                sink.buffers[STREAM_DEFAULT].extend(data)
        return ERROR_NONE

    def channel_eof(self, channel: _ChannelHandle) -> bool:
        sink = channel.sink
        if sink is None:
            return False
        return sink.eof and not any(sink.buffers.values())

    def channel_send_eof(self, channel: _ChannelHandle) -> int:
        sink = self._sink(channel, "send_eof")
        if sink is None:
            return ERROR_BAD_USE
        try:
            sink.chan.write_eof()
        except OSError as exc:
            return self._map_exception(exc, "send_eof")
        self._step()
        return ERROR_NONE

    def channel_wait_eof(self, channel: _ChannelHandle) -> int:
        sink = self._sink(channel, "wait_eof")
        if sink is None:
            return ERROR_BAD_USE
        return self._wait_until(lambda: sink.eof, sink)

    def channel_close(self, channel: _ChannelHandle) -> int:
        sink = channel.sink
        if sink is not None and sink.chan is not None and not channel.closing:
            sink.chan.close()
            channel.closing = True
        self._step()
        return ERROR_NONE

    def channel_wait_closed(self, channel: _ChannelHandle) -> int:
        sink = channel.sink
        if sink is None:
            return ERROR_NONE
        return self._wait_until(lambda: sink.closed, sink)

    def channel_free(self, channel: _ChannelHandle) -> int:
        sink = channel.sink
        if sink is not None and sink.chan is not None and not sink.closed:
            sink.chan.close()
        channel.closing = True
        return ERROR_NONE

    def channel_exit_status(self, channel: _ChannelHandle) -> int | None:
        # Only session channels carry exit-status and exit-signal
        sink = channel.sink
        if channel.kind != "session" or sink is None or sink.chan is None:
            return None
        status = sink.chan.get_exit_status()
        return status if status is not None and status >= 0 else None

    def channel_exit_signal(
        self, channel: _ChannelHandle,
    ) -> tuple[str | None, str | None, str | None]:
        sink = channel.sink
        if channel.kind != "session" or sink is None or sink.chan is None:
            return None, None, None
        signal = sink.chan.get_exit_signal()
        if not signal:
            return None, None, None
        name, _core_dumped, message, lang = signal
        return name, message, lang

    # ------------------------------------------------------------------
    # Port forwarding
    # ------------------------------------------------------------------

    def forward_listen(self, host: str, port: int, queue_maxsize: int) -> tuple[int, Any, int]:
        conn = self._connected()
        if conn is None:
            return ERROR_SOCKET_DISCONNECT, None, 0
        forward = _ForwardHandle(
            queue_maxsize, self._config.window_size, self._config.max_packet_size,
        )

        async def listen() -> _ForwardHandle:
            forward.listener = await conn.create_server(
                forward.session_factory, host, port,
                encoding=None, window=forward.window, max_pktsize=forward.packet,
            )
            return forward

        rc, handle = self._run(("forward_listen", host, port), listen)
        if rc:
            return rc, None, 0
        return ERROR_NONE, handle, handle.listener.get_port()

    def forward_accept(self, listener: _ForwardHandle) -> tuple[int, Any]:
        self._step()
        if not listener.pending and self._blocking and self._timeout_ms:
            deadline = time.monotonic() + self._timeout_ms / 1000
            while not listener.pending and time.monotonic() < deadline:
                self._loop.run_until_complete(asyncio.sleep(_POLL_INTERVAL))
        if not listener.pending:
            return ERROR_NONE, None
        return ERROR_NONE, listener.pending.popleft()

    def forward_cancel(self, listener: _ForwardHandle) -> int:
        # wait_closed() would also wait for the accepted channels, which stay open
        listener.listener.close()
        self._step()
        self._block = 0
        return ERROR_NONE

    # ------------------------------------------------------------------
    # Agent
    # ------------------------------------------------------------------

    def agent_connect(self, path: str | None) -> tuple[int, Any]:
        async def connect() -> _AgentHandle:
            client = await asyncssh.connect_agent(path)
            if client is None:
                raise ConnectionError(f"Cannot reach agent at {path}")
            return _AgentHandle(client)

        rc, handle = self._run(("agent_connect", path), connect)
        if rc and rc not in (ERROR_EAGAIN, ERROR_TIMEOUT):
            return self._set_error(ERROR_AGENT_PROTOCOL, self._error), None
        return rc, handle

    def agent_list_identities(self, agent: _AgentHandle) -> tuple[int, list[tuple[bytes, str]]]:
        rc, keys = self._run(("agent_list", id(agent)), agent.client.get_keys)
        if rc in (ERROR_EAGAIN, ERROR_TIMEOUT):
            return rc, []
        if rc:
            return self._set_error(ERROR_AGENT_PROTOCOL, self._error), []
        agent.keys = list(keys)
        return ERROR_NONE, [
            (key.public_data, key.get_comment() or "") for key in agent.keys
        ]

    def agent_userauth(self, agent: _AgentHandle, username: str, key_blob: bytes) -> int:
        for keypair in agent.keys:
            if keypair.public_data == key_blob:
                return self._userauth(
                    ("auth", "publickey", username, key_blob),
                    "publickey",
                    username,
                    lambda: keypair,
                )
        return self._set_error(ERROR_AGENT_PROTOCOL, "Identity is not held by the agent")

    def agent_disconnect(self, agent: _AgentHandle) -> int:
        agent.client.close()
        rc, _ = self._run(("agent_disconnect", id(agent)), agent.client.wait_closed)
        return rc
