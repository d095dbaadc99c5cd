"""
SSH session: the protocol state machine over one transport.

A Session drives the handshake, authenticates, and creates channels, the
SFTP subsystem, SCP transfers and port forward listeners. Every operation
returns a raw code from rawssh.codes (or a tuple led by one) and never
raises for protocol outcomes. In non-blocking mode an operation that
cannot finish returns ERROR_EAGAIN; calling it again with the same
arguments resumes it.

State machine:
    CREATED -> HANDSHAKING -> NEGOTIATED -> AUTHENTICATING -> AUTHENTICATED
    HANDSHAKING -> CLOSED (handshake failed)
    any -> CLOSED (free(), disconnect() or a fatal transport/protocol code)

Usage:
    sock = socket.create_connection((host, 22))
    session = Session(Transport(sock), config=SessionConfig(blocking=False))
    while (rc := session.handshake()) == ERROR_EAGAIN:
        session.transport.wait(session.block_directions())
"""
from __future__ import annotations

import getpass
import hashlib
import weakref
from enum import Enum
from typing import Any, Callable

from rawssh.agent import Agent
from rawssh.asyncssh_backend import AsyncSSHBackend
from rawssh.backend import Backend, KbdintResponder
from rawssh.channel import Channel
from rawssh.codes import (
    CHANNEL_PACKET_DEFAULT,
    DISCONNECT_BY_APPLICATION,
    ERROR_BAD_USE,
    ERROR_EAGAIN,
    ERROR_INVAL,
    ERROR_NONE,
    ERROR_SOCKET_DISCONNECT,
    ERROR_TIMEOUT,
    HOSTKEY_HASH_MD5,
    HOSTKEY_HASH_SHA1,
    HOSTKEY_HASH_SHA256,
    classify,
    code_name,
    is_fatal,
)
from rawssh.config import SessionConfig
from rawssh.events import EventEmitter, EventType
from rawssh.knownhost import KnownHosts
from rawssh.listener import Listener
from rawssh.platform import expand_path
from rawssh.scp import ScpFileInfo, ScpRecv, ScpSend
from rawssh.sftp import SFTP
from rawssh.transport import Transport

_HOSTKEY_HASHES = {
    HOSTKEY_HASH_MD5: hashlib.md5,
    HOSTKEY_HASH_SHA1: hashlib.sha1,
    HOSTKEY_HASH_SHA256: hashlib.sha256,
}


class SessionState(str, Enum):
    """Protocol progress of a session."""
    CREATED = "created"
    HANDSHAKING = "handshaking"
    NEGOTIATED = "negotiated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class AuthState(str, Enum):
    """Authentication progress. Only ever moves forward."""
    UNAUTHENTICATED = "unauthenticated"
    PARTIALLY_AUTHENTICATED = "partially-authenticated"
    AUTHENTICATED = "authenticated"


class Session:
    """
    One SSH connection.

    The session tracks the channels, SFTP roots and listeners it created
    through weak references only; free() invalidates whichever are still
    alive.
    """

    def __init__(
        self,
        transport: Transport,
        backend: Backend | None = None,
        config: SessionConfig | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        """
        Create a session over a connected transport.

        Args:
            transport: Transport handle, must not belong to another session
            backend: Protocol implementation (default: AsyncSSHBackend)
            config: Initial settings (default: taken from the transport)
            emitter: Observer for diagnostics (default: no-op)
        """
        if config is None:
            config = SessionConfig(
                blocking=transport.blocking,
                timeout_ms=transport.timeout_ms,
            )
        self._transport = transport
        self._config = config
        self._backend = backend if backend is not None else AsyncSSHBackend(config)
        self._emitter = emitter if emitter is not None else EventEmitter()

        self._state = SessionState.CREATED
        self._auth_state = AuthState.UNAUTHENTICATED
        self._freed = False
        self._last_error: tuple[int, str] = (ERROR_NONE, "")
        self._children: weakref.WeakSet[Any] = weakref.WeakSet()
        # Multi-step operations (SFTP startup, SCP setup) in progress
        self._pending: dict[tuple[Any, ...], Any] = {}
        self._owns_transport = transport.claim(self)

        self.set_blocking(config.blocking)
        self.set_timeout(config.timeout_ms)

    # ------------------------------------------------------------------
    # Properties and pure configuration
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def auth_state(self) -> AuthState:
        return self._auth_state

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    @property
    def freed(self) -> bool:
        return self._freed

    def fileno(self) -> int:
        return self._transport.fileno()

    def set_blocking(self, blocking: bool) -> None:
        """Switch between blocking and non-blocking mode."""
        self._transport.blocking = blocking
        self._config.blocking = bool(blocking)
        self._backend.set_blocking(bool(blocking))

    def get_blocking(self) -> bool:
        return self._transport.blocking

    def set_timeout(self, timeout_ms: int) -> None:
        """Bound blocking calls to timeout_ms milliseconds (0 = no bound)."""
        assert timeout_ms >= 0, f"timeout_ms must be non-negative, got {timeout_ms}"
        self._transport.timeout_ms = timeout_ms
        self._config.timeout_ms = timeout_ms
        self._backend.set_timeout(timeout_ms)

    def get_timeout(self) -> int:
        return self._transport.timeout_ms

    # ------------------------------------------------------------------
    # Error bookkeeping
    # ------------------------------------------------------------------

    def last_error(self) -> tuple[int, str]:
        """(code, message) of the immediately preceding call, (0, '') on success."""
        return self._last_error

    def last_errno(self) -> int:
        return self._last_error[0]

    def set_last_error(self, code: int, message: str = "") -> int:
        """Record an error on behalf of a layer built on this session."""
        self._last_error = (code, message or (code_name(code) if code else ""))
        return code

    def _fail(self, code: int, message: str, operation: str | None = None) -> int:
        """Record a locally detected failure without touching the backend."""
        self._last_error = (code, message)
        self._emitter.emit(
            EventType.ERROR,
            operation=operation,
            code=code,
            code_name=code_name(code),
            kind=classify(code).value,
            message=message,
        )
        return code

    def _result(self, rc: int, operation: str) -> int:
        """Record the outcome of a backend call and apply error propagation."""
        if rc >= 0:
            self._last_error = (ERROR_NONE, "")
            return rc

        message = self._backend.error_message() or code_name(rc)
        if rc == ERROR_EAGAIN:
            self._last_error = (rc, message)
            return rc

        self._fail(rc, message, operation)
        if is_fatal(rc) and self._state is not SessionState.CLOSED:
            self._state = SessionState.CLOSED
            self._emitter.emit(
                EventType.DISCONNECT,
                reason="fatal_error",
                operation=operation,
                code=rc,
            )
        return rc

    def _check(self, operation: str) -> int:
        """Fail calls on a freed or closed session."""
        if self._freed:
            return self._fail(ERROR_BAD_USE, "Session has been freed", operation)
        if self._state is SessionState.CLOSED:
            return self._fail(
                ERROR_SOCKET_DISCONNECT, "Session is closed", operation,
            )
        return ERROR_NONE

    def _check_authenticated(self, operation: str) -> int:
        rc = self._check(operation)
        if rc:
            return rc
        if self._auth_state is not AuthState.AUTHENTICATED:
            return self._fail(
                ERROR_BAD_USE,
                f"{operation} requires an authenticated session",
                operation,
            )
        return ERROR_NONE

    def _adopt(self, child: Any) -> None:
        self._children.add(child)

    # ------------------------------------------------------------------
    # Handshake and session-level information
    # ------------------------------------------------------------------

    def handshake(self) -> int:
        """
        Exchange versions, negotiate keys and verify the host key signature.

        Returns:
            0 on success, ERROR_EAGAIN to retry, or a fatal protocol/transport code
        """
        rc = self._check("handshake")
        if rc:
            return rc
        if not self._owns_transport:
            return self._fail(
                ERROR_BAD_USE,
                "Transport is owned by another session",
                "handshake",
            )
        if self._state not in (SessionState.CREATED, SessionState.HANDSHAKING):
            return self._fail(ERROR_BAD_USE, "Handshake already completed", "handshake")

        self._state = SessionState.HANDSHAKING
        rc = self._result(self._backend.handshake(self._transport.sock), "handshake")

        if rc == ERROR_NONE:
            self._state = SessionState.NEGOTIATED
            hostkey = self._backend.hostkey()
            self._emitter.emit(
                EventType.HANDSHAKE,
                status="success",
                banner=self._backend.banner(),
                hostkey_type=hostkey[1] if hostkey else None,
            )
        elif rc not in (ERROR_EAGAIN, ERROR_TIMEOUT):
            if self._state is not SessionState.CLOSED:
                self._state = SessionState.CLOSED
            self._emitter.emit(EventType.HANDSHAKE, status="failed", code=rc)
        return rc

    startup = handshake

    def disconnect(
        self,
        description: str = "Normal Shutdown",
        reason: int = DISCONNECT_BY_APPLICATION,
    ) -> int:
        """Send SSH_MSG_DISCONNECT. The session is closed afterwards."""
        rc = self._check("disconnect")
        if rc:
            return rc
        rc = self._result(self._backend.disconnect(reason, description), "disconnect")
        if rc == ERROR_NONE:
            self._state = SessionState.CLOSED
            self._emitter.emit(
                EventType.DISCONNECT, reason="disconnect", description=description,
            )
        return rc

    def free(self) -> int:
        """
        Release the session and invalidate everything it created.

        Later calls on the session (and on its surviving channels, SFTP
        roots and listeners) return ERROR_BAD_USE.
        """
        if self._freed:
            return self._fail(ERROR_BAD_USE, "Session has already been freed", "free")

        for child in list(self._children):
            child._invalidate()
        self._children = weakref.WeakSet()
        self._pending.clear()
        self._backend.free()
        self._transport.release(self)

        self._freed = True
        self._state = SessionState.CLOSED
        self._last_error = (ERROR_NONE, "")
        self._emitter.emit(EventType.DISCONNECT, reason="free")
        return ERROR_NONE

    def banner(self) -> str | None:
        """Remote identification string, e.g. 'SSH-2.0-OpenSSH_9.6'."""
        return self._backend.banner()

    def hostkey(self) -> tuple[bytes, str] | None:
        """Server host key as (blob, key type)."""
        return self._backend.hostkey()

    def hostkey_hash(self, hash_type: int = HOSTKEY_HASH_SHA256) -> bytes | None:
        """Digest of the server host key blob, None before the handshake."""
        assert hash_type in _HOSTKEY_HASHES, f"Unknown hash type: {hash_type}"
        hostkey = self._backend.hostkey()
        if hostkey is None:
            return None
        return _HOSTKEY_HASHES[hash_type](hostkey[0]).digest()

    def methods(self, method_type: int) -> str | None:
        """Algorithm negotiated for a METHOD_* type."""
        return self._backend.methods(method_type)

    def supported_algs(self, method_type: int) -> tuple[int, list[str]]:
        algs = self._backend.supported_algs(method_type)
        if not algs:
            return self._fail(ERROR_INVAL, f"Unknown method type {method_type}"), []
        return ERROR_NONE, algs

    def method_pref(self, method_type: int, prefs: str | list[str]) -> int:
        """Set algorithm preferences. Only valid before the handshake."""
        rc = self._check("method_pref")
        if rc:
            return rc
        if self._state is not SessionState.CREATED:
            return self._fail(
                ERROR_BAD_USE,
                "Method preferences must be set before the handshake",
                "method_pref",
            )
        if isinstance(prefs, str):
            prefs = [p.strip() for p in prefs.split(",") if p.strip()]
        rc = self._result(self._backend.method_pref(method_type, prefs), "method_pref")
        if rc == ERROR_NONE:
            self._config.method_prefs[method_type] = list(prefs)
        return rc

    def block_directions(self) -> int:
        """SESSION_BLOCK_* bits to wait on before retrying an incomplete call."""
        return self._backend.block_directions()

    def keepalive_config(self, want_reply: bool, interval: int) -> None:
        """Configure keepalives. interval is in seconds, 0 disables."""
        assert interval >= 0, f"interval must be non-negative, got {interval}"
        self._backend.keepalive_config(want_reply, interval)

    def keepalive_send(self) -> tuple[int, int]:
        """Send a keepalive if one is due. Returns (rc, seconds to next)."""
        rc = self._check("keepalive_send")
        if rc:
            return rc, 0
        rc, seconds = self._backend.keepalive_send()
        return self._result(rc, "keepalive_send"), seconds

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def userauth_authenticated(self) -> bool:
        return self._auth_state is AuthState.AUTHENTICATED

    def userauth_list(self, username: str) -> tuple[int, list[str]]:
        """
        Ask the server which methods it accepts for username.

        Servers that accept the 'none' method authenticate the session
        here; check userauth_authenticated() when the list is empty.
        """
        rc = self._check_auth_allowed("userauth_list")
        if rc:
            return rc, []
        rc, methods = self._backend.userauth_list(username)
        rc = self._result(rc, "userauth_list")
        if rc == ERROR_NONE and self._backend.userauth_authenticated():
            self._mark_authenticated("none", username)
        return rc, methods if rc == ERROR_NONE else []

    def _check_auth_allowed(self, operation: str) -> int:
        rc = self._check(operation)
        if rc:
            return rc
        if self._state in (SessionState.CREATED, SessionState.HANDSHAKING):
            return self._fail(
                ERROR_BAD_USE,
                "Authentication requires a completed handshake",
                operation,
            )
        if self._auth_state is AuthState.AUTHENTICATED:
            return self._fail(ERROR_BAD_USE, "Session is already authenticated", operation)
        return ERROR_NONE

    def _mark_authenticated(self, method: str, username: str) -> None:
        self._auth_state = AuthState.AUTHENTICATED
        self._state = SessionState.AUTHENTICATED
        self._emitter.emit(
            EventType.AUTH, status="success", method=method, username=username,
        )

    def _userauth(self, method: str, username: str, call: Callable[[], int]) -> int:
        """Run one authentication attempt through the state machine."""
        operation = f"userauth_{method}"
        rc = self._check_auth_allowed(operation)
        if rc:
            return rc

        self._state = SessionState.AUTHENTICATING
        rc = self._result(call(), operation)

        if rc == ERROR_NONE:
            self._mark_authenticated(method, username)
        elif rc != ERROR_EAGAIN and self._state is not SessionState.CLOSED:
            if self._backend.userauth_partial():
                self._auth_state = AuthState.PARTIALLY_AUTHENTICATED
            self._emitter.emit(
                EventType.AUTH,
                status="failed",
                method=method,
                username=username,
                code=rc,
                partial=self._auth_state is AuthState.PARTIALLY_AUTHENTICATED,
            )
        return rc

    def userauth_password(self, username: str, password: str) -> int:
        return self._userauth(
            "password",
            username,
            lambda: self._backend.userauth_password(username, password),
        )

    def userauth_publickey_fromfile(
        self,
        username: str,
        private_key_path: str,
        public_key_path: str | None = None,
        passphrase: str | None = None,
    ) -> int:
        """
        Authenticate with a private key file.

        ERROR_FILE is returned if the key cannot be read or decrypted.
        """
        private_path = str(expand_path(private_key_path))
        public_path = str(expand_path(public_key_path)) if public_key_path else None
        return self._userauth(
            "publickey",
            username,
            lambda: self._backend.userauth_publickey_fromfile(
                username, public_path, private_path, passphrase,
            ),
        )

    def userauth_publickey_frommemory(
        self,
        username: str,
        private_key: bytes | str,
        public_key: bytes | None = None,
        passphrase: str | None = None,
    ) -> int:
        if isinstance(private_key, str):
            private_key = private_key.encode("utf-8")
        return self._userauth(
            "publickey",
            username,
            lambda: self._backend.userauth_publickey_frommemory(
                username, public_key, private_key, passphrase,
            ),
        )

    def userauth_hostbased_fromfile(
        self,
        username: str,
        public_key_path: str,
        private_key_path: str,
        hostname: str,
        local_username: str | None = None,
        passphrase: str | None = None,
    ) -> int:
        local_username = local_username or getpass.getuser()
        public_path = str(expand_path(public_key_path))
        private_path = str(expand_path(private_key_path))
        return self._userauth(
            "hostbased",
            username,
            lambda: self._backend.userauth_hostbased_fromfile(
                username, public_path, private_path, passphrase,
                hostname, local_username,
            ),
        )

    def userauth_keyboard_interactive(
        self,
        username: str,
        responder: KbdintResponder,
    ) -> int:
        """
        Authenticate with keyboard-interactive challenges.

        The responder is called as responder(name, instructions, prompts)
        where prompts is a list of (prompt, echo) pairs, and returns one
        response string per prompt.
        """
        return self._userauth(
            "keyboard_interactive",
            username,
            lambda: self._backend.userauth_keyboard_interactive(username, responder),
        )

    def userauth_agent(self, agent: Agent, username: str, identity: Any) -> int:
        """Authenticate with a key held by an SSH agent (see Agent.userauth)."""
        return agent.userauth(username, identity)

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    def open_channel(
        self,
        kind: str = "session",
        window_size: int | None = None,
        packet_size: int | None = None,
        **params: Any,
    ) -> tuple[int, Channel | None]:
        """
        Open a channel of the given kind.

        Kinds:
            session: params unused
            direct-tcpip: host, port, shost ('127.0.0.1'), sport (22)

        Returns:
            (0, Channel), (ERROR_EAGAIN, None) or (error, None)
        """
        operation = f"open_channel({kind})"
        rc = self._check_authenticated(operation)
        if rc:
            return rc, None

        if kind == "session":
            rc, handle = self._backend.channel_open_session(
                window_size or self._config.window_size,
                packet_size or self._config.max_packet_size or CHANNEL_PACKET_DEFAULT,
            )
        elif kind == "direct-tcpip":
            if "host" not in params or "port" not in params:
                return self._fail(
                    ERROR_INVAL, "direct-tcpip requires host and port", operation,
                ), None
            rc, handle = self._backend.channel_direct_tcpip(
                params["host"],
                params["port"],
                params.get("shost", "127.0.0.1"),
                params.get("sport", 22),
            )
        else:
            return self._fail(ERROR_INVAL, f"Unknown channel kind {kind!r}", operation), None

        rc = self._result(rc, operation)
        if rc != ERROR_NONE:
            return rc, None

        channel = Channel(self, handle, kind)
        self._adopt(channel)
        self._emitter.emit(EventType.CHANNEL, action="open", kind=kind, **params)
        return ERROR_NONE, channel

    def open_session(self) -> tuple[int, Channel | None]:
        return self.open_channel("session")

    def direct_tcpip(
        self,
        host: str,
        port: int,
        shost: str = "127.0.0.1",
        sport: int = 22,
    ) -> tuple[int, Channel | None]:
        """Tunnel a TCP connection to host:port through the server."""
        return self.open_channel(
            "direct-tcpip", host=host, port=port, shost=shost, sport=sport,
        )

    def forward_listen(
        self,
        host: str = "",
        port: int = 0,
        queue_maxsize: int = 16,
    ) -> tuple[int, Listener | None]:
        """
        Ask the server to listen on host:port and forward connections here.

        Port 0 lets the server choose; see Listener.bound_port.
        """
        rc = self._check_authenticated("forward_listen")
        if rc:
            return rc, None
        rc, handle, bound_port = self._backend.forward_listen(host, port, queue_maxsize)
        rc = self._result(rc, "forward_listen")
        if rc != ERROR_NONE:
            return rc, None

        listener = Listener(self, handle, host, bound_port)
        self._adopt(listener)
        self._emitter.emit(
            EventType.FORWARD, action="listen", host=host, port=bound_port,
        )
        return ERROR_NONE, listener

    def sftp_init(self) -> tuple[int, SFTP | None]:
        """Start the SFTP subsystem. Retry with the same call on ERROR_EAGAIN."""
        rc = self._check_authenticated("sftp_init")
        if rc:
            return rc, None

        key = ("sftp_init",)
        sftp = self._pending.get(key)
        if sftp is None:
            sftp = self._pending[key] = SFTP(self)
        rc = sftp._startup()
        if rc == ERROR_EAGAIN:
            return rc, None
        del self._pending[key]
        if rc != ERROR_NONE:
            return rc, None

        self._adopt(sftp)
        self._emitter.emit(EventType.SFTP, action="init", version=sftp.version)
        return ERROR_NONE, sftp

    def scp_send(
        self,
        path: str,
        mode: int,
        size: int,
        mtime: int = 0,
        atime: int = 0,
    ) -> tuple[int, Channel | None]:
        """
        Start an SCP upload of size bytes to path.

        Write exactly size bytes to the returned channel, then a single
        NUL byte, then send_eof().
        """
        return self._scp(("scp_send", path, mode, size, mtime, atime),
                         lambda: ScpSend(self, path, mode, size, mtime, atime))[:2]

    def scp_recv(self, path: str) -> tuple[int, Channel | None, ScpFileInfo | None]:
        """
        Start an SCP download of path.

        Returns (rc, channel, ScpFileInfo). Read exactly info.size bytes
        from the channel.
        """
        return self._scp(("scp_recv", path), lambda: ScpRecv(self, path))

    def _scp(self, key: tuple[Any, ...], factory: Callable[[], Any]) -> tuple[int, Any, Any]:
        rc = self._check_authenticated(key[0])
        if rc:
            return rc, None, None
        transfer = self._pending.get(key)
        if transfer is None:
            transfer = self._pending[key] = factory()
        rc = transfer.step()
        if rc == ERROR_EAGAIN:
            return rc, None, None
        del self._pending[key]
        if rc != ERROR_NONE:
            return rc, None, None
        self._emitter.emit(EventType.SCP, action=key[0], path=key[1])
        return ERROR_NONE, transfer.channel, transfer.info

    def agent_init(self) -> Agent:
        """Create an Agent client bound to this session's backend."""
        return Agent(self)

    def knownhost_init(self) -> KnownHosts:
        """Create an empty known hosts store."""
        return KnownHosts()

    def __repr__(self) -> str:
        return f"<Session state={self._state.value} auth={self._auth_state.value}>"
