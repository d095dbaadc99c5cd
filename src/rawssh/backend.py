"""
Capability interface to an SSH protocol implementation.

Each method corresponds to exactly one native operation and returns its raw
code (or a tuple whose first element is the code). ERROR_EAGAIN is a normal
return value. Implementations must make a repeated call with the same
arguments resume the pending operation rather than start another one.

Handles (channels, listeners, agents) are opaque objects owned by the
backend; the core only passes them back.

Implementations:
- rawssh.asyncssh_backend.AsyncSSHBackend: asyncssh driven on a private loop
- rawssh.testing.FakeBackend: scripted in-memory peer for tests
"""
from __future__ import annotations

import socket
from abc import ABC, abstractmethod
from typing import Any, Callable

# (name, instructions, prompts) -> responses
KbdintResponder = Callable[[str, str, list[tuple[str, bool]]], list[str]]


class Backend(ABC):
    """One native SSH session."""

    # Session

    @abstractmethod
    def set_blocking(self, blocking: bool) -> None: ...

    @abstractmethod
    def set_timeout(self, timeout_ms: int) -> None: ...

    @abstractmethod
    def handshake(self, sock: socket.socket) -> int:
        """Version exchange, key exchange and host key negotiation."""

    @abstractmethod
    def disconnect(self, reason: int, description: str) -> int: ...

    @abstractmethod
    def free(self) -> int:
        """Release everything. Must not fail and must not block."""

    @abstractmethod
    def error_message(self) -> str:
        """Human readable detail for the most recent failing call."""

    @abstractmethod
    def banner(self) -> str | None:
        """Remote identification string, None before the handshake."""

    @abstractmethod
    def hostkey(self) -> tuple[bytes, str] | None:
        """Server host key blob and key type, None before the handshake."""

    @abstractmethod
    def methods(self, method_type: int) -> str | None:
        """Negotiated algorithm for a METHOD_* type."""

    @abstractmethod
    def supported_algs(self, method_type: int) -> list[str]: ...

    @abstractmethod
    def method_pref(self, method_type: int, prefs: list[str]) -> int: ...

    @abstractmethod
    def block_directions(self) -> int:
        """SESSION_BLOCK_* bits the last incomplete call was waiting on."""

    @abstractmethod
    def keepalive_config(self, want_reply: bool, interval: int) -> None: ...

    @abstractmethod
    def keepalive_send(self) -> tuple[int, int]:
        """Send a keepalive if due. Returns (rc, seconds until next)."""

    # Authentication

    @abstractmethod
    def userauth_list(self, username: str) -> tuple[int, list[str]]: ...

    @abstractmethod
    def userauth_authenticated(self) -> bool: ...

    @abstractmethod
    def userauth_partial(self) -> bool:
        """True if the last failing method was a partial success."""

    @abstractmethod
    def userauth_password(self, username: str, password: str) -> int: ...

    @abstractmethod
    def userauth_publickey_fromfile(
        self,
        username: str,
        public_key_path: str | None,
        private_key_path: str,
        passphrase: str | None,
    ) -> int: ...

    @abstractmethod
    def userauth_publickey_frommemory(
        self,
        username: str,
        public_key: bytes | None,
        private_key: bytes,
        passphrase: str | None,
    ) -> int: ...

    @abstractmethod
    def userauth_hostbased_fromfile(
        self,
        username: str,
        public_key_path: str,
        private_key_path: str,
        passphrase: str | None,
        hostname: str,
        local_username: str,
    ) -> int: ...

    @abstractmethod
    def userauth_keyboard_interactive(
        self,
        username: str,
        responder: KbdintResponder,
    ) -> int: ...

    # Channels

    @abstractmethod
    def channel_open_session(
        self, window_size: int, packet_size: int,
    ) -> tuple[int, Any]: ...

    @abstractmethod
    def channel_direct_tcpip(
        self, host: str, port: int, shost: str, sport: int,
    ) -> tuple[int, Any]: ...

    @abstractmethod
    def channel_request_pty(
        self,
        channel: Any,
        term: str,
        modes: bytes,
        width: int,
        height: int,
        width_px: int,
        height_px: int,
    ) -> int: ...

    @abstractmethod
    def channel_pty_size(
        self, channel: Any, width: int, height: int, width_px: int, height_px: int,
    ) -> int: ...

    @abstractmethod
    def channel_setenv(self, channel: Any, name: str, value: str) -> int: ...

    @abstractmethod
    def channel_x11_req(
        self,
        channel: Any,
        single_connection: bool,
        auth_proto: str | None,
        auth_cookie: str | None,
        screen: int,
    ) -> int: ...

    @abstractmethod
    def channel_request_auth_agent(self, channel: Any) -> int: ...

    @abstractmethod
    def channel_process_startup(
        self, channel: Any, request: str, message: str | None,
    ) -> int:
        """Send an 'exec', 'shell' or 'subsystem' request."""

    @abstractmethod
    def channel_signal(self, channel: Any, signame: str) -> int: ...

    @abstractmethod
    def channel_read(
        self, channel: Any, stream_id: int, size: int,
    ) -> tuple[int, bytes]:
        """Read up to size bytes. (0, b'') means end of stream."""

    @abstractmethod
    def channel_write(self, channel: Any, stream_id: int, data: bytes) -> int:
        """Write some prefix of data. Returns bytes written or an error."""

    @abstractmethod
    def channel_flush(self, channel: Any, stream_id: int) -> int:
        """Discard unread inbound data. Returns bytes discarded."""

    @abstractmethod
    def channel_window_read(self, channel: Any) -> tuple[int, int, int]:
        """(receive window, bytes available to read, initial window)."""

    @abstractmethod
    def channel_window_write(self, channel: Any) -> tuple[int, int]:
        """(send window, initial window)."""

    @abstractmethod
    def channel_receive_window_adjust(
        self, channel: Any, adjustment: int, force: bool,
    ) -> tuple[int, int]:
        """Grant the peer more credit. Returns (rc, new receive window)."""

    @abstractmethod
    def channel_handle_extended_data(self, channel: Any, mode: int) -> int: ...

    @abstractmethod
    def channel_eof(self, channel: Any) -> bool: ...

    @abstractmethod
    def channel_send_eof(self, channel: Any) -> int: ...

    @abstractmethod
    def channel_wait_eof(self, channel: Any) -> int: ...

    @abstractmethod
    def channel_close(self, channel: Any) -> int: ...

    @abstractmethod
    def channel_wait_closed(self, channel: Any) -> int: ...

    @abstractmethod
    def channel_free(self, channel: Any) -> int: ...

    @abstractmethod
    def channel_exit_status(self, channel: Any) -> int | None:
        """Exit status reported by the peer so far, None if none yet."""

    @abstractmethod
    def channel_exit_signal(
        self, channel: Any,
    ) -> tuple[str | None, str | None, str | None]:
        """(signal name, error message, language tag)."""

    # Port forwarding

    @abstractmethod
    def forward_listen(
        self, host: str, port: int, queue_maxsize: int,
    ) -> tuple[int, Any, int]:
        """Returns (rc, listener handle, bound port)."""

    @abstractmethod
    def forward_accept(self, listener: Any) -> tuple[int, Any]:
        """Returns (0, channel), (0, None) if none pending, or (rc, None)."""

    @abstractmethod
    def forward_cancel(self, listener: Any) -> int: ...

    # Agent

    @abstractmethod
    def agent_connect(self, path: str | None) -> tuple[int, Any]: ...

    @abstractmethod
    def agent_list_identities(
        self, agent: Any,
    ) -> tuple[int, list[tuple[bytes, str]]]:
        """Returns (rc, [(public key blob, comment), ...])."""

    @abstractmethod
    def agent_userauth(self, agent: Any, username: str, key_blob: bytes) -> int: ...

    @abstractmethod
    def agent_disconnect(self, agent: Any) -> int: ...
