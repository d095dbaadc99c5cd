"""
Transport handle: the connected socket a Session runs over.

The handle does no DNS resolution and no connecting; callers pass in a
socket they have already connected. It records the blocking mode and
timeout for the session and lets callers wait for readiness before
retrying an incomplete operation.
"""
from __future__ import annotations

import selectors
import socket
from typing import Any

from rawssh.codes import SESSION_BLOCK_INBOUND, SESSION_BLOCK_OUTBOUND


class Transport:
    """
    Exclusive owner of a connected socket.

    Usage:
        sock = socket.create_connection(("example.org", 22))
        transport = Transport(sock)
        session = Session(transport)
    """

    def __init__(
        self,
        sock: socket.socket,
        blocking: bool = True,
        timeout_ms: int = 0,
    ) -> None:
        assert hasattr(sock, "fileno"), f"Expected a socket, got {type(sock)}"
        assert timeout_ms >= 0, f"timeout_ms must be non-negative, got {timeout_ms}"
        self._sock = sock
        self._blocking = blocking
        self._timeout_ms = timeout_ms
        self._owner: Any = None

    @property
    def sock(self) -> socket.socket:
        return self._sock

    def fileno(self) -> int:
        return self._sock.fileno()

    @property
    def blocking(self) -> bool:
        return self._blocking

    @blocking.setter
    def blocking(self, value: bool) -> None:
        self._blocking = bool(value)

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    @timeout_ms.setter
    def timeout_ms(self, value: int) -> None:
        assert value >= 0, f"timeout_ms must be non-negative, got {value}"
        self._timeout_ms = value

    @property
    def owner(self) -> Any:
        return self._owner

    def claim(self, owner: Any) -> bool:
        """Bind the transport to one session. False if already bound elsewhere."""
        if self._owner is not None and self._owner is not owner:
            return False
        self._owner = owner
        return True

    def release(self, owner: Any) -> None:
        if self._owner is owner:
            self._owner = None

    def wait(self, directions: int, timeout_ms: int | None = None) -> int:
        """
        Wait until the socket is ready in any of the given directions.

        Args:
            directions: SESSION_BLOCK_* bits, usually Session.block_directions()
            timeout_ms: Wait bound, None uses the transport timeout (0 = forever)

        Returns:
            The SESSION_BLOCK_* bits that became ready, 0 on timeout
        """
        events = 0
        if directions & SESSION_BLOCK_INBOUND:
            events |= selectors.EVENT_READ
        if directions & SESSION_BLOCK_OUTBOUND:
            events |= selectors.EVENT_WRITE
        if not events:
            events = selectors.EVENT_READ

        if timeout_ms is None:
            timeout_ms = self._timeout_ms
        timeout = timeout_ms / 1000 if timeout_ms else None

        with selectors.DefaultSelector() as selector:
            selector.register(self._sock, events)
            ready = 0
            for _key, mask in selector.select(timeout):
                if mask & selectors.EVENT_READ:
                    ready |= SESSION_BLOCK_INBOUND
                if mask & selectors.EVENT_WRITE:
                    ready |= SESSION_BLOCK_OUTBOUND
        return ready

    def close(self) -> None:
        self._sock.close()
