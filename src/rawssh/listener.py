"""
Remote port forward listener.

Created by Session.forward_listen(). The server listens on the requested
address and forwards each incoming TCP connection as a 'forwarded-tcpip'
channel, which accept() hands out one at a time.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rawssh.channel import Channel
from rawssh.codes import ERROR_BAD_USE, ERROR_NONE, is_fatal
from rawssh.events import EventType

if TYPE_CHECKING:
    from rawssh.session import Session


class Listener:
    """
    Usage:
        rc, listener = session.forward_listen("", 8080)
        rc, channel = listener.accept()
        if rc == 0 and channel is not None:
            ...
    """

    def __init__(self, session: "Session", handle: Any, host: str, bound_port: int) -> None:
        self._session = session
        self._handle = handle
        self._host = host
        self._bound_port = bound_port
        self._cancelled = False
        self._invalid = False

    @property
    def host(self) -> str:
        return self._host

    @property
    def bound_port(self) -> int:
        """Port the server actually listens on (useful when 0 was requested)."""
        return self._bound_port

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _invalidate(self) -> None:
        self._invalid = True

    def _check(self, operation: str) -> int:
        if self._invalid:
            return self._session._fail(
                ERROR_BAD_USE, "Listener belongs to a freed session", operation,
            )
        if self._cancelled:
            return self._session._fail(ERROR_BAD_USE, "Listener was cancelled", operation)
        return self._session._check(operation)

    def accept(self) -> tuple[int, Channel | None]:
        """
        Take the next forwarded connection.

        Returns:
            (0, Channel), (0, None) when no connection is pending,
            (ERROR_EAGAIN, None) to retry, or (error, None)
        """
        rc = self._check("forward_accept")
        if rc:
            return rc, None
        rc, handle = self._session.backend.forward_accept(self._handle)
        rc = self._session._result(rc, "forward_accept")
        if rc != ERROR_NONE or handle is None:
            return rc, None

        channel = Channel(self._session, handle, "forwarded-tcpip")
        self._session._adopt(channel)
        self._session.emitter.emit(
            EventType.FORWARD, action="accept", host=self._host, port=self._bound_port,
        )
        return ERROR_NONE, channel

    def cancel(self) -> int:
        """
        Stop listening. Connections already accepted stay open.

        After ERROR_EAGAIN, ERROR_TIMEOUT or a refused request the listener
        is still active and cancel() can be called again.
        """
        rc = self._check("forward_cancel")
        if rc:
            return rc
        rc = self._session._result(
            self._session.backend.forward_cancel(self._handle), "forward_cancel",
        )
        if rc == ERROR_NONE or is_fatal(rc):
            self._cancelled = True
            self._session.emitter.emit(
                EventType.FORWARD, action="cancel", host=self._host, port=self._bound_port,
            )
        return rc

    def __repr__(self) -> str:
        return f"<Listener {self._host or '*'}:{self._bound_port} cancelled={self._cancelled}>"
