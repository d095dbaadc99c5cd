"""
SSH channel: one multiplexed stream inside a session.

A channel carries an exec, shell or subsystem request (exactly one), plain
and extended data streams, and flow-control windows. Results follow the
session contract: raw codes, ERROR_EAGAIN to retry, nothing raised.

Window accounting:
- The send window shrinks as data is written and grows only when the peer
  sends a window adjust. write() never transfers more than the window.
- The receive window shrinks as data is delivered. The caller replenishes
  it with adjust_receive_window() as it drains data, otherwise the peer
  stops sending.
"""
from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

from rawssh.codes import (
    CHANNEL_FLUSH_ALL,
    ERROR_BAD_USE,
    ERROR_BUFFER_TOO_SMALL,
    ERROR_CHANNEL_CLOSED,
    ERROR_CHANNEL_EOF_SENT,
    ERROR_EAGAIN,
    ERROR_INVAL,
    ERROR_NONE,
    EXTENDED_DATA_IGNORE,
    EXTENDED_DATA_MERGE,
    EXTENDED_DATA_NORMAL,
    STREAM_DEFAULT,
    STREAM_STDERR,
)
from rawssh.events import EventType

if TYPE_CHECKING:
    from rawssh.session import Session

_PROCESS_REQUESTS = ("exec", "shell", "subsystem")


class ChannelState(str, Enum):
    """Local lifecycle of a channel."""
    OPEN = "open"
    CLOSED = "closed"
    FREED = "freed"


class Channel:
    """
    A channel created by Session.open_channel() or a Listener.

    Channels keep a strong reference to their session; the session only
    tracks channels weakly.
    """

    def __init__(self, session: "Session", handle: Any, kind: str = "session") -> None:
        self._session = session
        self._handle = handle
        self._kind = kind
        self._state = ChannelState.OPEN
        self._invalid = False
        self._eof_sent = False
        self._remote_closed = False
        self._extended_mode = EXTENDED_DATA_NORMAL
        # (request, message) of the exec/shell/subsystem request
        self._process: tuple[str, str | None] | None = None
        self._process_started = False
        self._exit_status = 0
        self._exit_signal: tuple[str | None, str | None, str | None] = (None, None, None)

    @property
    def session(self) -> "Session":
        return self._session

    @property
    def handle(self) -> Any:
        return self._handle

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def process(self) -> str | None:
        """The exec/shell/subsystem request this channel runs, once accepted."""
        if self._process_started and self._process:
            return self._process[0]
        return None

    @property
    def extended_data_mode(self) -> int:
        return self._extended_mode

    @property
    def remote_closed(self) -> bool:
        """True once wait_closed() has seen the peer's close."""
        return self._remote_closed

    def _invalidate(self) -> None:
        """Called when the owning session is freed."""
        self._refresh_exit_info()
        self._invalid = True

    def _usable(self) -> bool:
        return not self._invalid and self._state is not ChannelState.FREED

    def _check(self, operation: str, open_required: bool = False) -> int:
        if self._state is ChannelState.FREED:
            return self._session._fail(ERROR_BAD_USE, "Channel has been freed", operation)
        if self._invalid:
            return self._session._fail(
                ERROR_BAD_USE, "Channel belongs to a freed session", operation,
            )
        rc = self._session._check(operation)
        if rc:
            return rc
        if open_required and self._state is ChannelState.CLOSED:
            return self._session._fail(ERROR_CHANNEL_CLOSED, "Channel is closed", operation)
        return ERROR_NONE

    def _call(self, operation: str, rc: int) -> int:
        return self._session._result(rc, operation)

    def _refresh_exit_info(self) -> None:
        if not self._usable():
            return
        backend = self._session.backend
        status = backend.channel_exit_status(self._handle)
        if status is not None:
            self._exit_status = status
        signal = backend.channel_exit_signal(self._handle)
        if signal[0] is not None:
            self._exit_signal = signal

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _before_process(self, operation: str) -> int:
        rc = self._check(operation, open_required=True)
        if rc:
            return rc
        if self._process_started:
            return self._session._fail(
                ERROR_BAD_USE,
                f"{operation} must precede exec, shell or subsystem",
                operation,
            )
        return ERROR_NONE

    def request_pty(
        self,
        term: str = "vanilla",
        modes: bytes = b"",
        width: int = 80,
        height: int = 24,
        width_px: int = 0,
        height_px: int = 0,
    ) -> int:
        """Request a pseudo terminal. Must precede the process request."""
        rc = self._before_process("request_pty")
        if rc:
            return rc
        return self._call("request_pty", self._session.backend.channel_request_pty(
            self._handle, term, modes, width, height, width_px, height_px,
        ))

    def pty_size(
        self, width: int, height: int, width_px: int = 0, height_px: int = 0,
    ) -> int:
        rc = self._check("pty_size", open_required=True)
        if rc:
            return rc
        return self._call("pty_size", self._session.backend.channel_pty_size(
            self._handle, width, height, width_px, height_px,
        ))

    def setenv(self, name: str, value: str) -> int:
        rc = self._before_process("setenv")
        if rc:
            return rc
        return self._call(
            "setenv", self._session.backend.channel_setenv(self._handle, name, value),
        )

    def x11_req(
        self,
        screen: int = 0,
        single_connection: bool = False,
        auth_proto: str | None = None,
        auth_cookie: str | None = None,
    ) -> int:
        """Request X11 forwarding for this channel."""
        rc = self._before_process("x11_req")
        if rc:
            return rc
        return self._call("x11_req", self._session.backend.channel_x11_req(
            self._handle, single_connection, auth_proto, auth_cookie, screen,
        ))

    def request_auth_agent(self) -> int:
        """Request agent forwarding for this channel."""
        rc = self._before_process("request_auth_agent")
        if rc:
            return rc
        return self._call(
            "request_auth_agent",
            self._session.backend.channel_request_auth_agent(self._handle),
        )

    def process_startup(self, request: str, message: str | None = None) -> int:
        """
        Send an exec, shell or subsystem request.

        A channel accepts exactly one of these. Retrying the same request
        after ERROR_EAGAIN resumes it; any other process request on the
        channel returns ERROR_BAD_USE.
        """
        operation = f"channel_{request}"
        if request not in _PROCESS_REQUESTS:
            return self._session._fail(
                ERROR_INVAL, f"Unknown process request {request!r}", operation,
            )
        rc = self._check(operation, open_required=True)
        if rc:
            return rc

        key = (request, message)
        if self._process_started or (self._process is not None and self._process != key):
            return self._session._fail(
                ERROR_BAD_USE,
                f"Channel already runs {self._process[0] if self._process else 'a process'}",
                operation,
            )

        self._process = key
        rc = self._call(
            operation,
            self._session.backend.channel_process_startup(self._handle, request, message),
        )
        if rc == ERROR_NONE:
            self._process_started = True
            self._session.emitter.emit(
                EventType.CHANNEL, action="start", request=request, message=message,
            )
        elif rc != ERROR_EAGAIN:
            # Denied: the channel may carry a different request
            self._process = None
        return rc

    def execute(self, command: str) -> int:
        return self.process_startup("exec", command)

    def shell(self) -> int:
        return self.process_startup("shell")

    def subsystem(self, name: str) -> int:
        return self.process_startup("subsystem", name)

    def signal(self, signame: str) -> int:
        """Deliver a signal (without the SIG prefix, e.g. 'TERM') to the process."""
        rc = self._check("signal", open_required=True)
        if rc:
            return rc
        return self._call(
            "signal", self._session.backend.channel_signal(self._handle, signame),
        )

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    def read(self, buffer: bytearray | memoryview, stream_id: int = STREAM_DEFAULT) -> tuple[int, int]:
        """
        Read into buffer from a stream.

        Returns:
            (0, n) with n > 0 when data was read, (0, 0) at end of stream,
            (ERROR_EAGAIN, 0) to retry, or (error, 0)
        """
        rc = self._check("channel_read")
        if rc:
            return rc, 0
        view = memoryview(buffer)
        if len(view) == 0:
            return self._session._fail(
                ERROR_BUFFER_TOO_SMALL, "Read buffer is empty", "channel_read",
            ), 0

        rc, data = self._session.backend.channel_read(self._handle, stream_id, len(view))
        rc = self._call("channel_read", rc)
        if rc < 0:
            return rc, 0
        n = len(data)
        assert n <= len(view), f"Backend returned {n} bytes for a {len(view)} byte buffer"
        view[:n] = data
        if n == 0:
            self._refresh_exit_info()
        return ERROR_NONE, n

    def recv(self, size: int, stream_id: int = STREAM_DEFAULT) -> tuple[int, bytes]:
        """Like read() but returns the bytes. (0, b'') means end of stream."""
        buffer = bytearray(max(size, 0))
        rc, n = self.read(buffer, stream_id)
        return rc, bytes(buffer[:n])

    def read_stderr(self, buffer: bytearray | memoryview) -> tuple[int, int]:
        return self.read(buffer, STREAM_STDERR)

    def write(self, data: bytes, stream_id: int = STREAM_DEFAULT) -> tuple[int, int]:
        """
        Write as much of data as the send window allows.

        Returns:
            (0, n) with n <= len(data), (ERROR_EAGAIN, 0) to retry once the
            peer grants more window, or (error, 0)
        """
        rc = self._check("channel_write", open_required=True)
        if rc:
            return rc, 0
        if self._eof_sent:
            return self._session._fail(
                ERROR_CHANNEL_EOF_SENT, "EOF already sent on channel", "channel_write",
            ), 0
        if not data:
            return self._session._result(ERROR_NONE, "channel_write"), 0

        window, _initial = self._session.backend.channel_window_write(self._handle)
        chunk = bytes(data[:window]) if window > 0 else bytes(data)
        rc = self._call(
            "channel_write",
            self._session.backend.channel_write(self._handle, stream_id, chunk),
        )
        if rc < 0:
            return rc, 0
        assert rc <= len(data), f"Backend wrote {rc} bytes of {len(data)}"
        return ERROR_NONE, rc

    def write_stderr(self, data: bytes) -> tuple[int, int]:
        return self.write(data, STREAM_STDERR)

    def flush(self, stream_id: int = CHANNEL_FLUSH_ALL) -> int:
        """
        Discard unread inbound data.

        stream_id is a stream number, CHANNEL_FLUSH_EXTENDED_DATA or
        CHANNEL_FLUSH_ALL. Returns the number of bytes discarded.
        """
        rc = self._check("channel_flush")
        if rc:
            return rc
        if stream_id < CHANNEL_FLUSH_ALL:
            return self._session._fail(ERROR_INVAL, f"Bad stream id {stream_id}", "channel_flush")
        return self._call(
            "channel_flush", self._session.backend.channel_flush(self._handle, stream_id),
        )

    def handle_extended_data(self, mode: int) -> int:
        """
        Choose how extended data (stderr) is delivered.

        EXTENDED_DATA_NORMAL keeps it as its own stream, EXTENDED_DATA_MERGE
        folds it into the default stream, EXTENDED_DATA_IGNORE discards it.
        """
        if mode not in (EXTENDED_DATA_NORMAL, EXTENDED_DATA_IGNORE, EXTENDED_DATA_MERGE):
            return self._session._fail(
                ERROR_INVAL, f"Unknown extended data mode {mode}", "handle_extended_data",
            )
        rc = self._check("handle_extended_data")
        if rc:
            return rc
        rc = self._call(
            "handle_extended_data",
            self._session.backend.channel_handle_extended_data(self._handle, mode),
        )
        if rc == ERROR_NONE:
            self._extended_mode = mode
        return rc

    # ------------------------------------------------------------------
    # Flow control
    # ------------------------------------------------------------------

    def window_read(self) -> tuple[int, int, int]:
        """(receive window, bytes waiting to be read, initial receive window)."""
        if not self._usable():
            return 0, 0, 0
        return self._session.backend.channel_window_read(self._handle)

    def window_write(self) -> tuple[int, int]:
        """(send window, initial send window)."""
        if not self._usable():
            return 0, 0
        return self._session.backend.channel_window_write(self._handle)

    def adjust_receive_window(self, adjustment: int, force: bool = False) -> tuple[int, int]:
        """
        Grant the peer adjustment more bytes of send credit.

        Returns:
            (rc, receive window after the adjustment)
        """
        if adjustment < 0:
            return self._session._fail(
                ERROR_INVAL, "Window adjustment must be non-negative",
                "adjust_receive_window",
            ), 0
        rc = self._check("adjust_receive_window", open_required=True)
        if rc:
            return rc, 0
        rc, window = self._session.backend.channel_receive_window_adjust(
            self._handle, adjustment, force,
        )
        return self._call("adjust_receive_window", rc), window

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def eof(self) -> bool:
        """True once the peer has sent EOF. No side effects."""
        if not self._usable():
            return True
        return self._session.backend.channel_eof(self._handle)

    def send_eof(self) -> int:
        rc = self._check("send_eof", open_required=True)
        if rc:
            return rc
        if self._eof_sent:
            return self._session._result(ERROR_NONE, "send_eof")
        rc = self._call("send_eof", self._session.backend.channel_send_eof(self._handle))
        if rc == ERROR_NONE:
            self._eof_sent = True
        return rc

    def wait_eof(self) -> int:
        """Wait for the peer's EOF (ERROR_EAGAIN until it arrives in non-blocking mode)."""
        rc = self._check("wait_eof")
        if rc:
            return rc
        rc = self._call("wait_eof", self._session.backend.channel_wait_eof(self._handle))
        if rc == ERROR_NONE:
            self._refresh_exit_info()
        return rc

    def close(self) -> int:
        """Send a channel close. Safe to retry after ERROR_EAGAIN."""
        rc = self._check("channel_close")
        if rc:
            return rc
        if self._state is ChannelState.CLOSED:
            return self._session._result(ERROR_NONE, "channel_close")
        rc = self._call("channel_close", self._session.backend.channel_close(self._handle))
        if rc == ERROR_NONE:
            self._state = ChannelState.CLOSED
            self._eof_sent = True
            self._refresh_exit_info()
            self._session.emitter.emit(
                EventType.CHANNEL,
                action="close",
                kind=self._kind,
                exit_status=self._exit_status,
            )
        return rc

    def wait_closed(self) -> int:
        """Wait for the peer's close after close() succeeded."""
        rc = self._check("wait_closed")
        if rc:
            return rc
        if self._state is not ChannelState.CLOSED:
            return self._session._fail(
                ERROR_BAD_USE, "wait_closed requires close() first", "wait_closed",
            )
        rc = self._call("wait_closed", self._session.backend.channel_wait_closed(self._handle))
        if rc == ERROR_NONE:
            self._remote_closed = True
            self._refresh_exit_info()
        return rc

    def free(self) -> int:
        """Release the channel. Any later call on it returns ERROR_BAD_USE."""
        if self._state is ChannelState.FREED:
            return self._session._fail(ERROR_BAD_USE, "Channel has already been freed", "channel_free")
        if self._invalid:
            # The session already released everything
            self._state = ChannelState.FREED
            return self._session._result(ERROR_NONE, "channel_free")
        rc = self._session._check("channel_free")
        if rc == ERROR_NONE:
            self._refresh_exit_info()
            rc = self._call("channel_free", self._session.backend.channel_free(self._handle))
            if rc == ERROR_EAGAIN:
                return rc
        # The handle is released locally even if the peer could not be told
        self._state = ChannelState.FREED
        self._session.emitter.emit(EventType.CHANNEL, action="free", kind=self._kind)
        return rc

    # ------------------------------------------------------------------
    # Exit information
    # ------------------------------------------------------------------

    def get_exit_status(self) -> int:
        """
        Exit status of the remote process.

        Meaningful only after the peer sent EOF or closed the channel.
        Before that, or if the peer never sent one, the last known value
        is returned (0 initially). Never an error.
        """
        self._refresh_exit_info()
        return self._exit_status

    def get_exit_signal(self) -> tuple[str | None, str | None, str | None]:
        """(signal name, error message, language tag) if the process was killed."""
        self._refresh_exit_info()
        return self._exit_signal

    def __repr__(self) -> str:
        return f"<Channel kind={self._kind} state={self._state.value}>"
