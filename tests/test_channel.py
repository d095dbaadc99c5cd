"""
Tests for channels over the fake backend.

Tests cover:
- exec/shell/subsystem: exactly one per channel, resumable after EAGAIN
- Reading, EOF and exit status reporting
- Send and receive window accounting
- Extended data modes and flushing
- Request ordering, shutdown and misuse after close/free
"""
from __future__ import annotations

from rawssh.channel import Channel, ChannelState
from rawssh.codes import (
    CHANNEL_FLUSH_EXTENDED_DATA,
    ERROR_BAD_USE,
    ERROR_BUFFER_TOO_SMALL,
    ERROR_CHANNEL_CLOSED,
    ERROR_CHANNEL_EOF_SENT,
    ERROR_CHANNEL_REQUEST_DENIED,
    ERROR_EAGAIN,
    ERROR_INVAL,
    ERROR_NONE,
    EXTENDED_DATA_IGNORE,
    EXTENDED_DATA_MERGE,
    SESSION_BLOCK_INBOUND,
    SESSION_BLOCK_OUTBOUND,
    STREAM_STDERR,
)
from rawssh.session import Session
from rawssh.testing.fake_backend import FakeBackend, FakeServerConfig
from rawssh.testing.fake_peer import FakeCommand


def _open(session: Session, **kwargs: object) -> Channel:
    rc, channel = session.open_channel("session", **kwargs)
    assert rc == ERROR_NONE, session.last_error()
    return channel


def _read_all(channel: Channel, stream_id: int = 0) -> bytes:
    chunks = []
    while True:
        rc, data = channel.recv(4096, stream_id)
        assert rc == ERROR_NONE, channel.session.last_error()
        if not data:
            return b"".join(chunks)
        chunks.append(data)


class TestProcessStartup:
    """Test the exec/shell/subsystem request."""

    def test_exec_output_and_status(self, session: Session) -> None:
        channel = _open(session)
        assert channel.execute("echo hello") == ERROR_NONE
        assert channel.process == "exec"

        assert _read_all(channel) == b"hello\n"
        assert channel.eof()
        assert channel.get_exit_status() == 0
        assert channel.get_exit_signal() == (None, None, None)

    def test_false_reports_status_after_eof(self, session: Session) -> None:
        """Poll for EOF without reading, then fetch the status."""
        session.set_blocking(False)
        channel = _open(session)
        assert channel.execute("false") == ERROR_NONE
        while not channel.eof():
            pass
        assert channel.get_exit_status() == 1

    def test_exit_status_before_exit(self, session: Session) -> None:
        channel = _open(session)
        channel.execute("sleep 60")
        assert channel.get_exit_status() == 0
        assert not channel.eof()

    def test_signal(self, session: Session) -> None:
        channel = _open(session)
        channel.execute("sleep 60")
        assert channel.signal("TERM") == ERROR_NONE
        assert channel.handle.signals == ["TERM"]
        assert channel.wait_eof() == ERROR_NONE
        assert channel.get_exit_signal()[0] == "TERM"

    def test_only_one_process_request(self, session: Session) -> None:
        channel = _open(session)
        assert channel.shell() == ERROR_NONE
        assert channel.execute("true") == ERROR_BAD_USE
        assert channel.subsystem("sftp") == ERROR_BAD_USE
        assert channel.process == "shell"

    def test_unknown_request(self, session: Session) -> None:
        channel = _open(session)
        assert channel.process_startup("login") == ERROR_INVAL

    def test_denied_request_allows_another(self, session: Session) -> None:
        channel = _open(session)
        assert channel.subsystem("netconf") == ERROR_CHANNEL_REQUEST_DENIED
        assert channel.process is None
        assert channel.execute("true") == ERROR_NONE

    def test_resume_after_eagain(self, session: Session, fake_backend: FakeBackend) -> None:
        session.set_blocking(False)
        channel = _open(session)
        fake_backend.stall("channel_process_startup")

        assert channel.execute("echo once") == ERROR_EAGAIN
        assert channel.execute("echo other") == ERROR_BAD_USE
        assert channel.execute("echo once") == ERROR_NONE
        assert fake_backend.calls.count("channel_process_startup") == 2
        assert _read_all(channel) == b"once\n"

    def test_command_not_found(self, session: Session) -> None:
        channel = _open(session)
        channel.execute("frobnicate --all")
        assert _read_all(channel, STREAM_STDERR) == b"sh: frobnicate: command not found\n"
        assert channel.get_exit_status() == 127

    def test_canned_command(self, session: Session, fake_config: FakeServerConfig) -> None:
        fake_config.commands["uptime"] = FakeCommand(stdout=b"up 3 days\n", exit_status=0)
        channel = _open(session)
        channel.execute("uptime")
        assert _read_all(channel) == b"up 3 days\n"


class TestRequests:
    """Test requests that precede the process request."""

    def test_pty_env_agent(self, session: Session) -> None:
        channel = _open(session)
        assert channel.request_pty("xterm", width=120, height=40) == ERROR_NONE
        assert channel.setenv("LANG", "C.UTF-8") == ERROR_NONE
        assert channel.request_auth_agent() == ERROR_NONE
        assert channel.shell() == ERROR_NONE

        handle = channel.handle
        assert handle.pty == ("xterm", b"", (120, 40, 0, 0))
        assert handle.env == {"LANG": "C.UTF-8"}
        assert handle.agent_forwarding

    def test_requests_after_start(self, session: Session) -> None:
        channel = _open(session)
        channel.shell()
        assert channel.request_pty() == ERROR_BAD_USE
        assert channel.setenv("LANG", "C") == ERROR_BAD_USE
        # Resizing is allowed at any time
        assert channel.pty_size(100, 30) == ERROR_NONE
        assert channel.handle.pty_sizes == [(100, 30, 0, 0)]

    def test_denied_requests(self, session: Session, fake_config: FakeServerConfig) -> None:
        fake_config.allow_pty = False
        channel = _open(session)
        assert channel.setenv("SECRET", "x") == ERROR_CHANNEL_REQUEST_DENIED
        assert channel.x11_req() == ERROR_CHANNEL_REQUEST_DENIED
        assert channel.request_pty() == ERROR_CHANNEL_REQUEST_DENIED
        # Denials leave the channel usable
        assert channel.execute("true") == ERROR_NONE

    def test_x11_allowed(self, session: Session, fake_config: FakeServerConfig) -> None:
        fake_config.allow_x11 = True
        channel = _open(session)
        assert channel.x11_req(screen=1, auth_proto="MIT-MAGIC-COOKIE-1", auth_cookie="ab") == 0
        assert channel.handle.x11 == (False, "MIT-MAGIC-COOKIE-1", "ab", 1)


class TestWindows:
    """Test flow-control accounting."""

    def test_write_clamped_to_send_window(
        self,
        session: Session,
        fake_config: FakeServerConfig,
        fake_backend: FakeBackend,
    ) -> None:
        fake_config.window_size = 10
        fake_config.auto_window_adjust = False
        session.set_blocking(False)
        channel = _open(session)
        channel.execute("cat")

        assert channel.window_write() == (10, 10)
        assert channel.write(b"x" * 25) == (ERROR_NONE, 10)
        assert channel.window_write() == (0, 10)
        assert channel.write(b"x" * 15) == (ERROR_EAGAIN, 0)
        assert session.block_directions() == SESSION_BLOCK_OUTBOUND

        fake_backend.grant_window(channel.handle, 5)
        assert channel.write(b"y" * 15) == (ERROR_NONE, 5)
        assert bytes(channel.handle.written[0]) == b"x" * 10 + b"y" * 5

    def test_receive_window_limits_delivery(self, session: Session) -> None:
        session.set_blocking(False)
        channel = _open(session, window_size=8)
        channel.execute("cat")
        channel.write(b"0123456789abcdef")

        assert channel.recv(100) == (ERROR_NONE, b"01234567")
        assert channel.recv(100) == (ERROR_EAGAIN, b"")
        assert session.block_directions() == SESSION_BLOCK_INBOUND
        assert channel.window_read() == (0, 0, 8)

        # Small adjustments are queued until forced
        assert channel.adjust_receive_window(100) == (ERROR_NONE, 0)
        assert channel.adjust_receive_window(0, force=True) == (ERROR_NONE, 92)
        assert channel.recv(100) == (ERROR_NONE, b"89abcdef")

    def test_negative_adjustment(self, session: Session) -> None:
        channel = _open(session)
        assert channel.adjust_receive_window(-1)[0] == ERROR_INVAL


class TestStreams:
    def test_stderr_separate(self, session: Session, fake_config: FakeServerConfig) -> None:
        fake_config.commands["both"] = FakeCommand(stdout=b"out", stderr=b"err")
        channel = _open(session)
        channel.execute("both")
        buffer = bytearray(16)
        assert channel.read_stderr(buffer) == (ERROR_NONE, 3)
        assert bytes(buffer[:3]) == b"err"
        assert _read_all(channel) == b"out"

    def test_merge(self, session: Session, fake_config: FakeServerConfig) -> None:
        fake_config.commands["both"] = FakeCommand(stdout=b"out", stderr=b"err")
        channel = _open(session)
        assert channel.handle_extended_data(EXTENDED_DATA_MERGE) == ERROR_NONE
        channel.execute("both")
        assert _read_all(channel) == b"outerr"
        assert channel.extended_data_mode == EXTENDED_DATA_MERGE

    def test_ignore(self, session: Session, fake_config: FakeServerConfig) -> None:
        fake_config.commands["both"] = FakeCommand(stdout=b"out", stderr=b"err")
        channel = _open(session)
        channel.handle_extended_data(EXTENDED_DATA_IGNORE)
        channel.execute("both")
        assert _read_all(channel) == b"out"
        assert _read_all(channel, STREAM_STDERR) == b""

    def test_bad_mode(self, session: Session) -> None:
        channel = _open(session)
        assert channel.handle_extended_data(7) == ERROR_INVAL

    def test_flush_extended(self, session: Session, fake_config: FakeServerConfig) -> None:
        fake_config.commands["both"] = FakeCommand(stdout=b"out", stderr=b"error")
        channel = _open(session)
        channel.execute("both")
        assert channel.flush(CHANNEL_FLUSH_EXTENDED_DATA) == 5
        assert _read_all(channel) == b"out"

    def test_empty_buffer(self, session: Session) -> None:
        channel = _open(session)
        assert channel.read(bytearray()) == (ERROR_BUFFER_TOO_SMALL, 0)

    def test_nonblocking_read_without_data(self, session: Session) -> None:
        session.set_blocking(False)
        channel = _open(session)
        channel.execute("sleep 60")
        assert channel.recv(10) == (ERROR_EAGAIN, b"")


class TestShutdown:
    def test_send_eof_ends_cat(self, session: Session) -> None:
        channel = _open(session)
        channel.execute("cat")
        assert channel.write(b"ping") == (ERROR_NONE, 4)
        assert channel.send_eof() == ERROR_NONE
        assert channel.write(b"more") == (ERROR_CHANNEL_EOF_SENT, 0)
        assert channel.wait_eof() == ERROR_NONE
        assert _read_all(channel) == b"ping"

    def test_close_and_wait_closed(self, session: Session) -> None:
        channel = _open(session)
        channel.execute("cat")
        assert channel.wait_closed() == ERROR_BAD_USE
        assert channel.close() == ERROR_NONE
        assert channel.state is ChannelState.CLOSED
        assert channel.write(b"late") == (ERROR_CHANNEL_CLOSED, 0)
        assert channel.close() == ERROR_NONE
        assert channel.wait_closed() == ERROR_NONE
        assert channel.remote_closed

    def test_short_circuit_success_clears_last_error(self, session: Session) -> None:
        channel = _open(session)
        channel.execute("cat")

        assert channel.wait_closed() == ERROR_BAD_USE
        assert channel.write(b"") == (ERROR_NONE, 0)
        assert session.last_error() == (ERROR_NONE, "")

        assert channel.send_eof() == ERROR_NONE
        assert channel.wait_closed() == ERROR_BAD_USE
        assert channel.send_eof() == ERROR_NONE
        assert session.last_error() == (ERROR_NONE, "")

        assert channel.close() == ERROR_NONE
        assert channel.write(b"late") == (ERROR_CHANNEL_CLOSED, 0)
        assert channel.close() == ERROR_NONE
        assert session.last_error() == (ERROR_NONE, "")

    def test_free(self, session: Session) -> None:
        channel = _open(session)
        assert channel.free() == ERROR_NONE
        assert channel.state is ChannelState.FREED
        assert channel.handle.freed
        assert channel.free() == ERROR_BAD_USE
        assert channel.execute("true") == ERROR_BAD_USE
        assert channel.eof()


class TestDirectTcpip:
    def test_tunnel_echo(self, session: Session) -> None:
        rc, channel = session.direct_tcpip("db.internal", 5432)
        assert rc == ERROR_NONE
        assert channel.kind == "direct-tcpip"
        assert channel.write(b"hello") == (ERROR_NONE, 5)
        assert channel.recv(16) == (ERROR_NONE, b"hello")
        assert channel.execute("true") == ERROR_CHANNEL_REQUEST_DENIED

    def test_missing_destination(self, session: Session) -> None:
        assert session.open_channel("direct-tcpip", host="x") == (ERROR_INVAL, None)
        assert session.open_channel("x11") == (ERROR_INVAL, None)

    def test_prohibited(self, session: Session, fake_config: FakeServerConfig) -> None:
        fake_config.allow_tcpip = False
        rc, channel = session.direct_tcpip("db.internal", 5432)
        assert rc < 0
        assert channel is None
