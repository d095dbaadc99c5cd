"""
Tests for SCP transfer setup over the fake backend.

Tests cover:
- Upload header exchange, with and without preserved times
- Download header parsing and file data
- Remote scp errors
- Resuming setup after ERROR_EAGAIN
"""
from __future__ import annotations

from typing import Callable

from rawssh.channel import Channel
from rawssh.codes import ERROR_BAD_USE, ERROR_EAGAIN, ERROR_NONE, ERROR_SCP_PROTOCOL
from rawssh.scp import ScpFileInfo
from rawssh.session import Session
from rawssh.sftp_handle import SFTPAttributes
from rawssh.testing.fake_backend import FakeBackend


def _write_all(channel: Channel, data: bytes) -> None:
    while data:
        rc, n = channel.write(data)
        assert rc == ERROR_NONE
        data = data[n:]


def _read_exactly(channel: Channel, size: int) -> bytes:
    received = b""
    while len(received) < size:
        rc, chunk = channel.recv(size - len(received))
        assert rc == ERROR_NONE
        assert chunk, "unexpected end of stream"
        received += chunk
    return received


class TestScpSend:
    """Test uploads through scp -t."""

    def test_upload(self, session: Session, fake_backend: FakeBackend) -> None:
        payload = b"uploaded contents\n"
        rc, channel = session.scp_send("/home/test/upload.txt", 0o640, len(payload))
        assert rc == ERROR_NONE
        assert fake_backend.channels[-1].process == ("exec", "scp -t /home/test/upload.txt")

        _write_all(channel, payload + b"\0")
        assert channel.send_eof() == ERROR_NONE
        assert channel.wait_eof() == ERROR_NONE
        assert channel.close() == ERROR_NONE
        assert channel.get_exit_status() == 0

        fs = fake_backend.fs
        assert fs.read_file("/home/test/upload.txt") == payload
        assert fs.attrs("/home/test/upload.txt").permissions & 0o777 == 0o640

    def test_upload_preserves_times(self, session: Session, fake_backend: FakeBackend) -> None:
        rc, channel = session.scp_send("stamped", 0o644, 3, mtime=1_600_000_000, atime=1_500_000_000)
        assert rc == ERROR_NONE
        assert fake_backend.channels[-1].process == ("exec", "scp -pt stamped")

        _write_all(channel, b"abc\0")
        channel.send_eof()

        attrs = fake_backend.fs.attrs("/home/test/stamped")
        assert attrs.mtime == 1_600_000_000
        assert attrs.atime == 1_500_000_000

    def test_upload_resumes_after_eagain(
        self,
        make_session: Callable[..., Session],
        fake_backend: FakeBackend,
    ) -> None:
        session = make_session(blocking=False)
        fake_backend.stall("channel_read", 2)

        results = [session.scp_send("/home/test/f", 0o644, 1) for _ in range(3)]
        assert [rc for rc, _ch in results] == [ERROR_EAGAIN, ERROR_EAGAIN, ERROR_NONE]
        assert results[-1][1] is not None
        assert fake_backend.calls.count("channel_open_session") == 1

    def test_requires_authentication(self, make_session: Callable[..., Session]) -> None:
        session = make_session(stage="negotiated")
        assert session.scp_send("/tmp/x", 0o644, 0) == (ERROR_BAD_USE, None)


class TestScpRecv:
    """Test downloads through scp -f."""

    def test_download(self, session: Session, fake_backend: FakeBackend) -> None:
        fake_backend.fs.write_file("/home/test/report.csv", b"a,b\n1,2\n", mode=0o600)
        fake_backend.fs.setattrs(
            "/home/test/report.csv",
            SFTPAttributes(atime=1_700_000_100, mtime=1_700_000_000),
        )

        rc, channel, info = session.scp_recv("/home/test/report.csv")
        assert rc == ERROR_NONE
        assert info == ScpFileInfo(
            mode=0o600, size=8, name="report.csv", mtime=1_700_000_000, atime=1_700_000_100,
        )
        assert _read_exactly(channel, info.size) == b"a,b\n1,2\n"

    def test_missing_file(self, session: Session) -> None:
        rc, channel, info = session.scp_recv("/home/test/absent")
        assert rc == ERROR_SCP_PROTOCOL
        assert channel is None
        assert info is None
        code, message = session.last_error()
        assert code == ERROR_SCP_PROTOCOL
        assert "absent" in message
