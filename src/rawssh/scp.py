"""
Legacy SCP transfer setup.

SCP runs the remote 'scp' program over an exec channel and exchanges a
short header before the file data:

    send:  scp -t PATH   <- \\0
           [T<mtime> 0 <atime> 0\\n  <- \\0]
           C<mode> <size> <name>\\n  <- \\0
    recv:  scp -f PATH   -> \\0
           [<- T...\\n   -> \\0]
           <- C<mode> <size> <name>\\n   -> \\0

Setup is a resumable state machine driven by Session.scp_send() and
Session.scp_recv(). Once it succeeds the channel carries the raw file
bytes, moved with ordinary Channel.read()/write() calls.
"""
from __future__ import annotations

import posixpath
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING

from rawssh.channel import Channel
from rawssh.codes import ERROR_EAGAIN, ERROR_NONE, ERROR_SCP_PROTOCOL

if TYPE_CHECKING:
    from rawssh.session import Session

_MAX_LINE = 4096


@dataclass
class ScpFileInfo:
    """File metadata announced by the remote side of an SCP download."""
    mode: int
    size: int
    name: str
    mtime: int = 0
    atime: int = 0


class _ScpSetup:
    """Shared plumbing: channel open, exec, byte-wise line and ack handling."""

    def __init__(self, session: "Session", command: str) -> None:
        self._session = session
        self._command = command
        self.channel: Channel | None = None
        self.info: ScpFileInfo | None = None
        self._started = False
        self._out = b""
        self._line = bytearray()

    def _fail(self, message: str) -> int:
        if self.channel is not None:
            self.channel.free()
            self.channel = None
        return self._session._fail(ERROR_SCP_PROTOCOL, message, "scp")

    def _open(self) -> int:
        if self.channel is None:
            rc, channel = self._session.open_session()
            if rc:
                return rc
            self.channel = channel
        if not self._started:
            rc = self.channel.execute(self._command)
            if rc:
                if rc != ERROR_EAGAIN:
                    self.channel.free()
                    self.channel = None
                return rc
            self._started = True
        return ERROR_NONE

    def _flush(self) -> int:
        while self._out:
            rc, n = self.channel.write(self._out)
            if rc:
                return rc
            self._out = self._out[n:]
        return ERROR_NONE

    def _read_line(self) -> tuple[int, bytes | None]:
        """Read one header line a byte at a time so no file data is consumed."""
        buffer = bytearray(1)
        while True:
            rc, n = self.channel.read(buffer)
            if rc:
                return rc, None
            if n == 0:
                return self._fail("Remote scp closed the channel"), None
            self.channel.adjust_receive_window(1, force=True)
            byte = buffer[0]
            if byte in (0, 1, 2) and not self._line:
                if byte == 0:
                    return ERROR_NONE, b"\0"
                self._line.append(byte)
                continue
            if byte == 0x0A:
                line, self._line = bytes(self._line), bytearray()
                return ERROR_NONE, line
            self._line.append(byte)
            if len(self._line) > _MAX_LINE:
                return self._fail("SCP header line too long"), None

    def _expect_ack(self) -> int:
        rc, line = self._read_line()
        if rc:
            return rc
        if line != b"\0":
            return self._fail(_error_text(line))
        return ERROR_NONE


def _error_text(line: bytes) -> str:
    if line[:1] in (b"\x01", b"\x02"):
        return "Remote scp error: " + line[1:].decode("utf-8", "replace").strip()
    return f"Unexpected SCP response: {line[:40]!r}"


class ScpSend(_ScpSetup):
    """Upload setup: ends with the channel ready for size bytes of file data."""

    def __init__(
        self,
        session: "Session",
        path: str,
        mode: int,
        size: int,
        mtime: int = 0,
        atime: int = 0,
    ) -> None:
        flags = "-pt" if mtime or atime else "-t"
        super().__init__(session, f"scp {flags} {shlex.quote(path)}")
        name = posixpath.basename(path) or path
        headers = []
        if mtime or atime:
            headers.append(f"T{mtime} 0 {atime} 0\n".encode())
        headers.append(f"C0{mode & 0o7777:o} {size} {name}\n".encode())
        self._headers = headers
        self._stage = 0
        self.info = ScpFileInfo(mode & 0o7777, size, name, mtime, atime)

    def step(self) -> int:
        rc = self._open()
        if rc:
            return rc
        # Stages alternate: await ack, send header, await ack, send header...
        while self._stage <= 2 * len(self._headers):
            if self._stage % 2 == 0:
                rc = self._expect_ack()
                if rc:
                    return rc
                self._stage += 1
                if self._stage > 2 * len(self._headers):
                    break
                self._out = self._headers[self._stage // 2]
            else:
                rc = self._flush()
                if rc:
                    return rc
                self._stage += 1
        return ERROR_NONE


class ScpRecv(_ScpSetup):
    """Download setup: ends with the channel positioned at the file data."""

    def __init__(self, session: "Session", path: str) -> None:
        super().__init__(session, f"scp -pf {shlex.quote(path)}")
        self._times: tuple[int, int] = (0, 0)
        self._out = b"\0"

    def step(self) -> int:
        rc = self._open()
        if rc:
            return rc
        while self.info is None or self._out:
            rc = self._flush()
            if rc:
                return rc
            if self.info is not None:
                break
            rc, line = self._read_line()
            if rc:
                return rc
            rc = self._parse(line)
            if rc:
                return rc
            self._out = b"\0"
        return ERROR_NONE

    def _parse(self, line: bytes) -> int:
        text = line.decode("utf-8", "replace")
        try:
            if text.startswith("T"):
                mtime, _mus, atime, _aus = (int(part) for part in text[1:].split())
                self._times = (mtime, atime)
                return ERROR_NONE
            if text.startswith("C"):
                mode, size, name = text[1:].split(" ", 2)
                self.info = ScpFileInfo(
                    int(mode, 8), int(size), name, self._times[0], self._times[1],
                )
                return ERROR_NONE
        except ValueError:
            return self._fail(f"Malformed SCP header: {text[:40]!r}")
        return self._fail(_error_text(line))
