"""
SFTP version 3 client over a session channel.

The SFTP root owns one channel running the 'sftp' subsystem. Every file
operation is one request/response pair with its own request id. A call
that returns ERROR_EAGAIN leaves its request outstanding; calling it again
with the same arguments polls for that request's response instead of
sending another, so each response is delivered exactly once.

Failures reported by the server return ERROR_SFTP_PROTOCOL; last_error()
then gives the SSH_FX_* status code.
"""
from __future__ import annotations

import weakref
from typing import TYPE_CHECKING, Any, Callable

from asyncssh.packet import Byte, PacketDecodeError, SSHPacket, String, UInt32

from rawssh.channel import Channel
from rawssh.codes import (
    ERROR_BAD_USE,
    ERROR_EAGAIN,
    ERROR_NONE,
    ERROR_SFTP_PROTOCOL,
)
from rawssh.events import EventType
from rawssh.sftp_handle import (
    FXP_ATTRS,
    FXP_EXTENDED,
    FXP_EXTENDED_REPLY,
    FXP_HANDLE,
    FXP_INIT,
    FXP_LSTAT,
    FXP_MKDIR,
    FXP_NAME,
    FXP_OPEN,
    FXP_OPENDIR,
    FXP_READLINK,
    FXP_REALPATH,
    FXP_REMOVE,
    FXP_RENAME,
    FXP_RMDIR,
    FXP_SETSTAT,
    FXP_STAT,
    FXP_STATUS,
    FXP_SYMLINK,
    FXP_VERSION,
    SFTPAttributes,
    SFTPDirEntry,
    SFTPHandle,
    SFTPStatVFS,
)

if TYPE_CHECKING:
    from rawssh.session import Session

SFTP_VERSION = 3

# SSH_FX_* status codes
FX_OK = 0
FX_EOF = 1
FX_NO_SUCH_FILE = 2
FX_PERMISSION_DENIED = 3
FX_FAILURE = 4
FX_BAD_MESSAGE = 5
FX_NO_CONNECTION = 6
FX_CONNECTION_LOST = 7
FX_OP_UNSUPPORTED = 8

# SSH_FXF_* open flags
FXF_READ = 0x00000001
FXF_WRITE = 0x00000002
FXF_APPEND = 0x00000004
FXF_CREAT = 0x00000008
FXF_TRUNC = 0x00000010
FXF_EXCL = 0x00000020

OPENFILE = 0
OPENDIR = 1

_READ_CHUNK = 32768

# Startup steps
_OPEN_CHANNEL = 0
_START_SUBSYSTEM = 1
_AWAIT_VERSION = 2
_READY = 3


class SFTP:
    """
    SFTP root, created by Session.sftp_init().

    Usage:
        rc, sftp = session.sftp_init()
        rc, handle = sftp.open("/etc/hostname", FXF_READ)
        rc, data = handle.read(4096)
    """

    def __init__(self, session: "Session") -> None:
        self._session = session
        self._channel: Channel | None = None
        self._step = _OPEN_CHANNEL
        self._version: int | None = None
        self._extensions: dict[str, bytes] = {}
        self._next_id = 0
        self._outbuf = bytearray()
        self._inbuf = bytearray()
        # Request key -> id of the request sent for it
        self._pending: dict[tuple[Any, ...], int] = {}
        # Request id -> (packet type, payload after the id)
        self._responses: dict[int, tuple[int, bytes]] = {}
        self._last_status = FX_OK
        self._invalid = False
        self._handles: weakref.WeakSet[SFTPHandle] = weakref.WeakSet()

    @property
    def session(self) -> "Session":
        return self._session

    @property
    def channel(self) -> Channel | None:
        return self._channel

    @property
    def version(self) -> int | None:
        return self._version

    @property
    def extensions(self) -> dict[str, bytes]:
        """Extensions announced by the server in SSH_FXP_VERSION."""
        return dict(self._extensions)

    def last_error(self) -> int:
        """SSH_FX_* status of the most recent server response."""
        return self._last_status

    def _invalidate(self) -> None:
        self._invalid = True
        self._pending.clear()
        self._responses.clear()
        self._outbuf.clear()
        self._inbuf.clear()
        for handle in list(self._handles):
            handle._invalidate()
        if self._channel is not None:
            self._channel._invalidate()

    # ------------------------------------------------------------------
    # Wire plumbing
    # ------------------------------------------------------------------

    def _queue(self, packet_type: int, payload: bytes) -> None:
        body = Byte(packet_type) + payload
        self._outbuf += UInt32(len(body)) + body

    def _send_pending(self) -> int:
        while self._outbuf:
            rc, n = self._channel.write(bytes(self._outbuf))
            if rc:
                return rc
            del self._outbuf[:n]
        return ERROR_NONE

    def _receive(self) -> int:
        rc, data = self._channel.recv(_READ_CHUNK)
        if rc:
            return rc
        if not data:
            return self._session._fail(
                ERROR_SFTP_PROTOCOL, "SFTP channel closed by server", "sftp",
            )
        self._inbuf += data
        # Hand the consumed bytes back to the peer as window credit
        self._channel.adjust_receive_window(len(data), force=True)

        while len(self._inbuf) >= 4:
            length = int.from_bytes(self._inbuf[:4], "big")
            if len(self._inbuf) < 4 + length:
                break
            packet = bytes(self._inbuf[4:4 + length])
            del self._inbuf[:4 + length]
            rc = self._dispatch(packet)
            if rc:
                return rc
        return ERROR_NONE

    def _dispatch(self, packet: bytes) -> int:
        try:
            reader = SSHPacket(packet)
            packet_type = reader.get_byte()
            if packet_type == FXP_VERSION:
                self._version = reader.get_uint32()
                while reader:
                    name = reader.get_string().decode("utf-8", "backslashreplace")
                    self._extensions[name] = reader.get_string()
                return ERROR_NONE
            request_id = reader.get_uint32()
        except PacketDecodeError as exc:
            return self._session._fail(ERROR_SFTP_PROTOCOL, f"Malformed SFTP packet: {exc}", "sftp")

        if request_id in self._pending.values():
            self._responses[request_id] = (packet_type, reader.get_remaining_payload())
        return ERROR_NONE

    def _pump(self, done: Callable[[], bool]) -> int:
        """Move bytes both ways until done() holds, or the channel would block."""
        while True:
            rc = self._send_pending()
            if rc and rc != ERROR_EAGAIN:
                return rc
            if done():
                return ERROR_NONE
            rc = self._receive()
            if rc:
                return rc

    def _check(self, operation: str) -> int:
        if self._invalid:
            return self._session._fail(
                ERROR_BAD_USE, "SFTP session has been shut down", operation,
            )
        if self._step != _READY:
            return self._session._fail(ERROR_BAD_USE, "SFTP session not started", operation)
        return ERROR_NONE

    def _call(
        self,
        key: tuple[Any, ...],
        operation: str,
        packet_type: int,
        payload: bytes,
        expected: int = FXP_STATUS,
        eof_ok: bool = False,
    ) -> tuple[int, SSHPacket | None]:
        """
        Send a request, or poll for the response to one already sent.

        Returns:
            (0, packet) for the expected response, (0, None) for an OK
            status (or EOF when eof_ok), otherwise (rc, None)
        """
        request_id = self._pending.get(key)
        if request_id is None:
            request_id = self._next_id
            self._next_id = (self._next_id + 1) & 0xFFFFFFFF
            self._pending[key] = request_id
            self._queue(packet_type, UInt32(request_id) + payload)

        rc = self._pump(lambda: request_id in self._responses)
        if rc == ERROR_EAGAIN:
            return rc, None
        del self._pending[key]
        if rc:
            return rc, None

        response_type, body = self._responses.pop(request_id)
        reply = SSHPacket(body)
        try:
            if response_type == FXP_STATUS:
                return self._status(operation, reply, expected, eof_ok), None
            if response_type != expected:
                return self._session._fail(
                    ERROR_SFTP_PROTOCOL,
                    f"Unexpected SFTP response type {response_type}",
                    operation,
                ), None
        except PacketDecodeError as exc:
            return self._session._fail(ERROR_SFTP_PROTOCOL, str(exc), operation), None
        self._last_status = FX_OK
        self._session._result(ERROR_NONE, operation)
        return ERROR_NONE, reply

    def _status(self, operation: str, reply: SSHPacket, expected: int, eof_ok: bool) -> int:
        code = reply.get_uint32()
        message = ""
        if reply:
            message = reply.get_string().decode("utf-8", "backslashreplace")
        self._last_status = code

        if code == FX_OK and expected == FXP_STATUS:
            self._session._result(ERROR_NONE, operation)
            return ERROR_NONE
        if code == FX_EOF and eof_ok:
            self._session._result(ERROR_NONE, operation)
            return ERROR_NONE
        return self._session._fail(
            ERROR_SFTP_PROTOCOL,
            f"SFTP status {code}: {message or 'no message'}",
            operation,
        )

    def _extended(
        self,
        key: tuple[Any, ...],
        operation: str,
        name: str,
        payload: bytes,
        reply: bool = False,
    ) -> tuple[int, SSHPacket | None]:
        return self._call(
            key,
            operation,
            FXP_EXTENDED,
            String(name) + payload,
            FXP_EXTENDED_REPLY if reply else FXP_STATUS,
        )

    def _decode(
        self, operation: str, decoder: Callable[[SSHPacket], Any], packet: SSHPacket,
    ) -> tuple[int, Any]:
        """Decode a response body; a truncated body is ERROR_SFTP_PROTOCOL."""
        try:
            return ERROR_NONE, decoder(packet)
        except PacketDecodeError as exc:
            return self._session._fail(
                ERROR_SFTP_PROTOCOL, f"Malformed SFTP response: {exc}", operation,
            ), None

    def _decode_names(self, packet: SSHPacket) -> list[SFTPDirEntry]:
        entries = []
        for _ in range(packet.get_uint32()):
            filename = packet.get_string().decode("utf-8", "backslashreplace")
            longentry = packet.get_string().decode("utf-8", "backslashreplace")
            entries.append(SFTPDirEntry(filename, longentry, SFTPAttributes.decode(packet)))
        return entries

    # ------------------------------------------------------------------
    # Startup and shutdown
    # ------------------------------------------------------------------

    def _startup(self) -> int:
        """Resumable: open the channel, start the subsystem, exchange versions."""
        if self._step == _OPEN_CHANNEL:
            rc, channel = self._session.open_session()
            if rc:
                return rc
            self._channel = channel
            self._step = _START_SUBSYSTEM

        if self._step == _START_SUBSYSTEM:
            rc = self._channel.subsystem("sftp")
            if rc:
                if rc != ERROR_EAGAIN:
                    self._abandon()
                return rc
            self._queue(FXP_INIT, UInt32(SFTP_VERSION))
            self._step = _AWAIT_VERSION

        if self._step == _AWAIT_VERSION:
            rc = self._pump(lambda: self._version is not None)
            if rc:
                if rc != ERROR_EAGAIN:
                    self._abandon()
                return rc
            if self._version < SFTP_VERSION:
                self._abandon()
                return self._session._fail(
                    ERROR_SFTP_PROTOCOL,
                    f"Server speaks SFTP version {self._version}",
                    "sftp_init",
                )
            self._version = SFTP_VERSION
            self._step = _READY
        return ERROR_NONE

    def _abandon(self) -> None:
        if self._channel is not None:
            self._channel.free()
        self._invalid = True

    def shutdown(self) -> int:
        """Close the SFTP channel. Open handles become invalid."""
        if self._invalid:
            return self._session._fail(
                ERROR_BAD_USE, "SFTP session has been shut down", "sftp_shutdown",
            )
        rc = self._channel.close()
        if rc == ERROR_EAGAIN:
            return rc
        self._channel.free()
        self._invalidate()
        self._session.emitter.emit(EventType.SFTP, action="shutdown")
        return rc

    # ------------------------------------------------------------------
    # Path operations
    # ------------------------------------------------------------------

    def open(
        self,
        path: str,
        flags: int = FXF_READ,
        mode: int = 0o644,
        open_type: int = OPENFILE,
    ) -> tuple[int, SFTPHandle | None]:
        """
        Open a remote file (or directory with open_type=OPENDIR).

        Args:
            path: Remote path
            flags: FXF_* bits, ignored for directories
            mode: Permissions used when the file is created
            open_type: OPENFILE or OPENDIR
        """
        operation = "sftp_opendir" if open_type == OPENDIR else "sftp_open"
        rc = self._check(operation)
        if rc:
            return rc, None

        if open_type == OPENDIR:
            rc, packet = self._call(
                ("opendir", path), operation, FXP_OPENDIR, String(path), FXP_HANDLE,
            )
        else:
            attrs = SFTPAttributes(permissions=mode) if flags & FXF_CREAT else SFTPAttributes()
            rc, packet = self._call(
                ("open", path, flags, mode),
                operation,
                FXP_OPEN,
                String(path) + UInt32(flags) + attrs.encode(),
                FXP_HANDLE,
            )
        if rc:
            return rc, None

        rc, handle_id = self._decode(operation, SSHPacket.get_string, packet)
        if rc:
            return rc, None
        handle = SFTPHandle(self, handle_id, path, open_type == OPENDIR)
        self._handles.add(handle)
        return ERROR_NONE, handle

    def opendir(self, path: str) -> tuple[int, SFTPHandle | None]:
        return self.open(path, 0, 0, OPENDIR)

    def _path_request(
        self, operation: str, packet_type: int, *args: str | bytes,
    ) -> int:
        rc = self._check(operation)
        if rc:
            return rc
        payload = b"".join(
            String(arg) if isinstance(arg, str) else arg for arg in args
        )
        return self._call((operation, *args), operation, packet_type, payload)[0]

    def unlink(self, path: str) -> int:
        return self._path_request("sftp_unlink", FXP_REMOVE, path)

    def rename(self, source: str, dest: str) -> int:
        return self._path_request("sftp_rename", FXP_RENAME, source, dest)

    def mkdir(self, path: str, mode: int = 0o755) -> int:
        return self._path_request(
            "sftp_mkdir", FXP_MKDIR, path, SFTPAttributes(permissions=mode).encode(),
        )

    def rmdir(self, path: str) -> int:
        return self._path_request("sftp_rmdir", FXP_RMDIR, path)

    def setstat(self, path: str, attrs: SFTPAttributes) -> int:
        return self._path_request("sftp_setstat", FXP_SETSTAT, path, attrs.encode())

    def symlink(self, target: str, link_path: str) -> int:
        """
        Create link_path pointing at target.

        Arguments go on the wire in OpenSSH order (target first).
        """
        return self._path_request("sftp_symlink", FXP_SYMLINK, target, link_path)

    def _attrs_request(self, operation: str, packet_type: int, path: str) -> tuple[int, SFTPAttributes | None]:
        rc = self._check(operation)
        if rc:
            return rc, None
        rc, packet = self._call(
            (operation, path), operation, packet_type, String(path), FXP_ATTRS,
        )
        if rc:
            return rc, None
        return self._decode(operation, SFTPAttributes.decode, packet)

    def stat(self, path: str) -> tuple[int, SFTPAttributes | None]:
        return self._attrs_request("sftp_stat", FXP_STAT, path)

    def lstat(self, path: str) -> tuple[int, SFTPAttributes | None]:
        return self._attrs_request("sftp_lstat", FXP_LSTAT, path)

    def _name_request(self, operation: str, packet_type: int, path: str) -> tuple[int, str | None]:
        rc = self._check(operation)
        if rc:
            return rc, None
        rc, packet = self._call(
            (operation, path), operation, packet_type, String(path), FXP_NAME,
        )
        if rc:
            return rc, None
        rc, entries = self._decode(operation, self._decode_names, packet)
        if rc:
            return rc, None
        if len(entries) != 1:
            return self._session._fail(
                ERROR_SFTP_PROTOCOL,
                f"Expected one name, got {len(entries)}",
                operation,
            ), None
        return ERROR_NONE, entries[0].filename

    def readlink(self, path: str) -> tuple[int, str | None]:
        return self._name_request("sftp_readlink", FXP_READLINK, path)

    def realpath(self, path: str) -> tuple[int, str | None]:
        return self._name_request("sftp_realpath", FXP_REALPATH, path)

    def statvfs(self, path: str) -> tuple[int, SFTPStatVFS | None]:
        """Filesystem statistics (requires the statvfs@openssh.com extension)."""
        rc = self._check("sftp_statvfs")
        if rc:
            return rc, None
        rc, packet = self._extended(
            ("statvfs", path), "sftp_statvfs", "statvfs@openssh.com",
            String(path), reply=True,
        )
        if rc:
            return rc, None
        return self._decode("sftp_statvfs", SFTPStatVFS.decode, packet)

    def __repr__(self) -> str:
        return f"<SFTP version={self._version} pending={len(self._pending)}>"
