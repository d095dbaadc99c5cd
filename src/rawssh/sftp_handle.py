"""
SFTP handles and attribute records.

Provides:
- SFTPAttributes: file attributes as carried on the wire (SFTP version 3)
- SFTPStatVFS: filesystem statistics from the statvfs@openssh.com extension
- SFTPDirEntry: one directory listing entry
- SFTPHandle: an open remote file or directory
"""
from __future__ import annotations

import stat
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING

from asyncssh.packet import SSHPacket, String, UInt32, UInt64

from rawssh.codes import ERROR_BAD_USE, ERROR_EAGAIN, ERROR_INVAL, ERROR_NONE

if TYPE_CHECKING:
    from rawssh.sftp import SFTP

# Packet types (SFTP version 3)
FXP_INIT = 1
FXP_VERSION = 2
FXP_OPEN = 3
FXP_CLOSE = 4
FXP_READ = 5
FXP_WRITE = 6
FXP_LSTAT = 7
FXP_FSTAT = 8
FXP_SETSTAT = 9
FXP_FSETSTAT = 10
FXP_OPENDIR = 11
FXP_READDIR = 12
FXP_REMOVE = 13
FXP_MKDIR = 14
FXP_RMDIR = 15
FXP_REALPATH = 16
FXP_STAT = 17
FXP_RENAME = 18
FXP_READLINK = 19
FXP_SYMLINK = 20
FXP_STATUS = 101
FXP_HANDLE = 102
FXP_DATA = 103
FXP_NAME = 104
FXP_ATTRS = 105
FXP_EXTENDED = 200
FXP_EXTENDED_REPLY = 201

# SSH_FILEXFER_ATTR_* flags
ATTR_SIZE = 0x00000001
ATTR_UIDGID = 0x00000002
ATTR_PERMISSIONS = 0x00000004
ATTR_ACMODTIME = 0x00000008
ATTR_EXTENDED = 0x80000000

_UINT32_MAX = 0xFFFFFFFF
_UINT64_MAX = 0xFFFFFFFFFFFFFFFF

# Largest payload sent in one SSH_FXP_WRITE
MAX_WRITE_CHUNK = 32768


@dataclass
class SFTPAttributes:
    """
    File attributes.

    A field left as None is not sent. uid/gid and atime/mtime travel in
    pairs: both must be set for either to be encoded.
    """
    filesize: int | None = None
    uid: int | None = None
    gid: int | None = None
    permissions: int | None = None
    atime: int | None = None
    mtime: int | None = None

    def __post_init__(self) -> None:
        """Check values fit the SFTP v3 field widths."""
        if self.filesize is not None:
            assert 0 <= self.filesize <= _UINT64_MAX, \
                f"filesize out of range: {self.filesize}"
        for name in ("uid", "gid", "permissions", "atime", "mtime"):
            value = getattr(self, name)
            if value is not None:
                assert 0 <= value <= _UINT32_MAX, f"{name} out of range: {value}"

    @property
    def flags(self) -> int:
        flags = 0
        if self.filesize is not None:
            flags |= ATTR_SIZE
        if self.uid is not None and self.gid is not None:
            flags |= ATTR_UIDGID
        if self.permissions is not None:
            flags |= ATTR_PERMISSIONS
        if self.atime is not None and self.mtime is not None:
            flags |= ATTR_ACMODTIME
        return flags

    def is_dir(self) -> bool:
        return self.permissions is not None and stat.S_ISDIR(self.permissions)

    def is_file(self) -> bool:
        return self.permissions is not None and stat.S_ISREG(self.permissions)

    def is_symlink(self) -> bool:
        return self.permissions is not None and stat.S_ISLNK(self.permissions)

    def encode(self) -> bytes:
        """Encode as an SFTP v3 ATTRS structure."""
        flags = self.flags
        parts = [UInt32(flags)]
        if flags & ATTR_SIZE:
            parts.append(UInt64(self.filesize))
        if flags & ATTR_UIDGID:
            parts.append(UInt32(self.uid) + UInt32(self.gid))
        if flags & ATTR_PERMISSIONS:
            parts.append(UInt32(self.permissions))
        if flags & ATTR_ACMODTIME:
            parts.append(UInt32(self.atime) + UInt32(self.mtime))
        return b"".join(parts)

    @classmethod
    def decode(cls, packet: SSHPacket) -> "SFTPAttributes":
        """Decode an SFTP v3 ATTRS structure. Extended attributes are skipped."""
        flags = packet.get_uint32()
        attrs = cls()
        if flags & ATTR_SIZE:
            attrs.filesize = packet.get_uint64()
        if flags & ATTR_UIDGID:
            attrs.uid = packet.get_uint32()
            attrs.gid = packet.get_uint32()
        if flags & ATTR_PERMISSIONS:
            attrs.permissions = packet.get_uint32()
        if flags & ATTR_ACMODTIME:
            attrs.atime = packet.get_uint32()
            attrs.mtime = packet.get_uint32()
        if flags & ATTR_EXTENDED:
            for _ in range(packet.get_uint32()):
                packet.get_string()
                packet.get_string()
        return attrs


@dataclass
class SFTPStatVFS:
    """Filesystem statistics (statvfs@openssh.com)."""
    bsize: int = 0
    frsize: int = 0
    blocks: int = 0
    bfree: int = 0
    bavail: int = 0
    files: int = 0
    ffree: int = 0
    favail: int = 0
    fsid: int = 0
    flag: int = 0
    namemax: int = 0

    @classmethod
    def decode(cls, packet: SSHPacket) -> "SFTPStatVFS":
        return cls(*(packet.get_uint64() for _ in fields(cls)))


@dataclass
class SFTPDirEntry:
    """A name returned by SSH_FXP_READDIR."""
    filename: str
    longentry: str
    attrs: SFTPAttributes


class SFTPHandle:
    """
    An open remote file or directory.

    Created by SFTP.open() or SFTP.opendir(). Invalid after close() or
    once the SFTP root shuts down. Reads and writes track a local file
    offset; seek(), tell() and rewind() only touch that offset.
    """

    def __init__(self, sftp: "SFTP", handle: bytes, path: str, is_dir: bool) -> None:
        self._sftp = sftp
        self._handle = handle
        self._path = path
        self._is_dir = is_dir
        self._offset = 0
        self._closed = False
        self._invalid = False
        self._entries: list[SFTPDirEntry] = []
        self._dir_eof = False

    @property
    def path(self) -> str:
        return self._path

    @property
    def is_dir(self) -> bool:
        return self._is_dir

    @property
    def closed(self) -> bool:
        return self._closed or self._invalid

    def _invalidate(self) -> None:
        self._invalid = True

    def _check(self, operation: str) -> int:
        if self._closed:
            return self._sftp.session._fail(ERROR_BAD_USE, "SFTP handle is closed", operation)
        if self._invalid:
            return self._sftp.session._fail(
                ERROR_BAD_USE, "SFTP session has been shut down", operation,
            )
        return ERROR_NONE

    def read(self, size: int) -> tuple[int, bytes]:
        """
        Read up to size bytes at the current offset.

        Returns:
            (0, data), (0, b'') at end of file, (ERROR_EAGAIN, b'') to retry
        """
        rc = self._check("sftp_read")
        if rc:
            return rc, b""
        if size <= 0 or size > _UINT32_MAX:
            return self._sftp.session._fail(ERROR_INVAL, f"Bad read size {size}", "sftp_read"), b""

        rc, packet = self._sftp._call(
            ("read", self._handle, self._offset, size),
            "sftp_read",
            FXP_READ,
            String(self._handle) + UInt64(self._offset) + UInt32(size),
            FXP_DATA,
            eof_ok=True,
        )
        if rc or packet is None:
            return rc, b""
        rc, data = self._sftp._decode("sftp_read", SSHPacket.get_string, packet)
        if rc:
            return rc, b""
        data = data[:size]
        self._offset += len(data)
        return ERROR_NONE, data

    def write(self, data: bytes) -> tuple[int, int]:
        """
        Write data at the current offset.

        At most MAX_WRITE_CHUNK bytes go out per call; the byte count
        written is returned so the caller can continue with the rest.
        """
        rc = self._check("sftp_write")
        if rc:
            return rc, 0
        chunk = bytes(data[:MAX_WRITE_CHUNK])
        if not chunk:
            return self._sftp.session._result(ERROR_NONE, "sftp_write"), 0

        rc, _packet = self._sftp._call(
            ("write", self._handle, self._offset, chunk),
            "sftp_write",
            FXP_WRITE,
            String(self._handle) + UInt64(self._offset) + String(chunk),
        )
        if rc:
            return rc, 0
        self._offset += len(chunk)
        return ERROR_NONE, len(chunk)

    def readdir(self) -> tuple[int, SFTPDirEntry | None]:
        """
        Return the next directory entry.

        Returns:
            (0, entry), (0, None) once the listing is exhausted, or an error
        """
        rc = self._check("sftp_readdir")
        if rc:
            return rc, None
        if not self._is_dir:
            return self._sftp.session._fail(
                ERROR_BAD_USE, "readdir on a file handle", "sftp_readdir",
            ), None

        if not self._entries and not self._dir_eof:
            rc, packet = self._sftp._call(
                ("readdir", self._handle),
                "sftp_readdir",
                FXP_READDIR,
                String(self._handle),
                FXP_NAME,
                eof_ok=True,
            )
            if rc:
                return rc, None
            if packet is None:
                self._dir_eof = True
            else:
                rc, entries = self._sftp._decode("sftp_readdir", self._sftp._decode_names, packet)
                if rc:
                    return rc, None
                self._entries = entries

        self._sftp.session._result(ERROR_NONE, "sftp_readdir")
        if not self._entries:
            return ERROR_NONE, None
        return ERROR_NONE, self._entries.pop(0)

    def fstat(self) -> tuple[int, SFTPAttributes | None]:
        rc = self._check("sftp_fstat")
        if rc:
            return rc, None
        rc, packet = self._sftp._call(
            ("fstat", self._handle),
            "sftp_fstat",
            FXP_FSTAT,
            String(self._handle),
            FXP_ATTRS,
        )
        if rc:
            return rc, None
        return self._sftp._decode("sftp_fstat", SFTPAttributes.decode, packet)

    def fsetstat(self, attrs: SFTPAttributes) -> int:
        rc = self._check("sftp_fsetstat")
        if rc:
            return rc
        encoded = attrs.encode()
        return self._sftp._call(
            ("fsetstat", self._handle, encoded),
            "sftp_fsetstat",
            FXP_FSETSTAT,
            String(self._handle) + encoded,
        )[0]

    def fsync(self) -> int:
        """Flush the remote file to disk (fsync@openssh.com)."""
        rc = self._check("sftp_fsync")
        if rc:
            return rc
        return self._sftp._extended(
            ("fsync", self._handle), "sftp_fsync", "fsync@openssh.com",
            String(self._handle),
        )[0]

    def fstatvfs(self) -> tuple[int, SFTPStatVFS | None]:
        rc = self._check("sftp_fstatvfs")
        if rc:
            return rc, None
        rc, packet = self._sftp._extended(
            ("fstatvfs", self._handle), "sftp_fstatvfs", "fstatvfs@openssh.com",
            String(self._handle), reply=True,
        )
        if rc:
            return rc, None
        return self._sftp._decode("sftp_fstatvfs", SFTPStatVFS.decode, packet)

    def seek(self, offset: int) -> None:
        assert offset >= 0, f"offset must be non-negative, got {offset}"
        self._offset = offset

    def tell(self) -> int:
        return self._offset

    def rewind(self) -> None:
        self._offset = 0
        self._entries = []
        self._dir_eof = False

    def close(self) -> int:
        """Close the remote handle. Any later call returns ERROR_BAD_USE."""
        rc = self._check("sftp_close")
        if rc:
            return rc
        rc, _packet = self._sftp._call(
            ("close", self._handle),
            "sftp_close",
            FXP_CLOSE,
            String(self._handle),
        )
        if rc != ERROR_EAGAIN:
            # The handle is gone on the server whether or not it reported success
            self._closed = True
        return rc

    def __repr__(self) -> str:
        kind = "dir" if self._is_dir else "file"
        return f"<SFTPHandle {kind} {self._path!r} offset={self._offset}>"
