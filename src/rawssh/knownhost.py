"""
Known hosts store in OpenSSH format.

Provides:
- KnownHostEntry: one parsed line (marker, host patterns, key type, key)
- KnownHostCheck: outcome of a lookup (match, mismatch, not found, failure)
- KnownHosts: ordered store with load/save, check, add and remove

Line format:
    [@revoked|@cert-authority] host[,host...] keytype base64key [comment]

Host patterns are plain names, [host]:port for non-standard ports, hashed
names (|1|salt|hash), wildcards (* and ?) and negations (!pattern).

Saving writes entries in load order followed by added entries, so a load
then save round trip keeps the file's order.
"""
from __future__ import annotations

import base64
import binascii
import fnmatch
import hashlib
import hmac
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator

from rawssh.codes import ERROR_FILE, ERROR_INVAL, ERROR_KNOWN_HOSTS, ERROR_NONE
from rawssh.platform import expand_path, get_known_hosts_path

MARKER_REVOKED = "@revoked"
MARKER_CERT_AUTHORITY = "@cert-authority"
_MARKERS = (MARKER_REVOKED, MARKER_CERT_AUTHORITY)

_HASH_MAGIC = "|1|"


class KnownHostCheck(str, Enum):
    """Result of KnownHosts.check()."""
    MATCH = "match"
    MISMATCH = "mismatch"
    NOTFOUND = "not-found"
    FAILURE = "failure"


@dataclass
class KnownHostEntry:
    """
    One known hosts line.

    Attributes:
        hosts: Comma separated host patterns as written in the file
        key_type: Key algorithm, e.g. 'ssh-ed25519'
        key: Base64 encoded public key blob
        marker: '', '@revoked' or '@cert-authority'
        comment: Trailing comment, may be empty
    """
    hosts: str
    key_type: str
    key: str
    marker: str = ""
    comment: str = ""
    patterns: list[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        assert self.marker in ("",) + _MARKERS, f"Unknown marker {self.marker!r}"
        assert self.hosts and " " not in self.hosts, f"Bad host list {self.hosts!r}"
        self.patterns = self.hosts.split(",")

    @property
    def is_hashed(self) -> bool:
        return self.hosts.startswith(_HASH_MAGIC)

    @property
    def is_revoked(self) -> bool:
        return self.marker == MARKER_REVOKED

    @property
    def key_blob(self) -> bytes:
        return base64.b64decode(self.key)

    def matches_host(self, host: str, port: int = 22) -> bool:
        """True if any pattern matches and no negated pattern does."""
        matched = False
        for pattern in self.patterns:
            negated = pattern.startswith("!")
            if negated:
                pattern = pattern[1:]
            if _pattern_matches(pattern, host, port):
                if negated:
                    return False
                matched = True
        return matched

    def to_line(self) -> str:
        parts = [self.marker] if self.marker else []
        parts += [self.hosts, self.key_type, self.key]
        if self.comment:
            parts.append(self.comment)
        return " ".join(parts)


def hash_hostname(hostname: str, salt: bytes | None = None) -> str:
    """
    Hash a host name with OpenSSH's scheme: |1|base64(salt)|base64(hmac-sha1).

    Args:
        hostname: Host (or [host]:port) to hash
        salt: 20 byte salt, random if omitted
    """
    if salt is None:
        salt = os.urandom(20)
    digest = hmac.new(salt, hostname.encode("utf-8"), hashlib.sha1).digest()
    return (
        f"{_HASH_MAGIC}{base64.b64encode(salt).decode('ascii')}"
        f"|{base64.b64encode(digest).decode('ascii')}"
    )


def _check_hashed(pattern: str, hostname: str) -> bool:
    parts = pattern.split("|")
    if len(parts) != 4:
        return False
    try:
        salt = base64.b64decode(parts[2])
        stored = base64.b64decode(parts[3])
    except (ValueError, binascii.Error):
        return False
    computed = hmac.new(salt, hostname.encode("utf-8"), hashlib.sha1).digest()
    return hmac.compare_digest(stored, computed)


def format_host(host: str, port: int = 22) -> str:
    """host for port 22, [host]:port otherwise."""
    return host if port == 22 else f"[{host}]:{port}"


def _pattern_matches(pattern: str, host: str, port: int) -> bool:
    if pattern.startswith(_HASH_MAGIC):
        # Names are hashed lowercased, as OpenSSH does
        return _check_hashed(pattern, format_host(host.lower(), port))

    if pattern.startswith("["):
        close = pattern.find("]:")
        if close < 0:
            return False
        try:
            pattern_port = int(pattern[close + 2:])
        except ValueError:
            return False
        return pattern_port == port and fnmatch.fnmatchcase(
            host.lower(), pattern[1:close].lower(),
        )

    return port == 22 and fnmatch.fnmatchcase(host.lower(), pattern.lower())


def key_type_from_blob(blob: bytes) -> str | None:
    """Algorithm name at the start of an SSH public key blob."""
    if len(blob) < 4:
        return None
    length = int.from_bytes(blob[:4], "big")
    if length == 0 or len(blob) < 4 + length:
        return None
    try:
        return blob[4:4 + length].decode("ascii")
    except UnicodeDecodeError:
        return None


class KnownHosts:
    """
    Ordered known hosts store.

    Usage:
        hosts = KnownHosts()
        hosts.load("~/.ssh/known_hosts")
        blob, _type = session.hostkey()
        result, entry = hosts.check("example.org", 22, blob)
        if result is KnownHostCheck.NOTFOUND:
            hosts.add("example.org", blob)
            hosts.save("~/.ssh/known_hosts")
    """

    def __init__(self) -> None:
        self._entries: list[KnownHostEntry] = []

    def __iter__(self) -> Iterator[KnownHostEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def readline(self, line: str) -> int:
        """
        Parse one line and append it.

        Blank lines and comments are accepted and ignored.

        Returns:
            0, or ERROR_KNOWN_HOSTS for an unparseable line
        """
        line = line.strip()
        if not line or line.startswith("#"):
            return ERROR_NONE

        fields_ = line.split(None, 4)
        marker = ""
        if fields_[0].startswith("@"):
            if fields_[0] not in _MARKERS:
                return ERROR_KNOWN_HOSTS
            marker = fields_[0]
            fields_ = line.split(None, 4)[1:]
        else:
            fields_ = line.split(None, 3)

        if len(fields_) < 3:
            return ERROR_KNOWN_HOSTS
        hosts, key_type, key = fields_[:3]
        comment = fields_[3] if len(fields_) > 3 else ""
        try:
            blob = base64.b64decode(key, validate=True)
        except (ValueError, binascii.Error):
            return ERROR_KNOWN_HOSTS
        if key_type_from_blob(blob) is None:
            return ERROR_KNOWN_HOSTS

        self._entries.append(KnownHostEntry(hosts, key_type, key, marker, comment))
        return ERROR_NONE

    def load(self, path: str | Path | None = None) -> int:
        """
        Append every entry in a known hosts file (default ~/.ssh/known_hosts).

        Returns:
            Number of entries read, ERROR_FILE if unreadable, or
            ERROR_KNOWN_HOSTS on the first malformed line (entries before
            it stay loaded)
        """
        path = expand_path(path) if path is not None else get_known_hosts_path()
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return ERROR_FILE

        count = 0
        for line in text.splitlines():
            before = len(self._entries)
            rc = self.readline(line)
            if rc:
                return rc
            count += len(self._entries) - before
        return count

    def writeline(self, entry: KnownHostEntry) -> str:
        return entry.to_line()

    def save(self, path: str | Path | None = None) -> int:
        """Write all entries, one per line, in store order."""
        path = expand_path(path) if path is not None else get_known_hosts_path()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                "".join(self.writeline(entry) + "\n" for entry in self._entries),
                encoding="utf-8",
            )
        except OSError:
            return ERROR_FILE
        return ERROR_NONE

    def check(
        self,
        host: str,
        port: int,
        key: bytes,
    ) -> tuple[KnownHostCheck, KnownHostEntry | None]:
        """
        Look up a host key. Does not modify the store.

        A revoked key is a MISMATCH. A host listed with a different key of
        the same type is a MISMATCH even if no entry matches; keys of other
        types are ignored, as OpenSSH does.

        Returns:
            (result, the entry that decided it)
        """
        key_type = key_type_from_blob(key)
        if key_type is None:
            return KnownHostCheck.FAILURE, None
        encoded = base64.b64encode(key).decode("ascii")

        match: KnownHostEntry | None = None
        mismatch: KnownHostEntry | None = None
        for entry in self._entries:
            if entry.marker == MARKER_CERT_AUTHORITY:
                continue
            if entry.is_revoked:
                if entry.key == encoded:
                    return KnownHostCheck.MISMATCH, entry
                continue
            if not entry.matches_host(host, port):
                continue
            if entry.key == encoded:
                match = match or entry
            elif entry.key_type == key_type:
                mismatch = mismatch or entry

        if match is not None:
            return KnownHostCheck.MATCH, match
        if mismatch is not None:
            return KnownHostCheck.MISMATCH, mismatch
        return KnownHostCheck.NOTFOUND, None

    def add(
        self,
        host: str,
        key: bytes,
        key_type: str | None = None,
        comment: str = "",
        port: int = 22,
        hashed: bool = False,
        marker: str = "",
    ) -> tuple[int, KnownHostEntry | None]:
        """
        Append an entry for host (and port) with the given key blob.

        Returns:
            (0, entry), or (ERROR_INVAL, None) for an unusable key
        """
        blob_type = key_type_from_blob(key)
        if blob_type is None or (key_type is not None and key_type != blob_type):
            return ERROR_INVAL, None
        hosts = format_host(host, port)
        if hashed:
            hosts = hash_hostname(format_host(host.lower(), port))
        entry = KnownHostEntry(
            hosts,
            blob_type,
            base64.b64encode(key).decode("ascii"),
            marker,
            comment,
        )
        self._entries.append(entry)
        return ERROR_NONE, entry

    def remove(self, entry: KnownHostEntry) -> int:
        for index, existing in enumerate(self._entries):
            if existing is entry:
                del self._entries[index]
                return ERROR_NONE
        return ERROR_INVAL
