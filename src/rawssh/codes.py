"""
Raw return codes and their classification.

Every core operation returns one of these integers (or a tuple whose first
element is one). Values follow the libssh2 numbering so that codes from a
native backend pass through unchanged.

Classification:
- NONE: success
- INCOMPLETE: the operation would block, call it again once the transport
  is ready (never an error)
- TRANSPORT: socket or I/O failure, fatal to the session
- PROTOCOL: malformed or unexpected peer behaviour, fatal to the session
- AUTHENTICATION: credentials rejected, the session remains usable
- RESOURCE: invalid handle, misuse or a denied request, local to the call
"""
from __future__ import annotations

from enum import Enum

ERROR_NONE = 0
ERROR_SOCKET_NONE = -1
ERROR_BANNER_RECV = -2
ERROR_BANNER_SEND = -3
ERROR_INVALID_MAC = -4
ERROR_KEX_FAILURE = -5
ERROR_ALLOC = -6
ERROR_SOCKET_SEND = -7
ERROR_KEY_EXCHANGE_FAILURE = -8
ERROR_TIMEOUT = -9
ERROR_HOSTKEY_INIT = -10
ERROR_HOSTKEY_SIGN = -11
ERROR_DECRYPT = -12
ERROR_SOCKET_DISCONNECT = -13
ERROR_PROTO = -14
ERROR_PASSWORD_EXPIRED = -15
ERROR_FILE = -16
ERROR_METHOD_NONE = -17
ERROR_AUTHENTICATION_FAILED = -18
ERROR_PUBLICKEY_UNVERIFIED = -19
ERROR_CHANNEL_OUTOFORDER = -20
ERROR_CHANNEL_FAILURE = -21
ERROR_CHANNEL_REQUEST_DENIED = -22
ERROR_CHANNEL_UNKNOWN = -23
ERROR_CHANNEL_WINDOW_EXCEEDED = -24
ERROR_CHANNEL_PACKET_EXCEEDED = -25
ERROR_CHANNEL_CLOSED = -26
ERROR_CHANNEL_EOF_SENT = -27
ERROR_SCP_PROTOCOL = -28
ERROR_ZLIB = -29
ERROR_SOCKET_TIMEOUT = -30
ERROR_SFTP_PROTOCOL = -31
ERROR_REQUEST_DENIED = -32
ERROR_METHOD_NOT_SUPPORTED = -33
ERROR_INVAL = -34
ERROR_INVALID_POLL_TYPE = -35
ERROR_PUBLICKEY_PROTOCOL = -36
ERROR_EAGAIN = -37
ERROR_BUFFER_TOO_SMALL = -38
ERROR_BAD_USE = -39
ERROR_COMPRESS = -40
ERROR_OUT_OF_BOUNDARY = -41
ERROR_AGENT_PROTOCOL = -42
ERROR_SOCKET_RECV = -43
ERROR_ENCRYPT = -44
ERROR_BAD_SOCKET = -45
ERROR_KNOWN_HOSTS = -46
ERROR_CHANNEL_WINDOW_FULL = -47
ERROR_KEYFILE_AUTH_FAILED = -48
ERROR_RANDGEN = -49
ERROR_MISSING_USERAUTH_BANNER = -50
ERROR_ALGO_UNSUPPORTED = -51

# Stream ids for Channel.read/write
STREAM_DEFAULT = 0
STREAM_STDERR = 1

# Channel.flush targets besides a plain stream id
CHANNEL_FLUSH_EXTENDED_DATA = -1
CHANNEL_FLUSH_ALL = -2

# SSH_MSG_DISCONNECT reason codes (RFC 4253 section 11.1)
DISCONNECT_PROTOCOL_ERROR = 2
DISCONNECT_BY_APPLICATION = 11

# Extended data handling modes
EXTENDED_DATA_NORMAL = 0
EXTENDED_DATA_IGNORE = 1
EXTENDED_DATA_MERGE = 2

# Method types for Session.methods / method_pref
METHOD_KEX = 0
METHOD_HOSTKEY = 1
METHOD_CRYPT_CS = 2
METHOD_CRYPT_SC = 3
METHOD_MAC_CS = 4
METHOD_MAC_SC = 5
METHOD_COMP_CS = 6
METHOD_COMP_SC = 7
METHOD_LANG_CS = 8
METHOD_LANG_SC = 9

# Host key hash types for Session.hostkey_hash
HOSTKEY_HASH_MD5 = 1
HOSTKEY_HASH_SHA1 = 2
HOSTKEY_HASH_SHA256 = 3

# Session.block_directions bits
SESSION_BLOCK_INBOUND = 0x0001
SESSION_BLOCK_OUTBOUND = 0x0002

# Default channel parameters (RFC 4254 conventional values)
CHANNEL_WINDOW_DEFAULT = 2 * 1024 * 1024
CHANNEL_PACKET_DEFAULT = 32768
CHANNEL_MINADJUST = 1024


class ErrorKind(str, Enum):
    """Classes of return code, distinguishable without string inspection."""
    NONE = "none"
    INCOMPLETE = "incomplete"
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    AUTHENTICATION = "authentication"
    RESOURCE = "resource"


_TRANSPORT = frozenset({
    ERROR_SOCKET_NONE,
    ERROR_SOCKET_SEND,
    ERROR_SOCKET_RECV,
    ERROR_SOCKET_DISCONNECT,
    ERROR_SOCKET_TIMEOUT,
    ERROR_BAD_SOCKET,
    ERROR_TIMEOUT,
})

_PROTOCOL = frozenset({
    ERROR_BANNER_RECV,
    ERROR_BANNER_SEND,
    ERROR_INVALID_MAC,
    ERROR_KEX_FAILURE,
    ERROR_KEY_EXCHANGE_FAILURE,
    ERROR_HOSTKEY_INIT,
    ERROR_HOSTKEY_SIGN,
    ERROR_DECRYPT,
    ERROR_ENCRYPT,
    ERROR_PROTO,
    ERROR_CHANNEL_OUTOFORDER,
    ERROR_CHANNEL_WINDOW_EXCEEDED,
    ERROR_CHANNEL_PACKET_EXCEEDED,
    ERROR_ZLIB,
    ERROR_COMPRESS,
    ERROR_PUBLICKEY_PROTOCOL,
    ERROR_ALGO_UNSUPPORTED,
    ERROR_RANDGEN,
    ERROR_INVALID_POLL_TYPE,
    ERROR_MISSING_USERAUTH_BANNER,
})

_AUTHENTICATION = frozenset({
    ERROR_AUTHENTICATION_FAILED,
    ERROR_PASSWORD_EXPIRED,
    ERROR_PUBLICKEY_UNVERIFIED,
    ERROR_METHOD_NONE,
    ERROR_METHOD_NOT_SUPPORTED,
    ERROR_FILE,
    ERROR_KEYFILE_AUTH_FAILED,
    ERROR_AGENT_PROTOCOL,
})

# Codes that close the session. ERROR_TIMEOUT is absent: a blocking call
# that timed out can be resumed.
_FATAL = (_TRANSPORT | _PROTOCOL) - {ERROR_TIMEOUT}

_NAMES = {
    value: name
    for name, value in globals().items()
    if name.startswith("ERROR_") and isinstance(value, int)
}


def classify(code: int) -> ErrorKind:
    """
    Classify a raw return code.

    Non-negative values (success, byte counts) classify as NONE. Unknown
    negative values are treated as PROTOCOL errors since the peer or
    backend did something this layer cannot account for.
    """
    if code >= 0:
        return ErrorKind.NONE
    if code == ERROR_EAGAIN:
        return ErrorKind.INCOMPLETE
    if code in _TRANSPORT:
        return ErrorKind.TRANSPORT
    if code in _AUTHENTICATION:
        return ErrorKind.AUTHENTICATION
    if code in _PROTOCOL or code not in _NAMES:
        return ErrorKind.PROTOCOL
    return ErrorKind.RESOURCE


def is_fatal(code: int) -> bool:
    """Return True if the code invalidates the session."""
    return code in _FATAL or (code < 0 and code not in _NAMES)


def code_name(code: int) -> str:
    """Return the symbolic name of a code, e.g. 'ERROR_EAGAIN'."""
    if code >= 0:
        return "ERROR_NONE"
    return _NAMES.get(code, f"ERROR_UNKNOWN({code})")
