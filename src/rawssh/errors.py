"""
Typed error hierarchy for callers of the raw session layer.

The core never raises for protocol outcomes: it returns raw codes (see
rawssh.codes). Higher layers that prefer exceptions translate a code with
raise_for_code(), which picks the class from the code's ErrorKind and
carries the code in the structured context. raise_for_host_key() does the
same for a KnownHosts.check() result.

Error hierarchy:
- SSHError (base)
  - ProtocolError (malformed or unexpected peer behaviour)
  - SSHConnectionError (socket or I/O failure)
  - AuthenticationError (credentials rejected)
    - HostKeyMismatch (known hosts verification failed)
    - AgentError (SSH agent communication failed)
  - ResourceError (invalid handle, misuse, denied request)
  - CommandError (remote command exited non-zero)
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any

from rawssh.codes import (
    ERROR_AGENT_PROTOCOL,
    ERROR_KNOWN_HOSTS,
    ErrorKind,
    classify,
    code_name,
)
from rawssh.knownhost import KnownHostCheck, KnownHostEntry


@dataclass
class ErrorContext:
    """
    Structured context for SSH errors.

    Carries the underlying code so that callers can distinguish error
    classes without inspecting messages.
    """
    host: str | None = None
    port: int | None = None
    username: str | None = None
    code: int | None = None
    operation: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate invariants after initialisation."""
        # Invariant: port must be in valid TCP range if specified
        if self.port is not None:
            assert isinstance(self.port, int) and 0 <= self.port <= 65535, (
                f"Port must be between 0 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra":
                # Precondition: extra keys must not shadow field names
                collisions = ({f.name for f in fields(self)} - {"extra"}) & value.keys()
                assert not collisions, (
                    f"Extra keys collision with dataclass field names: {collisions}"
                )
                result.update(value)
            else:
                result[key] = value
        if self.code is not None:
            result["code_name"] = code_name(self.code)
        return result


class SSHError(Exception):
    """
    Base exception for all SSH-related errors.

    All SSH errors carry structured context for logging and debugging.
    """

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        # Precondition: message must be non-empty
        assert isinstance(message, str) and message.strip(), (
            f"SSHError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    @property
    def code(self) -> int | None:
        """The raw return code this error was translated from, if any."""
        return self.context.code

    @property
    def kind(self) -> ErrorKind | None:
        if self.context.code is None:
            return None
        return classify(self.context.code)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


class ProtocolError(SSHError):
    """The peer sent something malformed or unexpected. Fatal to the session."""
    pass


class SSHConnectionError(SSHError):
    """Socket or I/O failure. Fatal to the session."""
    pass


class AuthenticationError(SSHError):
    """Authentication attempt rejected. The session remains usable."""
    pass


class HostKeyMismatch(AuthenticationError):
    """
    Host key verification failed.

    The server's host key does not match the known hosts store.
    This could indicate a man-in-the-middle attack or server reconfiguration.
    """
    pass


class AgentError(AuthenticationError):
    """
    SSH agent communication failed.

    Raised for a broken or unreachable agent, as opposed to an agent
    key the server did not accept.
    """

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)


class ResourceError(SSHError):
    """Invalid handle, use after free or a denied request. Local to the call."""
    pass


class CommandError(SSHError):
    """
    A remote command exited with a non-zero status.

    Attributes:
        exit_code: The remote exit status
        output: Output collected from the command
    """

    def __init__(
        self,
        message: str,
        exit_code: int,
        output: bytes | str = b"",
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        context.extra["exit_code"] = exit_code
        super().__init__(message, context)
        self.exit_code = exit_code
        self.output = output


_KIND_TO_ERROR: dict[ErrorKind, type[SSHError]] = {
    ErrorKind.TRANSPORT: SSHConnectionError,
    ErrorKind.PROTOCOL: ProtocolError,
    ErrorKind.AUTHENTICATION: AuthenticationError,
    ErrorKind.RESOURCE: ResourceError,
}


def error_for_code(
    code: int,
    message: str | None = None,
    context: ErrorContext | None = None,
) -> SSHError | None:
    """
    Build the exception matching a raw code.

    Returns None for success and for the incomplete status, which are
    not errors.

    Args:
        code: Raw return code
        message: Optional message, defaults to the code name
        context: Optional context, the code is filled in

    Returns:
        An SSHError subclass instance, or None
    """
    kind = classify(code)
    if kind in (ErrorKind.NONE, ErrorKind.INCOMPLETE):
        return None
    if context is None:
        context = ErrorContext()
    context.code = code
    message = message or code_name(code)
    if code == ERROR_AGENT_PROTOCOL:
        return AgentError(message, context=context)
    return _KIND_TO_ERROR[kind](message, context)


def raise_for_code(
    code: int,
    message: str | None = None,
    context: ErrorContext | None = None,
) -> int:
    """
    Raise the typed error for a failing code, or return the code unchanged.

    The incomplete status is returned, never raised.

    Usage:
        rc = channel.execute("uptime")
        raise_for_code(rc, session.last_error()[1])
    """
    error = error_for_code(code, message, context)
    if error is not None:
        raise error
    return code


def raise_for_host_key(
    result: KnownHostCheck,
    host: str,
    port: int = 22,
    entry: KnownHostEntry | None = None,
) -> KnownHostCheck:
    """
    Raise HostKeyMismatch for a failed KnownHosts.check(), or return the result.

    MATCH and NOTFOUND are returned; deciding whether to trust an unknown
    key is left to the caller.

    Usage:
        blob, _type = session.hostkey()
        result, entry = hosts.check(host, port, blob)
        if raise_for_host_key(result, host, port, entry) is KnownHostCheck.NOTFOUND:
            hosts.add(host, blob, port=port)
    """
    if result in (KnownHostCheck.MATCH, KnownHostCheck.NOTFOUND):
        return result

    context = ErrorContext(host=host, port=port, code=ERROR_KNOWN_HOSTS)
    if result is KnownHostCheck.FAILURE:
        raise HostKeyMismatch(f"Host key for {host} could not be parsed", context)
    assert entry is not None, "A mismatch is always decided by an entry"
    context.extra["known_key_type"] = entry.key_type
    if entry.is_revoked:
        context.extra["reason"] = "revoked"
        raise HostKeyMismatch(f"Host key for {host} has been revoked", context)
    context.extra["reason"] = "changed"
    raise HostKeyMismatch(
        f"Host key for {host} does not match the known hosts entry {entry.hosts}",
        context,
    )
