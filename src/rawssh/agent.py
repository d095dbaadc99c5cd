"""
SSH agent client.

The agent connection is independent of the session's authentication
state: identities can be listed before the handshake. Authentication
with an identity goes through the session state machine like any other
method.

Failure classes:
- ERROR_AGENT_PROTOCOL: the agent is unreachable or broke mid-exchange
- ERROR_AUTHENTICATION_FAILED / ERROR_PUBLICKEY_UNVERIFIED: the server
  rejected the agent's key
"""
from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator

from rawssh.codes import ERROR_AGENT_PROTOCOL, ERROR_BAD_USE, ERROR_EAGAIN, ERROR_NONE
from rawssh.events import EventType
from rawssh.platform import get_agent_socket_path

if TYPE_CHECKING:
    from rawssh.session import Session


@dataclass(frozen=True)
class AgentIdentity:
    """A public key held by the agent."""
    blob: bytes
    comment: str

    @property
    def key_type(self) -> str:
        """Algorithm name from the key blob, e.g. 'ssh-ed25519'."""
        length = int.from_bytes(self.blob[:4], "big")
        return self.blob[4:4 + length].decode("ascii", "replace")

    def to_openssh(self) -> str:
        """Render as an authorized_keys line."""
        line = f"{self.key_type} {base64.b64encode(self.blob).decode('ascii')}"
        return f"{line} {self.comment}" if self.comment else line


class Agent:
    """
    Client for the local SSH agent.

    Usage:
        agent = session.agent_init()
        agent.connect()
        agent.list_identities()
        for identity in agent.identities():
            if agent.userauth("deploy", identity) == 0:
                break
    """

    def __init__(self, session: "Session") -> None:
        self._session = session
        self._handle: Any = None
        self._identity_path: str | None = None
        self._identities: list[AgentIdentity] = []
        self._generation = 0
        self._invalid = False
        session._adopt(self)

    @property
    def connected(self) -> bool:
        return self._handle is not None

    def get_identity_path(self) -> str | None:
        """Agent socket path, defaulting to $SSH_AUTH_SOCK at connect time."""
        return self._identity_path

    def set_identity_path(self, path: str | None) -> None:
        self._identity_path = path

    def _invalidate(self) -> None:
        self._invalid = True
        self._handle = None

    def _check(self, operation: str, connected: bool = True) -> int:
        if self._invalid:
            return self._session._fail(ERROR_BAD_USE, "Agent has been freed", operation)
        if connected and self._handle is None:
            return self._session._fail(ERROR_BAD_USE, "Agent is not connected", operation)
        return ERROR_NONE

    def connect(self) -> int:
        rc = self._check("agent_connect", connected=False)
        if rc:
            return rc
        if self._handle is not None:
            return self._session._result(ERROR_NONE, "agent_connect")
        path = self._identity_path or get_agent_socket_path()
        if path is None:
            return self._session._fail(
                ERROR_AGENT_PROTOCOL, "No agent socket (SSH_AUTH_SOCK unset)", "agent_connect",
            )
        rc, handle = self._session.backend.agent_connect(path)
        rc = self._session._result(rc, "agent_connect")
        if rc == ERROR_NONE:
            self._handle = handle
            self._identity_path = path
            self._session.emitter.emit(EventType.AGENT, action="connect", path=path)
        return rc

    def list_identities(self) -> int:
        """
        Fetch the agent's identities.

        Each call replaces the previous list; generators returned by
        identities() before this call stop yielding.
        """
        rc = self._check("agent_list_identities")
        if rc:
            return rc
        rc, keys = self._session.backend.agent_list_identities(self._handle)
        rc = self._session._result(rc, "agent_list_identities")
        if rc == ERROR_NONE:
            self._identities = [AgentIdentity(blob, comment) for blob, comment in keys]
            self._generation += 1
            self._session.emitter.emit(
                EventType.AGENT, action="list", count=len(self._identities),
            )
        return rc

    def identities(self) -> Iterator[AgentIdentity]:
        """Lazily yield the identities fetched by the last list_identities()."""
        generation = self._generation
        for identity in list(self._identities):
            if generation != self._generation or self._invalid:
                return
            yield identity

    def get_identity(self, previous: AgentIdentity | None = None) -> tuple[int, AgentIdentity | None]:
        """
        Step through identities: pass the previous one to get the next.

        Returns (0, identity), (1, None) past the last one, or an error.
        """
        rc = self._check("agent_get_identity")
        if rc:
            return rc, None
        if previous is None:
            index = 0
        elif previous in self._identities:
            index = self._identities.index(previous) + 1
        else:
            return self._session._fail(
                ERROR_BAD_USE, "Identity is not from the current listing", "agent_get_identity",
            ), None
        if index >= len(self._identities):
            return self._session._result(1, "agent_get_identity"), None
        return self._session._result(ERROR_NONE, "agent_get_identity"), self._identities[index]

    def userauth(self, username: str, identity: AgentIdentity) -> int:
        """Authenticate the session with a key the agent holds."""
        rc = self._check("userauth_agent")
        if rc:
            return rc
        handle = self._handle
        rc = self._session._userauth(
            "agent",
            username,
            lambda: self._session.backend.agent_userauth(handle, username, identity.blob),
        )
        if rc == ERROR_AGENT_PROTOCOL:
            # A broken agent connection cannot be reused
            self._handle = None
        return rc

    def disconnect(self) -> int:
        rc = self._check("agent_disconnect")
        if rc:
            return rc
        rc = self._session._result(
            self._session.backend.agent_disconnect(self._handle), "agent_disconnect",
        )
        if rc != ERROR_EAGAIN:
            self._handle = None
            self._session.emitter.emit(EventType.AGENT, action="disconnect")
        return rc

    def free(self) -> int:
        if self._invalid:
            return self._session._fail(ERROR_BAD_USE, "Agent has already been freed", "agent_free")
        rc = ERROR_NONE
        if self._handle is not None:
            rc = self.disconnect()
            if rc == ERROR_EAGAIN:
                return rc
        self._invalidate()
        self._identities = []
        return rc
