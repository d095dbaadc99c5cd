"""rawssh: low-level SSH2 client sessions with raw return codes."""

__version__ = "0.1.0"

from rawssh.agent import Agent, AgentIdentity
from rawssh.asyncssh_backend import AsyncSSHBackend
from rawssh.backend import Backend, KbdintResponder
from rawssh.channel import Channel, ChannelState
from rawssh.codes import ErrorKind, classify, code_name, is_fatal
from rawssh.config import KeepaliveConfig, SessionConfig
from rawssh.errors import (
    AgentError,
    AuthenticationError,
    CommandError,
    ErrorContext,
    HostKeyMismatch,
    ProtocolError,
    ResourceError,
    SSHConnectionError,
    SSHError,
    error_for_code,
    raise_for_code,
    raise_for_host_key,
)
from rawssh.events import Event, EventCollector, EventEmitter, EventType
from rawssh.knownhost import KnownHostCheck, KnownHostEntry, KnownHosts, hash_hostname
from rawssh.listener import Listener
from rawssh.platform import expand_path, get_agent_socket_path, get_known_hosts_path
from rawssh.scp import ScpFileInfo
from rawssh.session import AuthState, Session, SessionState
from rawssh.sftp import SFTP
from rawssh.sftp_handle import SFTPAttributes, SFTPDirEntry, SFTPHandle, SFTPStatVFS
from rawssh.transport import Transport

__all__ = [
    # Session
    "Session",
    "SessionState",
    "AuthState",
    "SessionConfig",
    "KeepaliveConfig",
    "Transport",
    # Backends
    "Backend",
    "AsyncSSHBackend",
    "KbdintResponder",
    # Channels
    "Channel",
    "ChannelState",
    "Listener",
    "ScpFileInfo",
    # SFTP
    "SFTP",
    "SFTPHandle",
    "SFTPAttributes",
    "SFTPDirEntry",
    "SFTPStatVFS",
    # Agent
    "Agent",
    "AgentIdentity",
    # Known hosts
    "KnownHosts",
    "KnownHostEntry",
    "KnownHostCheck",
    "hash_hostname",
    # Codes
    "ErrorKind",
    "classify",
    "code_name",
    "is_fatal",
    # Errors
    "SSHError",
    "ProtocolError",
    "SSHConnectionError",
    "AuthenticationError",
    "HostKeyMismatch",
    "AgentError",
    "ResourceError",
    "CommandError",
    "ErrorContext",
    "error_for_code",
    "raise_for_code",
    "raise_for_host_key",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    # Platform
    "expand_path",
    "get_agent_socket_path",
    "get_known_hosts_path",
]
