"""
Session configuration.

Provides:
- KeepaliveConfig: SSH-level keepalive settings
- SessionConfig: initial session settings and algorithm preferences

Blocking mode and timeout in SessionConfig are only initial values; both
can be changed later through Session.set_blocking() and set_timeout().
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from rawssh.codes import (
    CHANNEL_PACKET_DEFAULT,
    CHANNEL_WINDOW_DEFAULT,
    METHOD_COMP_CS,
    METHOD_COMP_SC,
    METHOD_CRYPT_CS,
    METHOD_CRYPT_SC,
    METHOD_HOSTKEY,
    METHOD_KEX,
    METHOD_MAC_CS,
    METHOD_MAC_SC,
)

# asyncssh option names for each method type
_METHOD_OPTIONS = {
    METHOD_KEX: "kex_algs",
    METHOD_HOSTKEY: "server_host_key_algs",
    METHOD_CRYPT_CS: "encryption_algs",
    METHOD_CRYPT_SC: "encryption_algs",
    METHOD_MAC_CS: "mac_algs",
    METHOD_MAC_SC: "mac_algs",
    METHOD_COMP_CS: "compression_algs",
    METHOD_COMP_SC: "compression_algs",
}


@dataclass
class KeepaliveConfig:
    """
    Configuration for SSH connection keepalive.

    - interval_sec: Seconds between keepalive packets, 0 disables
    - want_reply: Ask the peer to reply to each keepalive
    - max_count: Missed replies tolerated before the backend disconnects

    Usage:
        config = KeepaliveConfig(interval_sec=10, want_reply=True)
    """
    interval_sec: int = 0
    want_reply: bool = False
    max_count: int = 3

    def __post_init__(self) -> None:
        """Validate configuration."""
        assert self.interval_sec >= 0, \
            f"interval_sec must be non-negative, got {self.interval_sec}"
        assert self.max_count > 0, \
            f"max_count must be positive, got {self.max_count}"

    def to_asyncssh_options(self) -> dict[str, Any]:
        """
        Convert to AsyncSSH connection options.

        Returns:
            Dict with keepalive_interval and keepalive_count_max keys.
        """
        return {
            "keepalive_interval": self.interval_sec,
            "keepalive_count_max": self.max_count,
        }


@dataclass
class SessionConfig:
    """
    Initial settings for a Session.

    - blocking: Start in blocking mode
    - timeout_ms: Upper bound on blocking calls, 0 waits forever
    - username: Login name backends need at connect time (defaults to the
      local user); each auth call still names its own user
    - window_size / max_packet_size: Channel flow-control parameters
    - agent_forwarding: Allow Channel.request_auth_agent()
    - keepalive: Optional keepalive settings
    - method_prefs: Algorithm preference lists keyed by METHOD_* type
    """
    blocking: bool = True
    timeout_ms: int = 0
    username: str | None = None
    window_size: int = CHANNEL_WINDOW_DEFAULT
    max_packet_size: int = CHANNEL_PACKET_DEFAULT
    agent_forwarding: bool = False
    keepalive: KeepaliveConfig | None = None
    method_prefs: dict[int, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        assert self.timeout_ms >= 0, \
            f"timeout_ms must be non-negative, got {self.timeout_ms}"
        assert self.window_size > 0, \
            f"window_size must be positive, got {self.window_size}"
        assert 0 < self.max_packet_size <= self.window_size, \
            f"max_packet_size must be in 1..window_size, got {self.max_packet_size}"
        for method_type in self.method_prefs:
            assert method_type in _METHOD_OPTIONS, \
                f"Unsupported method type for preferences: {method_type}"

    def to_asyncssh_options(self) -> dict[str, Any]:
        """
        Convert to AsyncSSH connection options.

        Only settings that asyncssh takes at connect time are included.
        """
        options: dict[str, Any] = {
            "window": self.window_size,
            "max_pktsize": self.max_packet_size,
            "agent_forwarding": self.agent_forwarding,
        }
        if self.keepalive is not None:
            options.update(self.keepalive.to_asyncssh_options())
        for method_type, prefs in self.method_prefs.items():
            key = _METHOD_OPTIONS[method_type]
            merged = options.setdefault(key, [])
            for alg in prefs:
                if alg not in merged:
                    merged.append(alg)
        return options
