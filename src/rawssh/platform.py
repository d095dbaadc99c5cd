"""
Cross-platform path handling.

Provides:
- Platform-appropriate SSH directory and known_hosts paths
- Path expansion for key files
- SSH agent socket discovery for Unix and Windows
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

# Named pipe the Windows OpenSSH Authentication Agent service listens on
WINDOWS_AGENT_PIPE = r"\\.\pipe\openssh-ssh-agent"


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def get_ssh_dir() -> Path:
    """
    Get the platform-appropriate SSH directory.

    Returns:
        ~/.ssh on Unix, %USERPROFILE%\\.ssh on Windows
    """
    if is_windows():
        userprofile = os.environ.get("USERPROFILE")
        if userprofile:
            return Path(userprofile) / ".ssh"
        home = os.environ.get("HOME")
        if home:
            return Path(home) / ".ssh"
    return Path.home() / ".ssh"


def get_known_hosts_path() -> Path:
    """Default known_hosts file for the current user."""
    return get_ssh_dir() / "known_hosts"


def expand_path(path: str | Path) -> Path:
    """
    Expand a path, handling ~ and environment variables.

    On Unix: expands ~ to $HOME
    On Windows: expands ~ to %USERPROFILE%, also expands %VAR% syntax
    """
    path_str = str(path)
    if is_windows():
        path_str = os.path.expandvars(path_str)
    return Path(path_str).expanduser()


def get_agent_socket_path() -> str | None:
    """
    Locate the SSH agent.

    On Unix: $SSH_AUTH_SOCK if it names an existing socket
    On Windows: $SSH_AUTH_SOCK, else the OpenSSH agent named pipe

    Returns:
        Socket or pipe path, None if no agent is configured
    """
    auth_sock = os.environ.get("SSH_AUTH_SOCK")
    if auth_sock:
        if is_windows() or Path(auth_sock).exists():
            return auth_sock
        return None
    if is_windows():
        return WINDOWS_AGENT_PIPE
    return None
