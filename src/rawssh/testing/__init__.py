"""
Testing utilities for rawssh.

Provides FakeBackend for scripted, in-memory sessions and MockSSHServer for
integration testing of AsyncSSHBackend without Docker.
"""
from rawssh.testing.fake_backend import FakeBackend, FakeChannel, FakeServerConfig
from rawssh.testing.fake_peer import FakeCommand, FakeFilesystem
from rawssh.testing.mock_server import MockServerConfig, MockSSHServer

__all__ = [
    "FakeBackend",
    "FakeChannel",
    "FakeCommand",
    "FakeFilesystem",
    "FakeServerConfig",
    "MockSSHServer",
    "MockServerConfig",
]
