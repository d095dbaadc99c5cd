"""
Pytest fixtures for rawssh tests.

Provides:
- Connected socket pair and Transport fixtures
- FakeBackend-based sessions at each stage of the state machine
- MockSSHServer fixture for AsyncSSHBackend integration tests
- Event capture fixture for asserting event sequences
"""
from __future__ import annotations

import socket
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Generator

import pytest

if TYPE_CHECKING:
    from rawssh.events import EventCollector
    from rawssh.session import Session
    from rawssh.testing.fake_backend import FakeBackend, FakeServerConfig
    from rawssh.testing.mock_server import MockSSHServer


@pytest.fixture
def socket_pair() -> Generator[tuple[socket.socket, socket.socket], None, None]:
    """A connected pair of sockets; the first one is the client end."""
    client, server = socket.socketpair()
    yield client, server
    client.close()
    server.close()


@pytest.fixture
def fake_config() -> "FakeServerConfig":
    """Default fake server: user 'test' with password 'test'."""
    from rawssh.testing.fake_backend import FakeServerConfig

    return FakeServerConfig()


@pytest.fixture
def fake_backend(fake_config: "FakeServerConfig") -> "FakeBackend":
    from rawssh.testing.fake_backend import FakeBackend

    return FakeBackend(fake_config)


@pytest.fixture
def event_collector() -> Generator["EventCollector", None, None]:
    """
    Fixture for capturing and asserting event sequences.

    Usage:
        def test_example(make_session, event_collector):
            session = make_session(collector=event_collector)
            ...
            assert event_collector.get_by_type(EventType.HANDSHAKE)
    """
    from rawssh.events import EventCollector

    collector = EventCollector()
    yield collector
    collector.clear()


@pytest.fixture
def make_session(
    socket_pair: tuple[socket.socket, socket.socket],
    fake_backend: "FakeBackend",
) -> Callable[..., "Session"]:
    """
    Factory for sessions over the fake backend.

    Args (to the factory):
        stage: 'created', 'negotiated' or 'authenticated'
        blocking: Initial blocking mode
        collector: Optional EventCollector for the session's emitter
    """
    from rawssh.codes import ERROR_NONE
    from rawssh.config import SessionConfig
    from rawssh.events import EventEmitter
    from rawssh.session import Session
    from rawssh.transport import Transport

    def factory(
        stage: str = "authenticated",
        blocking: bool = True,
        collector: "EventCollector | None" = None,
    ) -> Session:
        assert stage in ("created", "negotiated", "authenticated"), f"Unknown stage {stage}"
        session = Session(
            Transport(socket_pair[0]),
            fake_backend,
            SessionConfig(blocking=True),
            EventEmitter(collector=collector),
        )
        if stage != "created":
            assert session.handshake() == ERROR_NONE
        if stage == "authenticated":
            assert session.userauth_password("test", "test") == ERROR_NONE
        session.set_blocking(blocking)
        return session

    return factory


@pytest.fixture
def session(make_session: Callable[..., "Session"]) -> "Session":
    """An authenticated, blocking session over the fake backend."""
    return make_session()


@pytest.fixture
def sftp_root(tmp_path: Path) -> Path:
    root = tmp_path / "sftp-root"
    root.mkdir()
    return root


@pytest.fixture
def mock_ssh_server(sftp_root: Path) -> Generator["MockSSHServer", None, None]:
    """
    MockSSHServer accepting test/test, serving sftp_root over SFTP and SCP.

    Usage:
        def test_example(mock_ssh_server, connect_session):
            session = connect_session()
            channel = ...
    """
    from rawssh.testing.mock_server import MockServerConfig, MockSSHServer

    config = MockServerConfig(username="test", password="test", sftp_root=sftp_root)
    with MockSSHServer(config) as server:
        yield server


@pytest.fixture
def connect_session(
    mock_ssh_server: "MockSSHServer",
) -> Generator[Callable[..., "Session"], None, None]:
    """
    Factory for AsyncSSHBackend sessions connected to mock_ssh_server.

    Sessions are blocking with a 10 second timeout and handshaken; pass
    authenticate=True to also log in with the password.
    """
    from rawssh.codes import ERROR_NONE
    from rawssh.config import SessionConfig
    from rawssh.session import Session
    from rawssh.transport import Transport

    sessions: list[Session] = []

    def factory(authenticate: bool = False, **config_args: object) -> Session:
        sock = socket.create_connection(("127.0.0.1", mock_ssh_server.port), timeout=10)
        config = SessionConfig(blocking=True, timeout_ms=10000, username="test", **config_args)
        session = Session(Transport(sock), config=config)
        sessions.append(session)
        assert session.handshake() == ERROR_NONE, session.last_error()
        if authenticate:
            assert session.userauth_password("test", "test") == ERROR_NONE, session.last_error()
        return session

    yield factory

    for session in sessions:
        if not session.freed:
            session.free()
        session.transport.close()


@pytest.fixture
def temp_jsonl_path(tmp_path: Path) -> Path:
    """Provide a temporary path for JSONL event log output."""
    return tmp_path / "events.jsonl"
