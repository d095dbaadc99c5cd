"""
Tests for remote port forwarding listeners.

Tests cover:
- Binding fixed and server-chosen ports
- Accepting forwarded connections and moving data over them
- Cancellation and session teardown
"""
from __future__ import annotations

from typing import Callable

import pytest

from rawssh.codes import (
    ERROR_BAD_USE,
    ERROR_EAGAIN,
    ERROR_NONE,
    ERROR_REQUEST_DENIED,
    ERROR_TIMEOUT,
)
from rawssh.events import EventCollector, EventType
from rawssh.session import Session
from rawssh.testing.fake_backend import FakeBackend, FakeServerConfig


class TestForwardListen:
    """Test Session.forward_listen()."""

    def test_fixed_port(self, session: Session) -> None:
        rc, listener = session.forward_listen("127.0.0.1", 8080)
        assert rc == ERROR_NONE
        assert listener.host == "127.0.0.1"
        assert listener.bound_port == 8080
        assert not listener.cancelled

    def test_server_chooses_port(self, session: Session) -> None:
        rc, first = session.forward_listen()
        rc, second = session.forward_listen()
        assert first.bound_port > 0
        assert second.bound_port != first.bound_port

    def test_port_in_use(self, session: Session) -> None:
        session.forward_listen("", 2222)
        rc, listener = session.forward_listen("", 2222)
        assert rc == ERROR_REQUEST_DENIED
        assert listener is None

    def test_denied_by_server(self, session: Session, fake_config: FakeServerConfig) -> None:
        fake_config.allow_remote_forward = False
        assert session.forward_listen("", 9000) == (ERROR_REQUEST_DENIED, None)

    def test_requires_authentication(self, make_session: Callable[..., Session]) -> None:
        session = make_session(stage="negotiated")
        assert session.forward_listen("", 9000) == (ERROR_BAD_USE, None)


class TestAccept:
    """Test Listener.accept()."""

    def test_nothing_pending(self, session: Session) -> None:
        rc, listener = session.forward_listen("", 9000)
        assert listener.accept() == (ERROR_NONE, None)

    def test_accept_and_echo(self, session: Session, fake_backend: FakeBackend) -> None:
        rc, listener = session.forward_listen("", 9000)
        assert fake_backend.connect_forwarded(9000, b"GET / HTTP/1.0\r\n\r\n") is not None

        rc, channel = listener.accept()
        assert rc == ERROR_NONE
        assert channel.kind == "forwarded-tcpip"
        assert channel.recv(1024) == (ERROR_NONE, b"GET / HTTP/1.0\r\n\r\n")

        assert channel.write(b"pong") == (ERROR_NONE, 4)
        assert channel.recv(1024) == (ERROR_NONE, b"pong")

    def test_connections_accepted_in_order(
        self, session: Session, fake_backend: FakeBackend,
    ) -> None:
        rc, listener = session.forward_listen("", 9000)
        fake_backend.connect_forwarded(9000, b"first")
        fake_backend.connect_forwarded(9000, b"second")

        received = []
        for _ in range(2):
            rc, channel = listener.accept()
            received.append(channel.recv(100)[1])
        assert received == [b"first", b"second"]
        assert listener.accept() == (ERROR_NONE, None)

    def test_queue_limit(self, session: Session, fake_backend: FakeBackend) -> None:
        rc, listener = session.forward_listen("", 9000, queue_maxsize=1)
        assert fake_backend.connect_forwarded(9000, b"a") is not None
        assert fake_backend.connect_forwarded(9000, b"b") is None

    def test_accept_would_block(
        self, make_session: Callable[..., Session], fake_backend: FakeBackend,
    ) -> None:
        session = make_session(blocking=False)
        rc, listener = session.forward_listen("", 9000)
        fake_backend.stall("forward_accept")
        assert listener.accept() == (ERROR_EAGAIN, None)
        assert listener.accept() == (ERROR_NONE, None)

    def test_events(
        self,
        make_session: Callable[..., Session],
        fake_backend: FakeBackend,
        event_collector: EventCollector,
    ) -> None:
        session = make_session(collector=event_collector)
        rc, listener = session.forward_listen("", 0)
        fake_backend.connect_forwarded(listener.bound_port, b"x")
        listener.accept()
        listener.cancel()

        actions = [e.data["action"] for e in event_collector.get_by_type(EventType.FORWARD)]
        assert actions == ["listen", "accept", "cancel"]


class TestCancel:
    def test_cancel(self, session: Session, fake_backend: FakeBackend) -> None:
        rc, listener = session.forward_listen("", 9000)
        assert listener.cancel() == ERROR_NONE
        assert listener.cancelled
        assert listener.accept() == (ERROR_BAD_USE, None)
        assert listener.cancel() == ERROR_BAD_USE
        # The port can be bound again
        assert session.forward_listen("", 9000)[0] == ERROR_NONE

    def test_accepted_channel_survives_cancel(
        self, session: Session, fake_backend: FakeBackend,
    ) -> None:
        rc, listener = session.forward_listen("", 9000)
        fake_backend.connect_forwarded(9000, b"keep")
        rc, channel = listener.accept()
        listener.cancel()
        assert channel.recv(10) == (ERROR_NONE, b"keep")

    def test_cancel_timeout_can_be_retried(
        self, session: Session, fake_backend: FakeBackend,
    ) -> None:
        rc, listener = session.forward_listen("", 9000)
        session.set_timeout(100)
        fake_backend.stall("forward_cancel")
        assert listener.cancel() == ERROR_TIMEOUT
        assert not listener.cancelled
        assert listener.cancel() == ERROR_NONE
        assert listener.cancelled

    def test_cancel_would_block_can_be_retried(
        self, make_session: Callable[..., Session], fake_backend: FakeBackend,
    ) -> None:
        session = make_session(blocking=False)
        rc, listener = session.forward_listen("", 9000)
        fake_backend.stall("forward_cancel")
        assert listener.cancel() == ERROR_EAGAIN
        assert not listener.cancelled
        assert listener.cancel() == ERROR_NONE

    @pytest.mark.parametrize("operation", ["accept", "cancel"])
    def test_session_free_invalidates(self, session: Session, operation: str) -> None:
        rc, listener = session.forward_listen("", 9000)
        session.free()
        result = getattr(listener, operation)()
        rc = result[0] if isinstance(result, tuple) else result
        assert rc == ERROR_BAD_USE
