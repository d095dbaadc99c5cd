"""
Observer for session and channel diagnostics.

An EventEmitter is passed explicitly to Session (and inherited by the
channels, SFTP root and listeners it creates). With no sinks configured it
does nothing, so the core carries no process-wide logging state.

Event types:
- HANDSHAKE: transport negotiation finished or failed
- AUTH: authentication attempt result
- CHANNEL: channel opened, started, closed or freed
- SFTP: SFTP subsystem started or shut down
- SCP: SCP transfer set up
- FORWARD: port forward listened, accepted or cancelled
- AGENT: agent connected, listed or disconnected
- DISCONNECT: session disconnected or freed
- ERROR: an operation failed with a non-incomplete code

The incomplete status is not an event: a retry loop emits nothing until
the operation resolves.
"""
from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any


class EventType(str, Enum):
    """Session event types for structured logging."""
    HANDSHAKE = "HANDSHAKE"
    AUTH = "AUTH"
    CHANNEL = "CHANNEL"
    SFTP = "SFTP"
    SCP = "SCP"
    FORWARD = "FORWARD"
    AGENT = "AGENT"
    DISCONNECT = "DISCONNECT"
    ERROR = "ERROR"


@dataclass
class Event:
    """
    A single diagnostic record.

    - event_type: The category of event
    - timestamp: When the event occurred (Unix ms)
    - data: Event-specific structured data
    """
    event_type: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate event on creation."""
        valid_types = {e.value for e in EventType}
        assert self.event_type in valid_types, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {valid_types}"
        assert self.timestamp > 0, \
            f"Timestamp must be positive, got {self.timestamp}"

    def to_json(self) -> str:
        """Serialise event to JSON string."""
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        """Deserialise event from JSON string."""
        data = json.loads(json_str)
        return cls(
            event_type=data["event_type"],
            timestamp=data["timestamp"],
            data=data.get("data", {}),
        )


class EventCollector:
    """Collects events in memory for testing and inspection."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Return collected events (copy)."""
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        """Get all events of a specific type."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return [e for e in self._events if e.event_type == event_type]


class JSONLEventWriter:
    """Writes events to a JSONL file, one JSON object per line."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None

    def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None

    def emit(self, event: Event) -> None:
        assert self._file is not None, "Writer not opened. Call open() first."
        self._file.write(event.to_json() + "\n")
        self._file.flush()

    def __enter__(self) -> "JSONLEventWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Dispatches events to zero or more sinks.

    EventEmitter() with no arguments is the no-op observer used when a
    Session is created without one.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
    ) -> None:
        self._collector = collector
        self._jsonl_writer: JSONLEventWriter | None = None

        if jsonl_path:
            self._jsonl_writer = JSONLEventWriter(jsonl_path)
            self._jsonl_writer.open()

    @property
    def enabled(self) -> bool:
        """True if at least one sink is attached."""
        return self._collector is not None or self._jsonl_writer is not None

    def emit(self, event_type: str | EventType, **data: Any) -> Event | None:
        """
        Create and emit an event.

        Args:
            event_type: The type of event
            **data: Event-specific data

        Returns:
            The created event, or None when no sink is attached
        """
        if not self.enabled:
            return None
        if isinstance(event_type, EventType):
            event_type = event_type.value

        event = Event(event_type=event_type, data=data)

        if self._collector:
            self._collector.emit(event)
        if self._jsonl_writer:
            self._jsonl_writer.emit(event)

        return event

    def close(self) -> None:
        """Close any open resources. Later events still reach the collector."""
        if self._jsonl_writer:
            self._jsonl_writer.close()
            self._jsonl_writer = None


def read_jsonl_events(path: Path | str) -> list[Event]:
    """Read all events from a JSONL file."""
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"

    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                events.append(Event.from_json(line))

    return events
