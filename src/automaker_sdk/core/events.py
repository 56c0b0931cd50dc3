"""Event sinks — fire-and-forget ``(event_name, payload)`` notification."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@runtime_checkable
class EventEmitter(Protocol):
    """Structural type for any UI/notification sink.

    Services accept this Protocol so they work with a websocket bridge, a
    test recorder or nothing at all.
    """

    def emit(self, event: str, payload: dict[str, Any]) -> None: ...


class NullEmitter:
    """Drops every event (logs at debug level)."""

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        logger.debug("event_dropped", event_name=event)


class RecordingEmitter:
    """Keeps every emitted event in memory.

    Usage::

        events = RecordingEmitter()
        gatekeeper = MergeGatekeeper(runner, emitter=events)
        ...
        events.assert_emitted("merge-gatekeeper:merged")
    """

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def named(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]

    def assert_emitted(self, event: str) -> None:
        names = [name for name, _ in self.events]
        assert event in names, f"Expected event '{event}', got: {names}"

    def reset(self) -> None:
        self.events.clear()


def safe_emit(emitter: EventEmitter | None, event: str, payload: dict[str, Any]) -> None:
    """Emit without letting a faulty sink break the caller."""
    if emitter is None:
        return
    try:
        emitter.emit(event, payload)
    except Exception as exc:  # noqa: BLE001
        logger.warning("event_emit_failed", event_name=event, error=str(exc))
