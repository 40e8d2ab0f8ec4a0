"""Analytics sinks for send attempts and outcomes.

Sinks are fire-and-forget from the core's perspective: callers catch and log
any exception raised by :meth:`record` so analytics never fails a send.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from comms.core.config import AnalyticsConfig
from comms.core.types import AnalyticsEvent


@runtime_checkable
class AnalyticsSink(Protocol):
    def record(self, event: AnalyticsEvent) -> None: ...


class InMemoryAnalyticsSink:
    """Keeps events in a list; used in tests and development."""

    def __init__(self) -> None:
        self.events: list[AnalyticsEvent] = []

    def record(self, event: AnalyticsEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[AnalyticsEvent]:
        return [e for e in self.events if e.event_type == event_type]


class JsonlAnalyticsSink:
    """Append-only JSONL event log, one line per event.

    Args:
        config: AnalyticsConfig instance. Defaults to AnalyticsConfig() which
            reads from environment variables.
    """

    def __init__(self, config: AnalyticsConfig | None = None) -> None:
        self._config = config or AnalyticsConfig()
        self._log_dir = Path(self._config.log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / self._config.log_file

    @property
    def path(self) -> Path:
        return self._log_path

    def record(self, event: AnalyticsEvent) -> None:
        with open(self._log_path, "a") as fh:
            fh.write(event.model_dump_json() + "\n")

    def query(self, filters: dict[str, Any] | None = None) -> list[AnalyticsEvent]:
        """Read back events, optionally filtered.

        Supported filter keys: ``event_type``, ``user_id``, ``message_id``,
        ``journey_id``; each is an exact match.
        """
        filters = filters or {}
        results: list[AnalyticsEvent] = []
        if not self._log_path.exists():
            return results

        with open(self._log_path) as fh:
            for line in fh:
                stripped = line.strip()
                if not stripped:
                    continue
                event = AnalyticsEvent(**json.loads(stripped))
                if any(
                    getattr(event, key) != value
                    for key, value in filters.items()
                    if key in ("event_type", "user_id", "message_id", "journey_id")
                ):
                    continue
                results.append(event)
        return results
