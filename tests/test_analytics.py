"""Tests for the analytics sinks."""

from __future__ import annotations

from comms.analytics import AnalyticsSink, InMemoryAnalyticsSink, JsonlAnalyticsSink
from comms.core.config import AnalyticsConfig
from comms.core.types import AnalyticsEvent, Channel

from tests.conftest import NOW


def _event(event_type: str, user_id: str = "u1", **kwargs) -> AnalyticsEvent:
    return AnalyticsEvent(event_type=event_type, user_id=user_id, timestamp=NOW, **kwargs)


class TestJsonlAnalyticsSink:
    def test_record_and_query(self, tmp_path) -> None:
        sink = JsonlAnalyticsSink(AnalyticsConfig(log_dir=str(tmp_path / "logs")))
        sink.record(_event("message.sent", message_id="msg_1", channel=Channel.EMAIL))
        sink.record(_event("message.failed", message_id="msg_2"))
        sink.record(_event("journey.enrolled", user_id="u2", journey_id="onboarding"))

        assert sink.path.exists()
        assert len(sink.query()) == 3
        sent = sink.query({"event_type": "message.sent"})
        assert len(sent) == 1
        assert sent[0].channel == Channel.EMAIL
        assert sent[0].timestamp == NOW
        assert [e.event_type for e in sink.query({"user_id": "u2"})] == ["journey.enrolled"]
        assert sink.query({"journey_id": "winback"}) == []

    def test_query_without_file(self, tmp_path) -> None:
        sink = JsonlAnalyticsSink(AnalyticsConfig(log_dir=str(tmp_path)))
        assert sink.query() == []

    def test_unknown_filter_keys_are_ignored(self, tmp_path) -> None:
        sink = JsonlAnalyticsSink(AnalyticsConfig(log_dir=str(tmp_path)))
        sink.record(_event("message.sent"))
        assert len(sink.query({"colour": "blue"})) == 1


def test_sinks_satisfy_protocol(tmp_path) -> None:
    assert isinstance(InMemoryAnalyticsSink(), AnalyticsSink)
    assert isinstance(JsonlAnalyticsSink(AnalyticsConfig(log_dir=str(tmp_path))), AnalyticsSink)


def test_in_memory_filters_by_type() -> None:
    sink = InMemoryAnalyticsSink()
    sink.record(_event("message.sent"))
    sink.record(_event("message.fallback"))
    assert [e.event_type for e in sink.of_type("message.fallback")] == ["message.fallback"]
