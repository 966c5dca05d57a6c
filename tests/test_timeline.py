"""
Tests for the client's local message list.
"""

from relay.client.timeline import Timeline
from relay.schemas import MessageRecord


def record(message_id: str, timestamp: int) -> MessageRecord:
    return MessageRecord(id=message_id, text=message_id, author="bob", timestamp=timestamp)


class TestTimeline:

    def test_merge_sorts_and_dedups(self):
        timeline = Timeline()
        timeline.add(record("b", 2000))

        added = timeline.merge([record("a", 1000), record("b", 2000), record("c", 3000)])

        assert added == 2
        assert [r.id for r in timeline] == ["a", "b", "c"]

    def test_add_duplicate(self):
        timeline = Timeline()

        assert timeline.add(record("a", 1000)) is True
        assert timeline.add(record("a", 1000)) is False
        assert len(timeline) == 1

    def test_cap_keeps_newest(self):
        timeline = Timeline(limit=3)

        timeline.merge([record(f"m{i}", 1000 + i) for i in range(5)])

        assert [r.id for r in timeline] == ["m2", "m3", "m4"]
        assert "m0" not in timeline

    def test_clear(self):
        timeline = Timeline()
        timeline.add(record("a", 1000))

        timeline.clear()

        assert len(timeline) == 0
        assert timeline.add(record("a", 1000)) is True
