"""
Tests for the SessionStore implementation.

These tests verify the session lifecycle, append ordering, derived
statistics, write-through persistence and change streaming.
"""

import asyncio
import json

import pytest

from bemore_core.models import (
    ChatMessage,
    EmotionLabel,
    EmotionRecord,
    EmotionTrend,
    MediaType,
    Role,
    VADScore,
)
from bemore_core.persistence import MemoryStorage
from bemore_core.store import (
    SESSION_STORAGE_KEY,
    STREAM_BUFFER_SIZE,
    ObservableStore,
    SessionStore,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FailingStorage(MemoryStorage):
    def set(self, key: str, value: str) -> None:
        raise OSError("quota exceeded")


def record(valence: float, emotion: EmotionLabel = EmotionLabel.NEUTRAL) -> EmotionRecord:
    return EmotionRecord(
        vad=VADScore(valence=valence, arousal=0.5, dominance=0.5),
        emotion=emotion,
        confidence=0.8,
        timestamp=1_000.0,
    )


class TestSessionStore:
    """Test suite for SessionStore functionality."""

    def setup_method(self):
        """Set up a fresh SessionStore for each test."""
        self.storage = MemoryStorage()
        self.clock = FakeClock()
        self.store = SessionStore(self.storage, clock=self.clock)

    def test_initial_state(self):
        """Test that a new store has no session."""
        assert self.store.session is None
        assert self.store.session_duration() is None
        assert self.store.average_valence() == 0
        assert self.store.emotion_trend() is EmotionTrend.STABLE

    def test_start_session(self):
        """Test that starting creates an empty session stamped with now."""
        session = self.store.start_session()
        assert session.id.startswith("session_")
        assert session.start_time == 1_000.0
        assert session.end_time is None
        assert session.emotion_history == []
        assert session.chat_history == []

    def test_start_session_replaces_previous(self):
        """Test that a second start discards the first session's history."""
        first = self.store.start_session()
        self.store.add_emotion_analysis(record(0.5))

        second = self.store.start_session()
        assert second.id != first.id
        assert self.store.session.emotion_history == []

    def test_appends_keep_call_order(self):
        """Test that N appends yield N records in call order."""
        self.store.start_session()
        records = [record(i / 10) for i in range(7)]
        for r in records:
            self.store.add_emotion_analysis(r)

        history = self.store.session.emotion_history
        assert len(history) == 7
        # All share a timestamp, so only call order can explain this order
        assert [r.id for r in history] == [r.id for r in records]

    def test_chat_messages_append(self):
        """Test chat message appends."""
        self.store.start_session()
        first = ChatMessage(role=Role.USER, content="hello")
        second = ChatMessage(role=Role.ASSISTANT, content="hi there")
        self.store.add_chat_message(first)
        self.store.add_chat_message(second)

        assert self.store.session.chat_history == [first, second]

    def test_appends_without_session_are_ignored(self):
        """Test that appends before start neither fail nor create a session."""
        self.store.add_emotion_analysis(record(0.5))
        self.store.add_chat_message(ChatMessage(role=Role.USER, content="hello"))
        assert self.store.session is None

    def test_end_session_without_session(self):
        """Test that ending with no session is a no-op."""
        self.store.end_session()
        assert self.store.session is None

    def test_session_duration(self):
        """Test duration while running and after ending."""
        self.store.start_session()
        self.clock.now += 30
        assert self.store.session_duration() == 30

        self.store.end_session()
        self.clock.now += 100
        assert self.store.session_duration() == 30

    def test_clear_session(self):
        """Test that clearing discards the session and the error."""
        self.store.start_session()
        self.store.set_error("boom")
        self.store.clear_session()

        assert self.store.session is None
        assert self.store.last_error is None

    def test_session_snapshot_is_a_copy(self):
        """Test that callers cannot mutate the owned history."""
        self.store.start_session()
        snapshot = self.store.session
        snapshot.emotion_history.append(record(0.9))
        assert self.store.session.emotion_history == []

    def test_average_valence(self):
        """Test the mean valence over the whole history."""
        self.store.start_session()
        for valence in (0.2, 0.4, 0.9):
            self.store.add_emotion_analysis(record(valence))
        assert self.store.average_valence() == pytest.approx(0.5)


class TestEmotionTrend:
    """Trend over the last two windows of five records."""

    def setup_method(self):
        self.store = SessionStore(MemoryStorage())
        self.store.start_session()

    def add(self, *valences: float) -> None:
        for valence in valences:
            self.store.add_emotion_analysis(record(valence))

    def test_fewer_than_two_records_is_stable(self):
        """Test that a single record is always stable."""
        self.add(0.9)
        assert self.store.emotion_trend() is EmotionTrend.STABLE
        assert self.store.trend_change() == 0

    def test_no_preceding_window_is_stable(self):
        """Test that five or fewer records are stable whatever their values."""
        self.add(0.1, 0.9, 0.9, 0.9, 0.9)
        assert self.store.emotion_trend() is EmotionTrend.STABLE

    def test_improving(self):
        """Test a rise in mean valence beyond the threshold."""
        self.add(0.2, 0.2, 0.2, 0.2, 0.2, 0.6, 0.6, 0.6, 0.6, 0.6)
        assert self.store.emotion_trend() is EmotionTrend.IMPROVING
        assert self.store.trend_change() == pytest.approx(0.4)

    def test_declining(self):
        """Test a drop in mean valence beyond the threshold."""
        self.add(0.8, 0.8, 0.8, 0.3, 0.3, 0.3, 0.3, 0.3)
        # recent: last five (0.3 x5); older: first three (0.8 x3)
        assert self.store.emotion_trend() is EmotionTrend.DECLINING

    def test_small_change_is_stable(self):
        """Test that changes within the threshold are stable."""
        self.add(0.5, 0.5, 0.5, 0.5, 0.5, 0.55, 0.55, 0.55, 0.55, 0.55)
        assert self.store.emotion_trend() is EmotionTrend.STABLE

    def test_only_last_ten_records_count(self):
        """Test that records older than two windows are ignored."""
        self.add(0.0, 0.0, 0.0)
        self.add(0.5, 0.5, 0.5, 0.5, 0.5, 0.5, 0.5, 0.5, 0.5, 0.5)
        assert self.store.emotion_trend() is EmotionTrend.STABLE

    def test_summary(self):
        """Test the derived session summary."""
        self.store.add_emotion_analysis(record(0.8, EmotionLabel.HAPPY))
        self.store.add_emotion_analysis(record(0.9, EmotionLabel.HAPPY))
        self.store.add_emotion_analysis(record(0.1, EmotionLabel.SAD))
        self.store.add_chat_message(ChatMessage(role=Role.USER, content="hi"))

        summary = self.store.summary()
        assert summary.session_id == self.store.session_id
        assert summary.total_records == 3
        assert summary.total_messages == 1
        assert summary.emotion_distribution == {
            EmotionLabel.HAPPY: 2,
            EmotionLabel.SAD: 1,
        }
        assert summary.dominant_emotion is EmotionLabel.HAPPY
        assert summary.average_valence == pytest.approx(0.6)


class TestSessionPersistence:
    """Write-through persistence of the session."""

    def test_session_survives_reload(self):
        """Test that a new store restores the persisted session."""
        storage = MemoryStorage()
        store = SessionStore(storage)
        store.start_session()
        store.add_emotion_analysis(record(0.7, EmotionLabel.HAPPY))
        store.add_chat_message(ChatMessage(role=Role.USER, content="hello"))
        store.end_session()

        reloaded = SessionStore(storage)
        assert reloaded.session == store.session

    def test_error_is_not_persisted(self):
        """Test that the retained error is transient."""
        storage = MemoryStorage()
        store = SessionStore(storage)
        store.start_session()
        store.set_error("Server responded with HTTP 500.")

        assert SessionStore(storage).last_error is None

    def test_clear_is_persisted(self):
        """Test that clearing also clears the persisted session."""
        storage = MemoryStorage()
        store = SessionStore(storage)
        store.start_session()
        store.clear_session()

        assert SessionStore(storage).session is None

    def test_storage_failure_does_not_crash(self):
        """Test that a failing backend leaves the in-memory store working."""
        store = SessionStore(FailingStorage())
        store.start_session()
        store.add_emotion_analysis(record(0.5))

        assert len(store.session.emotion_history) == 1

    def test_corrupt_storage_starts_empty(self):
        """Test that unreadable persisted state falls back to no session."""
        storage = MemoryStorage({SESSION_STORAGE_KEY: "{not json"})
        assert SessionStore(storage).session is None

    def test_legacy_session_with_localized_labels_is_restored(self):
        """Test that a version-0 session keeps its records after the upgrade."""
        legacy = {
            "version": 0,
            "state": {
                "currentSession": {
                    "id": "session_1",
                    "startTime": "2023-11-14T22:13:20.000Z",
                    "emotionHistory": [
                        {
                            "id": "analysis_1",
                            "vadScore": {"valence": 0.8, "arousal": 0.5, "dominance": 0.5},
                            "emotion": "기쁨",
                            "confidence": 0.9,
                            "mediaType": "consultation",
                            "timestamp": "2023-11-14T22:14:00.000Z",
                        }
                    ],
                    "chatHistory": [],
                }
            },
        }
        store = SessionStore(MemoryStorage({SESSION_STORAGE_KEY: json.dumps(legacy)}))

        assert store.session is not None
        [restored] = store.session.emotion_history
        assert restored.emotion is EmotionLabel.HAPPY
        assert restored.media_type is MediaType.MULTIMODAL
        assert store.summary().total_records == 1


class TestSessionStream:
    """Change notification and streaming."""

    def test_subscribe_and_unsubscribe(self):
        """Test that listeners see each change until they unsubscribe."""
        store = SessionStore(MemoryStorage())
        seen = []
        unsubscribe = store.subscribe(seen.append)

        store.start_session()
        store.add_emotion_analysis(record(0.5))
        unsubscribe()
        store.end_session()

        assert len(seen) == 2
        assert seen[1].summary.total_records == 1

    async def test_streaming(self):
        """Test that two consumers receive the snapshot and every change."""
        store = SessionStore(MemoryStorage())
        consumer1_counts = []
        consumer2_counts = []

        async def consume(target: list[int]) -> None:
            async with store.stream() as session_stream:
                async for state in session_stream:
                    target.append(state.summary.total_records)
                    if len(target) >= 3:
                        break

        task1 = asyncio.create_task(consume(consumer1_counts))
        task2 = asyncio.create_task(consume(consumer2_counts))
        await asyncio.sleep(0.01)

        store.start_session()
        store.add_emotion_analysis(record(0.5))

        try:
            await asyncio.wait_for(asyncio.gather(task1, task2), timeout=2.0)
        except TimeoutError:
            task1.cancel()
            task2.cancel()
            assert False, f"Test timed out: {consumer1_counts}, {consumer2_counts}"

        assert consumer1_counts == [0, 0, 1]
        assert consumer2_counts == [0, 0, 1]

    async def test_stalled_subscriber_keeps_newest_snapshots(self):
        """Test that a slow consumer's buffer is bounded and stays current."""
        store = SessionStore(MemoryStorage())
        store.start_session()

        async with store.stream() as session_stream:
            first = await session_stream.__anext__()
            assert first.summary.total_records == 0

            changes = STREAM_BUFFER_SIZE + 24
            for _ in range(changes):
                store.add_emotion_analysis(record(0.5))

            counts = []
            for _ in range(STREAM_BUFFER_SIZE):
                state = await asyncio.wait_for(session_stream.__anext__(), timeout=1.0)
                counts.append(state.summary.total_records)

            assert counts == list(range(changes - STREAM_BUFFER_SIZE + 1, changes + 1))

            store.end_session()
            state = await asyncio.wait_for(session_stream.__anext__(), timeout=1.0)
            assert state.session.end_time is not None
            assert state.summary.total_records == changes


class TestObservableStore:
    """Contract of the observable store base class."""

    def test_missing_overrides_fail_at_construction(self):
        """Test that a subclass must provide both state accessors."""

        class SnapshotOnly(ObservableStore):
            def snapshot(self):
                return None

        with pytest.raises(TypeError):
            SnapshotOnly(MemoryStorage(), "key")
