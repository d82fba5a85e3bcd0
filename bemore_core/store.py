"""
Session storage for BeMore Core.

This module provides the session store: the single owner of the active
session's identity and its append-only emotion and chat histories. Every
mutation goes through the store's operations, is written through to the
persistence backend on a best-effort basis and is published to subscribers.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Generic, TypeVar

from pydantic import BaseModel

from .models import (
    ChatMessage,
    EmotionRecord,
    EmotionTrend,
    Session,
    SessionState,
    SessionSummary,
)
from .persistence import KeyValueStorage, load_state, save_state

logger = logging.getLogger(__name__)

SESSION_STORAGE_KEY = "bemore-session-storage"
DEFAULT_TREND_WINDOW = 5
DEFAULT_TREND_THRESHOLD = 0.1

# Snapshots buffered per stream subscriber; older ones are dropped first
STREAM_BUFFER_SIZE = 16

StateT = TypeVar("StateT", bound=BaseModel)
Listener = Callable[[StateT], None]


class ObservableStore(ABC, Generic[StateT]):
    """
    Base for stores that publish a state snapshot after every change.

    Subscribers are plain callables invoked synchronously, in subscription
    order, on the thread that performed the mutation.
    """

    def __init__(self, storage: KeyValueStorage, storage_key: str) -> None:
        self._storage = storage
        self._storage_key = storage_key
        self._listeners: list[Listener[StateT]] = []

    @abstractmethod
    def snapshot(self) -> StateT:
        """Return the state published to subscribers."""

    @abstractmethod
    def _persisted_state(self) -> BaseModel:
        """Return the whitelisted subset written to storage."""

    def subscribe(self, listener: Listener[StateT]) -> Callable[[], None]:
        """
        Register a listener for state changes.

        Returns:
            A callable that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self) -> None:
        """Persist the whitelisted state and notify listeners."""
        try:
            save_state(self._storage, self._storage_key, self._persisted_state())
        except Exception as e:
            # Memory state stays authoritative when the backend fails
            logger.warning("Could not persist %r: %s", self._storage_key, e)

        state = self.snapshot()
        for listener in list(self._listeners):
            listener(state)

    @asynccontextmanager
    async def stream(self) -> AsyncGenerator[AsyncGenerator[StateT, None], None]:
        """
        Stream state snapshots to a subscriber.

        A subscriber that falls behind by more than ``STREAM_BUFFER_SIZE``
        changes loses the oldest snapshots; the newest one is always kept.

        Yields:
            An async generator producing the current snapshot first, then one
            snapshot per change
        """
        queue: asyncio.Queue[StateT] = asyncio.Queue(maxsize=STREAM_BUFFER_SIZE)

        def enqueue(state: StateT) -> None:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(state)

        unsubscribe = self.subscribe(enqueue)

        async def state_generator() -> AsyncGenerator[StateT, None]:
            yield self.snapshot()

            try:
                while True:
                    yield await queue.get()
            except (asyncio.CancelledError, GeneratorExit):
                return

        try:
            yield state_generator()
        finally:
            unsubscribe()


class PersistedSession(BaseModel):
    session: Session | None = None


class SessionStore(ObservableStore[SessionState]):
    """
    Owner of the active session.

    At most one session is active. Appends keep call order as history
    order; records are not re-validated here since the aggregator and
    classifier produce them already clamped.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        storage_key: str = SESSION_STORAGE_KEY,
        trend_window: int = DEFAULT_TREND_WINDOW,
        trend_threshold: float = DEFAULT_TREND_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(storage, storage_key)
        self._trend_window = trend_window
        self._trend_threshold = trend_threshold
        self._clock = clock
        self._last_error: str | None = None

        persisted = load_state(storage, storage_key, PersistedSession)
        self._session: Session | None = persisted.session if persisted else None
        if self._session is not None:
            logger.info("Restored session %s", self._session.id)

    # MARK: - Reads

    @property
    def session(self) -> Session | None:
        """A copy of the active session, or None."""
        return self._session.snapshot() if self._session else None

    @property
    def session_id(self) -> str | None:
        return self._session.id if self._session else None

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def snapshot(self) -> SessionState:
        return SessionState(
            session=self.session,
            summary=self.summary(),
            last_error=self._last_error,
        )

    def _persisted_state(self) -> PersistedSession:
        return PersistedSession(session=self._session)

    # MARK: - Lifecycle

    def start_session(self, session_id: str | None = None) -> Session:
        """
        Start a new session, replacing any previous one.

        Args:
            session_id: Id assigned by the backend; generated when omitted
        """
        fields: dict[str, object] = {"start_time": self._clock()}
        if session_id is not None:
            fields["id"] = session_id
        self._session = Session(**fields)
        self._last_error = None
        logger.info("Started session %s", self._session.id)
        self._commit()
        return self._session.snapshot()

    def end_session(self) -> None:
        """Mark the active session as ended; no-op without a session."""
        if self._session is None:
            logger.debug("end_session called without an active session")
            return
        self._session.end_time = self._clock()
        logger.info("Ended session %s", self._session.id)
        self._commit()

    def clear_session(self) -> None:
        """Discard the session and all of its history."""
        self._session = None
        self._last_error = None
        self._commit()

    # MARK: - Appends

    def add_emotion_analysis(self, record: EmotionRecord) -> None:
        if self._session is None:
            logger.debug("Dropping emotion record %s: no active session", record.id)
            return
        self._session.emotion_history.append(record)
        self._commit()

    def add_chat_message(self, message: ChatMessage) -> None:
        if self._session is None:
            logger.debug("Dropping chat message %s: no active session", message.id)
            return
        self._session.chat_history.append(message)
        self._commit()

    # MARK: - Errors

    def set_error(self, message: str | None) -> None:
        self._last_error = message
        self._commit()

    def clear_error(self) -> None:
        self.set_error(None)

    # MARK: - Derived Values

    def session_duration(self) -> float | None:
        """Elapsed seconds of the session, or None when there is none."""
        if self._session is None:
            return None
        end_time = self._session.end_time
        if end_time is None:
            end_time = self._clock()
        return end_time - self._session.start_time

    def trend_change(self) -> float:
        """Mean valence of the recent window minus that of the one before."""
        if self._session is None:
            return 0.0
        history = self._session.emotion_history
        if len(history) < 2:
            return 0.0

        window = self._trend_window
        recent = history[-window:]
        older = history[-2 * window : -window]
        if not older:
            return 0.0

        recent_avg = sum(r.vad.valence for r in recent) / len(recent)
        older_avg = sum(r.vad.valence for r in older) / len(older)
        return recent_avg - older_avg

    def emotion_trend(self) -> EmotionTrend:
        change = self.trend_change()
        if change > self._trend_threshold:
            return EmotionTrend.IMPROVING
        if change < -self._trend_threshold:
            return EmotionTrend.DECLINING
        return EmotionTrend.STABLE

    def average_valence(self) -> float:
        if self._session is None or not self._session.emotion_history:
            return 0.0
        history = self._session.emotion_history
        return sum(r.vad.valence for r in history) / len(history)

    def summary(self) -> SessionSummary:
        if self._session is None:
            return SessionSummary()

        distribution = Counter(r.emotion for r in self._session.emotion_history)
        dominant = distribution.most_common(1)
        return SessionSummary(
            session_id=self._session.id,
            duration=self.session_duration(),
            total_records=len(self._session.emotion_history),
            total_messages=len(self._session.chat_history),
            average_valence=self.average_valence(),
            trend=self.emotion_trend(),
            trend_change=self.trend_change(),
            emotion_distribution=dict(distribution),
            dominant_emotion=dominant[0][0] if dominant else None,
        )
