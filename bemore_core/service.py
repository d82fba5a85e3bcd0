"""
Analysis orchestration for BeMore Core.

``AnalysisService`` is the only place where backend calls and store
mutations meet. Stores are mutated only after a call succeeds; a failed call
leaves them untouched apart from the retained error message.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress

from .aggregator import MultimodalAggregator
from .api import ApiError, ApiGateway
from .classifier import ClassifierProfile, classify
from .models import (
    AggregateResult,
    ChatMessage,
    EmotionRecord,
    MediaType,
    ModalitySample,
    Role,
    Session,
)
from .preferences import PreferenceStore
from .store import SessionStore

logger = logging.getLogger(__name__)


class AnalysisService:
    """Connects the gateway and the aggregator to the stores."""

    def __init__(
        self,
        sessions: SessionStore,
        preferences: PreferenceStore,
        gateway: ApiGateway,
        aggregator: MultimodalAggregator,
        profile: ClassifierProfile = ClassifierProfile.DASHBOARD,
        recording_interval: float = 5.0,
    ) -> None:
        self.sessions = sessions
        self.preferences = preferences
        self.gateway = gateway
        self.aggregator = aggregator
        self.profile = profile
        self.recording_interval = recording_interval
        self._recorder: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def _external_call(self, action: str) -> AsyncGenerator[None, None]:
        """Track loading state and keep the error of a failed call."""
        self.preferences.set_loading(True)
        try:
            yield
        except ApiError as e:
            logger.warning("%s failed: %s", action, e)
            self.sessions.set_error(str(e))
            raise
        finally:
            self.preferences.set_loading(False)

    def store_record(self, record: EmotionRecord) -> None:
        """Append a record and make its label the ambient emotion."""
        self.sessions.add_emotion_analysis(record)
        self.preferences.set_current_emotion(record.emotion)
        if self.sessions.last_error is not None:
            self.sessions.clear_error()

    # MARK: - Backend Analysis

    async def analyze_text(self, text: str) -> EmotionRecord:
        async with self._external_call("Text analysis"):
            record = await self.gateway.analyze_text(
                text, session_id=self.sessions.session_id
            )
        self.store_record(record)
        return record

    async def analyze_voice(
        self, audio: bytes, filename: str = "recording.webm"
    ) -> EmotionRecord:
        async with self._external_call("Voice analysis"):
            record = await self.gateway.analyze_voice(
                audio, filename=filename, session_id=self.sessions.session_id
            )
        self.store_record(record)
        return record

    async def analyze_facial(
        self, image: bytes, filename: str = "frame.jpg"
    ) -> EmotionRecord:
        async with self._external_call("Facial analysis"):
            record = await self.gateway.analyze_facial(
                image, filename=filename, session_id=self.sessions.session_id
            )
        self.store_record(record)
        return record

    async def analyze_multimodal(
        self,
        text: str | None = None,
        audio: bytes | None = None,
        image: bytes | None = None,
    ) -> EmotionRecord:
        async with self._external_call("Multimodal analysis"):
            record = await self.gateway.analyze_multimodal(
                text, audio, image, session_id=self.sessions.session_id
            )
        self.store_record(record)
        return record

    async def analyze_realtime(
        self, video_frame: bytes | None = None, audio_chunk: bytes | None = None
    ) -> EmotionRecord:
        """Send one live capture to the backend; requires an active session."""
        session_id = self._require_session()
        async with self._external_call("Realtime analysis"):
            record = await self.gateway.analyze_realtime(
                session_id, video_frame=video_frame, audio_chunk=audio_chunk
            )
        self.store_record(record)
        return record

    async def send_chat_message(self, content: str) -> tuple[ChatMessage, ChatMessage]:
        """
        Send a user message with the latest emotion as context.

        Returns:
            The user message and the assistant's reply, both appended to the
            chat history once the reply has arrived
        """
        context = self.latest_record()
        user_message = ChatMessage(
            role=Role.USER, content=content, emotion_context=context
        )

        async with self._external_call("Chat"):
            reply = await self.gateway.send_chat_message(
                content, emotion_context=context, session_id=self.sessions.session_id
            )

        self.sessions.add_chat_message(user_message)
        self.sessions.add_chat_message(reply)
        if self.sessions.last_error is not None:
            self.sessions.clear_error()
        return user_message, reply

    async def load_history(self, user_id: str, limit: int = 50) -> list[EmotionRecord]:
        async with self._external_call("History"):
            return await self.gateway.get_history(user_id, limit=limit)

    async def load_session_emotions(
        self, session_id: str | None = None
    ) -> list[EmotionRecord]:
        """Fetch the backend's records for a session, the active one by default."""
        session_id = session_id or self._require_session()
        async with self._external_call("Session history"):
            return await self.gateway.get_session_emotions(session_id)

    async def load_chat_history(self, session_id: str | None = None) -> list[ChatMessage]:
        session_id = session_id or self._require_session()
        async with self._external_call("Chat history"):
            return await self.gateway.get_chat_history(session_id)

    async def fetch_report(self) -> bytes:
        session_id = self._require_session()
        async with self._external_call("Report"):
            return await self.gateway.generate_report(session_id)

    # MARK: - Backend Sessions

    async def start_remote_session(self, user_id: str) -> Session:
        """Open a session on the backend and start it locally under its id."""
        async with self._external_call("Session start"):
            session_id = await self.gateway.start_remote_session(user_id)
        return self.sessions.start_session(session_id)

    async def end_remote_session(self) -> None:
        session_id = self._require_session()
        async with self._external_call("Session end"):
            await self.gateway.end_remote_session(session_id)
        self.sessions.end_session()

    def _require_session(self) -> str:
        session_id = self.sessions.session_id
        if session_id is None:
            raise ValueError("no active session")
        return session_id

    def latest_record(self) -> EmotionRecord | None:
        session = self.sessions.session
        if session is None or not session.emotion_history:
            return None
        return session.emotion_history[-1]

    # MARK: - Realtime Aggregation

    def submit_sample(self, sample: ModalitySample) -> None:
        self.aggregator.submit(sample)

    def record_aggregate(self, result: AggregateResult | None = None) -> EmotionRecord | None:
        """
        Classify an aggregate result and append it to the session.

        Args:
            result: Result to record; defaults to the aggregator's current one

        Returns:
            The stored record, or None when no modality contributed
        """
        result = result or self.aggregator.result
        if not result.modalities:
            return None

        record = EmotionRecord(
            vad=result.vad,
            emotion=classify(result.vad, self.profile),
            confidence=result.confidence,
            media_type=MediaType.MULTIMODAL,
        )
        self.store_record(record)
        return record

    @property
    def recording(self) -> bool:
        return self._recorder is not None and not self._recorder.done()

    def start_recording(self) -> None:
        """Record the current aggregate into the active session periodically."""
        if self.recording:
            return
        session_id = self.sessions.session_id
        if session_id is None:
            raise ValueError("no active session")
        self._recorder = asyncio.create_task(self._record_loop(session_id))

    async def stop_recording(self) -> None:
        if self._recorder is None:
            return
        self._recorder.cancel()
        with suppress(asyncio.CancelledError):
            await self._recorder
        self._recorder = None

    async def _record_loop(self, session_id: str) -> None:
        while True:
            await asyncio.sleep(self.recording_interval)
            # The session may have been replaced or cleared since we started
            if self.sessions.session_id != session_id:
                logger.info("Session %s is gone, stopping recorder", session_id)
                return
            self.record_aggregate()

    async def aclose(self) -> None:
        await self.stop_recording()
