"""
FastAPI state service for BeMore Core.

This module exposes the session and preference stores and the aggregator to
the presentation layer over HTTP, and streams session snapshots via
Server-Sent Events.
"""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .aggregator import aggregate
from .api import ApiError
from .classifier import ClassifierProfile, classify, emotion_advice
from .context import AppContext, create_context
from .models import (
    AggregateResult,
    ChatMessage,
    EmotionLabel,
    EmotionRecord,
    MediaType,
    ModalitySample,
    PreferenceState,
    Role,
    SessionState,
    Theme,
    VADScore,
)

logger = logging.getLogger(__name__)


# API Request/Response Schemas
class EmotionInput(BaseModel):
    """Payload for appending an emotion record."""

    vad: VADScore
    confidence: float = Field(..., description="Confidence in [0, 1]")
    media_type: MediaType = MediaType.MULTIMODAL
    emotion: EmotionLabel | None = Field(
        None, description="Label; classified from the VAD score when omitted"
    )
    text_content: str | None = None


class MessageInput(BaseModel):
    """Payload for appending a chat message."""

    role: Role = Role.USER
    content: str = Field(..., min_length=1)


class TextInput(BaseModel):
    text: str = Field(..., min_length=1)


class ChatInput(BaseModel):
    content: str = Field(..., min_length=1)


class ChatResponse(BaseModel):
    message: ChatMessage
    reply: ChatMessage


class PreferencesUpdate(BaseModel):
    theme: Theme | None = None
    current_emotion: EmotionLabel | None = None


class AggregateRequest(BaseModel):
    samples: list[ModalitySample] = Field(default_factory=list)
    profile: ClassifierProfile | None = None


class AggregateResponse(BaseModel):
    """Aggregated score with its classification."""

    result: AggregateResult
    emotion: EmotionLabel
    advice: str


def create_app(context: AppContext) -> FastAPI:
    """
    Create a FastAPI application over the given context.

    Args:
        context: The AppContext whose stores the application serves

    Returns:
        Configured FastAPI application
    """
    sessions = context.sessions
    preferences = context.preferences

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Run the aggregator consumer for the lifetime of the app."""
        context.aggregator.start()
        yield
        await context.service.aclose()
        await context.aggregator.close()

    app = FastAPI(
        title="BeMore Core",
        description="Session state and multimodal emotion aggregation service",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
        """Report backend failures as a bad gateway."""
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    def _require_session() -> None:
        if sessions.session_id is None:
            raise HTTPException(status_code=409, detail="No active session")

    def _classify_result(
        result: AggregateResult, profile: ClassifierProfile | None = None
    ) -> AggregateResponse:
        emotion = classify(result.vad, profile or context.settings.classifier_profile)
        return AggregateResponse(
            result=result, emotion=emotion, advice=emotion_advice(emotion)
        )

    @app.get("/")
    async def root() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "bemore-core"}

    # MARK: - Session

    @app.get("/session")
    async def get_session() -> SessionState:
        return sessions.snapshot()

    @app.post("/session/start")
    async def start_session() -> SessionState:
        """Start a new session, discarding the previous one."""
        sessions.start_session()
        return sessions.snapshot()

    @app.post("/session/end")
    async def end_session() -> SessionState:
        sessions.end_session()
        return sessions.snapshot()

    @app.delete("/session")
    async def clear_session() -> SessionState:
        await context.service.stop_recording()
        sessions.clear_session()
        return sessions.snapshot()

    @app.post("/session/emotions")
    async def add_emotion(payload: EmotionInput) -> EmotionRecord:
        """
        Append an emotion record to the active session.

        The label is classified from the VAD score when the payload has none.
        The record's label also becomes the ambient emotion.
        """
        _require_session()
        record = EmotionRecord(
            vad=payload.vad,
            emotion=payload.emotion
            or classify(payload.vad, context.settings.classifier_profile),
            confidence=payload.confidence,
            media_type=payload.media_type,
            text_content=payload.text_content,
        )
        context.service.store_record(record)
        return record

    @app.post("/session/messages")
    async def add_message(payload: MessageInput) -> ChatMessage:
        """Append a chat message; user messages carry the latest emotion."""
        _require_session()
        emotion_context = (
            context.service.latest_record() if payload.role is Role.USER else None
        )
        message = ChatMessage(
            role=payload.role,
            content=payload.content,
            emotion_context=emotion_context,
        )
        sessions.add_chat_message(message)
        return message

    @app.post("/session/analyze/text")
    async def analyze_text(payload: TextInput) -> EmotionRecord:
        """Analyze text on the backend and record the result."""
        _require_session()
        return await context.service.analyze_text(payload.text)

    @app.post("/session/chat")
    async def chat(payload: ChatInput) -> ChatResponse:
        """Send a message to the backend chat and record both sides."""
        _require_session()
        message, reply = await context.service.send_chat_message(payload.content)
        return ChatResponse(message=message, reply=reply)

    @app.post("/session/recording/start")
    async def start_recording() -> dict[str, bool]:
        """Periodically record the live aggregate into the session."""
        context.service.start_recording()
        return {"recording": context.service.recording}

    @app.post("/session/recording/stop")
    async def stop_recording() -> dict[str, bool]:
        await context.service.stop_recording()
        return {"recording": context.service.recording}

    @app.get("/session/stream")
    async def stream_session() -> StreamingResponse:
        """
        Stream session snapshots via Server-Sent Events.

        The current snapshot is sent immediately upon connection, followed by
        one snapshot per store change.

        Returns:
            StreamingResponse with text/event-stream content type
        """

        async def event_generator() -> AsyncGenerator[str, None]:
            try:
                async with sessions.stream() as session_stream:
                    async for state in session_stream:
                        yield f"data: {state.model_dump_json()}\n\n"
            except asyncio.CancelledError:
                # Client disconnected
                pass
            except Exception as e:
                logger.exception("Session stream failed")
                error_data = json.dumps({"error": str(e)})
                yield f"event: error\ndata: {error_data}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )

    # MARK: - Preferences

    @app.get("/preferences")
    async def get_preferences() -> PreferenceState:
        return preferences.snapshot()

    @app.put("/preferences")
    async def update_preferences(update: PreferencesUpdate) -> PreferenceState:
        if update.theme is not None:
            preferences.set_theme(update.theme)
        if update.current_emotion is not None:
            preferences.set_current_emotion(update.current_emotion)
        return preferences.snapshot()

    # MARK: - Aggregation

    @app.post("/aggregate")
    async def aggregate_samples(request: AggregateRequest) -> AggregateResponse:
        """Aggregate an ad-hoc sample set without touching any state."""
        return _classify_result(aggregate(request.samples), request.profile)

    @app.get("/aggregator")
    async def get_aggregator() -> AggregateResponse:
        return _classify_result(context.aggregator.result)

    @app.post("/aggregator/samples", status_code=202)
    async def submit_sample(sample: ModalitySample) -> dict[str, str]:
        """Queue a live analyzer sample for the shared aggregator."""
        context.service.submit_sample(sample)
        return {"status": "queued", "modality": sample.modality.value}

    return app


def main() -> None:
    """Main entry point for the server."""
    import uvicorn

    from .config import configure_logging, load_settings

    settings = load_settings()
    configure_logging(settings.log_level)
    app = create_app(create_context(settings))

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
