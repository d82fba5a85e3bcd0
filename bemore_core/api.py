"""
Async client for the BeMore analysis backend.

The backend wraps every JSON payload in ``{"success", "data", "error"}`` and
uses camelCase field names; this module converts those payloads into the
package's models and turns every failure into an ``ApiError``.
"""

import logging
import time
from datetime import datetime
from typing import Any

import httpx
from pydantic import ValidationError

from .classifier import parse_label
from .models import ChatMessage, EmotionRecord, MediaType, Role, VADScore

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3000/api"
MAX_UPLOAD_BYTES = 10 * 1024 * 1024

_UNEXPECTED_RESPONSE = "The server sent an unexpected response."


# MARK: - Errors


class ApiError(Exception):
    """Base class for backend failures. ``str(error)`` is user-presentable."""


class ApiConnectionError(ApiError):
    """The backend could not be reached or did not answer in time."""


class ApiStatusError(ApiError):
    """The backend answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApiResponseError(ApiError):
    """The backend reported a failure or sent an unusable payload."""


# MARK: - Payload Conversion


def _parse_timestamp(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            logger.debug("Unparseable timestamp %r, using now", value)
    return time.time()


def record_from_payload(
    data: dict[str, Any], default_media_type: MediaType
) -> EmotionRecord:
    """Convert a backend analysis payload into an EmotionRecord."""
    vad = VADScore.model_validate(data.get("vadScore") or data.get("vad") or {})

    emotion = parse_label(data.get("primaryEmotion") or data.get("emotion"), vad)

    try:
        media_type = MediaType(data.get("mediaType"))
    except ValueError:
        media_type = default_media_type

    fields: dict[str, Any] = {
        "vad": vad,
        "emotion": emotion,
        "confidence": data.get("confidence", 0.0),
        "media_type": media_type,
        "timestamp": _parse_timestamp(data.get("timestamp")),
        "text_content": data.get("textContent"),
        "keywords": data.get("keywords") or [],
    }
    if data.get("id"):
        fields["id"] = str(data["id"])
    return EmotionRecord(**fields)


def record_to_payload(record: EmotionRecord) -> dict[str, Any]:
    """Convert an EmotionRecord into the backend's camelCase layout."""
    return {
        "id": record.id,
        "vadScore": record.vad.model_dump(),
        "emotion": record.emotion.value,
        "confidence": record.confidence,
        "mediaType": record.media_type.value,
        "timestamp": datetime.fromtimestamp(record.timestamp).astimezone().isoformat(),
    }


def message_from_payload(data: dict[str, Any]) -> ChatMessage:
    context = data.get("emotionContext")
    fields: dict[str, Any] = {
        "role": data.get("role", Role.ASSISTANT),
        "content": data.get("content", ""),
        "timestamp": _parse_timestamp(data.get("timestamp")),
        "emotion_context": (
            record_from_payload(context, MediaType.MULTIMODAL)
            if isinstance(context, dict)
            else None
        ),
    }
    if data.get("id"):
        fields["id"] = str(data["id"])
    return ChatMessage(**fields)


def _validate_upload(content: bytes, kind: str) -> None:
    if not content:
        raise ValueError(f"{kind} file is empty")
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValueError(f"{kind} file exceeds {MAX_UPLOAD_BYTES // (1024 * 1024)} MB")


# MARK: - Client


class ApiGateway:
    """
    Async client for the analysis, chat, history and report endpoints.

    Args:
        base_url: Backend base URL, including the ``/api`` prefix
        timeout: Default request timeout in seconds
        token: Optional bearer token
        transport: Optional httpx transport, used by tests
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> "ApiGateway":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # MARK: - Analysis

    async def analyze_text(
        self, text: str, session_id: str | None = None
    ) -> EmotionRecord:
        if not text.strip():
            raise ValueError("text is empty")
        data = await self._call(
            "POST",
            "/emotion/analyze/text",
            "Text emotion analysis failed.",
            json={"text": text, "sessionId": session_id},
        )
        record = self._to_record(data, MediaType.TEXT)
        if record.text_content is None:
            record = record.model_copy(update={"text_content": text})
        return record

    async def analyze_voice(
        self,
        audio: bytes,
        filename: str = "recording.webm",
        session_id: str | None = None,
    ) -> EmotionRecord:
        _validate_upload(audio, "audio")
        data = await self._call(
            "POST",
            "/emotion/analyze/voice",
            "Voice emotion analysis failed.",
            files={"audio": (filename, audio)},
            data={"sessionId": session_id} if session_id else None,
            timeout=60.0,
        )
        return self._to_record(data, MediaType.AUDIO)

    async def analyze_facial(
        self,
        image: bytes,
        filename: str = "frame.jpg",
        session_id: str | None = None,
    ) -> EmotionRecord:
        _validate_upload(image, "image")
        data = await self._call(
            "POST",
            "/emotion/analyze/facial",
            "Facial expression analysis failed.",
            files={"image": (filename, image)},
            data={"sessionId": session_id} if session_id else None,
        )
        return self._to_record(data, MediaType.IMAGE)

    async def analyze_multimodal(
        self,
        text: str | None = None,
        audio: bytes | None = None,
        image: bytes | None = None,
        session_id: str | None = None,
    ) -> EmotionRecord:
        """
        Analyze any combination of text, audio and image in one request.

        Text on its own is sent as JSON; as soon as a file is attached the
        request becomes a multipart form.
        """
        if text is not None and not text.strip():
            text = None
        if text is None and audio is None and image is None:
            raise ValueError("nothing to analyze")

        request: dict[str, Any]
        if audio is None and image is None:
            request = {"json": {"text": {"content": text}, "sessionId": session_id}}
        else:
            files = {}
            if audio is not None:
                _validate_upload(audio, "audio")
                files["audio"] = ("recording.webm", audio)
            if image is not None:
                _validate_upload(image, "image")
                files["image"] = ("frame.jpg", image)
            form = {"text": text, "sessionId": session_id}
            request = {
                "files": files,
                "data": {k: v for k, v in form.items() if v is not None},
                "timeout": 90.0,
            }

        data = await self._call(
            "POST", "/emotion/analyze", "Multimodal emotion analysis failed.", **request
        )
        record = self._to_record(data, MediaType.MULTIMODAL)
        if text is not None and record.text_content is None:
            record = record.model_copy(update={"text_content": text})
        return record

    async def analyze_realtime(
        self,
        session_id: str,
        video_frame: bytes | None = None,
        audio_chunk: bytes | None = None,
        timestamp: float | None = None,
    ) -> EmotionRecord:
        """Analyze one captured frame and/or audio chunk of a live session."""
        files = {}
        if video_frame is not None:
            _validate_upload(video_frame, "image")
            files["videoFrame"] = ("frame.jpg", video_frame)
        if audio_chunk is not None:
            _validate_upload(audio_chunk, "audio")
            files["audioChunk"] = ("chunk.webm", audio_chunk)
        if not files:
            raise ValueError("a video frame or an audio chunk is required")

        captured = time.time() if timestamp is None else timestamp
        data = await self._call(
            "POST",
            "/emotion/analyze/realtime",
            "Realtime emotion analysis failed.",
            files=files,
            data={
                "sessionId": session_id,
                "timestamp": datetime.fromtimestamp(captured).astimezone().isoformat(),
            },
            timeout=5.0,
        )
        return self._to_record(data, MediaType.REALTIME)

    async def get_session_emotions(self, session_id: str) -> list[EmotionRecord]:
        data = await self._call(
            "GET",
            f"/emotion/history/{session_id}",
            "Loading the session's emotion history failed.",
        )
        if not isinstance(data, list):
            raise ApiResponseError("Loading the session's emotion history failed.")
        return [self._to_record(item, MediaType.MULTIMODAL) for item in data]

    # MARK: - Chat and History

    async def send_chat_message(
        self,
        message: str,
        emotion_context: EmotionRecord | None = None,
        session_id: str | None = None,
    ) -> ChatMessage:
        payload: dict[str, Any] = {"message": message, "sessionId": session_id}
        if emotion_context is not None:
            payload["emotionContext"] = record_to_payload(emotion_context)

        data = await self._call(
            "POST", "/chat/send", "Sending the chat message failed.", json=payload
        )
        try:
            return message_from_payload(self._expect_dict(data))
        except ValidationError as e:
            raise ApiResponseError(_UNEXPECTED_RESPONSE) from e

    async def get_history(self, user_id: str, limit: int = 50) -> list[EmotionRecord]:
        data = await self._call(
            "GET",
            f"/history/{user_id}",
            "Loading the emotion history failed.",
            params={"limit": limit},
        )
        if not isinstance(data, list):
            raise ApiResponseError("Loading the emotion history failed.")
        return [self._to_record(item, MediaType.MULTIMODAL) for item in data]

    async def get_chat_history(self, session_id: str) -> list[ChatMessage]:
        data = await self._call(
            "GET", f"/chat/history/{session_id}", "Loading the chat history failed."
        )
        if not isinstance(data, list):
            raise ApiResponseError("Loading the chat history failed.")
        try:
            return [message_from_payload(self._expect_dict(item)) for item in data]
        except ValidationError as e:
            raise ApiResponseError(_UNEXPECTED_RESPONSE) from e

    # MARK: - Sessions

    async def start_remote_session(self, user_id: str) -> str:
        """Open a session on the backend and return its id."""
        data = await self._call(
            "POST",
            "/session/start",
            "Starting the session failed.",
            json={"userId": user_id},
        )
        session_id = self._expect_dict(data).get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise ApiResponseError(_UNEXPECTED_RESPONSE)
        return session_id

    async def end_remote_session(self, session_id: str) -> None:
        await self._call(
            "POST", f"/session/end/{session_id}", "Ending the session failed."
        )

    async def generate_report(self, session_id: str) -> bytes:
        """Fetch the rendered session report as an opaque document."""
        response = await self._send(
            "GET", f"/session/report/{session_id}", timeout=60.0
        )
        return response.content

    async def health(self) -> bool:
        """Check backend reachability. Never raises."""
        try:
            data = await self._call("GET", "/health", "Health check failed.")
        except ApiError as e:
            logger.warning("Backend health check failed: %s", e)
            return False
        return isinstance(data, dict) and data.get("status") == "ok"

    # MARK: - Private Helpers

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ApiStatusError(status, f"Server responded with HTTP {status}.") from e
        except httpx.TimeoutException as e:
            raise ApiConnectionError("The server did not respond in time.") from e
        except httpx.TransportError as e:
            raise ApiConnectionError(f"Could not connect to {self.base_url}.") from e
        return response

    async def _call(
        self, method: str, path: str, failure_message: str, **kwargs: Any
    ) -> Any:
        """Send a request and unwrap the ``{success, data, error}`` envelope."""
        response = await self._send(method, path, **kwargs)
        try:
            body = response.json()
        except ValueError as e:
            raise ApiResponseError(failure_message) from e

        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            raise ApiResponseError(error or failure_message)
        return body.get("data")

    @staticmethod
    def _expect_dict(data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise ApiResponseError(_UNEXPECTED_RESPONSE)
        return data

    @classmethod
    def _to_record(cls, data: Any, media_type: MediaType) -> EmotionRecord:
        try:
            return record_from_payload(cls._expect_dict(data), media_type)
        except ValidationError as e:
            raise ApiResponseError(_UNEXPECTED_RESPONSE) from e
