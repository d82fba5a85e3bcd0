"""
Key-value persistence for BeMore Core stores.

Each store serializes a whitelisted subset of its state under its own key.
Values are written inside a versioned envelope ``{"version": N, "state": ...}``
so that older layouts can be upgraded on read instead of trusted blindly.
"""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from .classifier import parse_label
from .models import EmotionRecord, MediaType, VADScore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Envelope version written by the earlier web client; same state layout
LEGACY_VERSION = 0

ModelT = TypeVar("ModelT", bound=BaseModel)


class KeyValueStorage(Protocol):
    """Minimal string key-value storage used by the stores."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage, mostly for tests and ephemeral runs."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """Stores every key as ``<directory>/<key>.json``."""

    _SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{self._SAFE_KEY.sub('_', key)}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._path(key).write_text(value, encoding="utf-8")

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


def save_state(storage: KeyValueStorage, key: str, state: BaseModel) -> None:
    """Write ``state`` under ``key`` inside the current envelope."""
    envelope = {"version": SCHEMA_VERSION, "state": state.model_dump(mode="json")}
    storage.set(key, json.dumps(envelope))


def load_state(
    storage: KeyValueStorage, key: str, model: type[ModelT]
) -> ModelT | None:
    """
    Read and validate the state stored under ``key``.

    Args:
        storage: Backend to read from
        key: Namespaced storage key
        model: Pydantic model describing the persisted state

    Returns:
        The validated state, or None when nothing usable is stored
    """
    try:
        raw = storage.get(key)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read persisted state %r: %s", key, e)
        return None

    if raw is None:
        return None

    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Discarding unreadable state %r: %s", key, e)
        return None

    state = _upgrade(key, envelope)
    if state is None:
        return None

    try:
        return model.model_validate(state)
    except ValidationError as e:
        logger.warning("Discarding invalid state %r: %s", key, e)
        return None


def _upgrade(key: str, envelope: object) -> dict | None:
    """Return the current-layout state dict carried by ``envelope``."""
    if not isinstance(envelope, dict) or not isinstance(envelope.get("state"), dict):
        logger.warning("Discarding state %r without an envelope", key)
        return None

    version = envelope.get("version", LEGACY_VERSION)
    if version == SCHEMA_VERSION:
        return envelope["state"]
    if version == LEGACY_VERSION:
        logger.info("Upgrading state %r from version %s", key, version)
        try:
            return _upgrade_legacy(envelope["state"])
        except ValueError as e:
            logger.warning("Discarding state %r that failed to upgrade: %s", key, e)
            return None

    logger.warning("Discarding state %r with unsupported version %r", key, version)
    return None


def _upgrade_legacy(state: dict) -> dict:
    """Map the camelCase layout of the earlier web client onto ours."""
    renames = {
        "currentEmotion": "current_emotion",
        "currentSession": "session",
        "startTime": "start_time",
        "endTime": "end_time",
        "emotionHistory": "emotion_history",
        "chatHistory": "chat_history",
        "vadScore": "vad",
        "mediaType": "media_type",
        "textContent": "text_content",
        "emotionContext": "emotion_context",
    }

    timestamps = {"start_time", "end_time", "timestamp"}

    def convert(value: object) -> object:
        if isinstance(value, dict):
            converted = {renames.get(k, k): convert(v) for k, v in value.items()}
            for field in timestamps & converted.keys():
                if isinstance(converted[field], str):
                    converted[field] = _parse_iso(converted[field])
            return converted
        if isinstance(value, list):
            return [convert(item) for item in value]
        return value

    upgraded = convert(state)

    session = upgraded.get("session")
    if isinstance(session, dict):
        records = session.get("emotion_history") or []
        session["emotion_history"] = [
            r for r in map(_legacy_record, records) if r is not None
        ]
        for message in session.get("chat_history") or []:
            if isinstance(message, dict) and message.get("emotion_context") is not None:
                message["emotion_context"] = _legacy_record(message["emotion_context"])

    if "current_emotion" in upgraded:
        upgraded["current_emotion"] = parse_label(
            upgraded["current_emotion"], VADScore.neutral()
        )

    return upgraded


def _legacy_record(value: object) -> dict | None:
    """
    Coerce one legacy emotion record into the current layout.

    Labels outside the current set are reclassified from the record's VAD
    score and unknown media types become ``multimodal``. Returns None for a
    record that still does not validate.
    """
    if not isinstance(value, dict) or not isinstance(value.get("vad"), dict):
        logger.warning("Dropping legacy emotion record without a VAD score")
        return None

    try:
        vad = VADScore.model_validate(value["vad"])
        record = dict(value)
        record["emotion"] = parse_label(
            value.get("primaryEmotion") or value.get("emotion"), vad
        )
        if record.get("media_type") not in {m.value for m in MediaType}:
            record["media_type"] = MediaType.MULTIMODAL
        return EmotionRecord.model_validate(record).model_dump(mode="json")
    except ValidationError as e:
        logger.warning("Dropping invalid legacy emotion record: %s", e)
        return None


def _parse_iso(value: str) -> float:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
