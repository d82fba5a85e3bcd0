"""
Shared data models for BeMore Core.

This module defines the domain models used across every layer of the
package (stores, aggregator, API client, local service and CLI).
"""

import time
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, value))


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


# MARK: - Enumerations


class EmotionLabel(str, Enum):
    """Discrete emotion labels used for display and advice text."""

    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    ANXIOUS = "anxious"
    NEUTRAL = "neutral"
    EXCITED = "excited"
    CALM = "calm"
    SURPRISED = "surprised"


class MediaType(str, Enum):
    """Modality an emotion record originated from."""

    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    REALTIME = "realtime"
    MULTIMODAL = "multimodal"


class Modality(str, Enum):
    """Input channel contributing a sample to the aggregator."""

    FACIAL = "facial"
    VOICE = "voice"
    TEXT = "text"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Theme(str, Enum):
    LIGHT = "light"
    DARK = "dark"
    AUTO = "auto"


class EmotionTrend(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


# MARK: - Scores and Samples


class VADScore(BaseModel):
    """Valence/Arousal/Dominance triple, each axis clamped to [0, 1]."""

    model_config = ConfigDict(frozen=True)

    valence: float = Field(0.5, description="Positivity of the affect")
    arousal: float = Field(0.5, description="Activation level of the affect")
    dominance: float = Field(0.5, description="Sense of control")

    @field_validator("valence", "arousal", "dominance")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return _clamp_unit(value)

    @classmethod
    def neutral(cls) -> "VADScore":
        return cls(valence=0.5, arousal=0.5, dominance=0.5)


class ModalitySample(BaseModel):
    """One analyzer output handed to the aggregator."""

    model_config = ConfigDict(frozen=True)

    modality: Modality
    vad: VADScore
    confidence: float = Field(..., description="Analyzer confidence in [0, 1]")
    timestamp: float = Field(default_factory=time.time)

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return _clamp_unit(value)


class AggregateResult(BaseModel):
    """Integrated VAD score over the currently active modalities."""

    model_config = ConfigDict(frozen=True)

    vad: VADScore = Field(default_factory=VADScore.neutral)
    confidence: float = 0.0
    modalities: list[Modality] = Field(default_factory=list)


# MARK: - Records


class EmotionRecord(BaseModel):
    """One emotion analysis result. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("analysis"))
    vad: VADScore
    emotion: EmotionLabel = EmotionLabel.NEUTRAL
    confidence: float = 0.0
    media_type: MediaType = MediaType.MULTIMODAL
    timestamp: float = Field(default_factory=time.time)
    text_content: str | None = None
    keywords: list[str] = Field(default_factory=list)

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return _clamp_unit(value)


class ChatMessage(BaseModel):
    """One conversation turn. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("message"))
    role: Role
    content: str
    timestamp: float = Field(default_factory=time.time)
    emotion_context: EmotionRecord | None = Field(
        None, description="Emotion record active when the message was sent"
    )


# MARK: - Session


class Session(BaseModel):
    """One bounded interaction window."""

    id: str = Field(default_factory=lambda: _new_id("session"))
    start_time: float = Field(default_factory=time.time)
    end_time: float | None = None
    emotion_history: list[EmotionRecord] = Field(default_factory=list)
    chat_history: list[ChatMessage] = Field(default_factory=list)

    def snapshot(self) -> "Session":
        """Copy that shares the immutable records but not the lists."""
        return self.model_copy(
            update={
                "emotion_history": list(self.emotion_history),
                "chat_history": list(self.chat_history),
            }
        )


class SessionSummary(BaseModel):
    """Derived statistics over one session."""

    session_id: str | None = None
    duration: float | None = Field(None, description="Seconds, None if unknown")
    total_records: int = 0
    total_messages: int = 0
    average_valence: float = 0.0
    trend: EmotionTrend = EmotionTrend.STABLE
    trend_change: float = 0.0
    emotion_distribution: dict[EmotionLabel, int] = Field(default_factory=dict)
    dominant_emotion: EmotionLabel | None = None


class SessionState(BaseModel):
    """Observable view of the session store."""

    session: Session | None = None
    summary: SessionSummary = Field(default_factory=SessionSummary)
    last_error: str | None = None


class PreferenceState(BaseModel):
    """Observable view of the preference store."""

    theme: Theme = Theme.AUTO
    effective_theme: Theme = Theme.LIGHT
    current_emotion: EmotionLabel = EmotionLabel.NEUTRAL
    emotion_color: str = "#6B7280"
    is_loading: bool = False
