"""
Emotion classification for BeMore Core.

Maps an aggregated VAD score to one discrete emotion label using ordered
threshold rules (first match wins), and provides the presentation lookups
attached to each label.

Two rule profiles exist because the realtime dashboards and the shared
VAD utility were tuned independently; both are kept as named profiles.
"""

from dataclasses import dataclass
from enum import Enum

from .models import EmotionLabel, VADScore


class ClassifierProfile(str, Enum):
    """Named threshold set used by ``classify``."""

    DASHBOARD = "dashboard"
    UTILITY = "utility"


@dataclass(frozen=True)
class Thresholds:
    """Cut points for one classifier profile."""

    excited_valence: float
    excited_arousal: float
    calm_valence: float
    calm_arousal: float
    happy_valence: float
    negative_valence: float
    angry_arousal: float
    sad_arousal: float
    anxious_dominance: float = 0.4
    anxious_arousal: float = 0.6


PROFILE_THRESHOLDS: dict[ClassifierProfile, Thresholds] = {
    ClassifierProfile.DASHBOARD: Thresholds(
        excited_valence=0.7,
        excited_arousal=0.6,
        calm_valence=0.6,
        calm_arousal=0.4,
        happy_valence=0.6,
        negative_valence=0.4,
        angry_arousal=0.6,
        sad_arousal=0.4,
    ),
    ClassifierProfile.UTILITY: Thresholds(
        excited_valence=0.7,
        excited_arousal=0.7,
        calm_valence=0.7,
        calm_arousal=0.3,
        happy_valence=0.6,
        negative_valence=0.4,
        angry_arousal=0.7,
        sad_arousal=0.3,
    ),
}


def classify(
    vad: VADScore, profile: ClassifierProfile = ClassifierProfile.DASHBOARD
) -> EmotionLabel:
    """
    Classify a VAD score into a single emotion label.

    Args:
        vad: The (already clamped) VAD score to classify
        profile: Which threshold profile to apply

    Returns:
        Exactly one EmotionLabel; ``neutral`` when no rule matches
    """
    t = PROFILE_THRESHOLDS[ClassifierProfile(profile)]
    valence, arousal, dominance = vad.valence, vad.arousal, vad.dominance

    # Regions overlap, so the order of these checks is significant
    if valence > t.excited_valence and arousal > t.excited_arousal:
        return EmotionLabel.EXCITED
    if valence > t.calm_valence and arousal < t.calm_arousal:
        return EmotionLabel.CALM
    if valence > t.happy_valence:
        return EmotionLabel.HAPPY
    if valence < t.negative_valence and arousal > t.angry_arousal:
        return EmotionLabel.ANGRY
    if valence < t.negative_valence and arousal < t.sad_arousal:
        return EmotionLabel.SAD
    if dominance < t.anxious_dominance and arousal > t.anxious_arousal:
        return EmotionLabel.ANXIOUS
    return EmotionLabel.NEUTRAL


# Korean display names written as labels by the earlier web client
LOCALIZED_LABELS: dict[str, EmotionLabel] = {
    "기쁨": EmotionLabel.HAPPY,
    "슬픔": EmotionLabel.SAD,
    "분노": EmotionLabel.ANGRY,
    "화": EmotionLabel.ANGRY,
    "불안": EmotionLabel.ANXIOUS,
    "놀람": EmotionLabel.SURPRISED,
    "중립": EmotionLabel.NEUTRAL,
}


def parse_label(
    value: object,
    vad: VADScore,
    profile: ClassifierProfile = ClassifierProfile.DASHBOARD,
) -> EmotionLabel:
    """
    Read a label from external data.

    Known labels and their Korean display names map directly; anything else
    is classified from ``vad``.
    """
    if isinstance(value, str):
        label = value.strip()
        if label in LOCALIZED_LABELS:
            return LOCALIZED_LABELS[label]
        try:
            return EmotionLabel(label.lower())
        except ValueError:
            pass
    return classify(vad, profile)


# MARK: - Presentation Lookups


EMOTION_COLORS: dict[EmotionLabel, str] = {
    EmotionLabel.HAPPY: "#10B981",
    EmotionLabel.SAD: "#3B82F6",
    EmotionLabel.ANGRY: "#EF4444",
    EmotionLabel.ANXIOUS: "#F59E0B",
    EmotionLabel.NEUTRAL: "#6B7280",
    EmotionLabel.EXCITED: "#8B5CF6",
    EmotionLabel.CALM: "#06B6D4",
    EmotionLabel.SURPRISED: "#EC4899",
}

EMOTION_EMOJIS: dict[EmotionLabel, str] = {
    EmotionLabel.HAPPY: "😊",
    EmotionLabel.SAD: "😢",
    EmotionLabel.ANGRY: "😠",
    EmotionLabel.ANXIOUS: "😰",
    EmotionLabel.NEUTRAL: "😐",
    EmotionLabel.EXCITED: "🤩",
    EmotionLabel.CALM: "😌",
    EmotionLabel.SURPRISED: "😲",
}

EMOTION_ADVICE: dict[EmotionLabel, str] = {
    EmotionLabel.HAPPY: "You're in a good mood! Hold on to this feeling.",
    EmotionLabel.SAD: "You seem to be feeling down. Rest and take care of yourself.",
    EmotionLabel.ANGRY: "Something upset you. Take a deep breath and pause for a moment.",
    EmotionLabel.ANXIOUS: "You seem anxious. Focus on the present and take one thing at a time.",
    EmotionLabel.NEUTRAL: "You're keeping a steady state. Try to maintain this balance.",
    EmotionLabel.EXCITED: "Something exciting happened! Put that energy to good use.",
    EmotionLabel.CALM: "You're calm and at peace. Treasure this quiet moment.",
    EmotionLabel.SURPRISED: "Something caught you off guard. Give yourself a moment to take it in.",
}


def emotion_color(label: EmotionLabel) -> str:
    return EMOTION_COLORS[EmotionLabel(label)]


def emotion_emoji(label: EmotionLabel) -> str:
    return EMOTION_EMOJIS[EmotionLabel(label)]


def emotion_advice(label: EmotionLabel) -> str:
    return EMOTION_ADVICE[EmotionLabel(label)]


def confidence_tier(confidence: float) -> str:
    """Bucket a confidence value into ``high``, ``medium`` or ``low``."""
    if confidence >= 0.8:
        return "high"
    if confidence >= 0.6:
        return "medium"
    return "low"
