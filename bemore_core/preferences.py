"""
UI preference storage for BeMore Core.

Holds the low-frequency, cross-cutting UI state (theme, ambient emotion,
loading flag) apart from session data so that changes here never touch the
session store's subscribers.
"""

import logging
from collections.abc import Callable

from pydantic import BaseModel

from .classifier import emotion_color
from .models import EmotionLabel, PreferenceState, Theme
from .persistence import KeyValueStorage, load_state
from .store import ObservableStore

logger = logging.getLogger(__name__)

PREFERENCE_STORAGE_KEY = "bemore-ui-storage"


class ColorSchemeSignal:
    """
    The host environment's ambient light/dark preference.

    Hosts call ``update`` whenever the platform preference changes; stores
    subscribe instead of polling.
    """

    def __init__(self, prefers_dark: bool = False) -> None:
        self._prefers_dark = prefers_dark
        self._listeners: list[Callable[[bool], None]] = []

    @property
    def prefers_dark(self) -> bool:
        return self._prefers_dark

    def update(self, prefers_dark: bool) -> None:
        if prefers_dark == self._prefers_dark:
            return
        self._prefers_dark = prefers_dark
        for listener in list(self._listeners):
            listener(prefers_dark)

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


class PersistedPreferences(BaseModel):
    theme: Theme = Theme.AUTO
    current_emotion: EmotionLabel = EmotionLabel.NEUTRAL


class PreferenceStore(ObservableStore[PreferenceState]):
    """
    Process-wide UI preferences.

    ``theme`` and ``current_emotion`` survive restarts; ``is_loading`` is
    transient and always starts out False.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        color_scheme: ColorSchemeSignal | None = None,
        storage_key: str = PREFERENCE_STORAGE_KEY,
    ) -> None:
        super().__init__(storage, storage_key)
        persisted = load_state(storage, storage_key, PersistedPreferences)
        persisted = persisted or PersistedPreferences()

        self._theme = persisted.theme
        self._current_emotion = persisted.current_emotion
        self._is_loading = False

        self._color_scheme = color_scheme or ColorSchemeSignal()
        self._unsubscribe_scheme: Callable[[], None] | None = (
            self._color_scheme.subscribe(self._on_color_scheme_change)
        )

    @property
    def theme(self) -> Theme:
        return self._theme

    @property
    def current_emotion(self) -> EmotionLabel:
        return self._current_emotion

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def effective_theme(self) -> Theme:
        """The concrete light/dark theme to render with."""
        if self._theme is Theme.AUTO:
            return Theme.DARK if self._color_scheme.prefers_dark else Theme.LIGHT
        return self._theme

    @property
    def emotion_color(self) -> str:
        return emotion_color(self._current_emotion)

    def snapshot(self) -> PreferenceState:
        return PreferenceState(
            theme=self._theme,
            effective_theme=self.effective_theme,
            current_emotion=self._current_emotion,
            emotion_color=self.emotion_color,
            is_loading=self._is_loading,
        )

    def _persisted_state(self) -> PersistedPreferences:
        return PersistedPreferences(
            theme=self._theme, current_emotion=self._current_emotion
        )

    # MARK: - Setters

    def set_theme(self, theme: Theme | str) -> None:
        """
        Replace the theme.

        Raises:
            ValueError: If ``theme`` is not one of light, dark or auto
        """
        self._theme = Theme(theme)
        self._commit()

    def set_current_emotion(self, emotion: EmotionLabel | str) -> None:
        self._current_emotion = EmotionLabel(emotion)
        self._commit()

    def set_loading(self, loading: bool) -> None:
        self._is_loading = loading
        self._commit()

    def close(self) -> None:
        """Stop following the host color scheme."""
        if self._unsubscribe_scheme is not None:
            self._unsubscribe_scheme()
            self._unsubscribe_scheme = None

    def _on_color_scheme_change(self, prefers_dark: bool) -> None:
        if self._theme is not Theme.AUTO:
            return
        logger.debug("Host color scheme changed, dark=%s", prefers_dark)
        self._commit()
