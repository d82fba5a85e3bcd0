"""
Tests for settings loading.
"""

import json
import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from bemore_core.classifier import ClassifierProfile
from bemore_core.config import ENV_PREFIX, Settings, load_settings


class TestLoadSettings:
    """Test suite for load_settings."""

    @pytest.fixture(autouse=True)
    def clean_environment(self, monkeypatch):
        """Hide BEMORE_* variables of the surrounding shell."""
        for name in list(os.environ):
            if name.upper().startswith(ENV_PREFIX):
                monkeypatch.delenv(name)
        self.monkeypatch = monkeypatch

    def test_defaults(self):
        settings = load_settings()
        assert settings == Settings()
        assert settings.api_base_url == "http://localhost:3000/api"
        assert settings.classifier_profile is ClassifierProfile.DASHBOARD
        assert settings.trend_window == 5

    def test_environment_values(self):
        """Test that BEMORE_* variables are read and coerced."""
        self.monkeypatch.setenv("BEMORE_API_TIMEOUT", "12.5")
        self.monkeypatch.setenv("BEMORE_CLASSIFIER_PROFILE", "utility")
        self.monkeypatch.setenv("BEMORE_STORAGE_DIR", "/tmp/bemore")
        self.monkeypatch.setenv("bemore_log_level", "debug")
        self.monkeypatch.setenv("OTHER_PORT", "1")

        settings = load_settings()

        assert settings.api_timeout == 12.5
        assert settings.classifier_profile is ClassifierProfile.UTILITY
        assert settings.storage_dir == Path("/tmp/bemore")
        assert settings.log_level == "DEBUG"
        assert settings.port == 8000

    def test_file_with_environment_override(self, tmp_path):
        """Test that the environment wins over the settings file."""
        path = tmp_path / "settings.json"
        path.write_text(
            json.dumps({"port": 9000, "api_token": "from-file", "unused": True})
        )
        self.monkeypatch.setenv("BEMORE_API_TOKEN", "from-env")

        settings = load_settings(path)
        assert settings.port == 9000
        assert settings.api_token == "from-env"

    def test_missing_file_is_ignored(self, tmp_path):
        settings = load_settings(tmp_path / "missing.json")
        assert settings == Settings()

    @pytest.mark.parametrize(
        "name, value",
        [
            ("BEMORE_LOG_LEVEL", "chatty"),
            ("BEMORE_RECORDING_INTERVAL", "0"),
            ("BEMORE_TREND_WINDOW", "0"),
        ],
    )
    def test_invalid_values(self, name, value):
        """Test that invalid values are rejected."""
        self.monkeypatch.setenv(name, value)
        with pytest.raises(ValidationError):
            load_settings()
