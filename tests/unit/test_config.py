"""Unit tests for settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from flow_engine.engine.config import EngineSettings
from flow_engine.server.config import ServerSettings

ENV_VARS = (
    "LOG_LEVEL",
    "FLOW_ENGINE_STATE_PATH",
    "FLOW_ENGINE_LOG_PATH",
    "FLOW_ENGINE_CHECKER_INTERVAL_SECONDS",
    "FLOW_ENGINE_SINGLE_WRITER",
    "FLOW_ENGINE_LOGGER_CACHE_SIZE",
    "FLOW_ENGINE_CORS_ORIGINS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_engine_settings_defaults() -> None:
    settings = EngineSettings(_env_file=None)

    assert settings.log_level == "INFO"
    assert settings.state_path == Path("flow_state/store.json")
    assert settings.log_path is None
    assert settings.checker_interval_seconds == 300.0
    assert settings.single_writer is False
    assert settings.logger_cache_size == 20


def test_engine_settings_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("FLOW_ENGINE_STATE_PATH", str(tmp_path / "s.json"))
    monkeypatch.setenv("FLOW_ENGINE_LOG_PATH", str(tmp_path / "logs"))
    monkeypatch.setenv("FLOW_ENGINE_CHECKER_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("FLOW_ENGINE_SINGLE_WRITER", "true")
    monkeypatch.setenv("FLOW_ENGINE_LOGGER_CACHE_SIZE", "3")

    settings = EngineSettings(_env_file=None)

    assert settings.log_level == "debug"
    assert settings.state_path == tmp_path / "s.json"
    assert settings.log_path == tmp_path / "logs"
    assert settings.checker_interval_seconds == 2.5
    assert settings.single_writer is True
    assert settings.logger_cache_size == 3


def test_engine_settings_from_env_file(tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("FLOW_ENGINE_SINGLE_WRITER=1\nUNRELATED=x\n", encoding="utf-8")

    settings = EngineSettings(_env_file=env_file)

    assert settings.single_writer is True


def test_engine_settings_reject_invalid_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLOW_ENGINE_CHECKER_INTERVAL_SECONDS", "0")

    with pytest.raises(ValidationError):
        EngineSettings(_env_file=None)


def test_cors_origins_are_split_and_trimmed(monkeypatch: pytest.MonkeyPatch) -> None:
    assert ServerSettings(_env_file=None).parsed_cors_origins() == [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    monkeypatch.setenv("FLOW_ENGINE_CORS_ORIGINS", " https://a.example , ,https://b.example")

    assert ServerSettings(_env_file=None).parsed_cors_origins() == [
        "https://a.example",
        "https://b.example",
    ]
