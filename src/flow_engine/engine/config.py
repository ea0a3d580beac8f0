"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings for the workflow engine.

    Environment variables:
    - LOG_LEVEL                             (optional)
    - FLOW_ENGINE_STATE_PATH                (optional)
    - FLOW_ENGINE_LOG_PATH                  (optional)
    - FLOW_ENGINE_CHECKER_INTERVAL_SECONDS  (optional)
    - FLOW_ENGINE_SINGLE_WRITER             (optional)
    - FLOW_ENGINE_LOGGER_CACHE_SIZE         (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("flow_state/store.json"),
        validation_alias="FLOW_ENGINE_STATE_PATH",
        description="JSON file where workflows, executions, jobs and records are persisted",
    )

    log_path: Path | None = Field(
        default=None,
        validation_alias="FLOW_ENGINE_LOG_PATH",
        description=(
            "Directory for per-workflow log files (workflows/<id>/<date>.log). "
            "Unset means workflow logs only go through the root handlers."
        ),
    )

    checker_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        validation_alias="FLOW_ENGINE_CHECKER_INTERVAL_SECONDS",
        description="Interval of the periodic dispatch tick that polls for queued executions",
    )

    single_writer: bool = Field(
        default=False,
        validation_alias="FLOW_ENGINE_SINGLE_WRITER",
        description=(
            "Treat the store as single-writer: event draining waits for in-flight "
            "processing before creating executions."
        ),
    )

    logger_cache_size: int = Field(
        default=20,
        ge=1,
        validation_alias="FLOW_ENGINE_LOGGER_CACHE_SIZE",
        description="Maximum number of per-workflow file loggers kept open",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )
