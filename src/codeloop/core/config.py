"""Configuration management for codeloop."""

from __future__ import annotations

import logging
import os
import tomllib
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import tomli_w
import typer
from pydantic import BaseModel, Field, ValidationError, field_validator

from codeloop.core.permissions import SafetyMode

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.toml"
PROJECT_CONFIG_PATH = Path(".codeloop") / CONFIG_FILENAME
API_KEY_ENV = "CODELOOP_API_KEY"
HOME_ENV = "CODELOOP_HOME"


def default_config_dir() -> Path:
    override = os.environ.get(HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".codeloop"


class ConfigurationError(RuntimeError):
    """Raised when configuration loading or validation fails."""


class CodeloopConfig(BaseModel):
    """Persisted codeloop configuration settings."""

    config_version: int = 1
    llm_base_url: str = "https://api.z.ai/api/coding/paas/v4"
    llm_model: str = "glm-4.6"
    llm_timeout_seconds: float = Field(default=60.0, gt=0)
    turn_timeout_seconds: float = Field(default=300.0, gt=0)
    llm_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    llm_max_output_tokens: int = Field(default=8192, ge=1)
    streaming: bool = True
    safety_mode: SafetyMode = SafetyMode.ASK
    max_steps: int | None = Field(default=50, ge=1)
    continue_loop_on_deny: bool = False
    max_parallel_tools: int = Field(default=4, ge=1)
    web_search_url: str = "https://api.z.ai/api/tools/web_search"
    shell_timeout_seconds: float = Field(default=30.0, gt=0)
    load_instructions: bool = True
    instructions: list[str] = Field(default_factory=list)

    @field_validator("max_steps", mode="before")
    @classmethod
    def _unbounded_steps(cls, value: Any) -> Any:
        # TOML has no null; 0 or "unbounded" disables the budget.
        if value in (0, "unbounded", "none", ""):
            return None
        return value

    def to_toml_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True)
        if self.max_steps is None:
            data["max_steps"] = 0
        return data


@dataclass
class ConfigContext:
    """Represents a loaded configuration plus runtime-only secrets."""

    config: CodeloopConfig
    llm_api_key: str | None

    @property
    def offline(self) -> bool:
        return not self.llm_api_key


class ConfigManager:
    """Handles loading, merging and persisting codeloop configuration.

    Layers, lowest precedence first: the user config in the config directory,
    the project ``.codeloop/config.toml`` and an explicit override file. Only the
    user layer is ever written. API keys are never persisted.
    """

    def __init__(
        self,
        config_dir: Path | None = None,
        echo_fn: Callable[[str], None] | None = None,
        project_config_path: Path | None = None,
        override_config_path: Path | None = None,
    ) -> None:
        self.config_dir = config_dir or default_config_dir()
        self.config_path = self.config_dir / CONFIG_FILENAME
        self._echo = echo_fn or typer.echo
        self.project_config_path = project_config_path
        self.override_config_path = override_config_path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def ensure(
        self,
        *,
        llm_api_key: str | None = None,
        offline_mode: bool = False,
        overrides: dict[str, Any] | None = None,
    ) -> ConfigContext:
        """Load configuration, writing defaults on first run.

        ``overrides`` apply to this process only (command-line flags) and are
        validated together with the file layers.
        """
        if not self.config_path.exists():
            self._bootstrap_config()
        config = self._load_config(overrides)
        api_key = None if offline_mode else (llm_api_key or os.environ.get(API_KEY_ENV) or None)
        if api_key is None and not offline_mode:
            logger.info("No API key configured; using the offline transport")
        return ConfigContext(config=config, llm_api_key=api_key)

    def load(self, overrides: dict[str, Any] | None = None) -> CodeloopConfig:
        return self._load_config(overrides)

    def update(self, **updates: Any) -> CodeloopConfig:
        """Persist ``updates`` to the user config file and return the merged result."""
        current = self._read_config_dict(self.config_path)
        current = current.copy() if current else {}
        current.update({key: value for key, value in updates.items()})
        try:
            base_config = CodeloopConfig(**current)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc
        self._save_config(base_config)
        return self._load_config()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _bootstrap_config(self) -> None:
        self._save_config(CodeloopConfig())
        self._echo(f"Created default codeloop configuration at {self.config_path}")

    def _load_config(self, overrides: dict[str, Any] | None = None) -> CodeloopConfig:
        data: dict[str, Any] = self._read_config_dict(self.config_path)
        if self.project_config_path:
            data = self._merge_dicts(data, self._read_config_dict(self.project_config_path))
        if self.override_config_path:
            if not self.override_config_path.exists():
                raise ConfigurationError(f"Config file not found: {self.override_config_path}")
            data = self._merge_dicts(data, self._read_config_dict(self.override_config_path))
        if overrides:
            data = self._merge_dicts(
                data, {key: value for key, value in overrides.items() if value is not None}
            )
        try:
            return CodeloopConfig(**data)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

    def _save_config(self, config: CodeloopConfig) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(tomli_w.dumps(config.to_toml_dict()))
        except OSError as exc:
            raise ConfigurationError(f"Failed to write config to {self.config_path}: {exc}") from exc

    def _read_config_dict(self, path: Path | None) -> dict[str, Any]:
        if path is None:
            return {}
        if not path.exists():
            return {}
        try:
            return tomllib.loads(path.read_text())
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise ConfigurationError(f"Failed to load config from {path}: {exc}") from exc

    def _merge_dicts(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        result = deepcopy(base)
        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_dicts(result[key], value)
            else:
                result[key] = value
        return result


__all__ = [
    "API_KEY_ENV",
    "CodeloopConfig",
    "ConfigContext",
    "ConfigManager",
    "ConfigurationError",
    "PROJECT_CONFIG_PATH",
    "default_config_dir",
]
