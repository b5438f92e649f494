"""
YAML configuration for subcommander defaults.

Example file:

    communicate:
      chunk_size: 65536
      max_output: 10485760
      timeout: 600
    privileged:
      wrapper: sudo
      prompt_timeout: 5
      require_prompt: false
      rejection_patterns: ["Sorry, try again"]
    logging:
      level: INFO
      file: ~/.subcommander/subcommander.log
      console_level: WARNING

Every section and key is optional.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .models import RunOptions
from .privileged import PromptConfig

logger = logging.getLogger(__name__)

CONFIG_ENV = "SUBCOMMANDER_CONFIG"
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class CommunicateSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    chunk_size: int = 64 * 1024
    max_output: Optional[int] = None
    timeout: Optional[float] = None

    def run_options(self, **overrides: Any) -> RunOptions:
        values = {"chunk_size": self.chunk_size, "max_output": self.max_output, "timeout": self.timeout}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return RunOptions(**values)


class PrivilegedSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    wrapper: str = "sudo"
    prompt_patterns: Optional[List[str]] = None
    rejection_patterns: Optional[List[str]] = None
    prompt_timeout: float = 5.0
    require_prompt: bool = False
    timeout: Optional[float] = None

    @field_validator("wrapper")
    @classmethod
    def wrapper_known(cls, v: str) -> str:
        if v.lower() not in ("sudo", "doas"):
            raise ValueError(f"unsupported wrapper: {v}")
        return v.lower()

    def prompt_config(self, **overrides: Any) -> PromptConfig:
        values: Dict[str, Any] = {
            "prompt_timeout": self.prompt_timeout,
            "require_prompt": self.require_prompt,
            "timeout": self.timeout,
        }
        if self.prompt_patterns is not None:
            values["prompt_patterns"] = self.prompt_patterns
        if self.rejection_patterns is not None:
            values["rejection_patterns"] = self.rejection_patterns
        values.update({k: v for k, v in overrides.items() if v is not None})
        return PromptConfig(**values)


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    file: Optional[str] = None
    console_level: str = "WARNING"

    @field_validator("level", "console_level")
    @classmethod
    def level_known(cls, v: str) -> str:
        if v.upper() not in _LEVELS:
            raise ValueError(f"unknown log level: {v}")
        return v.upper()

    @property
    def file_path(self) -> Optional[Path]:
        return Path(self.file).expanduser() if self.file else None


class SubcommanderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    communicate: CommunicateSettings = Field(default_factory=CommunicateSettings)
    privileged: PrivilegedSettings = Field(default_factory=PrivilegedSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class ConfigurationLoader:
    """YAML configuration file loader and validator."""

    def __init__(self, config_path: Path):
        self.config_path = Path(config_path).expanduser()

    def load(self) -> SubcommanderConfig:
        logger.info(f"Loading configuration from {self.config_path}")
        try:
            with open(self.config_path, "r") as f:
                raw = yaml.safe_load(f)
        except OSError as e:
            raise ConfigurationError(f"cannot read {self.config_path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML in {self.config_path}: {e}") from e

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{self.config_path}: top level must be a mapping")
        try:
            return SubcommanderConfig(**raw)
        except ValidationError as e:
            first = e.errors()[0]
            where = ".".join(str(p) for p in first.get("loc", ()))
            raise ConfigurationError(f"{self.config_path}: {where}: {first.get('msg')}") from e


def load_config(path: Optional[Path] = None) -> SubcommanderConfig:
    """Load ``path``, else $SUBCOMMANDER_CONFIG, else built-in defaults."""
    if path is None:
        env_path = os.environ.get(CONFIG_ENV)
        if not env_path:
            return SubcommanderConfig()
        path = Path(env_path)
    return ConfigurationLoader(path).load()


__all__ = [
    "CommunicateSettings",
    "PrivilegedSettings",
    "LoggingSettings",
    "SubcommanderConfig",
    "ConfigurationLoader",
    "load_config",
]
