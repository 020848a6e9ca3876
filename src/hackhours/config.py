"""Configuration for HackHours, stored as JSON in ~/.hackhours/config.json."""

from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

HACKHOURS_HOME = Path.home() / ".hackhours"
DEFAULT_CONFIG_PATH = HACKHOURS_HOME / "config.json"
DEFAULT_DATA_DIR = HACKHOURS_HOME / "data"
DEFAULT_IDLE_MINUTES = 2
DEFAULT_EXCLUDE = [
    "**/node_modules/**",
    "**/.git/**",
    "**/dist/**",
    "**/build/**",
    "**/.next/**",
    "**/.turbo/**",
    "**/.cache/**",
    "**/.idea/**",
    "**/.vscode/**",
    "**/*.log",
]
DB_FILENAME = "hackhours.db"
LOG_FILENAME = "daemon.log"


class Config(BaseModel):
    """User configuration.

    Keys missing from the config file take their defaults.
    """

    directories: list[str] = Field(default_factory=lambda: [os.getcwd()])
    idle_minutes: int = DEFAULT_IDLE_MINUTES
    exclude: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE))
    data_dir: str = str(DEFAULT_DATA_DIR)

    @field_validator("idle_minutes")
    @classmethod
    def _positive_idle(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("idle_minutes must be positive")
        return value

    @field_validator("data_dir")
    @classmethod
    def _expand_data_dir(cls, value: str) -> str:
        return os.path.expanduser(value.strip())

    @field_validator("directories")
    @classmethod
    def _expand_directories(cls, value: list[str]) -> list[str]:
        return [os.path.abspath(os.path.expanduser(d)) for d in value if d.strip()]

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / DB_FILENAME

    @property
    def log_path(self) -> Path:
        return Path(self.data_dir) / LOG_FILENAME


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> Config:
    """Load config from a JSON file, falling back to defaults if it does not exist.

    Raises:
        json.JSONDecodeError: If the file is not valid JSON.
        pydantic.ValidationError: If a value has the wrong type or is out of range.
    """
    if not path.exists():
        return Config()
    data = json.loads(path.read_text(encoding="utf-8"))
    return Config.model_validate(data)


def save_config(config: Config, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Write config as JSON, creating the parent directory if needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(config.model_dump_json(indent=2), encoding="utf-8")
