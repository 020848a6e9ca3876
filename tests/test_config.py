"""Tests for configuration loading and saving."""

import json
import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from hackhours.config import DEFAULT_EXCLUDE, DEFAULT_IDLE_MINUTES, Config, load_config, save_config


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self, tmp_path: Path, monkeypatch):
        """A missing config file yields the defaults."""
        monkeypatch.chdir(tmp_path)
        config = load_config(tmp_path / "missing.json")

        assert config.directories == [os.getcwd()]
        assert config.idle_minutes == DEFAULT_IDLE_MINUTES
        assert config.exclude == DEFAULT_EXCLUDE

    def test_partial_file_keeps_other_defaults(self, tmp_path: Path):
        """Keys absent from the file keep their defaults."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"idle_minutes": 15, "directories": ["/work/app"]}))

        config = load_config(path)

        assert config.idle_minutes == 15
        assert config.directories == ["/work/app"]
        assert config.exclude == DEFAULT_EXCLUDE

    def test_invalid_json_raises(self, tmp_path: Path):
        """Malformed JSON is not silently replaced by defaults."""
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(json.JSONDecodeError):
            load_config(path)

    def test_non_positive_idle_rejected(self, tmp_path: Path):
        """An idle timeout of zero fails validation."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"idle_minutes": 0}))
        with pytest.raises(ValidationError):
            load_config(path)


class TestConfigModel:
    """Tests for Config normalization."""

    def test_data_dir_tilde_expanded(self):
        """A leading ~ in data_dir expands to the home directory."""
        config = Config(data_dir="~/hh-data")
        assert config.data_dir == os.path.expanduser("~/hh-data")

    def test_directories_made_absolute(self, tmp_path: Path, monkeypatch):
        """Relative directories become absolute and blanks are dropped."""
        monkeypatch.chdir(tmp_path)
        config = Config(directories=["project", " "])
        assert config.directories == [os.path.join(os.getcwd(), "project")]

    def test_paths(self, tmp_path: Path):
        """The database and log live in the data directory."""
        config = Config(data_dir=str(tmp_path))
        assert config.db_path == tmp_path / "hackhours.db"
        assert config.log_path == tmp_path / "daemon.log"


class TestSaveConfig:
    """Tests for save_config."""

    def test_save_then_load(self, tmp_path: Path):
        """A saved config loads back unchanged."""
        path = tmp_path / "nested" / "config.json"
        config = Config(directories=["/work/app"], idle_minutes=5, exclude=["**/.git/**"], data_dir=str(tmp_path))

        save_config(config, path)

        assert load_config(path) == config
