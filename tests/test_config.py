"""Tests for settings validation and persistence."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from onyx.config import ConfigManager, Settings, validate_quality
from onyx.constants import DEFAULT_CONCURRENCY


class TestSettings:

    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.max_concurrent_downloads == DEFAULT_CONCURRENCY == 3
        assert settings.server_port == 3000
        assert settings.log_level == 'INFO'

    @pytest.mark.parametrize("value", [0, 11, -3])
    def test_concurrency_range(self, value: int) -> None:
        with pytest.raises(ValidationError):
            Settings(max_concurrent_downloads=value)

    def test_log_level_is_normalized(self) -> None:
        assert Settings(log_level='debug').log_level == 'DEBUG'
        with pytest.raises(ValidationError):
            Settings(log_level='chatty')

    def test_download_path_expands_home(self) -> None:
        assert Settings(download_path='~/Videos').download_path == Path.home() / 'Videos'

    @pytest.mark.parametrize("value, expected", [('max', 'max'), ('Mid-Max', 'mid-max'), ('1080p', '1080')])
    def test_validate_quality(self, value: str, expected: str) -> None:
        assert validate_quality(value) == expected

    @pytest.mark.parametrize("value", ['best', '0', '', 'p'])
    def test_validate_quality_rejects(self, value: str) -> None:
        with pytest.raises(ValueError):
            validate_quality(value)


class TestConfigManager:

    def test_creates_default_file(self, tmp_path: Path) -> None:
        config_path = tmp_path / 'nested' / 'config.json'
        settings = ConfigManager(config_path).load()
        assert settings == Settings()
        assert json.loads(config_path.read_text(encoding='utf-8'))['max_concurrent_downloads'] == 3

    def test_round_trip(self, tmp_path: Path) -> None:
        manager = ConfigManager(tmp_path / 'config.json')
        manager.save(Settings(max_concurrent_downloads=7, download_path=tmp_path))
        loaded = manager.load()
        assert loaded.max_concurrent_downloads == 7
        assert loaded.download_path == tmp_path

    def test_corrupt_file_is_backed_up(self, tmp_path: Path) -> None:
        config_path = tmp_path / 'config.json'
        config_path.write_text('{not json', encoding='utf-8')

        settings = ConfigManager(config_path).load()

        assert settings == Settings()
        assert not config_path.exists()
        assert len(list(tmp_path.glob('config.*.bak'))) == 1

    def test_update_validates_and_saves(self, tmp_path: Path) -> None:
        manager = ConfigManager(tmp_path / 'config.json')
        settings = manager.load()

        updated = manager.update(settings, max_concurrent_downloads=5, show_debug_command=True)
        assert updated.max_concurrent_downloads == 5
        assert manager.load().show_debug_command is True

        with pytest.raises(ValidationError):
            manager.update(updated, max_concurrent_downloads=42)
        assert manager.load().max_concurrent_downloads == 5
