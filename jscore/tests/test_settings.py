"""
Tests for the settings, config and path modules.
"""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from jscore.cli_common import resolve_protocol_config
from jscore.config import ProtocolConfig
from jscore.paths import get_default_data_dir, get_sessions_dir
from jscore.settings import (
    JoinSwapSettings,
    ensure_config_file,
    generate_config_template,
    get_config_path,
    get_settings,
    reset_settings,
)


@pytest.fixture(autouse=True)
def reset_settings_fixture() -> Generator[None, None, None]:
    """Reset settings before and after each test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def temp_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Create a temporary data directory and set it as JOINSWAP_DATA_DIR."""
    data_dir = tmp_path / ".joinswap"
    data_dir.mkdir(parents=True)
    monkeypatch.setenv("JOINSWAP_DATA_DIR", str(data_dir))
    monkeypatch.delenv("JOINSWAP_CONFIG_FILE", raising=False)
    return data_dir


class TestConfigTemplate:
    def test_generate_config_template(self) -> None:
        template = generate_config_template()

        assert "# JoinSwap Configuration" in template
        assert "[protocol]" in template
        assert "[maker]" in template
        assert "[client]" in template
        assert "[logging]" in template
        assert "# refund_timelock = 48" in template
        assert "# archive_sessions = true" in template

    def test_ensure_config_file_does_not_overwrite(self, temp_data_dir: Path) -> None:
        config_path = temp_data_dir / "config.toml"
        config_path.write_text("[maker]\nport = 5000\n")

        assert ensure_config_file(temp_data_dir) == config_path
        assert config_path.read_text() == "[maker]\nport = 5000\n"

    def test_ensure_config_file_creates_template(self, temp_data_dir: Path) -> None:
        config_path = ensure_config_file(temp_data_dir)
        assert config_path.exists()
        assert "# JoinSwap Configuration" in config_path.read_text()


class TestSettingsLoading:
    def test_defaults(self, temp_data_dir: Path) -> None:
        settings = get_settings()
        assert settings.protocol.refund_timelock == 48
        assert settings.maker.port == 4242
        assert settings.get_data_dir() == temp_data_dir

    def test_toml_file(self, temp_data_dir: Path) -> None:
        (temp_data_dir / "config.toml").write_text(
            "[protocol]\nrefund_timelock = 100\n\n[maker]\nport = 5000\n"
        )
        settings = get_settings()
        assert settings.protocol.refund_timelock == 100
        assert settings.maker.port == 5000

    def test_env_overrides_toml(
        self, temp_data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (temp_data_dir / "config.toml").write_text("[maker]\nport = 5000\n")
        monkeypatch.setenv("MAKER__PORT", "6000")
        assert get_settings().maker.port == 6000

    def test_overrides_force_reload(self, temp_data_dir: Path) -> None:
        first = get_settings()
        assert get_settings() is first
        assert get_settings(data_dir=temp_data_dir / "other").data_dir == temp_data_dir / "other"

    def test_config_path_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        custom = tmp_path / "custom.toml"
        monkeypatch.setenv("JOINSWAP_CONFIG_FILE", str(custom))
        assert get_config_path() == custom


class TestProtocolConfig:
    def test_participant_bounds(self) -> None:
        with pytest.raises(PydanticValidationError):
            ProtocolConfig(min_participants=5, max_participants=3)
        with pytest.raises(PydanticValidationError):
            ProtocolConfig(min_participants=1)
        with pytest.raises(PydanticValidationError):
            ProtocolConfig(refund_timelock=0)

    def test_resolve_ignores_unset_overrides(self, temp_data_dir: Path) -> None:
        settings = JoinSwapSettings()
        config = resolve_protocol_config(settings, refund_timelock=10, distribution_timelock=None)
        assert config.refund_timelock == 10
        assert config.distribution_timelock == settings.protocol.distribution_timelock


class TestPaths:
    def test_default_data_dir_from_env(self, temp_data_dir: Path) -> None:
        assert get_default_data_dir() == temp_data_dir

    def test_sessions_dir_is_created(self, tmp_path: Path) -> None:
        sessions = get_sessions_dir(tmp_path)
        assert sessions == tmp_path / "sessions"
        assert sessions.is_dir()
