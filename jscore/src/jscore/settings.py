"""
Unified settings management for JoinSwap components.

Settings are loaded with pydantic-settings from, highest priority first:
1. CLI arguments (passed as overrides by the component CLIs)
2. Environment variables
3. TOML config file (~/.joinswap/config.toml)
4. Default values

The config file is generated on first run with every setting commented out,
so users only uncomment what they want to change.

Environment Variable Naming:
    - Uppercase with double underscore for nested settings
    - Examples: PROTOCOL__REFUND_TIMELOCK, MAKER__PORT, LOGGING__LEVEL
    - Maps to TOML sections: PROTOCOL__REFUND_TIMELOCK -> [protocol] refund_timelock
"""

from __future__ import annotations

import os
import sys
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from jscore.config import ProtocolConfig
from jscore.paths import get_default_data_dir


class MakerSettings(BaseModel):
    """Maker server settings."""

    host: str = Field(
        default="127.0.0.1",
        description="Host address to bind to",
    )
    port: int = Field(
        default=4242,
        ge=0,
        le=65535,
        description="Port to listen on (0 = let OS assign)",
    )
    liquidity: int = Field(
        default=0,
        ge=0,
        description="Satoshis of development liquidity to seed the in-memory wallet with",
    )
    archive_sessions: bool = Field(
        default=True,
        description="Write a summary of each finished session to the data directory",
    )


class UserSettings(BaseModel):
    """User client settings."""

    maker_host: str = Field(
        default="127.0.0.1",
        description="Maker host to connect to",
    )
    maker_port: int = Field(
        default=4242,
        ge=1,
        le=65535,
        description="Maker port",
    )
    connection_timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout in seconds for connecting to the maker",
    )


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Log level: TRACE, DEBUG, INFO, WARNING, ERROR",
    )


class JoinSwapSettings(BaseSettings):
    """
    Main JoinSwap settings class.

    Loads configuration from multiple sources with the following priority:
    1. CLI arguments (passed to the constructor)
    2. Environment variables
    3. TOML config file (~/.joinswap/config.toml)
    4. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    data_dir: Path | None = Field(
        default=None,
        description="Data directory (defaults to ~/.joinswap)",
    )

    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    maker: MakerSettings = Field(default_factory=MakerSettings)
    client: UserSettings = Field(default_factory=UserSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    def get_data_dir(self) -> Path:
        """Get the data directory, using default if not set."""
        if self.data_dir is not None:
            return self.data_dir
        return get_default_data_dir()


def get_config_path() -> Path:
    """Get the path to the config file."""
    env_path = os.environ.get("JOINSWAP_CONFIG_FILE")
    if env_path:
        return Path(env_path)
    data_dir_env = os.environ.get("JOINSWAP_DATA_DIR")
    data_dir = Path(data_dir_env) if data_dir_env else Path.home() / ".joinswap"
    return data_dir / "config.toml"


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """
    Settings source reading the TOML config file.

    The file is $JOINSWAP_CONFIG_FILE if set, else config.toml in the data
    directory. A missing file yields no values; an unreadable one stops the
    process.
    """

    def __init__(self, settings_cls: type[BaseSettings]) -> None:
        super().__init__(settings_cls)
        self._config = self._read(get_config_path())

    @staticmethod
    def _read(path: Path) -> dict[str, Any]:
        if not path.is_file():
            logger.debug(f"No config file at {path}")
            return {}
        try:
            data = tomllib.loads(path.read_text())
        except (tomllib.TOMLDecodeError, OSError, UnicodeDecodeError) as e:
            logger.error(f"Cannot use config file {path}: {e}")
            logger.error("Section headers such as [protocol] must be uncommented")
            sys.exit(1)
        logger.info(f"Loaded {len(data)} config section(s) from {path}")
        return data

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        value = self._config.get(field_name)
        return value, field_name, value is not None

    def __call__(self) -> dict[str, Any]:
        return self._config


def _format_toml_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, str | Path):
        return f'"{value}"'
    return str(value)


_TEMPLATE_HEADER = """\
# JoinSwap Configuration
#
# Every setting is listed with its default value, commented out.
# Uncomment a line to change it.
#
# Priority (highest to lowest): CLI arguments, environment variables,
# this file, built-in defaults.
#
# Environment variables are upper case, with "__" between section and key:
#   PROTOCOL__REFUND_TIMELOCK=48
#   MAKER__PORT=4242

# Data directory (default ~/.joinswap or $JOINSWAP_DATA_DIR)
# data_dir =
"""

_TEMPLATE_SECTIONS: list[tuple[str, str, type[BaseModel]]] = [
    ("protocol", "Protocol parameters shared by maker and users", ProtocolConfig),
    ("maker", "Maker server", MakerSettings),
    ("client", "User client", UserSettings),
    ("logging", "Logging", LoggingSettings),
]


def generate_config_template() -> str:
    """Render a config file with every setting commented out at its default."""
    parts = [_TEMPLATE_HEADER]
    for section, title, model_cls in _TEMPLATE_SECTIONS:
        parts.append(f"\n# --- {title} ---\n[{section}]\n")
        for name, info in model_cls.model_fields.items():
            if info.description:
                parts.append(f"# {info.description}\n")
            parts.append(f"# {name} = {_format_toml_value(info.default)}\n")
    return "".join(parts)


def ensure_config_file(data_dir: Path | None = None) -> Path:
    """
    Ensure the config file exists, creating a template if it doesn't.

    Args:
        data_dir: Optional data directory path. Uses default if not provided.

    Returns:
        Path to the config file.
    """
    if data_dir is None:
        data_dir = get_default_data_dir()

    config_path = data_dir / "config.toml"

    if not config_path.exists():
        logger.info(f"Creating config file template at {config_path}")
        data_dir.mkdir(parents=True, exist_ok=True)
        config_path.write_text(generate_config_template())

    return config_path


_settings: JoinSwapSettings | None = None


def get_settings(**overrides: Any) -> JoinSwapSettings:
    """
    Get the JoinSwap settings instance.

    Loaded from all sources on first call and cached until reset_settings().
    Overrides have the highest priority and always force a reload.
    """
    global _settings
    if _settings is None or overrides:
        _settings = JoinSwapSettings(**overrides)
    return _settings


def reset_settings() -> None:
    """Reset the global settings instance (useful for testing)."""
    global _settings
    _settings = None


__all__ = [
    "JoinSwapSettings",
    "MakerSettings",
    "UserSettings",
    "LoggingSettings",
    "TomlConfigSettingsSource",
    "get_settings",
    "reset_settings",
    "get_config_path",
    "generate_config_template",
    "ensure_config_file",
]
