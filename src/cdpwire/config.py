"""Configuration system for cdpwire.

Settings come from the process environment and an optional ``.env`` file in
the working directory.
"""

import logging
import os

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower()[:1] in 'ty1'


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f'Ignoring non-integer value {raw!r} for {name}, using {default}')
        return default


class EnvConfig(BaseSettings):
    """Environment variable configuration using pydantic-settings."""

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='allow',
    )

    # Logging
    CDPWIRE_LOGGING_LEVEL: str = Field(default='info')
    CDP_LOGGING_LEVEL: str = Field(default='WARNING')

    # Connection
    CDPWIRE_CDP_URL: str | None = Field(default=None)
    CDPWIRE_PROTOCOL_TIMEOUT_MS: int = Field(default=180_000, ge=0)
    CDPWIRE_SLOW_MO_MS: int = Field(default=0, ge=0)
    CDPWIRE_WAIT_FOR_INITIAL_TARGETS: bool = Field(default=True)
    CDPWIRE_USE_TAB_TARGET: bool = Field(default=False)


class Config:
    """Process-wide view of the environment.

    Re-reads environment variables on every access, so tests and long-lived
    processes always see the current values.
    """

    _instance: 'Config | None' = None

    def __new__(cls) -> 'Config':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def LOGGING_LEVEL(self) -> str:
        return os.getenv('CDPWIRE_LOGGING_LEVEL', 'info').lower()

    @property
    def CDP_LOGGING_LEVEL(self) -> str:
        return os.getenv('CDP_LOGGING_LEVEL', 'WARNING').upper()

    @property
    def CDP_URL(self) -> str | None:
        return os.getenv('CDPWIRE_CDP_URL') or None

    @property
    def PROTOCOL_TIMEOUT_MS(self) -> int:
        return _env_int('CDPWIRE_PROTOCOL_TIMEOUT_MS', 180_000)

    @property
    def SLOW_MO_MS(self) -> int:
        return _env_int('CDPWIRE_SLOW_MO_MS', 0)

    @property
    def WAIT_FOR_INITIAL_TARGETS(self) -> bool:
        return _env_flag('CDPWIRE_WAIT_FOR_INITIAL_TARGETS', 'true')

    @property
    def USE_TAB_TARGET(self) -> bool:
        return _env_flag('CDPWIRE_USE_TAB_TARGET', 'false')

    def env(self) -> EnvConfig:
        """Validated snapshot of the environment (raises on invalid values)."""
        return EnvConfig()


CONFIG = Config()
