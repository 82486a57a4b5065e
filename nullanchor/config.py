"""
nullanchor - Relayer Configuration

Loaded from environment variables prefixed ``NULLANCHOR_`` (and an optional
``.env`` file). Keys themselves are never configured here: key management
is external, only the controller secret used for subject tags is read.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .records import is_address


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class LogFormat(str, Enum):
    JSON = "json"
    CONSOLE = "console"


class RelayerSettings(BaseSettings):
    log_level: LogLevel = Field(default=LogLevel.INFO)
    log_format: LogFormat = Field(default=LogFormat.JSON)

    database_path: str = Field(default="data/relayer.db")
    controller_secret: SecretStr = Field(default=SecretStr(""))

    relayer_address: Optional[str] = Field(default=None)
    relayer_key_id: str = Field(default="relayer")

    chain_id: int = Field(default=1, ge=0)
    registry_name: str = Field(default="NullAnchorRegistry")
    registry_version: str = Field(default="1")

    anchor_max_attempts: int = Field(default=3, ge=1)
    anchor_backoff_seconds: float = Field(default=1.0, ge=0)
    anchor_backoff_max_seconds: float = Field(default=8.0, ge=0)
    confirmation_timeout_seconds: float = Field(default=30.0, gt=0)
    clock_skew_seconds: int = Field(default=300, ge=0)

    sbt_minting_enabled: bool = Field(default=True)
    default_receipt_recipient: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="NULLANCHOR_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value):
        return value.upper() if isinstance(value, str) else value

    @field_validator("relayer_address", "default_receipt_recipient")
    @classmethod
    def check_address(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_address(value):
            raise ValueError(f"{value!r} is not a ledger address")
        return value


@lru_cache
def get_settings() -> RelayerSettings:
    return RelayerSettings()
