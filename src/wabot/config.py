"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (the bootstrap session blob)
live in .env. Environment variables override both using ``__`` as the nested
delimiter (e.g. ``RECONNECT__MAX_ATTEMPTS=8``). The bootstrap blob is also
accepted from the bare ``SESSION_ID`` variable.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from wabot.config import get_settings

    s = get_settings()
    print(s.bot.name)
    print(s.reconnect.base_delay_ms)
"""

from __future__ import annotations

import os
import re
from functools import cached_property
from pathlib import Path

from pydantic import AliasChoices, BaseModel, Field, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models: reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class BotConfig(_StrictModel):
    name: str = "wabot"
    owners: list[str] = []  # phone numbers, digits only
    prefix: str = "*/i!#$%+£¢€¥^°=¶∆×÷π√✓©®:;?&.\\-.@"
    greeting: str = "*{name} is live!*\n\nHello {user}! ✅"
    send_greeting: bool = True
    welcome: str = "Welcome @user to *@group*!"
    bye: str = "@user left"
    promote: str = "*@user* is now Admin!"
    demote: str = "@user demoted"
    announce_participants: bool = True
    group_desc: str = "Desc: @desc"
    group_subject: str = "Name: @group"
    group_icon: str = "New icon!"
    group_revoke: str = "Link: @revoke"
    group_announce_on: str = "CLOSED - Admins only"
    group_announce_off: str = "OPEN - Everyone can speak"
    group_restrict_on: str = "Admins only edit"
    group_restrict_off: str = "All can edit"
    announce_group_settings: bool = True

    @field_validator("owners")
    @classmethod
    def digits_only(cls, v: list[str]) -> list[str]:
        return [re.sub(r"[^0-9]", "", n) for n in v if re.sub(r"[^0-9]", "", n)]


class SessionConfig(_StrictModel):
    dir: str = "session"
    bootstrap_tag: str = "Wabot"
    session_id: SecretStr | None = None


class ReconnectConfig(_StrictModel):
    """Reconnect policy. Delays are milliseconds."""

    base_delay_ms: int = 3000
    max_attempts: int = 5
    restart_delay_ms: int = 3000
    timeout_delay_ms: int = 2000

    @field_validator("base_delay_ms", "restart_delay_ms", "timeout_delay_ms")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("reconnect delays must be non-negative")
        return v

    @field_validator("max_attempts")
    @classmethod
    def clamp_attempts(cls, v: int) -> int:
        return max(0, v)


class PluginsConfig(_StrictModel):
    dir: str = "plugins"
    watch: bool = True


class ServerConfig(_StrictModel):
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 3000


class HousekeepingConfig(_StrictModel):
    prekey_interval: float = 600.0  # seconds
    tmp_dir: str = "tmp"
    tmp_interval: float = 120.0  # seconds
    tmp_max_age: float = 180.0  # seconds


class StoreConfig(_StrictModel):
    enabled: bool = True
    path: str = "store.json"
    flush_interval: float = 60.0  # seconds


class TransportConfig(_StrictModel):
    provider: str = "neonize"
    pairing_delay: float = 3.0  # seconds before requesting a pairing code


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    bot: BotConfig = BotConfig()
    session: SessionConfig = SessionConfig()
    reconnect: ReconnectConfig = ReconnectConfig()
    plugins: PluginsConfig = PluginsConfig()
    server: ServerConfig = ServerConfig()
    housekeeping: HousekeepingConfig = HousekeepingConfig()
    store: StoreConfig = StoreConfig()
    transport: TransportConfig = TransportConfig()
    logging: LoggingConfig = LoggingConfig()

    # Bare SESSION_ID / PAIRING_NUMBER env vars, kept for deploy platforms
    # that only let you set flat variables.
    session_id: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("SESSION_ID", "session_id")
    )
    pairing_number: str | None = Field(
        default=None, validation_alias=AliasChoices("PAIRING_NUMBER", "pairing_number")
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def session_dir(self) -> Path:
        return _resolve(self.project_root, self.session.dir)

    @cached_property
    def plugins_dir(self) -> Path:
        return _resolve(self.project_root, self.plugins.dir)

    @cached_property
    def tmp_dir(self) -> Path:
        return _resolve(self.project_root, self.housekeeping.tmp_dir)

    @cached_property
    def store_path(self) -> Path:
        return _resolve(self.project_root, self.store.path)

    @cached_property
    def prefix_pattern(self) -> re.Pattern[str]:
        chars = os.environ.get("PREFIX") or self.bot.prefix
        return re.compile("^[" + re.escape(chars) + "]")

    def bootstrap_blob(self) -> str | None:
        """Return the bootstrap session blob from whichever source set it."""
        secret = self.session.session_id or self.session_id
        return secret.get_secret_value() if secret else None


def _resolve(root: Path, value: str) -> Path:
    p = Path(os.path.expanduser(value))
    if not p.is_absolute():
        p = root / p
    return p.resolve()


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
