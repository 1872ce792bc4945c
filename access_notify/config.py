"""Pydantic-based configuration for the access request notification plugins."""

from __future__ import annotations

import logging
import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .recipients import WILDCARD, RecipientsMap

CONFIG_PATH_ENV = "ACCESS_NOTIFY_CONFIG"
DEFAULT_CONFIG_PATH = "/etc/teleport-access-notify.toml"
DEFAULT_TELEPORT_ADDR = "localhost:3025"

PLATFORMS = ("slack", "discord")


class TeleportConfig(BaseModel):
    """Connection settings for the access request API."""

    addr: str = DEFAULT_TELEPORT_ADDR
    identity: str = ""

    @field_validator("addr")
    @classmethod
    def _default_addr(cls, value: str) -> str:
        return value.strip() or DEFAULT_TELEPORT_ADDR


class PlatformConfig(BaseModel):
    """Credentials of the chat platform. A token starting with ``/`` is read from that file."""

    token: str
    api_url: str = ""
    recipients: List[str] = Field(default_factory=list)

    @field_validator("token")
    @classmethod
    def _read_token(cls, value: str) -> str:
        value = value.strip()
        if value.startswith("/"):
            try:
                value = Path(value).read_text(encoding="utf-8").strip()
            except OSError as exc:
                raise ValueError(f"cannot read token file: {exc}") from exc
        if not value:
            raise ValueError("token must not be empty")
        return value


class SlackConfig(PlatformConfig):
    pass


class DiscordConfig(PlatformConfig):
    pass


class LogConfig(BaseModel):
    output: str = "stderr"
    severity: str = "INFO"

    @field_validator("output")
    @classmethod
    def _default_output(cls, value: str) -> str:
        return value.strip() or "stderr"

    @field_validator("severity")
    @classmethod
    def _known_severity(cls, value: str) -> str:
        severity = value.strip().upper() or "INFO"
        if severity == "WARN":
            severity = "WARNING"
        if not isinstance(logging.getLevelName(severity), int):
            raise ValueError(f"unknown log severity {value!r}")
        return severity


class HealthConfig(BaseModel):
    """Where the readiness endpoint listens. Disabled when ``port`` is 0."""

    host: str = "127.0.0.1"
    port: int = 0

    @field_validator("port")
    @classmethod
    def _valid_port(cls, value: int) -> int:
        if not 0 <= value <= 65535:
            raise ValueError("port must be between 0 and 65535")
        return value


class Config(BaseModel):
    """Complete plugin configuration; exactly one chat platform must be configured."""

    teleport: TeleportConfig = Field(default_factory=TeleportConfig)
    slack: SlackConfig | None = None
    discord: DiscordConfig | None = None
    role_to_recipients: Dict[str, List[str]] = Field(default_factory=dict)
    log: LogConfig = Field(default_factory=LogConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    @field_validator("role_to_recipients", mode="before")
    @classmethod
    def _normalise_recipients(cls, value: Any) -> Dict[str, List[str]]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("role_to_recipients must be a table")
        return dict(RecipientsMap.from_raw(value))

    @model_validator(mode="after")
    def _check_platform_and_recipients(self) -> "Config":
        configured = [name for name in PLATFORMS if getattr(self, name) is not None]
        if len(configured) != 1:
            raise ValueError("exactly one of [slack] or [discord] must be configured")

        platform = self.platform_config
        if platform.recipients:
            if self.role_to_recipients:
                raise ValueError(
                    f"only one of {configured[0]}.recipients and role_to_recipients can be set"
                )
            self.role_to_recipients = {WILDCARD: list(platform.recipients)}

        if WILDCARD not in self.role_to_recipients:
            raise ValueError(f"missing required value role_to_recipients[{WILDCARD!r}]")
        return self

    @property
    def platform(self) -> str:
        return "slack" if self.slack is not None else "discord"

    @property
    def platform_config(self) -> PlatformConfig:
        return self.slack if self.slack is not None else self.discord  # type: ignore[return-value]

    @property
    def recipients(self) -> RecipientsMap:
        return RecipientsMap(self.role_to_recipients)


def _format_errors(errors: Iterable[Dict[str, Any]]) -> str:
    """Return a human-friendly ``location: message`` list of validation problems."""

    unique: List[str] = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ())) or "config"
        line = f"{location}: {error.get('msg', 'invalid value')}"
        if line not in unique:
            unique.append(line)
    return "; ".join(unique)


def parse_config(raw: Dict[str, Any]) -> Config:
    try:
        return Config.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {_format_errors(exc.errors())}") from exc


def load_config(path: str | os.PathLike[str]) -> Config:
    """Read and validate a TOML configuration file, raising :class:`ConfigError` on any problem."""

    try:
        with open(path, "rb") as handle:
            raw = tomllib.load(handle)
    except OSError as exc:
        raise ConfigError(f"Cannot read configuration file {os.fspath(path)}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Malformed configuration file {os.fspath(path)}: {exc}") from exc

    return parse_config(raw)


@lru_cache()
def get_config() -> Config:
    """Load and cache the configuration named by ``ACCESS_NOTIFY_CONFIG``."""

    return load_config(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))
