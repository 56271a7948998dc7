"""Settings via pydantic-settings with RETORT_ env prefix.

The three upstream fields use validation_alias to read the unprefixed
env vars (API_BASE_URL, API_KEY, MODEL) so one .env drives both the
relay and the completion client.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from retort.errors import ConfigurationError


@dataclass(frozen=True)
class UpstreamConfig:
    """The three settings every upstream call needs."""

    api_base_url: str
    api_key: str
    model: str


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RETORT_", env_file=".env", extra="ignore")

    # Upstream chat-completion endpoint -- unprefixed aliases
    api_base_url: str = Field("", validation_alias="API_BASE_URL")
    api_key: str = Field("", validation_alias="API_KEY")
    model: str = Field("", validation_alias="MODEL")

    # Request shape
    max_tokens: int = 1000
    temperature: float = 0.8

    # Reply cache / throttle
    cache_ttl: float = 300.0  # seconds
    min_request_interval: float = 1.0  # seconds

    # Presentation pacing
    typing_delay: float = 0.03  # per increment / per replayed character
    reply_gap: float = 0.2  # between replayed replies

    # httpx timeouts; read=None waits on a hung upstream indefinitely
    api_timeout_connect: float = 10.0
    api_timeout_read: float | None = None

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    def get_config(self) -> UpstreamConfig:
        return UpstreamConfig(
            api_base_url=self.api_base_url,
            api_key=self.api_key,
            model=self.model,
        )

    def missing_fields(self) -> list[str]:
        """Env names of required upstream settings that are empty."""
        required = {
            "API_BASE_URL": self.api_base_url,
            "API_KEY": self.api_key,
            "MODEL": self.model,
        }
        return [name for name, value in required.items() if not value.strip()]

    def is_valid(self) -> bool:
        return not self.missing_fields()

    def require_valid(self) -> UpstreamConfig:
        """Return the upstream config or raise ConfigurationError naming the gaps."""
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(missing)
        return self.get_config()
