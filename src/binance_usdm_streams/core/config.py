from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from binance_usdm_streams.auth.signing import ApiCredentials


class Settings(BaseSettings):
    api_key: str | None = Field(default=None)
    api_secret: SecretStr | None = Field(default=None)

    rest_base_url: str = Field(default="https://fapi.binance.com")
    websocket_base_url: str = Field(default="wss://fstream.binance.com/")

    auto_timestamp: bool = Field(default=True)
    timestamp_recalculation_interval_seconds: int = Field(default=3600, ge=1)
    recv_window_ms: int | None = Field(default=None, ge=1, le=60_000)

    rest_timeout_seconds: int = Field(default=20, ge=1)
    rest_max_retries: int = Field(default=5, ge=1)
    socket_response_timeout_seconds: float = Field(default=10.0, gt=0)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="BUS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def credentials(self) -> ApiCredentials | None:
        if not self.api_key or self.api_secret is None:
            return None
        return ApiCredentials(key=self.api_key, secret=self.api_secret.get_secret_value())
