"""Gateway configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gateway_core.domains import DEFAULT_DOMAIN_SUFFIX


class PlatformEnv(str, Enum):
    """Deployment environment labels."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class GatewaySettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``GATEWAY_`` (e.g. ``GATEWAY_APP_URL=https://app.example.com``) or
    through a ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    platform_env: PlatformEnv = PlatformEnv.DEV

    # Primary store client (asyncpg or aiosqlite driver).
    database_url: str = "sqlite+aiosqlite:///.gateway/state.db"
    # Second, differently-credentialed client used only as the tenant-record
    # write fallback.  Unset means a single client.
    fallback_database_url: str | None = None

    # Public base URL of this gateway (redirect target and function server URL).
    app_url: str = "http://localhost:8000"

    # Commerce platform OAuth app credentials.
    platform_api_key: str = ""
    platform_api_secret: SecretStr = SecretStr("")
    platform_scopes: list[str] = ["read_products", "read_orders"]
    platform_api_version: str = "2024-10"
    platform_timeout: float = 10.0
    tenant_domain_suffix: str = DEFAULT_DOMAIN_SUFFIX

    # Webhook verification.  Falls back to platform_api_secret when unset.
    webhook_secret: SecretStr | None = None
    webhook_signature_header: str = "X-Signature"
    webhook_topic_header: str = "X-Topic"
    # Identifies the sending shop for per-tenant webhook rate limiting.
    webhook_tenant_header: str = "X-Shop-Domain"

    # Voice-assistant provider.
    provider_api_url: str = "https://api.vapi.ai"
    provider_api_key: SecretStr = SecretStr("")
    provider_timeout: float = 15.0
    provider_voice_id: str = "rachel"
    # Shared secret the provider presents on function calls.  Falls back to
    # provider_api_key when unset.
    function_secret: SecretStr | None = None

    # Provisioning policy.
    assistant_max_attempts: int = 3
    assistant_backoff_seconds: float = 1.0
    phone_max_attempts: int = 2
    phone_backoff_seconds: float = 0.5
    phone_area_codes: list[str] = ["800", "888", "877", "866", "212", "415", "510"]
    catalog_context_limit: int = 20

    # Anti-CSRF cookie lifetime for the OAuth round-trip.
    oauth_cookie_max_age: int = 600

    cors_origins: list[str] = ["http://localhost:3000"]

    # Sliding-window rate limits (requests per minute, per tenant or IP).
    rate_limit_enabled: bool = True
    rate_limit_requests_per_minute: int = 60
    rate_limit_burst_multiplier: float = 1.5
    rate_limit_webhooks_per_minute: int = 100
    rate_limit_provision_per_minute: int = 5
    rate_limit_functions_per_minute: int = 120
    rate_limit_auth_per_minute: int = 20

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    @property
    def effective_webhook_secret(self) -> str:
        if self.webhook_secret is not None and self.webhook_secret.get_secret_value():
            return self.webhook_secret.get_secret_value()
        return self.platform_api_secret.get_secret_value()

    @property
    def effective_function_secret(self) -> str:
        if self.function_secret is not None and self.function_secret.get_secret_value():
            return self.function_secret.get_secret_value()
        return self.provider_api_key.get_secret_value()

    @property
    def is_local_store(self) -> bool:
        return self.database_url.startswith("sqlite")

    @model_validator(mode="after")
    def _require_secrets_outside_dev(self) -> Self:
        """Refuse to start in staging/production with empty credentials."""
        if self.platform_env == PlatformEnv.DEV:
            return self
        missing = [
            name
            for name, value in (
                ("platform_api_key", self.platform_api_key),
                ("platform_api_secret", self.platform_api_secret.get_secret_value()),
                ("provider_api_key", self.provider_api_key.get_secret_value()),
                ("function_secret", self.effective_function_secret),
            )
            if not value
        ]
        if missing:
            raise ValueError(
                f"{', '.join(missing)} must be set in {self.platform_env.value} mode. Refusing to start."
            )
        return self


def load_gateway_settings() -> GatewaySettings:
    """Construct settings from the environment / ``.env`` file."""
    return GatewaySettings()
