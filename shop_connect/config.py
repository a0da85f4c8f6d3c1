from __future__ import annotations

from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shop_connect.errors import Misconfigured


class Settings(BaseSettings):
    SHOPIFY_API_KEY: str | None = None
    SHOPIFY_API_SECRET: str | None = None
    SHOPIFY_SCOPES: str | None = None
    BACKEND_URL: AnyHttpUrl | None = None
    SHOPIFY_SHOP_DOMAIN_SUFFIX: str = "myshopify.com"
    SHOPIFY_ADMIN_API_VERSION: str = "2024-01"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = 20.0
    SHOPIFY_VERIFY_CALLBACK_HMAC: bool = True
    OAUTH_STATE_TTL_SECONDS: int = 600
    STATE_DB_URL: str = "sqlite:///./shop_connect.db"

    BASE44_API_KEY: str | None = None
    BASE44_SAVE_SHOPIFY_URL: AnyHttpUrl | None = None
    BASE44_WEBHOOK_URL: AnyHttpUrl | None = None
    BASE44_GET_STORE_URL: AnyHttpUrl | None = None
    BASE44_PING_URL: AnyHttpUrl | None = None

    LOG_LEVEL: str = "INFO"

    @field_validator("SHOPIFY_API_KEY", "SHOPIFY_API_SECRET", "BASE44_API_KEY")
    @classmethod
    def validate_secret(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        if value != value.strip():
            raise ValueError("credential values must not carry leading or trailing whitespace")
        return value

    @field_validator("SHOPIFY_SCOPES")
    @classmethod
    def validate_scopes(cls, value: str | None) -> str | None:
        if value is None:
            return None
        scopes = [scope.strip() for scope in value.split(",") if scope.strip()]
        if not scopes:
            raise ValueError("SHOPIFY_SCOPES must include at least one scope")
        return ",".join(scopes)

    @field_validator("SHOPIFY_SHOP_DOMAIN_SUFFIX")
    @classmethod
    def validate_domain_suffix(cls, value: str) -> str:
        suffix = value.strip().lower().lstrip(".")
        if not suffix:
            raise ValueError("SHOPIFY_SHOP_DOMAIN_SUFFIX must not be empty")
        return suffix

    @field_validator("OAUTH_STATE_TTL_SECONDS")
    @classmethod
    def validate_state_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("OAUTH_STATE_TTL_SECONDS must be positive")
        return value

    @property
    def backend_base_url(self) -> str:
        if not self.BACKEND_URL:
            raise Misconfigured("Missing BACKEND_URL env var")
        return str(self.BACKEND_URL).rstrip("/")

    @property
    def scope_set(self) -> frozenset[str]:
        if not self.SHOPIFY_SCOPES:
            return frozenset()
        return frozenset(self.SHOPIFY_SCOPES.split(","))

    def require_oauth_credentials(self) -> tuple[str, str]:
        if not self.SHOPIFY_API_KEY or not self.SHOPIFY_API_SECRET:
            raise Misconfigured("Missing SHOPIFY_API_KEY or SHOPIFY_API_SECRET env vars")
        return self.SHOPIFY_API_KEY, self.SHOPIFY_API_SECRET

    def require_webhook_secret(self) -> bytes:
        if not self.SHOPIFY_API_SECRET:
            raise Misconfigured("Missing SHOPIFY_API_SECRET env var")
        return self.SHOPIFY_API_SECRET.encode("utf-8")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)


settings = Settings()
