from __future__ import annotations
from functools import lru_cache
from enum import Enum
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentTypes(str, Enum):
    DEBUG = "Debug"
    PROD = "Prod"


class GatewayEnvironment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class IdentityProviderKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="payfirst_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow",
    )

    # Core app
    app_name: str = Field(default="payfirst")
    environment: EnvironmentTypes = Field(default=EnvironmentTypes.DEBUG)
    log_level: str = Field(default="INFO")
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./payfirst.db")
    database_echo: bool = Field(default=False)

    # Duitku configuration
    gateway_merchant_code: str = Field(...)
    gateway_api_key: str = Field(...)
    gateway_environment: GatewayEnvironment = Field(default=GatewayEnvironment.SANDBOX)
    gateway_sandbox_url: str = Field(default="https://sandbox.duitku.com/webapi/api/merchant")
    gateway_production_url: str = Field(default="https://passport.duitku.com/webapi/api/merchant")
    gateway_timeout_seconds: float = Field(default=30.0, gt=0)

    # Application URLs
    gateway_callback_url: str = Field(...)
    app_base_url: str = Field(...)

    # Checkout rules
    order_id_prefix: str = Field(default="PAYF")
    transaction_expiry_minutes: int = Field(default=60, gt=0)
    currency: str = Field(default="IDR", min_length=3, max_length=3)
    min_amount: int = Field(default=1_000)
    max_amount: int = Field(default=50_000_000)

    # Identity provider
    identity_provider: IdentityProviderKind = Field(default=IdentityProviderKind.LOCAL)
    identity_api_base: str = Field(default="")
    identity_service_key: str = Field(default="")

    # Sign-in tokens
    secret_key: str = Field(default="dev-secret-change-me")
    access_token_expire_minutes: int = Field(default=60)

    @property
    def docs_url(self) -> str | None:
        # Interactive API docs are only served outside production
        return None if self.environment == EnvironmentTypes.PROD else "/docs"

    @property
    def openapi_url(self) -> str | None:
        return None if self.environment == EnvironmentTypes.PROD else "/openapi.json"

    @property
    def gateway_base_url(self) -> str:
        if self.gateway_environment == GatewayEnvironment.PRODUCTION:
            return self.gateway_production_url.rstrip("/")
        return self.gateway_sandbox_url.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    return Settings()
