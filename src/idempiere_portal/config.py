"""Configuration management for the iDempiere portal."""

import json
import logging
from functools import lru_cache
from typing import Annotated

import boto3
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)


def get_aws_secrets(secret_name: str, region_name: str) -> dict:
    """Fetch secrets from AWS Secrets Manager."""
    try:
        session = boto3.session.Session()
        client = session.client(
            service_name='secretsmanager',
            region_name=region_name
        )
        response = client.get_secret_value(SecretId=secret_name)
        return json.loads(response['SecretString'])
    except Exception as e:
        logger.warning(f"Failed to fetch AWS secrets: {e}. Falling back to environment variables.")
        return {}


class Settings(BaseSettings):
    """Application settings loaded from environment variables and, optionally, AWS Secrets Manager."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # iDempiere REST API
    idempiere_api_url: str = Field(default="", description="Base URL of the iDempiere REST API")
    idempiere_timeout_seconds: float = Field(default=10.0)

    # Server Configuration
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8000)
    server_env: str = Field(default="development")

    # Session Configuration
    session_secret_key: str = Field(default="", description="Secret key for session signing")
    session_expire_minutes: int = Field(default=60)
    login_flow_expire_minutes: int = Field(default=10)
    login_url: str = Field(default="/auth/login")
    email_domain: str = Field(default="idempiere.local")
    default_language: str = Field(default="en_US")

    # Token monitor thresholds (seconds of remaining lifetime)
    token_warning_seconds: int = Field(default=300)
    token_critical_seconds: int = Field(default=60)
    token_monitor_interval_seconds: float = Field(default=30.0)

    # Redis Configuration
    redis_url: str | None = Field(default=None)

    # CORS Configuration
    cors_origins: Annotated[list[str], NoDecode] = Field(default=["http://localhost:3000"])

    # Logging
    log_level: str = Field(default="INFO")

    # AWS Secrets Manager (optional source for the values above)
    use_secrets_manager: bool = Field(default=False)
    secrets_manager_secret_name: str = Field(default="idempiere_portal")
    aws_region: str = Field(default="us-east-2")

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @model_validator(mode="after")
    def load_missing_from_secrets_manager(self) -> "Settings":
        if not self.use_secrets_manager:
            return self
        if self.session_secret_key and self.idempiere_api_url:
            return self

        secrets = get_aws_secrets(self.secrets_manager_secret_name, self.aws_region)
        if not self.session_secret_key:
            self.session_secret_key = secrets.get("session_secret_key", "")
        if not self.idempiere_api_url:
            self.idempiere_api_url = secrets.get("idempiere_api_url", "")
        return self

    @model_validator(mode="after")
    def check_thresholds(self) -> "Settings":
        if self.token_critical_seconds >= self.token_warning_seconds:
            raise ValueError("TOKEN_CRITICAL_SECONDS must be lower than TOKEN_WARNING_SECONDS")
        return self

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_expire_minutes * 60

    @property
    def login_flow_ttl_seconds(self) -> int:
        return self.login_flow_expire_minutes * 60

    @property
    def is_production(self) -> bool:
        return self.server_env.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
