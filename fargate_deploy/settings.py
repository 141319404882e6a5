# fargate_deploy/settings.py
import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Single source of truth for tool settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from fargate_deploy.settings import get_settings
        settings = get_settings()
        region = settings.aws_region
    """

    # Application Settings
    app_name: str = Field(
        default="chatbot",
        validation_alias=AliasChoices("APP_NAME", "app_name"),
        description="Default ECR repository name for push-image"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices("AWS_DEFAULT_REGION", "AWS_REGION", "aws_region")
    )

    aws_profile: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AWS_PROFILE", "aws_profile")
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AWS_ACCESS_KEY_ID", "aws_access_key_id")
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AWS_SECRET_ACCESS_KEY", "aws_secret_access_key")
    )

    aws_session_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AWS_SESSION_TOKEN", "aws_session_token")
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AWS_ENDPOINT_URL", "aws_endpoint_url"),
        description="Override endpoint, e.g. a local AWS emulator"
    )

    # Files
    descriptor_file: str = Field(
        default="deploy.yaml",
        description="Descriptor used when a command is given no file"
    )

    state_file: str = Field(
        default=".fargate_deploy_state.json",
        description="Local record of deployed resources"
    )

    # Status polling
    poll_interval_seconds: float = Field(
        default=10.0,
        description="Fixed delay between status polls"
    )

    poll_timeout_seconds: float = Field(
        default=600.0,
        description="Give up waiting for a healthy task after this long"
    )

    # Image publishing
    docker_build_context: str = Field(
        default=".",
        description="Docker build context for push-image"
    )

    dockerfile: str = Field(
        default="Dockerfile",
        description="Dockerfile path relative to the build context"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept any case and reject names logging does not know."""
        value = str(v).upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"Invalid log_level: {v}")
        return value

    @field_validator("poll_interval_seconds", "poll_timeout_seconds")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    def client_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments shared by every boto3 client."""
        kwargs: Dict[str, Any] = {"region_name": self.aws_region}
        if self.aws_access_key_id and self.aws_secret_access_key:
            kwargs["aws_access_key_id"] = self.aws_access_key_id
            kwargs["aws_secret_access_key"] = self.aws_secret_access_key
            if self.aws_session_token:
                kwargs["aws_session_token"] = self.aws_session_token
        if self.aws_endpoint_url:
            kwargs["endpoint_url"] = self.aws_endpoint_url
        return kwargs

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
