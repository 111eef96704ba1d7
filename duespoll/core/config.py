"""Configuration management for the dues-gated poll service."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = Field(default="DuesPoll")
    version: str = Field(default="0.1.0")
    docs_url: str | None = Field(default="/docs")
    redoc_url: str | None = Field(default="/redoc")
    openapi_url: str = Field(default="/openapi.json")

    database_url: str = Field(default="postgresql+psycopg://duespoll:duespoll@db:5432/duespoll")

    aws_region: str = Field(default="us-east-1")
    s3_endpoint_url: str | None = Field(default=None)
    blob_bucket: str = Field(default="duespoll-media")
    payment_prefix: str = Field(default="payments")
    poll_image_prefix: str = Field(default="polls")
    blob_url_expiry_seconds: int = Field(default=7 * 24 * 3600)
    max_upload_bytes: int = Field(default=5 * 1024 * 1024)

    audit_log_bucket: str = Field(default="duespoll-audit-logs")
    audit_log_prefix: str = Field(default="audit/records")
    audit_log_sample_rate: float = Field(default=1.0)

    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=True)
    otel_exporter_endpoint: str | None = Field(default=None)

    reconcile_interval_seconds: int = Field(default=900)

    jwt_algorithm: str = Field(default="HS256")
    jwt_secret_key: str = Field(default="duespoll-dev-secret-change-me")
    access_token_expire_minutes: int = Field(default=15)
    refresh_token_expire_days: int = Field(default=7)
    min_password_length: int = Field(default=6)
    bootstrap_admin_email: str | None = Field(default=None)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()


__all__ = ["Settings", "get_settings"]
