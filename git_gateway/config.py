"""
Configuration management for Git Gateway.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = Field(default="Git Gateway", env="APP_NAME")
    service_name: str = Field(default="git-gateway", env="SERVICE_NAME")
    debug: bool = Field(default=False, env="DEBUG")
    environment: str = Field(default="development", env="ENVIRONMENT")

    # API
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8000, env="API_PORT")
    api_workers: int = Field(default=1, env="API_WORKERS")
    cors_origins: List[str] = Field(default=["*"], env="CORS_ORIGINS")

    # Database
    database_url: str = Field(default="sqlite:///./git_gateway.db", env="DATABASE_URL")

    # Git storage
    git_root: str = Field(default="./data/repositories", env="GIT_ROOT")
    git_binary: str = Field(default="git", env="GIT_BINARY")
    git_command_timeout: int = Field(default=60, env="GIT_COMMAND_TIMEOUT")
    default_branch: str = Field(default="main", env="DEFAULT_BRANCH")
    clone_base_url: str = Field(default="https://git.example.com", env="CLONE_BASE_URL")
    ssh_host: str = Field(default="git.example.com", env="SSH_HOST")
    repository_lock_timeout: float = Field(default=30.0, env="REPOSITORY_LOCK_TIMEOUT")
    system_author_name: str = Field(default="Git Gateway", env="SYSTEM_AUTHOR_NAME")
    system_author_email: str = Field(
        default="gateway@git.example.com", env="SYSTEM_AUTHOR_EMAIL"
    )

    # Security
    api_token: Optional[str] = Field(default=None, env="API_TOKEN")
    webhook_secret: Optional[str] = Field(default=None, env="WEBHOOK_SECRET")

    # Webhook engine
    webhook_processing_timeout: float = Field(
        default=300.0, env="WEBHOOK_PROCESSING_TIMEOUT"
    )
    webhook_timeout: float = Field(default=30.0, env="WEBHOOK_TIMEOUT")
    webhook_max_attempts: int = Field(default=3, env="WEBHOOK_MAX_ATTEMPTS")
    webhook_retry_backoff: float = Field(default=1.0, env="WEBHOOK_RETRY_BACKOFF")
    event_max_retries: int = Field(default=5, env="EVENT_MAX_RETRIES")
    event_batch_size: int = Field(default=100, env="EVENT_BATCH_SIZE")
    event_processing_interval: int = Field(default=5, env="EVENT_PROCESSING_INTERVAL")
    # a claim older than this is treated as abandoned by a crashed worker
    event_claim_timeout: float = Field(default=600.0, env="EVENT_CLAIM_TIMEOUT")

    # Peer services
    cicd_service_url: str = Field(default="http://localhost:8082", env="CICD_SERVICE_URL")
    gateway_base_url: str = Field(default="http://localhost:8000", env="GATEWAY_BASE_URL")
    gateway_api_token: Optional[str] = Field(default=None, env="GATEWAY_API_TOKEN")
    peer_client_timeout: float = Field(default=30.0, env="PEER_CLIENT_TIMEOUT")

    # Notifications
    smtp_host: Optional[str] = Field(default=None, env="SMTP_HOST")
    smtp_port: int = Field(default=587, env="SMTP_PORT")
    smtp_username: Optional[str] = Field(default=None, env="SMTP_USERNAME")
    smtp_password: Optional[str] = Field(default=None, env="SMTP_PASSWORD")
    smtp_from: str = Field(default="gateway@git.example.com", env="SMTP_FROM")
    slack_webhook_url: Optional[str] = Field(default=None, env="SLACK_WEBHOOK_URL")
    dingtalk_webhook_url: Optional[str] = Field(default=None, env="DINGTALK_WEBHOOK_URL")
    wechat_webhook_url: Optional[str] = Field(default=None, env="WECHAT_WEBHOOK_URL")

    # Input validation
    validator_enabled: bool = Field(default=True, env="VALIDATOR_ENABLED")
    max_request_size: int = Field(default=10 * 1024 * 1024, env="MAX_REQUEST_SIZE")
    max_json_depth: int = Field(default=10, env="MAX_JSON_DEPTH")

    # Transactions
    transaction_retention_hours: int = Field(
        default=24, env="TRANSACTION_RETENTION_HOURS"
    )
    compensation_max_retries: int = Field(default=3, env="COMPENSATION_MAX_RETRIES")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
