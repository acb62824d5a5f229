"""Configuration management for the HTLC engine."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HTLC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Storage Configuration
    database_url: str = Field(
        default="sqlite:///htlc.db",
        description="Database URL for swap records and balances"
    )

    # Custody Configuration
    escrow_account: str = Field(
        default="htlc-escrow",
        description="Account holding escrowed value between initiate and settlement"
    )

    # Service Configuration
    api_host: str = Field(
        default="127.0.0.1",
        description="Host the HTTP service binds to"
    )
    api_port: int = Field(
        default=8080,
        description="Port the HTTP service listens on"
    )
    api_url: str = Field(
        default="http://127.0.0.1:8080",
        description="Base URL used by the command-line client"
    )
    request_timeout: float = Field(
        default=10.0,
        description="Client request timeout in seconds"
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    # Notification Configuration
    enable_apprise: bool = Field(
        default=False,
        description="Forward swap events through Apprise"
    )
    apprise_urls: list[str] = Field(
        default_factory=list,
        description="List of Apprise notification URLs"
    )

    @field_validator("escrow_account")
    @classmethod
    def validate_escrow_account(cls, v: str) -> str:
        """Escrow must be a named account."""
        if not v.strip():
            raise ValueError("escrow_account must not be empty")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize the level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


# Global config instance
config = Config()
