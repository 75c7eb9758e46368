"""Configuration management."""

from typing import Any, Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Database (PostgreSQL) - constructed from parts
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: str = "chorus"
    db_user: str = "chorus"
    db_password: str = ""

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # "memory" keeps threads in process (local runs, tests)
    store_backend: Literal["postgres", "memory"] = "postgres"

    # Model catalog: {"openai": {"kind": "openai", "base_url": ..., "api_key": ...,
    #   "models": {"gpt-4.1": {"tool_calls": true}}}}
    model_providers: dict[str, dict[str, Any]] = {}
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: str = ""

    # Claude Agent SDK backend (stateful sessions)
    claude_oauth_token: str = ""
    claude_permission_mode: str = "bypassPermissions"
    claude_max_turns: int = 10

    # Generation loop
    generation_max_steps: int = 10
    generation_max_attempts: int = 2
    request_timeout: float = 300.0

    # Tool providers
    remote_tool_servers: dict[str, str] = {}  # server_id -> base URL
    workflow_service_url: str = ""
    image_model_provider: str = "openai"
    image_model: str = "gpt-image-1"

    # Ingestion previews
    csv_preview_rows: int = 10

    # Auth: user to assume when no X-User-ID header is present (local dev only)
    dev_user_id: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Global settings instance
settings = Settings()
