"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

GRID_GRAPHQL_BASE = "https://beta.node.thegrid.id/graphql"


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Optional so the service can boot without it; turns fail with ConfigurationError instead.
    openrouter_api_key: str = Field(default="", alias="OPENROUTER_API_KEY")
    openrouter_model: str = Field(default="google/gemini-2.0-flash-001", alias="OPENROUTER_MODEL")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        alias="OPENROUTER_BASE_URL",
    )
    embedding_model: str = Field(default="openai/text-embedding-3-small", alias="EMBEDDING_MODEL")
    llm_max_output_tokens: int = Field(default=2048, alias="LLM_MAX_OUTPUT_TOKENS")
    llm_temperature: float = Field(default=0.7, alias="LLM_TEMPERATURE")

    database_path: Path = Field(default=Path("agentchat.db"), alias="DATABASE_PATH")

    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT_SECONDS")
    knowledge_fetch_timeout_seconds: float = Field(default=5.0, alias="KNOWLEDGE_FETCH_TIMEOUT_SECONDS")
    tool_timeout_seconds: float = Field(default=15.0, alias="TOOL_TIMEOUT_SECONDS")
    api_tool_timeout_seconds: float = Field(default=15.0, alias="API_TOOL_TIMEOUT_SECONDS")
    calendar_timeout_seconds: float = Field(default=10.0, alias="CALENDAR_TIMEOUT_SECONDS")

    history_window_messages: int = Field(default=10, alias="HISTORY_WINDOW_MESSAGES")
    tool_cache_ttl_seconds: float = Field(default=3600.0, alias="TOOL_CACHE_TTL_SECONDS")
    tool_max_iterations: int = Field(default=3, alias="TOOL_MAX_ITERATIONS")

    google_client_id: str = Field(default="", alias="GOOGLE_CLIENT_ID")
    google_client_secret: str = Field(default="", alias="GOOGLE_CLIENT_SECRET")

    platform_tools_enabled: bool = Field(default=True, alias="PLATFORM_TOOLS_ENABLED")
    grid_graphql_url: str = Field(default=GRID_GRAPHQL_BASE, alias="GRID_GRAPHQL_URL")
    grid_api_key: str = Field(default="", alias="GRID_API_KEY")
    grid_mcp_server_url: str = Field(default="", alias="GRID_MCP_SERVER_URL")

    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()
