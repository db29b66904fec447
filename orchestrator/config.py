"""Configuration settings for the agent orchestrator."""

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings

# Directory of this package; prompts ship inside it
_PACKAGE_DIR = Path(__file__).parent


def _default_agent_dir() -> Path:
    """Prompts bundled with the package. ORCHESTRATOR_AGENT_DIR overrides it."""
    return _PACKAGE_DIR / "agents"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Language model service
    anthropic_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "ORCHESTRATOR_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY", "CLAUDE_API_KEY"
        ),
    )
    anthropic_api_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 4096
    temperature: float = 0.7

    # Paths
    agent_dir: Path = _default_agent_dir()
    memory_dir: Path = Path(".agent-memory")

    # Context budget
    context_max_tokens: int = 100_000
    context_warning_threshold: float = 0.8

    # Timeouts (seconds)
    agent_timeout: float = 120.0

    # Retries
    max_retries: int = 2
    retry_backoff_base: float = 0.5
    retry_backoff_max: float = 8.0

    # Conversation history
    history_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    history_ttl_seconds: int = 7 * 24 * 3600

    # Persistent memory
    max_learning_records: int = 1000

    log_level: str = "INFO"

    class Config:
        env_prefix = "ORCHESTRATOR_"
        env_file = ".env"
        populate_by_name = True


# Global settings instance
settings = Settings()
