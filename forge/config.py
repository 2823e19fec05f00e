"""Configuration settings for the forge pipeline."""

from pathlib import Path

from pydantic_settings import BaseSettings

# Default state directory (database file lives here unless overridden)
_STATE_DIR = Path.home() / ".forge"


def _default_database_url() -> str:
    """Resolve the default database URL.

    Priority:
    1. FORGE_DATABASE_URL environment variable (handled by pydantic)
    2. SQLite file under ~/.forge
    """
    return f"sqlite+aiosqlite:///{_STATE_DIR / 'forge.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = _default_database_url()
    database_echo: bool = False

    # Oracle (OpenCode server)
    oracle_enabled: bool = False
    opencode_api_url: str = "http://localhost:4096"
    opencode_directory: str | None = None
    oracle_agent: str = "plan"
    oracle_provider: str | None = None
    oracle_classify_model: str | None = None
    oracle_judge_model: str | None = None

    # Timeouts (seconds)
    oracle_timeout: float = 20.0
    human_sync_timeout: int = 3600  # 1 hour
    human_sync_poll_interval: float = 2.0

    # Retries
    max_retries: int = 3
    retry_base_delay: float = 0.5

    # Thresholds
    quality_threshold: int = 70
    confidence_floor: float = 0.5
    heuristic_confidence_ceiling: float = 0.75
    min_relevance: float = 1.0
    min_history_relevance: float = 0.2

    # Discovery limits
    high_tier_limit: int = 5
    max_must_read: int = 15
    max_keywords: int = 10
    max_index_files: int = 5000
    content_sample_bytes: int = 65536
    context_token_budget: int = 60000

    # Insights
    insight_sample_limit: int = 500

    # Logging
    log_level: str = "INFO"

    @property
    def is_sqlite(self) -> bool:
        """Whether the configured database is a SQLite file."""
        return self.database_url.startswith("sqlite")

    @property
    def sqlite_path(self) -> Path | None:
        """Filesystem path of the SQLite database, if any."""
        if not self.is_sqlite or ":memory:" in self.database_url:
            return None
        return Path(self.database_url.split(":///", 1)[1])

    class Config:
        env_prefix = "FORGE_"
        env_file = ".env"


# Global settings instance
settings = Settings()
