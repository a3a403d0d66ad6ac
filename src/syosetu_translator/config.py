"""Configuration management with environment variables and CLI overrides."""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Sub-config models
# ---------------------------------------------------------------------------


class LLMConfig(BaseSettings):
    """Translation API configuration (any OpenAI-compatible endpoint)."""

    model_config = SettingsConfigDict(env_prefix="LLM_")

    api_key: str = Field(default="", description="API key")
    base_url: str = Field(default="https://api.deepseek.com", description="API base URL")
    model: str = Field(default="deepseek-chat", description="Model name")
    max_tokens: int = Field(default=8192, description="Max tokens per request")
    temperature: float = Field(default=1.3, description="Temperature for generation")
    source_language: str = Field(default="Japanese", description="Language of the novel")
    target_language: str = Field(
        default="Simplified Chinese", description="Language to translate into"
    )


class CrawlerConfig(BaseSettings):
    """HTTP client configuration for site adapters."""

    model_config = SettingsConfigDict(env_prefix="CRAWLER_")

    timeout_seconds: int = Field(default=30, description="HTTP timeout in seconds")
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"
        ),
        description="User agent string",
    )
    accept_language: str = Field(
        default="ja,en-US;q=0.9,en;q=0.8", description="Accept-Language header"
    )


class PipelineConfig(BaseSettings):
    """Fetch/translate pipeline configuration."""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")

    fetch_workers: int = Field(default=3, description="Number of parallel fetch workers")
    translator_workers: int = Field(
        default=2, description="Number of parallel translation workers"
    )
    queue_size: int = Field(
        default=10, description="Max fetched chapters buffered ahead of translation"
    )
    max_attempts: int = Field(
        default=3, description="Attempts per chapter and stage before it is marked failed"
    )
    retry_base_delay: float = Field(
        default=2.0, description="Seconds before the first retry of a chapter"
    )
    retry_max_delay: float = Field(default=60.0, description="Cap for per-chapter retry delay")
    rate_limit_base_delay: float = Field(
        default=5.0, description="Initial pool-wide pause after a rate limit without hint"
    )
    rate_limit_max_delay: float = Field(
        default=120.0, description="Cap for the pool-wide rate limit pause"
    )
    fetch_timeout_seconds: float = Field(default=60.0, description="Timeout per chapter fetch")
    translate_timeout_seconds: float = Field(
        default=600.0, description="Timeout per translation call"
    )
    crawl_delay_ms: int = Field(
        default=500, description="Delay between requests of one fetch worker in ms"
    )
    glossary_hint_limit: int = Field(
        default=200, description="Max glossary entries sent with one chapter"
    )


# ---------------------------------------------------------------------------
# Main AppConfig
# ---------------------------------------------------------------------------


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", description="Logging level")
    books_dir: Path = Field(default=Path("books"), description="Books output directory")

    llm: LLMConfig = Field(default_factory=LLMConfig)
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    @classmethod
    def load(cls, env_file: Optional[Path] = None) -> "AppConfig":
        """Load configuration from environment and .env file."""
        from dotenv import load_dotenv

        if env_file and env_file.exists():
            load_dotenv(env_file)
        else:
            load_dotenv()

        return cls(
            llm=LLMConfig(),
            crawler=CrawlerConfig(),
            pipeline=PipelineConfig(),
        )


# ---------------------------------------------------------------------------
# Global config singleton
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.load()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
