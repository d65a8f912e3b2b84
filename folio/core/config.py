"""Configuration management."""
import os
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv(override=False)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Persistence
    portfolio_data_dir: Optional[str] = os.getenv("PORTFOLIO_DATA_DIR")
    portfolio_db_path: Optional[str] = os.getenv("PORTFOLIO_DB_PATH")
    portfolio_store_version: int = int(os.getenv("PORTFOLIO_STORE_VERSION", "13"))

    # Command parsing (LLM)
    llm_provider: str = os.getenv("LLM_PROVIDER", "ollama")  # "ollama" or "openai"
    ollama_url: str = os.getenv("OLLAMA_URL", "http://localhost:11434")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "llama3.2")
    openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    llm_timeout_seconds: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
    command_rule_fallback: bool = os.getenv("COMMAND_RULE_FALLBACK", "false").lower() == "true"

    # Mutation previews
    preview_ttl_seconds: int = int(os.getenv("PREVIEW_TTL_SECONDS", "300"))

    # Background sync client
    sync_debounce_seconds: float = float(os.getenv("SYNC_DEBOUNCE_SECONDS", "2.0"))
    sync_target_url: str = os.getenv("SYNC_TARGET_URL", "http://localhost:8000/api/v1/portfolio/sync")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def validate_llm_provider(self) -> None:
        """Validate llm_provider. Called at startup."""
        if self.llm_provider not in ("ollama", "openai"):
            raise ValueError(
                f"Invalid LLM_PROVIDER='{self.llm_provider}'. "
                f"Supported providers: 'ollama', 'openai'."
            )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton. Used for test isolation."""
    global _settings
    _settings = None
