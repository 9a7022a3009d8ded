"""
Configuration management for the AI Teacher service.
Loads from config/aiteacher.yaml and environment variables.
"""

from pathlib import Path
from typing import Optional, Dict, Any
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class LLMConfig(BaseSettings):
    """Generation service configuration."""
    provider: str = Field(default="deepseek", alias="LLM_PROVIDER")  # deepseek, openai, anthropic
    deepseek_api_key: Optional[str] = Field(default=None, alias="DEEPSEEK_API_KEY")
    deepseek_api_url: str = Field(default="https://api.deepseek.com/v1", alias="DEEPSEEK_API_URL")
    deepseek_model: str = Field(default="deepseek-chat", alias="DEEPSEEK_MODEL")
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini")
    anthropic_model: str = Field(default="claude-3-5-haiku-latest")
    temperature: float = Field(default=0.7)
    max_tokens: int = Field(default=2000)
    request_timeout: float = Field(default=30.0, alias="LLM_REQUEST_TIMEOUT")
    tokenizer_model: str = Field(default="gpt-4o-mini")

    model_config = SettingsConfigDict(env_prefix="LLM_", extra="ignore", populate_by_name=True)


class MemoryConfig(BaseSettings):
    """User memory configuration."""
    backend: str = Field(default="sqlite", alias="MEMORY_BACKEND")  # sqlite, memory
    db_path: Path = Field(default=Path("data/memory.sqlite"), alias="MEMORY_DB_PATH")
    first_exposure_boost: float = Field(default=0.05)
    feedback_scale: float = Field(default=0.2)
    mastery_threshold: float = Field(default=0.8)
    struggle_threshold: float = Field(default=0.4)
    struggle_min_exposures: int = Field(default=2)
    review_min_confidence: float = Field(default=0.5)
    review_max_confidence: float = Field(default=0.9)
    review_after_days: int = Field(default=7)
    default_learning_rate: float = Field(default=0.5)
    recent_interactions: int = Field(default=5)
    history_limit: int = Field(default=50)
    max_confidence_samples: int = Field(default=50)

    model_config = SettingsConfigDict(env_prefix="MEMORY_", extra="ignore", populate_by_name=True)


class ConceptConfig(BaseSettings):
    """Concept extraction configuration."""
    max_input_tokens: int = Field(default=2000)
    max_concepts: int = Field(default=10)

    model_config = SettingsConfigDict(env_prefix="CONCEPTS_", extra="ignore")


class TeacherConfig(BaseSettings):
    """Orchestrator and prompt configuration."""
    bootstrap_dir: Path = Field(default=Path("config/bootstrap"))
    max_system_tokens: int = Field(default=3000)
    max_history_tokens: int = Field(default=4000)
    max_followups: int = Field(default=5)
    fallback_chunk_words: int = Field(default=8)

    model_config = SettingsConfigDict(env_prefix="TEACHER_", extra="ignore")


class HealthConfig(BaseSettings):
    """Generation service health monitoring configuration."""
    check_interval: float = Field(default=30.0, alias="HEALTH_CHECK_INTERVAL")
    max_retries: int = Field(default=2)
    retry_delay: float = Field(default=1.5)
    recent_success_window: float = Field(default=120.0)
    probe_timeout: float = Field(default=5.0)
    monitor_on_startup: bool = Field(default=True, alias="HEALTH_MONITOR_ON_STARTUP")

    model_config = SettingsConfigDict(env_prefix="HEALTH_", extra="ignore", populate_by_name=True)


class ApiConfig(BaseSettings):
    """API server configuration."""
    host: str = Field(default="0.0.0.0", alias="API_HOST")
    port: int = Field(default=8000, alias="API_PORT")
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    rate_limit_requests_per_minute: int = Field(default=30, alias="API_RATE_LIMIT_RPM")

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore", populate_by_name=True)


class AITeacherSettings(BaseSettings):
    """Main AI Teacher configuration."""
    env: str = Field(default="dev", alias="AITEACHER_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[Path] = Field(default=Path("logs/aiteacher.log"), alias="LOG_FILE")

    # Sub-configurations
    api: ApiConfig = Field(default_factory=ApiConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    concepts: ConceptConfig = Field(default_factory=ConceptConfig)
    teacher: TeacherConfig = Field(default_factory=TeacherConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow"
    )

    @classmethod
    def load_from_yaml(cls, config_path: Optional[Path] = None) -> "AITeacherSettings":
        """Load settings from YAML file and merge with environment variables."""
        if config_path is None:
            config_path = Path("config/aiteacher.yaml")

        config_dict: Dict[str, Any] = {}

        if config_path.exists():
            with open(config_path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f) or {}
                config_dict = yaml_data.get("aiteacher", {})

        # Flatten api.rate_limit.requests_per_minute if present
        if "api" in config_dict and isinstance(config_dict["api"], dict):
            api_cfg = dict(config_dict["api"])
            rate_limit = api_cfg.pop("rate_limit", None)
            if isinstance(rate_limit, dict) and "requests_per_minute" in rate_limit:
                api_cfg["rate_limit_requests_per_minute"] = rate_limit["requests_per_minute"]
            config_dict["api"] = api_cfg

        # Sub-configs are built here so their own env aliases still apply
        sections = {
            "api": ApiConfig,
            "llm": LLMConfig,
            "memory": MemoryConfig,
            "concepts": ConceptConfig,
            "teacher": TeacherConfig,
            "health": HealthConfig,
        }
        for key, section_cls in sections.items():
            if isinstance(config_dict.get(key), dict):
                config_dict[key] = section_cls(**config_dict[key])

        return cls(**config_dict)


# Global settings instance
_settings: Optional[AITeacherSettings] = None


def get_settings() -> AITeacherSettings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = AITeacherSettings.load_from_yaml()
    return _settings


# Alias for convenience
settings = get_settings()
