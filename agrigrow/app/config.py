import yaml
import os
from pathlib import Path
from pydantic import BaseModel, Field
from typing import Optional, Dict, List
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

from agrigrow.app.core.logging_config import setup_logging

load_dotenv(dotenv_path=PROJECT_ROOT / ".env")


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _env_flag(name: str) -> bool:
    # Enabled unless explicitly switched off
    return os.environ.get(name, "true").lower() != "false"


class ModelConfig(BaseModel):
    type: str
    class_name: Optional[str] = Field(None, alias="class")
    endpoint: Optional[str] = None
    api_key: Optional[str] = Field(
        default_factory=lambda: os.environ.get("GEMINI_API_KEY")
    )
    model_name: str = Field(
        default_factory=lambda: os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")
    )
    temperature: float = Field(
        default_factory=lambda: _env_float("GEMINI_TEMPERATURE_CHAT", 0.7)
    )
    max_output_tokens: int = Field(
        default_factory=lambda: _env_int("GEMINI_MAX_TOKENS_CHAT", 1024)
    )


class ModelsConfig(BaseModel):
    chat: ModelConfig


class PromptsEngineConfig(BaseModel):
    template_dir: str
    default_version: str


class PromptsConfig(BaseModel):
    engine: PromptsEngineConfig


class LoggingConfig(BaseModel):
    level: str = "INFO"
    console_enabled: bool = True
    console_level: str = "DEBUG"
    file_enabled: bool = True
    file_path: str = "logs/app.log"
    file_level: str = "INFO"
    rotation: str = "10 MB"
    retention: str = "7 days"
    format: str = (
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"
    )


class BackendConfig(BaseModel):
    host: str
    port: int
    reload: bool = False


class AICacheConfig(BaseModel):
    enabled: bool = Field(default_factory=lambda: _env_flag("AI_CACHE_ENABLED"))
    max_size: int = Field(default_factory=lambda: _env_int("AI_CACHE_MAX_SIZE", 500))
    default_ttl_ms: int = Field(
        default_factory=lambda: _env_int("AI_CACHE_TTL", 60 * 60 * 1000)
    )
    chat_ttl_ms: int = Field(
        default_factory=lambda: _env_int("AI_CACHE_CHAT_TTL", 30 * 60 * 1000)
    )
    diagnosis_ttl_ms: int = Field(
        default_factory=lambda: _env_int("AI_CACHE_DIAGNOSIS_TTL", 24 * 60 * 60 * 1000)
    )
    planning_ttl_ms: int = Field(
        default_factory=lambda: _env_int("AI_CACHE_PLANNING_TTL", 12 * 60 * 60 * 1000)
    )
    cleanup_interval_ms: int = 5 * 60 * 1000


class RateLimitConfig(BaseModel):
    enabled: bool = Field(default_factory=lambda: _env_flag("AI_RATE_LIMIT_ENABLED"))
    requests_per_hour: int = Field(
        default_factory=lambda: _env_int("AI_RATE_LIMIT_REQUESTS_PER_HOUR", 50)
    )
    requests_per_day: int = Field(
        default_factory=lambda: _env_int("AI_RATE_LIMIT_REQUESTS_PER_DAY", 200)
    )
    hourly_window_ms: int = 60 * 60 * 1000
    daily_window_ms: int = 24 * 60 * 60 * 1000
    cleanup_interval_ms: int = 5 * 60 * 1000


class AnalyticsConfig(BaseModel):
    enabled: bool = True
    retention_days: int = 90
    queue_size: int = 1000
    purge_interval_seconds: int = 60 * 60


class FeedConfig(BaseModel):
    viewed_posts_limit: int = 1000
    default_page_size: int = 20
    max_page_size: int = 50
    track_views_batch_limit: int = 20
    extended_view_seconds: float = 10.0
    affinity_deltas: Dict[str, float] = Field(
        default_factory=lambda: {
            "like": 1.0,
            "comment": 2.0,
            "share": 3.0,
            "view": 0.5,
        }
    )
    default_content_types: List[str] = Field(
        default_factory=lambda: [
            "question",
            "update",
            "tip",
            "problem",
            "success_story",
        ]
    )
    discover_default_limit: int = 10
    discover_max_limit: int = 20
    discover_cache_ttl_seconds: int = 300
    discover_cache_size: int = 1000


class DatabaseConfig(BaseModel):
    user: str = Field(default_factory=lambda: os.environ.get("user", ""))
    password: str = Field(default_factory=lambda: os.environ.get("password", ""))
    host: str = Field(default_factory=lambda: os.environ.get("host", ""))
    port: str = Field(default_factory=lambda: os.environ.get("port", "5432"))
    dbname: str = Field(default_factory=lambda: os.environ.get("dbname", ""))
    min_connections: int = 1
    max_connections: int = 10


class Settings(BaseModel):
    backend: BackendConfig
    models: ModelsConfig
    database: DatabaseConfig
    prompts: PromptsConfig
    ai_cache: AICacheConfig
    rate_limit: RateLimitConfig
    analytics: AnalyticsConfig
    feed: FeedConfig
    logging: LoggingConfig


def load_config() -> Settings:
    config_file_path = PROJECT_ROOT / "config" / "settings.yaml"

    with open(config_file_path, "r") as f:
        config_data = yaml.safe_load(f)

    config_data["prompts"]["engine"]["template_dir"] = str(
        PROJECT_ROOT / config_data["prompts"]["engine"]["template_dir"]
    )
    for section in ("database", "ai_cache", "rate_limit", "analytics", "feed"):
        config_data.setdefault(section, {})

    loaded_settings = Settings(**config_data)

    setup_logging(loaded_settings.logging.model_dump(), PROJECT_ROOT)

    return loaded_settings


settings = load_config()
