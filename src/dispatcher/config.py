"""Runtime settings loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Dispatcher settings. Every field can be set via ``DISPATCHER_<FIELD>``."""

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".dispatcher")

    # Generation gateway / retrieval endpoints
    ollama_url: str = "http://127.0.0.1:11434"
    rag_url: str = ""
    market_data_url: str = (
        "https://api.coingecko.com/api/v3/simple/price?ids=bitcoin,ethereum&vs_currencies=usd"
    )
    classifier_model: str = "gemma3:1b"
    agent_model: str = "qwen2.5-coder:14b"
    suggestion_model: str = "gemma3:1b"
    gateway_timeout_s: float = Field(default=120.0, gt=0.0)

    # Classification / delegation
    generalist_agent: str = "general"
    classifier_timeout_s: float = Field(default=30.0, gt=0.0)
    review_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    background_workers: int = Field(default=4, ge=1)
    parallel_max_wait_s: float = Field(default=600.0, gt=0.0)
    retrieval_k: int = Field(default=3, ge=0)

    # Suggestions
    suggestion_scheduler_enabled: bool = True
    suggestion_interval_s: float = Field(default=300.0, gt=0.0)
    suggestion_initial_delay_s: float = Field(default=10.0, ge=0.0)
    suggestion_ttl_hours: float = Field(default=24.0, gt=0.0)
    rate_burst_limit: int = Field(default=5, ge=1)
    rate_burst_window_s: float = Field(default=10.0, gt=0.0)
    rate_minute_limit: int = Field(default=30, ge=1)
    rate_minute_window_s: float = Field(default=60.0, gt=0.0)
    debounce_s: float = Field(default=5.0, ge=0.0)

    # Startup workflows
    startup_workflows_enabled: bool = True
    workflows_dir: Path | None = None
    workflows_max: int = Field(default=20, ge=1)
    workflow_concurrency: int = Field(default=2, ge=1)
    workflow_retries: int = Field(default=1, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="DISPATCHER_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def db_path(self) -> Path:
        return self.data_dir / "data" / "dispatcher.db"

    def resolved_workflows_dir(self) -> Path:
        return self.workflows_dir or self.data_dir / "workflows"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
