from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "CareerFlow"
    app_env: str = "development"
    app_host: str = "127.0.0.1"
    app_port: int = 8787
    log_level: str = "INFO"
    cors_origins: str = "http://127.0.0.1:8787"

    database_url: str = "sqlite:///./data/careerflow.db"
    data_dir: Path = Path("./data")

    deepseek_api_key: str = ""
    deepseek_base_url: str = "https://api.deepseek.com"
    deepseek_model: str = "deepseek-chat"

    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    gemini_model: str = "gemini-3-flash-preview"
    gemini_max_output_tokens: int = 24576

    profile_timeout_sec: float = 15
    analysis_timeout_sec: float = 120
    persistence_timeout_sec: float = 30
    cover_letter_timeout_sec: float = 60
    interview_qa_timeout_sec: float = 45
    tailored_cv_timeout_sec: float = 90
    portfolio_timeout_sec: float = 180
    scoring_timeout_sec: float = 30
    job_fetch_timeout_sec: int = 30

    job_cleanup_delay_sec: float = 300
    portfolio_generation_enabled: bool = True
    portfolio_rate_limit_delay_sec: float = 2.0

    credit_value_dollars: float = 0.04
    credit_margin_multiplier: float = 5.0
    min_credits_per_operation: int = 1
    deepseek_input_cache_hit_per_million: float = 0.028
    deepseek_input_cache_miss_per_million: float = 0.28
    deepseek_output_per_million: float = 0.42
    gemini_input_per_million: float = 0.25
    gemini_input_cached_per_million: float = 0.05
    gemini_output_per_million: float = 1.50
    job_scrape_cost_dollars: float = 0.005

    semantic_scoring_enabled: bool = True

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator(
        "profile_timeout_sec",
        "analysis_timeout_sec",
        "persistence_timeout_sec",
        "cover_letter_timeout_sec",
        "interview_qa_timeout_sec",
        "tailored_cv_timeout_sec",
        "portfolio_timeout_sec",
        "scoring_timeout_sec",
    )
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def deepseek_configured(self) -> bool:
        return bool(self.deepseek_api_key)

    @property
    def gemini_configured(self) -> bool:
        return bool(self.gemini_api_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
