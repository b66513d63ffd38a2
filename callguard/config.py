"""
Engine Configuration
Loads settings from environment variables with validation
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from environment variables"""

    # Application
    app_name: str = "callguard"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "json"

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000
    api_prefix: str = "/api/v1"
    api_key: str = "change-me-in-production"

    # Result cache
    cache_ttl_seconds: int = 3600
    cache_capacity: int = 1000

    # Rules
    rule_refresh_seconds: int = 300
    rule_scope: str = "current_user"
    home_country_code: str = "+55"

    # Behavioral profiling
    min_data_points: int = 10
    analysis_window_days: int = 30
    max_history_size: int = 10000
    keyword_capacity: int = 50
    interval_capacity: int = 100

    # Learned model
    learning_rate: float = 0.01
    weight_limit: float = 5.0
    init_weight_scale: float = 0.05
    model_seed: Optional[int] = None
    model_path: str = ""
    feedback_history_size: int = 1000
    model_maturity_examples: int = 50

    # Fusion
    learned_weight: float = 0.40
    behavioral_weight: float = 0.35
    rule_weight: float = 0.25
    spam_threshold: float = 0.7
    suspicious_threshold: float = 0.5
    questionable_threshold: float = 0.3

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
