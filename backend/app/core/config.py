"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    app_mode: str = "demo"
    load_db_path: str = "./data/loads.db"
    history_retention: int = 20000

    # Auth
    auth_enabled: bool = False
    default_organization_id: str = "demo"
    organization_tokens: str = ""  # token:organization[:role], comma-separated

    # Review gate defaults (per-user preferences override these)
    review_transcription_confidence_threshold: float = 0.6
    review_field_confidence_threshold: float = 0.5
    review_max_low_confidence_fields: int = 999
    review_qualification_score_threshold: float = 100
    review_budget_threshold: float | None = None
    review_always_review_qualified: bool = False
    review_always_review_follow_up: bool = False
    review_always_review_negative: bool = False
    review_always_require_review: bool = False

    # Rate confirmation batch generation
    rate_confirmation_batch_limit: int = 50

    def normalized_app_mode(self) -> str:
        mode = (self.app_mode or "").strip().lower()
        return mode if mode in {"demo", "production"} else "production"

    def is_demo_mode(self) -> bool:
        return self.normalized_app_mode() == "demo"

    def review_defaults(self) -> dict:
        """Review gate thresholds as keyword arguments for ReviewTriggerConfig."""
        return {
            "transcription_confidence_threshold": self.review_transcription_confidence_threshold,
            "field_confidence_threshold": self.review_field_confidence_threshold,
            "max_low_confidence_fields": self.review_max_low_confidence_fields,
            "qualification_score_threshold": self.review_qualification_score_threshold,
            "budget_threshold": self.review_budget_threshold,
            "always_review_qualified": self.review_always_review_qualified,
            "always_review_follow_up": self.review_always_review_follow_up,
            "always_review_negative": self.review_always_review_negative,
            "always_require_review": self.review_always_require_review,
        }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
