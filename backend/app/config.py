from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    PROJECT_NAME: str = "SpeakPoly Safety"
    VERSION: str = "0.1.0"
    API_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # CORS
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    CORS_ORIGIN_REGEX: str = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

    # Database
    DATABASE_URL: str = "sqlite:///./speakpoly_safety.db"

    # External text classifier (rule-based + ML modes share one endpoint)
    CLASSIFIER_API_URL: str = "https://api.sightengine.com/1.0/text/check.json"
    CLASSIFIER_API_USER: str = ""
    CLASSIFIER_API_SECRET: str = ""
    CLASSIFIER_TIMEOUT_S: float = 10.0

    # Moderation surface
    ENABLE_EXTERNAL_CLASSIFIERS: bool = True
    RULE_BASED_CATEGORIES: List[str] = [
        "profanity",
        "personal",
        "link",
        "drug",
        "weapon",
        "spam",
        "content-trade",
        "money-transaction",
        "extremism",
        "violence",
        "self-harm",
        "medical",
    ]
    ML_MODELS: List[str] = ["general", "self-harm"]
    ML_CONFIDENCE_THRESHOLD: float = 0.7
    LANGUAGE: str = "en"
    COUNTRY_HINTS: List[str] = ["us", "gb", "fr", "es", "de"]
    CUSTOM_BLACKLIST: Optional[str] = None
    ROLLING_WINDOW_DAYS: int = 30
    MAX_MESSAGE_LENGTH: int = 5000

    # Severity bands for ML scores
    ML_CRITICAL_SCORE: float = 0.9
    ML_HIGH_SCORE: float = 0.8
    ML_MEDIUM_SCORE: float = 0.7

    # Safety score decay per violation severity
    SCORE_DEDUCTION_CRITICAL: int = 50
    SCORE_DEDUCTION_HIGH: int = 25
    SCORE_DEDUCTION_MEDIUM: int = 10
    SCORE_DEDUCTION_LOW: int = 5

    # Sanction escalation
    SUSPENSION_HOURS_CRITICAL: int = 24
    SUSPENSION_HOURS_MULTIPLE_HIGH: int = 4
    SUSPENSION_HOURS_PATTERN: int = 12
    MULTIPLE_HIGH_THRESHOLD: int = 2
    PATTERN_EVENT_THRESHOLD: int = 3
    HUMAN_REVIEW_EVENT_THRESHOLD: int = 5
    HUMAN_REVIEW_ML_VIOLATIONS: int = 3
    REVIEW_SUSPENSION_HOURS: int = 24

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


class ModerationConfig(BaseModel):
    """Per-call moderation options; defaults come from Settings."""

    enable_external_classifiers: bool = True
    rule_based_categories: List[str] = Field(default_factory=list)
    ml_models: List[str] = Field(default_factory=list)
    ml_confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)
    language: str = "en"
    country_hints: List[str] = Field(default_factory=list)
    custom_blacklist: Optional[str] = None
    rolling_window_days: int = Field(30, ge=1)
    classifier_timeout_s: float = Field(10.0, gt=0)
    max_message_length: int = Field(5000, ge=1)

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ModerationConfig":
        return cls(
            enable_external_classifiers=settings.ENABLE_EXTERNAL_CLASSIFIERS,
            rule_based_categories=list(settings.RULE_BASED_CATEGORIES),
            ml_models=list(settings.ML_MODELS),
            ml_confidence_threshold=settings.ML_CONFIDENCE_THRESHOLD,
            language=settings.LANGUAGE,
            country_hints=list(settings.COUNTRY_HINTS),
            custom_blacklist=settings.CUSTOM_BLACKLIST,
            rolling_window_days=settings.ROLLING_WINDOW_DAYS,
            classifier_timeout_s=settings.CLASSIFIER_TIMEOUT_S,
            max_message_length=settings.MAX_MESSAGE_LENGTH,
        )

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "ModerationConfig":
        """Copy with per-request overrides applied (unknown keys rejected)."""
        if not overrides:
            return self
        return self.model_validate({**self.model_dump(), **overrides})


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()

    # Only insist on classifier credentials in production
    if (
        settings.ENVIRONMENT == "production"
        and settings.ENABLE_EXTERNAL_CLASSIFIERS
        and not (settings.CLASSIFIER_API_USER and settings.CLASSIFIER_API_SECRET)
    ):
        raise ValueError("CLASSIFIER_API_USER and CLASSIFIER_API_SECRET are required in production")

    return settings
