# tenderly/config.py - Configuration management
from dotenv import load_dotenv

load_dotenv()
from typing import Optional, Union, Dict
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


DEFAULT_CONSULTATION_PRICES = {
    "chat": 150,
    "tele": 200,
    "video": 250,
    "emergency": 300,
    "follow_up": 100,
}


class Settings(BaseSettings):
    """Application settings with validation and environment variable support (Pydantic V2 Syntax)"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "Tenderly Telemedicine Core"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    json_logs: bool = Field(default=False, alias="JSON_LOGS")

    # Database
    database_url: str = Field(default="sqlite:///./tenderly.db", alias="DATABASE_URL")

    # Security
    secret_key: str = Field(..., alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:3000"], alias="CORS_ORIGINS")

    # Redis / session store
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    redis_key_prefix: str = Field(default="tenderly:", alias="REDIS_KEY_PREFIX")
    draft_ttl_seconds: int = Field(default=900, alias="DRAFT_TTL_SECONDS")
    payment_record_ttl_seconds: int = Field(default=86400, alias="PAYMENT_RECORD_TTL_SECONDS")
    payment_lock_ttl_seconds: int = Field(default=90, alias="PAYMENT_LOCK_TTL_SECONDS")

    # Payments
    payment_provider: str = Field(default="mock", alias="PAYMENT_PROVIDER")
    payment_currency: str = Field(default="INR", alias="PAYMENT_CURRENCY")
    payment_order_expiry_minutes: int = Field(default=15, alias="PAYMENT_ORDER_EXPIRY_MINUTES")
    consultation_prices: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CONSULTATION_PRICES), alias="CONSULTATION_PRICES")
    mock_payment_base_url: str = Field(default="http://localhost:3000", alias="MOCK_PAYMENT_BASE_URL")
    razorpay_key_id: Optional[str] = Field(default=None, alias="RAZORPAY_KEY_ID")
    razorpay_key_secret: Optional[str] = Field(default=None, alias="RAZORPAY_KEY_SECRET")
    razorpay_webhook_secret: Optional[str] = Field(default=None, alias="RAZORPAY_WEBHOOK_SECRET")
    razorpay_base_url: str = Field(default="https://api.razorpay.com/v1", alias="RAZORPAY_BASE_URL")
    razorpay_timeout_seconds: float = Field(default=15.0, alias="RAZORPAY_TIMEOUT_SECONDS")
    razorpay_max_order_attempts: Optional[int] = Field(default=None, alias="RAZORPAY_MAX_ORDER_ATTEMPTS")

    # AI diagnosis service
    ai_diagnosis_base_url: str = Field(default="http://localhost:8000", alias="AI_DIAGNOSIS_BASE_URL")
    ai_service_secret: Optional[str] = Field(default=None, alias="AI_SERVICE_SECRET")
    ai_request_timeout_seconds: float = Field(default=30.0, alias="AI_REQUEST_TIMEOUT_SECONDS")
    ai_max_retries: int = Field(default=3, alias="AI_MAX_RETRIES")

    # Documents
    storage_dir: str = Field(default="./uploads", alias="STORAGE_DIR")
    storage_base_url: str = Field(default="/files", alias="STORAGE_BASE_URL")
    signing_key_path: Optional[str] = Field(default=None, alias="SIGNING_KEY_PATH")
    signing_certificate_id: str = Field(default="default-key", alias="SIGNING_CERTIFICATE_ID")
    prescription_validity_days: int = Field(default=30, alias="PRESCRIPTION_VALIDITY_DAYS")

    # Doctor shifts
    morning_doctor_id: Optional[int] = Field(default=None, alias="MORNING_DOCTOR_ID")
    evening_doctor_id: Optional[int] = Field(default=None, alias="EVENING_DOCTOR_ID")
    shift_cache_ttl_seconds: int = Field(default=1800, alias="SHIFT_CACHE_TTL_SECONDS")
    shift_fallback_cache_ttl_seconds: int = Field(default=900, alias="SHIFT_FALLBACK_CACHE_TTL_SECONDS")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    payment_rate_limit: str = Field(default="20/minute", alias="PAYMENT_RATE_LIMIT")

    # --- Pydantic V2 Validators ---
    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("secret_key")
    @classmethod
    def validate_key_length(cls, v):
        if not v or len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator("payment_provider")
    @classmethod
    def normalize_provider(cls, v):
        return (v or "mock").strip().lower()

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def redis_enabled(self) -> bool:
        return bool(self.redis_url)

    @property
    def razorpay_enabled(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

# Note: Do not instantiate settings at import time to avoid failing
# on missing environment variables. Use `get_settings()` instead.
