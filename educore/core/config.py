"""Environment-driven settings for the credit and voucher service.

Covers the document store connection, token verification and the business
constants of the credit and voucher subsystem (code length, expiry, limits).
"""
import logging
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings


ROOT = Path(__file__).resolve().parents[2]
load_dotenv(dotenv_path=ROOT / ".env", override=False)

INSECURE_JWT_SECRET = "development-secret-key-change-in-production"


class Settings(BaseSettings):
    """Every knob is an environment variable; ``.env`` at the repo root is read first."""

    # Document store
    store_backend: str = Field(default="memory", alias="STORE_BACKEND")  # redis | memory
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: Optional[str] = Field(default=None, alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    store_key_prefix: str = Field(default="educore:", alias="STORE_KEY_PREFIX")
    cas_max_retries: int = Field(default=5, alias="CAS_MAX_RETRIES")

    # JWT (token verification only, sign-in lives elsewhere)
    jwt_secret_key: str = Field(default=INSECURE_JWT_SECRET, alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=1440, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Credits and vouchers
    default_initial_credits: int = Field(default=10, alias="DEFAULT_INITIAL_CREDITS")
    tutor_message_cost: int = Field(default=1, alias="TUTOR_MESSAGE_COST")
    voucher_code_length: int = Field(default=8, alias="VOUCHER_CODE_LENGTH")
    voucher_expiry_days: int = Field(default=28, alias="VOUCHER_EXPIRY_DAYS")
    max_code_attempts: int = Field(default=10, alias="MAX_CODE_ATTEMPTS")
    max_credits_per_voucher: int = Field(default=1000, alias="MAX_CREDITS_PER_VOUCHER")
    max_vouchers_per_batch: int = Field(default=100, alias="MAX_VOUCHERS_PER_BATCH")
    friendly_class_id_length: int = Field(default=6, alias="FRIENDLY_CLASS_ID_LENGTH")

    # Runtime
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # HTTP
    api_prefix: str = Field(default="/api/v1", alias="API_PREFIX")
    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000"
        ],
        alias="CORS_ORIGINS"
    )

    class Config:
        case_sensitive = False
        env_file = ".env"
        populate_by_name = True
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def validate_required_settings(self):
        """Reject combinations that would lose data or accept forged tokens."""
        problems = []
        if self.store_backend not in ("redis", "memory"):
            problems.append(f"STORE_BACKEND must be 'redis' or 'memory', got {self.store_backend!r}")
        if self.is_production and self.jwt_secret_key == INSECURE_JWT_SECRET:
            problems.append("JWT_SECRET_KEY still has the development default")
        if self.is_production and self.store_backend == "memory":
            problems.append("STORE_BACKEND=memory keeps no data across restarts")
        if problems:
            raise ValueError("; ".join(problems))


settings = Settings()

if settings.environment != "test":
    try:
        settings.validate_required_settings()
    except ValueError as e:
        # Development may run half-configured; production may not.
        if settings.is_production:
            raise
        logging.getLogger(__name__).warning(f"Configuration problem: {e}")
