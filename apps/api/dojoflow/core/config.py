"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.03.00"

    # Database
    DATABASE_URL: str

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Public app URL (used for links rendered into automation messages)
    APP_BASE_URL: str = "https://app.dojoflow.com"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    RATE_LIMIT_API: int = 60
    # Shared limiter storage for multi-worker deployments (empty = in-memory)
    REDIS_URL: str = ""

    # Twilio (SMS + AI phone calls). Empty credentials = dry run.
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = ""

    # SendGrid (email). Empty key = dry run.
    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = "noreply@dojoflow.com"
    SENDGRID_FROM_NAME: str = "DojoFlow"

    OUTBOUND_TIMEOUT_SECONDS: float = 20.0

    # Run the automation + credit reset loops inside the API process
    # (single-instance deployments; otherwise run dojoflow.worker_service)
    RUN_SCHEDULERS_IN_API: bool = False

    # Automation scheduler
    AUTOMATION_POLL_INTERVAL_SECONDS: int = 60
    AUTOMATION_BATCH_SIZE: int = 50
    AUTOMATION_CLAIM_LEASE_SECONDS: int = 900
    AUTOMATION_MAX_STEP_ATTEMPTS: int = 3
    AUTOMATION_RETRY_BASE_DELAY_SECONDS: int = 300
    AUTOMATION_RETRY_MAX_DELAY_SECONDS: int = 21600
    AUTOMATION_CREDIT_BLOCK_DELAY_SECONDS: int = 3600

    # Credits
    CREDIT_RESET_CHECK_INTERVAL_SECONDS: int = 3600
    CREDIT_DEFAULT_PERIOD_ALLOWANCE: int = 300
    CREDIT_DEFAULT_LOW_THRESHOLD: int = 50
    CREDIT_ROLLOVER_CAP_MULTIPLIER: int = 2  # balance never tops up past allowance * N
    CREDIT_WARNING_PERCENT: int = 20
    CREDIT_CRITICAL_PERCENT: int = 10

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def twilio_configured(self) -> bool:
        return bool(
            self.TWILIO_ACCOUNT_SID and self.TWILIO_AUTH_TOKEN and self.TWILIO_PHONE_NUMBER
        )

    @property
    def sendgrid_configured(self) -> bool:
        return bool(self.SENDGRID_API_KEY)


settings = Settings()
