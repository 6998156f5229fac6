from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Service settings, read from the environment with .env as a fallback.

    Only DATABASE_URL and LOG_LEVEL are required. Gateway credentials may
    be left empty; the routes that need them then answer 500 and the
    readiness probe reports not ready.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Required
    DATABASE_URL: str
    LOG_LEVEL: str

    # Twilio (single and per-recipient batch sends, status lookups)
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_MESSAGING_SERVICE_SID: str = ""
    TWILIO_BASE_URL: str = "https://api.twilio.com"

    # TextBee (device-based campaign sends)
    TEXTBEE_API_KEY: str = ""
    TEXTBEE_BASE_URL: str = "https://api.textbee.dev/api/v1/gateway"

    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Status reconciliation
    STATUS_MAX_CHECKS: int = 20
    STATUS_POLL_DELAY_SECONDS: float = 0.05

    # Batch sends
    BATCH_SEND_DELAY_SECONDS: float = 0.1
    BATCH_MAX_RECIPIENTS: int = 1000

    # Inbound webhook security
    VALIDATE_WEBHOOK_SIGNATURE: bool = True

    @property
    def twilio_configured(self) -> bool:
        return bool(
            self.TWILIO_ACCOUNT_SID
            and self.TWILIO_AUTH_TOKEN
            and self.TWILIO_MESSAGING_SERVICE_SID
        )


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process; tests clear the cache after changing the environment."""
    return Settings()


# Global settings instance
settings = get_settings()
