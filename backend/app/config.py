"""Runtime settings, read from the environment (and ``.env``) by pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings. Field names are the environment variable names."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    APP_NAME: str = "OKR Automation Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, testing, staging, production

    # Storage
    DATABASE_URL: str = "sqlite+aiosqlite:///./automation.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Key for stored integration credentials; required in production
    ENCRYPTION_KEY: str = ""

    # Step execution defaults, used when a workflow has no retry_config
    DEFAULT_MAX_RETRIES: int = 3
    DEFAULT_RETRY_DELAY_SECONDS: float = 60.0
    HTTP_TIMEOUT_SECONDS: float = 30.0
    WAIT_STEP_MAX_SECONDS: float = 300.0

    SCHEDULE_SWEEP_INTERVAL_SECONDS: int = 60

    # Integration providers
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_DEFAULT_MODEL: str = "gpt-4o-mini"
    OPENAI_TIMEOUT: int = 120
    PXC_AUTH_URL: str = "https://api.wholesale.talktalk.co.uk/partners/security/v1/api"
    PXC_ORDER_URL: str = "https://api.wholesale.pxc.co.uk/partners/product-order/v3/api"
    PXC_TIMEOUT: int = 60
    SPLYNX_TIMEOUT: int = 30

    # Notification channels; email and Slack stay off until configured
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_ADDRESS: str = "automation@localhost"
    SLACK_WEBHOOK_URL: str = ""

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def notification_channels_config(self) -> dict:
        """Channel configs for NotificationManager.configure_channels."""
        config: dict = {}
        if self.SMTP_HOST:
            config["email"] = {
                "smtp_host": self.SMTP_HOST,
                "smtp_port": self.SMTP_PORT,
                "smtp_user": self.SMTP_USER,
                "smtp_password": self.SMTP_PASSWORD,
                "from_address": self.SMTP_FROM_ADDRESS,
            }
        if self.SLACK_WEBHOOK_URL:
            config["slack"] = {"webhook_url": self.SLACK_WEBHOOK_URL}
        return config

    def validate_secrets(self) -> None:
        """Refuse to start a production service without ENCRYPTION_KEY.

        Raises:
            RuntimeError: If ENCRYPTION_KEY is empty in production
        """
        if self.is_production and not self.ENCRYPTION_KEY:
            raise RuntimeError(
                "ENCRYPTION_KEY must be set in production; "
                "stored integration credentials cannot be decrypted without it."
            )


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process."""
    return Settings()
