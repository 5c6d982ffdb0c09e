from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DEV: bool = False
    SECRET_KEY: str = "change_me_in_env"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24  # 24h

    DATABASE_URL: str = "sqlite:///./runpool.db"
    SITE_URL: str = "http://localhost:8000"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    LOG_LEVEL: str = "INFO"

    # Stripe (Connect + webhooks)
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_CLIENT_ID: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE: int = 300  # segundos
    CURRENCY: str = "usd"

    # Resend
    RESEND_API_KEY: str | None = None
    RESEND_FROM: str = "RunPool <no-reply@runpool.space>"
    RESEND_API_URL: str = "https://api.resend.com/emails"
    EMAIL_SEND_TIMEOUT: float = 10.0

    # Scheduler
    CRON_SECRET: str | None = None
    ENABLED_CAMPAIGNS: list[str] = [
        "payment_reminder",
        "streak_reminder",
        "comeback_encouragement",
        "weekly_achievements",
        "daily_motivation",
        "running_tips",
    ]
    PAYMENT_REMINDER_GRACE_HOURS: int = 24
    COMEBACK_INACTIVE_DAYS: int = 7

    INVITE_DEFAULT_EXPIRY_DAYS: int = 14

    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BACKOFF: float = 0.05

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)


settings = Settings()
