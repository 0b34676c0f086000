"""API configuration from environment variables."""

from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://nazare:nazare@db:5432/nazare"
    LOG_LEVEL: str = "INFO"

    # Tokens are issued by the auth service; we only verify them
    JWT_SECRET: str = "changeme"
    JWT_ALGORITHM: str = "HS256"

    # Studio business rules
    BUSINESS_UTC_OFFSET_HOURS: int = 7  # Asia/Krasnoyarsk
    SUBSCRIPTION_DISCOUNT: Decimal = Decimal("0.10")
    CANCELLATION_WINDOW_HOURS: int = 24
    SESSION_GENERATION_DAYS: int = 180
    SESSION_MAX_HORIZON_DAYS: int = 366
    UPCOMING_SESSIONS_LIMIT: int = 20

    # Tinkoff acquiring
    TINKOFF_API_URL: str = "https://securepay.tinkoff.ru/v2"
    TINKOFF_TERMINAL_KEY: str | None = None
    TINKOFF_PASSWORD: str | None = None
    TINKOFF_NOTIFICATION_URL: str | None = None
    TINKOFF_SUCCESS_URL: str | None = None
    TINKOFF_FAIL_URL: str | None = None
    FRONTEND_URL: str = "https://universnazare.ru"

    # Transactional e-mail (HTTP API)
    EMAIL_API_URL: str | None = None
    EMAIL_API_KEY: str | None = None
    EMAIL_FROM: str = '"На заре" <nazare@univers.su>'
    EMAIL_TEST_MODE: bool = False

    BUSINESS_NAME: str = "Творческое пространство «На Заре»"
    BUSINESS_PHONE: str = "+7 916 446 8385"
    BUSINESS_EMAIL: str = "nazare@univers.su"

    class Config:
        env_file = ".env"
        extra = "allow"


settings = Settings()
