from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://app:devpassword@db:5432/creatorvault"
    REDIS_URL: str = "redis://redis:6379/0"

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_CREATOR_PRO_PRICE_ID: str = ""
    CHECKOUT_SUCCESS_URL: str = (
        "https://creatorvault.example.com/purchase/success?session_id={CHECKOUT_SESSION_ID}"
    )
    CHECKOUT_CANCEL_URL: str = "https://creatorvault.example.com/purchase/cancel"
    CONNECT_REFRESH_URL: str = "https://creatorvault.example.com/dashboard/connect/refresh"
    CONNECT_RETURN_URL: str = "https://creatorvault.example.com/dashboard/connect/complete"

    FIREBASE_PROJECT_ID: str = ""
    FIREBASE_SERVICE_ACCOUNT_JSON: str = ""
    FIREBASE_CHECK_REVOKED: bool = False
    SESSION_COOKIE_NAME: str = "session"

    R2_ACCOUNT_ID: str = ""
    R2_ACCESS_KEY_ID: str = ""
    R2_SECRET_ACCESS_KEY: str = ""
    R2_BUCKET: str = ""
    R2_PUBLIC_BASE_URL: str = ""
    MEDIA_URL_TTL_SECONDS: int = 3600

    # Free tier quotas and platform fees
    FREE_DOWNLOADS_PER_PERIOD: int = 15
    FREE_MAX_BUNDLES: int = 2
    FREE_MAX_ITEMS_PER_BUNDLE: int = 10
    FREE_PLATFORM_FEE_PERCENT: int = 20
    PRO_PLATFORM_FEE_PERCENT: int = 10

    WEBHOOK_PROCESSING_TIMEOUT_SECONDS: float = 20.0
    ADMIN_EMAILS: list[str] = []

    APP_ENV: str = "development"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
