from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    DATABASE_URL: str
    REDIS_URL: str

    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4.1-mini"
    OPENAI_TEMPERATURE: float = 0.35
    PROXY_URL: str | None = None

    HTTP_TIMEOUT: int = 60
    REQUEST_DELAY_SECONDS: float = 1.5

    SEARCH_MAX_PAGES: int = 10
    SEARCH_PAGE_SIZE: int = 10
    SEARCH_CACHE_TTL_DAYS: int = 7
    PRODUCT_CACHE_TTL_DAYS: int = 14
    REVIEW_CACHE_TTL_DAYS: int = 30
    # Expired entries remain readable as stale fallback for this long
    CACHE_STALE_RETENTION_DAYS: int = 60
    MAX_PRODUCT_IMAGES: int = 4

    AMAZON_PARTNER_TAG: str | None = None
    AMAZON_PARTNER_NAME: str = "Amazon US"

    PUBLISH_MODE: str = "DRAFT"
    REQUIRE_AI: bool = False
    RECENT_TITLE_WINDOW_DAYS: int = 7

    SCHEDULER_WINDOW_DAYS: int = 30
    AUTOPOST_CANDIDATES: int = 3

    R2_ACCOUNT_ID: str | None = None
    R2_ACCESS_KEY_ID: str | None = None
    R2_SECRET_ACCESS_KEY: str | None = None
    R2_BUCKET: str | None = None
    R2_PUBLIC_BASE_URL: str | None = None
    R2_ENDPOINT: str | None = None

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

settings = Settings()
