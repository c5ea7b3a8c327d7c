from dotenv import load_dotenv
from pydantic_settings import BaseSettings
from typing import List, Optional

load_dotenv()

class Settings(BaseSettings):
    ENVIRONMENT: str = "development" # development | production | test
    API_VERSION: str = "1.0.0"
    CORS_ORIGIN: str = "http://localhost:3000"

    # Database settings
    DATABASE_HOST: str
    DATABASE_PORT: int = 5432
    DATABASE_NAME: str = "postgres"
    DATABASE_USER: str = "postgres"
    DATABASE_PASSWORD: str
    DATABASE_SSL_MODE: str = "disable"
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20
    DATABASE_URL: Optional[str] = None # Overrides the DATABASE_* parts when set

    # Redis settings
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: str = ""
    REDIS_DB: int = 0
    REDIS_TLS: bool = False

    # OpenRouter settings
    OPENROUTER_API_KEY: str
    OPENROUTER_API_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_MODEL: str = "meta-llama/llama-3.1-8b-instruct:free"
    OPENROUTER_MAX_TOKENS: int = 300
    OPENROUTER_TEMPERATURE: float = 0.7
    OPENROUTER_TIMEOUT: float = 30.0 # seconds
    LLM_MAX_RETRIES: int = 3
    LLM_BACKOFF_BASE: float = 1.0
    LLM_BACKOFF_MAX: float = 10.0
    LLM_BACKOFF_JITTER: float = 0.5

    # Rate limiting
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MAX_REQUESTS: int = 20
    RATE_LIMIT_HOURLY_MAX: int = 100

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/app.log"

    # Retrieval, history and prompt budgets
    FAQ_CACHE_TTL: int = 3600
    FAQ_MAX_RESULTS: int = 5
    CONVERSATION_CACHE_TTL: int = 300
    CONVERSATION_HISTORY_LIMIT: int = 10
    MAX_MESSAGE_LENGTH: int = 2000
    MAX_HISTORY_TOKENS: int = 1200
    MAX_TOTAL_TOKENS: int = 4000

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.DATABASE_USER}:{self.DATABASE_PASSWORD}"
            f"@{self.DATABASE_HOST}:{self.DATABASE_PORT}/{self.DATABASE_NAME}"
        )

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGIN.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

settings = Settings()
