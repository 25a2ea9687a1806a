from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    # Database
    POSTGRES_USER: str = "sealguard"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_DB: str = "sealguard"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432

    # Full URL override (tests point this at SQLite)
    DATABASE_URL: Optional[str] = None

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    LOG_LEVEL: str = "INFO"

    # Verification
    SERVICE_ID: str = "sealguard-verification-v1"
    MISSING_SEAL_COMMENT: str = "Seal not found during verification"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    class Config:
        env_file = ".env"
        extra = "allow"  # Allow extra environment variables


settings = Settings()
