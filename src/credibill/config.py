"""
Central configuration module for CrediBill
Reads and validates environment variables with strict checks for production
"""
import os
import sys
from typing import List

# Load environment variables from .env file if it exists (dev only)
try:
    from dotenv import load_dotenv
    if os.getenv("ENV", "dev").lower() == "dev":
        load_dotenv()
except ImportError:
    pass


class Config:
    """Central configuration class with environment variable validation"""

    # Environment
    ENV: str = os.getenv("ENV", "dev").lower()

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    DB_POOL_RECYCLE: int = int(os.getenv("DB_POOL_RECYCLE", "900"))
    DB_POOL_TIMEOUT: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))

    # Master key for provider credential encryption at rest
    ENCRYPTION_KEY: str = os.getenv("ENCRYPTION_KEY", "")

    PORT: int = int(os.getenv("PORT", "8000"))
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8000")

    # CORS
    CORS_ORIGINS: List[str] = []

    # Billing defaults
    DEFAULT_GRACE_PERIOD_DAYS: int = int(os.getenv("DEFAULT_GRACE_PERIOD_DAYS", "3"))
    PENDING_TRANSACTION_TTL_HOURS: int = int(os.getenv("PENDING_TRANSACTION_TTL_HOURS", "24"))

    # Outbound HTTP timeouts (seconds)
    PROVIDER_HTTP_TIMEOUT: float = float(os.getenv("PROVIDER_HTTP_TIMEOUT", "10"))
    WEBHOOK_DELIVERY_TIMEOUT: float = float(os.getenv("WEBHOOK_DELIVERY_TIMEOUT", "10"))

    # Background jobs
    SCHEDULER_ENABLED: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    def __init__(self):
        """Initialize configuration and validate required variables"""
        self._load_cors_origins()
        self._validate()

    def _load_cors_origins(self):
        """Load CORS origins from environment variable"""
        default_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]

        cors_env = os.getenv("CORS_ORIGINS", "")
        if cors_env:
            env_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
            self.CORS_ORIGINS = default_origins + env_origins
        else:
            self.CORS_ORIGINS = default_origins

    def _validate(self):
        """Validate required configuration based on environment"""
        errors = []

        if self.ENV not in ["dev", "test", "staging", "prod"]:
            errors.append(f"Invalid ENV value: {self.ENV}. Must be 'dev', 'test', 'staging', or 'prod'")

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required but not set")
        elif self.ENV in ["staging", "prod"] and not self.DATABASE_URL.startswith("postgresql"):
            errors.append(f"DATABASE_URL must be a PostgreSQL connection string in {self.ENV} (got: {self.DATABASE_URL[:30]}...)")

        if not self.ENCRYPTION_KEY:
            errors.append("ENCRYPTION_KEY is required but not set")
        elif len(self.ENCRYPTION_KEY) < 32:
            errors.append(f"ENCRYPTION_KEY must be at least 32 characters (current: {len(self.ENCRYPTION_KEY)})")

        if not 0 <= self.DEFAULT_GRACE_PERIOD_DAYS <= 30:
            errors.append(f"DEFAULT_GRACE_PERIOD_DAYS must be between 0 and 30 (got: {self.DEFAULT_GRACE_PERIOD_DAYS})")

        if self.PROVIDER_HTTP_TIMEOUT <= 0 or self.WEBHOOK_DELIVERY_TIMEOUT <= 0:
            errors.append("PROVIDER_HTTP_TIMEOUT and WEBHOOK_DELIVERY_TIMEOUT must be positive")

        if self.ENV in ["staging", "prod"]:
            if not self.API_BASE_URL.startswith("https://"):
                errors.append(f"API_BASE_URL must use HTTPS in {self.ENV} (got: {self.API_BASE_URL})")

        if errors:
            if self.ENV in ["staging", "prod"]:
                print("=" * 60, file=sys.stderr)
                print("CONFIGURATION ERRORS", file=sys.stderr)
                print("=" * 60, file=sys.stderr)
                for error in errors:
                    print(f"  - {error}", file=sys.stderr)
                print("=" * 60, file=sys.stderr)
                sys.exit(1)
            else:
                print("Configuration warnings (dev mode):", file=sys.stderr)
                for error in errors:
                    print(f"  - {error}", file=sys.stderr)

    @property
    def is_dev(self) -> bool:
        """Check if running in development mode"""
        return self.ENV in ["dev", "test"]

    @property
    def is_prod(self) -> bool:
        """Check if running in production mode"""
        return self.ENV == "prod"


# Global config instance
config = Config()
