from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    # API Configuration
    APP_NAME: str = "ThreatScore"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "plain"

    # Reputation provider API keys
    VIRUSTOTAL_API_KEY: Optional[str] = None
    ABUSEIPDB_API_KEY: Optional[str] = None
    IPQS_API_KEY: Optional[str] = None
    SAFE_BROWSING_API_KEY: Optional[str] = None

    # Content classifier (any OpenAI-compatible endpoint)
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: Optional[str] = None
    CONTENT_MODEL: str = "gpt-4o-mini"

    # Provider calls
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Rate ceilings (requests per minute)
    VIRUSTOTAL_RATE_LIMIT: int = 4
    ABUSEIPDB_RATE_LIMIT: int = 60
    IPQS_RATE_LIMIT: int = 30
    SAFE_BROWSING_RATE_LIMIT: int = 60
    CONTENT_RATE_LIMIT: int = 30

    # Analysis Settings
    MAX_EMAIL_SIZE_MB: int = 25
    HISTORY_LIMIT: int = 20

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
