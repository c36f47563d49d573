from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        use_enum_values=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = Field(default="VoiceCoach API", description="Application name")
    APP_VERSION: str = Field(default="0.3.0", description="Application version")
    ENVIRONMENT: Environment = Field(default=Environment.DEVELOPMENT, description="Environment")
    DEBUG: bool = Field(default=False, description="Debug mode")
    BACKEND_CORS_ORIGINS: str = Field(default="http://localhost:3000", description="CORS origins (comma separated)")

    # Server
    HOST: str = Field(default="0.0.0.0", description="Server host")
    PORT: int = Field(default=8000, description="Server port", ge=1000, le=65535)

    # Logging
    LOG_LEVEL: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    LOG_FORMAT: str = Field(default="text", description="Log format (json|text)")
    LOG_DIR: Optional[str] = Field(default=None, description="Directory for the rotating log file")

    # Chat completions
    OPENAI_API_KEY: Optional[str] = Field(default=None, description="OpenAI API key")
    DEFAULT_MODEL: str = Field(default="gpt-4o-mini", description="Chat completion model")
    MAX_TOKENS: int = Field(default=1048, description="Max tokens per reply", ge=1, le=32000)
    TEMPERATURE: float = Field(default=0.7, description="Sampling temperature", ge=0.0, le=2.0)
    CHAT_TIMEOUT_SECONDS: float = Field(default=30.0, description="Chat request timeout", gt=0)

    @field_validator("OPENAI_API_KEY")
    @classmethod
    def validate_openai_key(cls, v):
        # Allow dummy values for development/testing without OpenAI
        placeholder_values = ("dummy", "test", "development", "replace_me", "your_key_here", "sk-placeholder")
        if v and v not in placeholder_values and not v.startswith("sk-"):
            raise ValueError("Invalid OpenAI API key format")
        return v

    @field_validator("LOG_FORMAT")
    @classmethod
    def validate_log_format(cls, v):
        value = v.lower()
        if value not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return value

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == Environment.PRODUCTION

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
