"""Configuration management for Agent Engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Provider keys (checked when an adapter is built)
    ANTHROPIC_API_KEY: str = Field(default="", description="Anthropic API key")
    GEMINI_API_KEY: str = Field(default="", description="Google Gemini API key")
    XAI_API_KEY: str = Field(default="", description="xAI (Grok) API key")

    # Environment
    ENGINE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")
    CORS_ORIGINS: str = Field(default="*", description="Comma separated allowed origins")

    # Model selection
    DEFAULT_MODEL: str = Field(
        default="gemini-2.5-flash",
        description="Model used when the project setting is missing or unrecognized",
    )
    DEFAULT_MAX_TOKENS: int = Field(default=32768, description="Output budget when unset")
    MAX_OUTPUT_TOKENS: int = Field(default=65536, description="Upper clamp for any output budget")
    LLM_TIMEOUT_SECONDS: float = Field(default=180.0, description="Per provider call timeout")
    ERROR_BODY_LIMIT: int = Field(
        default=300, description="Characters of provider error body kept on ProviderError"
    )

    # Retry policy
    LLM_MAX_ATTEMPTS: int = Field(default=3, description="Attempts per unit before giving up")
    LLM_RETRY_BASE_DELAY: float = Field(
        default=2.0, description="Seconds; attempt n waits n * base before retrying"
    )

    # Unit processing
    UNIT_CONCURRENCY: int = Field(default=4, description="Bounded worker pool size per request")
    TESSERACT_MAX_TOKENS: int = Field(default=2048, description="Budget per alignment call")

    # Streaming
    HEARTBEAT_INTERVAL_SECONDS: float = Field(default=3.0, description="SSE heartbeat period")

    # Collaboration orchestrator
    COLLAB_MAX_ITERATIONS: int = Field(default=100, description="Hard cap on iteration counter")
    COLLAB_DEFAULT_ITERATIONS: int = Field(default=25, description="When the caller omits it")
    COLLAB_MAX_TOKENS: int = Field(default=16000, description="Budget when project has none")

    # Canvas agents
    CANVAS_MAX_ITERATIONS: int = Field(default=10, description="Cap on canvas-agent iterations")
    CANVAS_AGENT_RETRY_DELAY: float = Field(
        default=1.0, description="Base delay between canvas agent retries"
    )

    # Realtime
    BROADCAST_ENABLED: bool = Field(default=True, description="Send realtime refresh events")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
