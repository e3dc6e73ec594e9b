"""Configuration settings for the application."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = True
    DATA_DIR: str = "./data"
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # LLM Configuration
    PLANNER: str = "openai"  # Options: tgi, openai, anthropic
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"
    TGI_ENDPOINT: str = "http://tgi:8080/generate"
    MODEL_TIMEOUT: float = 60.0  # seconds, per model call
    MODEL_TEMPERATURE: float = 0.2

    # Action backend (task / schedule / habit / quest / expense stores)
    BACKEND: str = "http"  # Options: http, memory
    BACKEND_URL: str = "http://localhost:3000"
    BACKEND_TIMEOUT: float = 15.0

    # Agent behaviour
    HISTORY_LIMIT: int = 50  # messages kept per thread
    PROMPT_HISTORY: int = 10  # messages sent to the planner
    AUTO_CONFIRM_ACTIONS: bool = False
    MAX_PENDING_PROPOSALS: int = 100  # oldest proposals are dropped beyond this
    PROPOSAL_TTL_SECONDS: float = 3600.0
    TURN_LOG_ENABLED: bool = True

    # Multimodal input limits
    MAX_IMAGES: int = 8
    MAX_IMAGE_BYTES: int = 10 * 1024 * 1024

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
