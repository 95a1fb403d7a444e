from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Upstream OpenAI-compatible endpoint (used when neither the request nor
    # the stored settings supply one)
    chat_default_base_url: str = "https://api.openai.com/v1"
    chat_default_model: str = "gpt-4o-mini"
    chat_default_temperature: float = 0.7
    chat_legacy_max_tokens: int = 1024

    # Security
    chat_secret_key: str = "development-secret"

    # Database
    chat_db_url: str = "sqlite+aiosqlite:///data/chat.db"

    # Logging
    chat_log_level: str = "info"

    # CORS
    chat_cors_origins: str = "http://localhost:3000"

    # HTTP client timeouts (seconds)
    chat_http_connect_timeout: float = 5.0
    chat_http_read_timeout: float = 120.0

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
