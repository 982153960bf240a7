import os
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # API Keys
    groq_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    tavily_api_key: Optional[str] = None

    # Models
    groq_model: str = "llama-3.3-70b-versatile"
    gemini_model: str = "gemini-1.5-flash"

    # Data
    data_dir: str = "/data"
    database_url: Optional[str] = None  # Falls back to sqlite under data_dir

    # Auth (tokens are issued by the identity service)
    jwt_secret: str = "chatrelay-dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"

    # Failover
    provider_timeout_seconds: float = 30.0
    max_attempts: int = 3

    # Context carry-over
    context_char_budget: int = 4000
    context_recent_turns: int = 6
    summary_interval: int = 10

    # Streaming
    stream_chunk_size: int = 3
    stream_chunk_delay_ms: int = 50

    expose_debug_to_client: bool = False

    # Logging
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{os.path.join(self.data_dir, 'chatrelay.db')}"


settings = Settings()
