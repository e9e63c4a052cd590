"""Settings via pydantic-settings with MAITRE_ env prefix.

Shared secrets (ANTHROPIC_API_KEY, BACKEND_API_KEY) and DB connection
fields use validation_alias to read the same unprefixed env vars that
docker-compose uses, so a single .env file drives both.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MAITRE_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("maitre", validation_alias="DB_USER")
    db_password: str = Field("maitre_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("maitre", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    checkpoint_backend: Literal["memory", "postgres"] = "memory"

    # LLM
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096
    temperature: float = 0.7
    api_base_url: str = "https://api.anthropic.com"
    model_timeout: float = 30.0  # seconds per request
    model_max_retries: int = 3  # retries after the first attempt
    model_retry_backoff: float = 1.0  # base seconds, doubled per retry

    # Context window
    token_budget: int = 1200
    token_counter: Literal["tiktoken", "estimate"] = "tiktoken"
    tiktoken_encoding: str = "cl100k_base"
    summarizer: Literal["chunk", "model"] = "chunk"
    summary_chunk_chars: int = 4096
    system_prompt: str = ""  # empty -> maitre.prompts.SYSTEM_PROMPT

    # Tool loop
    narration_enabled: bool = True
    max_round_trips: int = 10  # AGENT<->TOOLS round trips per external message
    tool_timeout: float = 30.0

    # Backend API (reservations + menu)
    backend_url: str = "http://localhost:4000/graphql"
    backend_api_key: str = Field("", validation_alias="BACKEND_API_KEY")

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.token_budget <= 0:
            raise ValueError("token_budget must be > 0")
        if self.max_round_trips < 1:
            raise ValueError("max_round_trips must be >= 1")
        if self.model_max_retries < 0:
            raise ValueError("model_max_retries must be >= 0")
        if self.summary_chunk_chars <= 0:
            raise ValueError("summary_chunk_chars must be > 0")
        return self

    @property
    def db_url(self) -> str:
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
