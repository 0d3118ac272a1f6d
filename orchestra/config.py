"""Settings via pydantic-settings with ORCH_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.  DATABASE_URL, when
set, wins over the individual fields (handy for SQLite in dev and tests).
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ORCH_", env_file=".env", populate_by_name=True)

    # DB connection; unprefixed aliases match docker-compose env vars
    database_url: str = Field("", validation_alias="DATABASE_URL")
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("orchestra", validation_alias="DB_USER")
    db_password: str = Field("orchestra_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("orchestra", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    run_workers: bool = True
    run_scheduler: bool = True
    event_bus_enabled: bool = True

    # Providers
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_base_url: str = "https://api.anthropic.com"
    ollama_base_url: str = "http://localhost:11434/v1"
    default_model: str = "gpt-4o"
    anthropic_model: str = "claude-sonnet-4-5-20250514"
    ollama_model: str = "llama3.1"
    max_tokens: int = 4096
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Turn executor
    default_max_turns: int = 4
    history_limit: int = 100  # messages loaded ahead of each run
    chat_timeout: float = 120.0  # deadline per model call
    tool_timeout: float = 60.0  # deadline per tool invocation

    # Memory
    kv_memory_path: str = "data/memory.db"

    # Job queue
    queue_name: str = "agents"
    worker_concurrency: int = 10
    worker_poll_interval: float = 1.0
    job_timeout: int = 300  # seconds per job attempt
    job_max_retries: int = 3
    job_retry_base_delay: float = 10.0
    job_retry_max_delay: float = 600.0
    serialize_sessions: bool = True  # one running job per session key

    # Triggers
    schedule_check_interval: float = 5.0

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.default_max_turns <= 0:
            raise ValueError("default_max_turns must be a positive integer")
        if self.worker_concurrency <= 0:
            raise ValueError("worker_concurrency must be a positive integer")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
