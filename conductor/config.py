"""Settings via pydantic-settings with CONDUCTOR_ env prefix.

Shared secrets and connection strings use validation_alias so the same
unprefixed env vars (DATABASE_URL, REDIS_URL, AGENT_API_KEY, ...) that the
deployment already exports drive the Python app as well.
"""

import os
import socket

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        env_file=".env",
        populate_by_name=True,
        extra="ignore",
    )

    # Store -- DATABASE_URL wins over the composed postgres URL
    database_url: str = Field("", validation_alias="DATABASE_URL")
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("conductor", validation_alias="DB_USER")
    db_password: str = Field("conductor_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("conductor", validation_alias="DB_NAME")
    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"
    worker_id: str = Field(default_factory=_default_worker_id)

    # Broker (empty URL means no optimization path)
    redis_url: str = Field("", validation_alias="REDIS_URL")
    queue_prefix: str = "conductor"
    broker_concurrency: int = 2
    broker_pop_timeout: int = 5

    # Agent API
    agent_api_key: str = Field("", validation_alias="AGENT_API_KEY")
    agent_api_base_url: str = "https://api.cursor.com"
    agent_api_timeout: int = 30
    webhook_url: str = ""
    webhook_secret: str = ""

    # Planner LLM
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    planner_model: str = "claude-sonnet-4-5-20250514"
    planner_max_tokens: int = 4096
    planner_timeout: int = 60

    # Outbox processor
    outbox_poll_interval: float = 5
    outbox_batch_size: int = 10
    outbox_max_attempts: int = 3
    outbox_retry_base_delay: int = 60  # seconds, doubled per attempt
    outbox_claim_lease: int = 300

    # Periodic loops (seconds)
    agent_poll_interval: int = 60
    watchdog_interval: int = 1800
    agent_timeout: int = 14400  # 4 hours without progress
    catalog_ttl: int = 3600
    catalog_failure_backoff: int = 30
    catalog_refresh_interval: int = 3600
    reconcile_interval: int = 300
    stale_start_timeout: int = 900

    # Intake rate limiting
    rate_limit_max: int = 20
    rate_limit_window: int = 3600
    rate_limit_prefix: str = "orchestration:"

    # Orchestration limits
    max_orchestrations_per_day: int = 10
    max_agents_per_orchestration: int = 20
    max_parallel_agents_limit: int = 5
    max_iterations_limit: int = 50
    min_prompt_length: int = 100
    max_prompt_length: int = 50000
    default_max_parallel_agents: int = 3
    default_max_iterations: int = 20
    chars_per_agent_chunk: int = 5000
    auto_mode_task_threshold: int = 3  # AUTO picks BATCH above this many tasks

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.min_prompt_length > self.max_prompt_length:
            raise ValueError(
                f"min_prompt_length ({self.min_prompt_length}) must be <= "
                f"max_prompt_length ({self.max_prompt_length})"
            )
        if self.default_max_parallel_agents > self.max_parallel_agents_limit:
            raise ValueError("default_max_parallel_agents exceeds max_parallel_agents_limit")
        if self.outbox_max_attempts < 1:
            raise ValueError("outbox_max_attempts must be >= 1")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def broker_enabled(self) -> bool:
        return bool(self.redis_url)
