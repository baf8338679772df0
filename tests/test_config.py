"""Tests for settings loading and limit validation."""

import pytest
from pydantic import ValidationError

from conductor.config import Settings


def test_defaults():
    s = Settings(_env_file=None, database_url="", redis_url="")
    assert s.max_orchestrations_per_day == 10
    assert s.max_agents_per_orchestration == 20
    assert s.max_parallel_agents_limit == 5
    assert s.outbox_max_attempts == 3
    assert not s.broker_enabled
    assert s.db_url.startswith("postgresql+asyncpg://")


def test_database_url_wins():
    s = Settings(_env_file=None, database_url="sqlite+aiosqlite:///conductor.db")
    assert s.db_url == "sqlite+aiosqlite:///conductor.db"


def test_unprefixed_env_aliases(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("AGENT_API_KEY", "key-123")
    monkeypatch.setenv("CONDUCTOR_OUTBOX_MAX_ATTEMPTS", "5")
    s = Settings(_env_file=None)
    assert s.broker_enabled
    assert s.agent_api_key == "key-123"
    assert s.outbox_max_attempts == 5


def test_worker_id_default():
    assert Settings(_env_file=None).worker_id.startswith("worker-")


@pytest.mark.parametrize(
    "overrides",
    [
        {"min_prompt_length": 500, "max_prompt_length": 100},
        {"default_max_parallel_agents": 6},
        {"outbox_max_attempts": 0},
    ],
)
def test_inconsistent_limits_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **overrides)
