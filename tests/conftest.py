"""Pytest fixtures and configuration for tripmail tests.

Provides common fixtures for configuration, the rule store, seeding and a
controllable clock for cache tests.
"""

import os
from collections.abc import Generator
from pathlib import Path

import pytest
from helpers import SEED_PATH, FakeClock

from tripmail.config import reset_config
from tripmail.config_schema import AppConfig
from tripmail.db.seed import load_seed_file, seed_store
from tripmail.db.store import SQLiteRuleStore


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

database:
  path: "data/test.db"

cache:
  ttl_seconds: 60

timezone:
  fallback: "America/New_York"
  facility_types: ["private_terminal"]
"""


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the TRIPMAIL_CONFIG_PATH environment variable."""
    old_value = os.environ.get("TRIPMAIL_CONFIG_PATH")
    os.environ["TRIPMAIL_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["TRIPMAIL_CONFIG_PATH"]
    else:
        os.environ["TRIPMAIL_CONFIG_PATH"] = old_value


@pytest.fixture
def sample_config() -> AppConfig:
    """Return the default configuration."""
    return AppConfig()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def clock() -> FakeClock:
    """Return a hand-advanced clock."""
    return FakeClock()


@pytest.fixture
async def store(data_dir: Path) -> SQLiteRuleStore:
    """Return an initialized, empty SQLiteRuleStore."""
    s = SQLiteRuleStore(data_dir / "rules.db")
    await s.initialize()
    return s


@pytest.fixture
async def seeded_store(store: SQLiteRuleStore) -> SQLiteRuleStore:
    """Return a store populated from config/seed.yaml."""
    await seed_store(store, load_seed_file(SEED_PATH))
    return store
