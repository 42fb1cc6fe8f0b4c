"""
Pytest configuration for crispify-runtime tests

Sets up Python path to allow imports from python/ directory and provides
shared fixtures (isolated config, deterministic engine, ready session).
"""
import sys
from pathlib import Path

import pytest

# Add python directory to path for imports
python_dir = Path(__file__).parent.parent / 'python'
sys.path.insert(0, str(python_dir))

from crispify_runtime.config_loader import Config, reset_config  # noqa: E402
from crispify_runtime.models.preflight import MemoryPreflight  # noqa: E402

PLENTY_OF_MEMORY = 8 * 1024 * 1024 * 1024


@pytest.fixture(autouse=True)
def _isolated_global_config(monkeypatch):
    """Never let a developer's CRISPIFY_* environment leak into tests"""
    monkeypatch.delenv("CRISPIFY_CONFIG", raising=False)
    monkeypatch.delenv("CRISPIFY_ENV", raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config():
    return Config({"model": {"seed": 1234}})


@pytest.fixture
def roomy_preflight():
    return MemoryPreflight(threshold_bytes=100 * 1024 * 1024, available_memory=lambda: PLENTY_OF_MEMORY)
