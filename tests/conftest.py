"""
Pytest configuration file.

Sets up the Python path so test files can import from the python/ directory,
and provides shared fixtures for building images and configuration.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)

from registry_gc.config_manager import ConfigManager  # noqa: E402
from registry_gc.models import Image  # noqa: E402

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_image(digest, tags=(), pushed=0, size=None, repository="repo"):
    """Build an Image pushed ``pushed`` seconds after BASE_TIME."""
    return Image(
        digest=digest,
        tags=tuple(tags),
        pushed_at=BASE_TIME + timedelta(seconds=pushed),
        size_bytes=size,
        repository=repository,
    )


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the caller's AWS/Vault settings out of every test"""
    for name in (
        "CONFIG_FILE",
        "ECR_REGION",
        "AWS_DEFAULT_REGION",
        "ECR_REGISTRY_ID",
        "LOG_LEVEL",
        "VAULT_TOKEN",
        "VAULT_ADDR",
        "VAULT_AWS_SECRETS_ROLE",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_manager():
    """ConfigManager with defaults only"""
    return ConfigManager(config_file="/nonexistent/config.yaml", validate=False)


@pytest.fixture
def fast_config(config_manager):
    """Default config with retries and rate limiting that never sleep"""
    config_manager.override("retry", "max_retries", 0)
    config_manager.override("retry", "jitter", False)
    config_manager.override("rate_limit", "enabled", False)
    return config_manager
