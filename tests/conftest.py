"""
Pytest configuration and shared fixtures.
"""

import logging

import pytest

from newsdigest.infra.logging_config import LOGGER_NAME


SCHEDULER_ENV_VARS = (
    "SCHEDULER_MAX_CONCURRENCY",
    "SCHEDULER_MAX_RETRIES",
    "SCHEDULER_POLL_INTERVAL",
    "SCHEDULER_SHUTDOWN_WAIT",
    "SCHEDULER_RETRY_INITIAL_DELAY",
    "SCHEDULER_RETRY_MULTIPLIER",
    "SCHEDULER_RETRY_MAX_DELAY",
    "SCHEDULER_DB_PATH",
    "SCHEDULER_WEBHOOK_URL",
    "SCHEDULER_RECOVER_ON_START",
    "SCHEDULER_HEALTH_CHECK_URLS",
    "SCHEDULER_DISABLED_SCHEDULES",
    "LOG_LEVEL",
    "LOG_DIR",
)


@pytest.fixture(autouse=True, scope="function")
def clean_scheduler_env(monkeypatch):
    """
    Run every test without scheduler settings from the environment.

    Tests that need a variable set it through monkeypatch themselves.
    """
    for name in SCHEDULER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True, scope="function")
def reset_package_logger():
    """
    Undo setup_logging() after each test.

    setup_logging() disables propagation, which would hide records from
    caplog in later tests.
    """
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
