import logging

import pytest

from process_scheduler.core.config import CONFIG_ENV_VAR
from process_scheduler.core.logging_config import LOGGER_NAME


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    yield
    # CLI runs attach a handler bound to the runner's (now closed) stderr.
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
