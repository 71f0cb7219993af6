"""Shared test fixtures."""

from __future__ import annotations

import logging
import os

import pytest

from artiflow.config import load_config, reset_config
from artiflow.database import get_session, init_db, reset_db
from artiflow.logging_config import EXTRACTION_LOGGER_NAME
from artiflow.services.chat_store import SqlChatStore


@pytest.fixture(autouse=True)
def isolated_db(tmp_path):
    """Use a throwaway SQLite database and config for each test."""
    reset_config()
    reset_db()

    # Write a temporary config pointing to tmp db
    db_path = str(tmp_path / "test.db")
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        f"llm:\n  base_url: http://llm.test/v1\n  api_key: test-key\n  model: test\n"
        f"  max_retries: 3\n  retry_base_delay: 0.0\n  retry_max_delay: 0.0\n"
        f"database:\n  path: {db_path}\n"
        f"log:\n  dir: {tmp_path / 'logs'}\n"
    )

    os.chdir(tmp_path)
    load_config(config_file)
    init_db()
    yield tmp_path

    reset_db()
    reset_config()


@pytest.fixture
def db_session(isolated_db):
    session = get_session()
    yield session
    session.close()


@pytest.fixture
def store(db_session):
    return SqlChatStore(db_session)


@pytest.fixture(autouse=True)
def restore_logging():
    """Drop handlers that setup_logging() attached during a test."""
    loggers = [logging.getLogger(), logging.getLogger(EXTRACTION_LOGGER_NAME)]
    before = {id(lg): list(lg.handlers) for lg in loggers}
    root_level = loggers[0].level
    yield
    for lg in loggers:
        for handler in lg.handlers[:]:
            if handler not in before[id(lg)]:
                lg.removeHandler(handler)
                handler.close()
    loggers[0].setLevel(root_level)
