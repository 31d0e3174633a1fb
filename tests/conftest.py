"""Shared pytest configuration for the NeedFetch suite.

Every test starts from a clean process: no ``NEEDFETCH_*`` environment,
no process-wide default settings or engine, and no handlers left on the
package logger by a previous ``setup_logging`` call.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import pytest

# --- Globals ---

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from NeedFetch.api import reset_default_engine  # noqa: E402
from NeedFetch.logging_config import ROOT_LOGGER_NAME  # noqa: E402
from NeedFetch.settings import reset_defaults  # noqa: E402

# --- Fixtures ---


@pytest.fixture(autouse=True)
def _isolate_process_state(monkeypatch):
    """Clear environment overrides and process-wide singletons around each test."""

    for key in list(os.environ):
        if key.upper().startswith("NEEDFETCH_"):
            monkeypatch.delenv(key, raising=False)
    reset_defaults()
    reset_default_engine()
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    previous_level = logger.level
    yield
    for handler in list(logger.handlers):
        if getattr(handler, "_needfetch_managed", False):
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(previous_level)
    reset_defaults()
    reset_default_engine()

