"""Shared pytest fixtures."""
from __future__ import annotations

import sys

import pytest
from loguru import logger

from tests.fakes import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    # The CLI installs its own sinks; restore the default between tests
    logger.remove()
    logger.add(sys.stderr, level="WARNING")
