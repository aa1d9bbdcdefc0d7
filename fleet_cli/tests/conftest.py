"""Shared fixtures for fleet-migrate CLI tests."""

from __future__ import annotations

from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def _no_logging_reconfigure():
    """Keep the CLI callback from replacing pytest's log capture handlers."""
    with patch("fleet_cli.app.configure_logging") as configure:
        yield configure
