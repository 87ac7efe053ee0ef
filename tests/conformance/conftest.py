"""Fixtures for end-to-end chain conformance runs.

These tests drive a real scaffold generator, so the developer's
CONFORMANCE_* settings and funded key must reach the harness.
"""
from __future__ import annotations

import os

import pytest

from src.conformance.config import HarnessConfig, load_harness_config


@pytest.fixture(autouse=True)
def _isolated_harness_env() -> None:
    """Keep the environment as is (overrides the suite-wide isolation)."""


@pytest.fixture(scope="module")
def live_config() -> HarnessConfig:
    return load_harness_config(os.environ.get("CONFORMANCE_CONFIG") or None)
