"""Shared fixtures for Security Scoring Engine tests."""

import sys
from pathlib import Path

import pytest
import yaml

# Ensure project root is importable
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from data_sources import YamlWeightProfileSource  # noqa: E402
from schemas import RunConfig  # noqa: E402


@pytest.fixture
def raw_cfg():
    """The production config.yaml as a plain dict."""
    with open(ROOT / "config.yaml") as f:
        return yaml.safe_load(f)


@pytest.fixture
def cfg(raw_cfg):
    """The production config.yaml, validated."""
    return RunConfig(**raw_cfg)


@pytest.fixture
def profiles():
    """Seed weight profiles (BASE / CAUTIOUS / AGGRESSIVE)."""
    return YamlWeightProfileSource(ROOT / "weight_profiles.yaml")


@pytest.fixture
def base_profile(profiles):
    return profiles.get("BASE")
