"""Shared fixtures for EOS fusion tests."""
from datetime import date, timedelta

import pytest

from app.services.eos_fusion_rules import clear_crop_defaults_cache


TODAY = date(2025, 3, 1)


@pytest.fixture
def today():
    """Frozen reference date for every test."""
    return TODAY


@pytest.fixture
def make_input(today):
    """Factory for raw fusion requests; keyword args override the defaults."""
    def _make(**overrides):
        data = {
            "planting_date": today - timedelta(days=120),
            "crop_type": "SOJA",
            "eos_ndvi": None,
            "ndvi_confidence": 0,
            "current_ndvi": 0.6,
            "peak_ndvi": 0.85,
            "ndvi_decline_rate": 0.5,
            "eos_gdd": None,
            "gdd_confidence": "LOW",
            "gdd_accumulated": 0.0,
            "gdd_required": 0.0,
            "water_stress_level": "NONE",
        }
        data.update(overrides)
        return data
    return _make


@pytest.fixture(autouse=True)
def reset_crop_defaults():
    clear_crop_defaults_cache()
    yield
    clear_crop_defaults_cache()
