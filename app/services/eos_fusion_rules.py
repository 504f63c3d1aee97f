"""
Deterministic agronomic rules and thresholds for EOS fusion.

This module centralizes constants so the fusion engine can remain
deterministic, auditable, and consistent across services and tests.
Thresholds are grouped into an immutable EosFusionConfig that the engine
receives explicitly, so recalibration never touches control flow.
"""
import json
import logging
import os
import unicodedata
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

# Convergence between NDVI and GDD projections
CONVERGENCE_WINDOW_DAYS = 7

# Numeric score for the categorical GDD confidence
GDD_CONFIDENCE_SCORES = {
    "HIGH": 80,
    "MEDIUM": 55,
    "LOW": 30,
}

# NDVI thresholds (fraction 0-1)
NDVI_ACTIVE_CANOPY = 0.55
NDVI_MATURITY = 0.5
NDVI_VEGETATIVE_MIN = 0.7
NDVI_SENESCENCE_START = 0.65

# NDVI decline rate (% per sampling period)
NDVI_SLOW_DECLINE_RATE = 0.1
NDVI_MIN_DECLINE_RATE = 0.01
NDVI_SAMPLING_PERIOD_DAYS = 5

# Slowest NDVI loss (points/day) assumed once thermal maturity is reached
SENESCENCE_MIN_DAILY_LOSS = 0.0075

# Forward projection when thermal maturity contradicts an active canopy
FORWARD_PROJECTION_MIN_DAYS = 14
FORWARD_PROJECTION_MAX_DAYS = 60

# Confidence scoring
CONFLICT_CONFIDENCE_CAP = 50
NO_DATA_CONFIDENCE_CAP = 30
STALE_NDVI_CONFIDENCE_CAP = 50
PAST_GDD_CONFIDENCE_CAP = 60
AGREEMENT_BONUS = 5
CONVERGENCE_BONUS = 10
QUALITY_BONUS = 5
QUALITY_MAX_GAP_DAYS = 7
QUALITY_MIN_CONTINUITY = 0.8
BETA_QUALITY_FACTOR = 0.5
RADAR_BONUS_MAX = 3
RADAR_BONUS_SCALE = 5

# Water stress accelerates senescence: days added to EOS (always <= 0)
WATER_STRESS_ADJUSTMENT_DAYS = {
    "NONE": 0,
    "LOW": -1,
    "MEDIUM": -2,
    "HIGH": -4,
    "CRITICAL": -7,
}

YIELD_RISK_STRESS_DAYS = 20
YIELD_RISK_IMPACT_PCT = 20

# Stress level inferred from stress days when no level is reported
STRESS_DAYS_LEVELS = (
    (20, "CRITICAL"),
    (10, "HIGH"),
    (5, "MEDIUM"),
)

# GDD progress band upper bounds: VEGETATIVE, REPRODUCTIVE, GRAIN_FILLING, SENESCENCE
GDD_STAGE_BANDS = (0.4, 0.7, 0.9, 1.0)

GENERIC_FALLBACK_DAYS = 30

CROP_DEFAULTS_PATH = os.environ.get(
    "EOS_FUSION_CROP_DEFAULTS_PATH",
    os.path.join(os.path.dirname(__file__), "..", "data", "eos_fusion_crop_defaults.json"),
)

_crop_defaults_cache = None


@dataclass(frozen=True)
class EosFusionConfig:
    """Tunable thresholds for the EOS fusion pipeline."""
    convergence_window_days: int = CONVERGENCE_WINDOW_DAYS
    gdd_confidence_scores: Mapping[str, int] = field(
        default_factory=lambda: dict(GDD_CONFIDENCE_SCORES)
    )

    ndvi_active_canopy: float = NDVI_ACTIVE_CANOPY
    ndvi_maturity: float = NDVI_MATURITY
    ndvi_vegetative_min: float = NDVI_VEGETATIVE_MIN
    ndvi_senescence_start: float = NDVI_SENESCENCE_START
    slow_decline_rate: float = NDVI_SLOW_DECLINE_RATE
    min_decline_rate: float = NDVI_MIN_DECLINE_RATE
    sampling_period_days: int = NDVI_SAMPLING_PERIOD_DAYS
    senescence_min_daily_loss: float = SENESCENCE_MIN_DAILY_LOSS

    forward_min_days: int = FORWARD_PROJECTION_MIN_DAYS
    forward_max_days: int = FORWARD_PROJECTION_MAX_DAYS

    conflict_confidence_cap: int = CONFLICT_CONFIDENCE_CAP
    no_data_confidence_cap: int = NO_DATA_CONFIDENCE_CAP
    stale_ndvi_confidence_cap: int = STALE_NDVI_CONFIDENCE_CAP
    past_gdd_confidence_cap: int = PAST_GDD_CONFIDENCE_CAP
    agreement_bonus: int = AGREEMENT_BONUS
    convergence_bonus: int = CONVERGENCE_BONUS
    quality_bonus: int = QUALITY_BONUS
    quality_max_gap_days: int = QUALITY_MAX_GAP_DAYS
    quality_min_continuity: float = QUALITY_MIN_CONTINUITY
    beta_quality_factor: float = BETA_QUALITY_FACTOR
    radar_bonus_max: int = RADAR_BONUS_MAX
    radar_bonus_scale: float = RADAR_BONUS_SCALE

    water_stress_adjustment_days: Mapping[str, int] = field(
        default_factory=lambda: dict(WATER_STRESS_ADJUSTMENT_DAYS)
    )
    yield_risk_stress_days: float = YIELD_RISK_STRESS_DAYS
    yield_risk_impact_pct: float = YIELD_RISK_IMPACT_PCT

    gdd_stage_bands: Tuple[float, float, float, float] = GDD_STAGE_BANDS
    fallback_days: int = GENERIC_FALLBACK_DAYS

    def gdd_score(self, level: str) -> int:
        """Map a GDD confidence level to a 0-100 score."""
        return int(self.gdd_confidence_scores.get(level, self.gdd_confidence_scores["LOW"]))


DEFAULT_CONFIG = EosFusionConfig()


def build_fusion_config(overrides: Optional[Mapping[str, Any]] = None) -> EosFusionConfig:
    """
    Build a config from the defaults with the given fields replaced.

    Raises:
        ValueError: if an override names an unknown field.
    """
    if not overrides:
        return DEFAULT_CONFIG

    known = {f.name for f in fields(EosFusionConfig)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown EOS fusion config keys: {', '.join(unknown)}")

    values = dict(overrides)
    if "gdd_stage_bands" in values:
        values["gdd_stage_bands"] = tuple(values["gdd_stage_bands"])
    return replace(DEFAULT_CONFIG, **values)


# ==================== CROP FALLBACK TABLE ====================

_BUILTIN_CROP_DEFAULTS = {
    "crops": {
        "SOJA": {"fallback_days": 30, "aliases": ["SOYBEAN", "SOY"]},
        "MILHO": {"fallback_days": 40, "aliases": ["CORN", "MAIZE"]},
    },
}


def clear_crop_defaults_cache():
    """Clear the cache to reload crop defaults on next call."""
    global _crop_defaults_cache
    _crop_defaults_cache = None


def load_crop_defaults() -> Dict:
    """Load crop fallback offsets from JSON file."""
    global _crop_defaults_cache
    if _crop_defaults_cache is not None:
        return _crop_defaults_cache

    try:
        with open(CROP_DEFAULTS_PATH, "r", encoding="utf-8") as f:
            _crop_defaults_cache = json.load(f)
            return _crop_defaults_cache
    except (OSError, ValueError) as e:
        logger.error(f"[CropDefaults] Error loading crop defaults: {e}")
        return _BUILTIN_CROP_DEFAULTS


def normalize_key(value: Optional[str]) -> str:
    """Uppercase, strip accents and separators ('Algodão' -> 'ALGODAO')."""
    if not value:
        return ""
    normalized = unicodedata.normalize("NFKD", value)
    ascii_text = normalized.encode("ASCII", "ignore").decode("ASCII")
    return ascii_text.strip().upper().replace("-", "_").replace(" ", "_")


def get_fallback_days(crop_type: Optional[str], config: EosFusionConfig = DEFAULT_CONFIG) -> int:
    """
    Generic EOS offset (days from today) used when no projection is available.

    Crop-specific values come from the crop defaults table; unknown crops
    use config.fallback_days.
    """
    key = normalize_key(crop_type)
    if not key:
        return config.fallback_days

    crops = load_crop_defaults().get("crops", {})
    for crop_id, entry in crops.items():
        aliases = [normalize_key(a) for a in entry.get("aliases", [])]
        if key == crop_id or key in aliases:
            return int(entry.get("fallback_days", config.fallback_days))

    return config.fallback_days
