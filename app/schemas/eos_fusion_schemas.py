"""
Pydantic schemas for the EOS Fusion module.
Request/response contracts for harvest-date estimation.
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
import datetime as dt
from enum import Enum

from app.services.eos_fusion_rules import normalize_key
from app.services.eos_fusion_service import WATER_STRESS_ALIASES


# ==================== ENUMS ====================

class GddConfidenceEnum(str, Enum):
    """Categorical confidence of the thermal projection."""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class WaterStressLevelEnum(str, Enum):
    """Water deficit severity reported by the water balance."""
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class EosMethodEnum(str, Enum):
    """Method that produced the final EOS date."""
    NDVI = "NDVI"
    GDD = "GDD"
    FUSION = "FUSION"
    NDVI_ADJUSTED = "NDVI_ADJUSTED"
    GDD_ADJUSTED = "GDD_ADJUSTED"


class PhenologicalStageEnum(str, Enum):
    VEGETATIVE = "VEGETATIVE"
    REPRODUCTIVE = "REPRODUCTIVE"
    GRAIN_FILLING = "GRAIN_FILLING"
    SENESCENCE = "SENESCENCE"
    MATURITY = "MATURITY"


# ==================== REQUEST ====================

class FusionMetricsSchema(BaseModel):
    """Quality of the gap-filled NDVI series (optical + radar)."""
    gaps_filled: int = Field(default=0, ge=0, description="Gaps filled by radar interpolation")
    max_gap_days: int = Field(default=0, ge=0, description="Longest remaining gap in days")
    radar_contribution: float = Field(default=0.0, ge=0, le=1, description="Share of points from radar")
    continuity_score: float = Field(default=0.0, ge=0, le=1, description="Series continuity 0-1")
    is_beta: bool = Field(default=False, description="Metrics produced by the beta fusion model")


class EosFusionRequest(BaseModel):
    """Input for EOS fusion calculation."""
    planting_date: dt.date = Field(..., description="Planting date (cycle anchor)")
    crop_type: Optional[str] = Field(None, max_length=50, description="Crop name, used for fallback offsets")

    # NDVI projection
    eos_ndvi: Optional[dt.date] = Field(None, description="EOS projected from the historical NDVI curve")
    ndvi_confidence: int = Field(default=0, ge=0, le=100, description="NDVI projection confidence %")
    current_ndvi: float = Field(default=0.0, ge=0, le=1, description="Latest NDVI reading")
    peak_ndvi: float = Field(default=0.0, ge=0, le=1, description="Peak NDVI of the cycle")
    ndvi_decline_rate: float = Field(default=0.0, description="NDVI decline %/period (positive = senescing)")

    # GDD projection
    eos_gdd: Optional[dt.date] = Field(None, description="EOS projected from thermal accumulation")
    gdd_confidence: GddConfidenceEnum = Field(default=GddConfidenceEnum.LOW)
    gdd_accumulated: float = Field(default=0.0, ge=0, description="Accumulated degree-days")
    gdd_required: float = Field(default=0.0, ge=0, description="Degree-days required for maturity (0 = unavailable)")

    # Water balance
    water_stress_level: Optional[WaterStressLevelEnum] = Field(
        None, description="Stress level; derived from stress_days when omitted"
    )
    stress_days: Optional[float] = Field(None, ge=0, description="Days under water stress")
    yield_impact: Optional[float] = Field(None, description="Estimated yield impact % (losses may be negative)")

    fusion_metrics: Optional[FusionMetricsSchema] = None
    as_of: Optional[dt.date] = Field(None, description="Reference date; defaults to the server date")

    @field_validator("gdd_confidence", mode="before")
    @classmethod
    def normalize_gdd_confidence(cls, v):
        if isinstance(v, str):
            return normalize_key(v) or GddConfidenceEnum.LOW.value
        return v

    @field_validator("water_stress_level", mode="before")
    @classmethod
    def normalize_water_stress_level(cls, v):
        if isinstance(v, str):
            key = normalize_key(v)
            if not key:
                return None
            return WATER_STRESS_ALIASES.get(key, key)
        return v


# ==================== RESPONSE ====================

class ProjectionSnapshot(BaseModel):
    date: Optional[dt.date] = None
    confidence: int = 0
    status: str


class ProjectionsSchema(BaseModel):
    ndvi: ProjectionSnapshot
    gdd: ProjectionSnapshot
    water_adjustment: int = Field(..., le=0, description="Days subtracted by water stress")


class EosFusionResponse(BaseModel):
    """Fused EOS verdict with display labels."""
    eos: dt.date
    method: EosMethodEnum
    method_label: str
    confidence: int = Field(..., ge=0, le=100)
    confidence_label: str
    phenological_stage: PhenologicalStageEnum
    phenological_stage_label: str
    passed: bool
    explanation: str
    factors: List[str] = []
    warnings: List[str] = []
    projections: ProjectionsSchema

    class Config:
        from_attributes = True


class FusionLabelsResponse(BaseModel):
    methods: Dict[str, str]
    phenological_stages: Dict[str, str]
    confidence_bands: List[Dict[str, Any]]
