"""
EOS Fusion Service - End-Of-Season (harvest readiness) estimation.

Fuses two independent, often contradictory, projections of the harvest date:
- NDVI historical-curve projection (eos_ndvi + ndvi_confidence)
- GDD thermal-accumulation projection (eos_gdd + gdd_confidence)

Pipeline (each stage is a pure function, composed by calculate_fused_eos):
  normalize_fusion_input -> select_baseline -> apply_sanity_guard
  -> apply_water_stress -> score_confidence / classify_phenological_stage
  -> build_fusion_result

CRITICAL RULES:
- GDD alone never declares MATURITY while NDVI still shows an active canopy
- A maturity confirmed by both signals keeps its computed date, even in the past
- "today" is read once per call and passed explicitly to every stage
"""
import logging
import math
from dataclasses import dataclass, field, asdict, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from app.services.eos_fusion_rules import (
    DEFAULT_CONFIG,
    STRESS_DAYS_LEVELS,
    EosFusionConfig,
    get_fallback_days,
    normalize_key,
)
from app.services.eos_fusion_helpers import (
    format_date,
    get_projection_status,
    get_gdd_projection_status,
)

logger = logging.getLogger(__name__)

METHODS = ("NDVI", "GDD", "FUSION", "NDVI_ADJUSTED", "GDD_ADJUSTED")
PHENOLOGICAL_STAGES = ("VEGETATIVE", "REPRODUCTIVE", "GRAIN_FILLING", "SENESCENCE", "MATURITY")
GDD_CONFIDENCE_LEVELS = ("HIGH", "MEDIUM", "LOW")
WATER_STRESS_LEVELS = ("NONE", "LOW", "MEDIUM", "HIGH", "CRITICAL")

# Labels reported by the water balance module (pt-BR)
WATER_STRESS_ALIASES = {
    "NENHUM": "NONE",
    "BAIXO": "LOW",
    "MODERADO": "MEDIUM",
    "MEDIO": "MEDIUM",
    "SEVERO": "HIGH",
    "ALTO": "HIGH",
    "CRITICO": "CRITICAL",
}

ADJUSTED_METHODS = {
    "NDVI": "NDVI_ADJUSTED",
    "GDD": "GDD_ADJUSTED",
}

RULE_ACTIVE_CANOPY_CONFLICT = "ACTIVE_CANOPY_CONFLICT"
RULE_CONFIRMED_MATURITY = "CONFIRMED_MATURITY"
RULE_STALE_NDVI = "STALE_NDVI_PROJECTION"
RULE_PAST_GDD = "PAST_GDD_PROJECTION"
RULE_PASSTHROUGH = "PASSTHROUGH"


class InvalidInputError(ValueError):
    """Raised when a fusion request is malformed (missing projections are not errors)."""
    pass


# ==================== DATA CLASSES ====================

@dataclass(frozen=True)
class FusionMetrics:
    """Quality of the gap-filled (optical + radar) NDVI series behind eos_ndvi."""
    gaps_filled: int = 0
    max_gap_days: int = 0
    radar_contribution: float = 0.0
    continuity_score: float = 0.0
    is_beta: bool = False


@dataclass(frozen=True)
class EosFusionInput:
    """Normalized fusion request."""
    planting_date: date
    eos_ndvi: Optional[date] = None
    ndvi_confidence: int = 0
    current_ndvi: float = 0.0
    peak_ndvi: float = 0.0
    ndvi_decline_rate: float = 0.0
    eos_gdd: Optional[date] = None
    gdd_confidence: str = "LOW"
    gdd_accumulated: float = 0.0
    gdd_required: float = 0.0
    water_stress_level: str = "NONE"
    stress_days: Optional[float] = None
    yield_impact: Optional[float] = None
    fusion_metrics: Optional[FusionMetrics] = None
    crop_type: str = ""

    @property
    def has_ndvi(self) -> bool:
        return self.eos_ndvi is not None

    @property
    def has_gdd(self) -> bool:
        # gdd_required == 0 means the thermal projection is unavailable
        return self.eos_gdd is not None and self.gdd_required > 0

    @property
    def gdd_progress(self) -> float:
        if self.gdd_required <= 0:
            return 0.0
        return self.gdd_accumulated / self.gdd_required


@dataclass
class Baseline:
    """Candidate EOS produced by the selector and possibly overridden by the sanity guard."""
    method: str
    eos: date
    confidence: int
    explanation: str
    factors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    convergence_days: Optional[int] = None
    no_data: bool = False


@dataclass
class GuardOutcome:
    baseline: Baseline
    rule: str
    confidence_cap: Optional[int] = None
    agreement_bonus: int = 0
    maturity_forbidden: bool = False


@dataclass
class WaterStressOutcome:
    method: str
    eos: date
    adjustment_days: int
    factors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class ConfidenceBreakdown:
    base: int
    agreement_bonus: int
    convergence_bonus: int
    quality_bonus: int
    radar_bonus: int
    cap: Optional[int]
    final: int
    details: List[str] = field(default_factory=list)


@dataclass
class ProjectionSnapshot:
    date: Optional[date]
    confidence: int
    status: str


@dataclass
class FusionProjections:
    ndvi: ProjectionSnapshot
    gdd: ProjectionSnapshot
    water_adjustment: int


@dataclass
class EosFusionResult:
    """Result of EOS fusion."""
    eos: date
    method: str
    confidence: int
    phenological_stage: str
    passed: bool
    explanation: str
    factors: List[str]
    warnings: List[str]
    projections: FusionProjections

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ==================== STAGE 1: INPUT NORMALIZER ====================

def _parse_date(value: Any, name: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            raise InvalidInputError(f"{name} is not a valid ISO date: {value!r}") from None
    raise InvalidInputError(f"{name} must be a date, got {type(value).__name__}")


def _parse_number(
    value: Any,
    name: str,
    default: Optional[float] = 0.0,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> Optional[float]:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise InvalidInputError(f"{name} must be numeric, got a boolean")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"{name} must be numeric, got {value!r}") from None
    if not math.isfinite(number):
        raise InvalidInputError(f"{name} must be finite, got {value!r}")
    if minimum is not None and number < minimum:
        raise InvalidInputError(f"{name} must be >= {minimum}, got {number}")
    if maximum is not None and number > maximum:
        raise InvalidInputError(f"{name} must be <= {maximum}, got {number}")
    return number


def _parse_choice(value: Any, name: str, choices: Tuple[str, ...], default: str) -> str:
    if value is None or value == "":
        return default
    if isinstance(value, Enum):
        value = value.value
    key = normalize_key(str(value))
    if key not in choices:
        raise InvalidInputError(f"{name} must be one of {', '.join(choices)}, got {value!r}")
    return key


def _water_stress_from_days(stress_days: float) -> str:
    for min_days, level in STRESS_DAYS_LEVELS:
        if stress_days >= min_days:
            return level
    return "LOW" if stress_days > 0 else "NONE"


def _parse_water_stress(value: Any, stress_days: Optional[float]) -> str:
    if value is None or value == "":
        if stress_days is None:
            return "NONE"
        return _water_stress_from_days(stress_days)
    if isinstance(value, Enum):
        value = value.value
    key = normalize_key(str(value))
    key = WATER_STRESS_ALIASES.get(key, key)
    if key not in WATER_STRESS_LEVELS:
        raise InvalidInputError(
            f"water_stress_level must be one of {', '.join(WATER_STRESS_LEVELS)}, got {value!r}"
        )
    return key


def _parse_flag(value: Any, name: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        key = normalize_key(value)
        if key in ("TRUE", "1", "SIM", "YES"):
            return True
        if key in ("FALSE", "0", "NAO", "NO", ""):
            return False
    raise InvalidInputError(f"{name} must be a boolean, got {value!r}")


def _parse_crop_type(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidInputError(f"crop_type must be a string, got {type(value).__name__}")
    return normalize_key(value)


def _parse_fusion_metrics(value: Any) -> Optional[FusionMetrics]:
    if value is None:
        return None
    if isinstance(value, FusionMetrics):
        value = asdict(value)
    if not isinstance(value, Mapping):
        raise InvalidInputError(f"fusion_metrics must be a mapping, got {type(value).__name__}")

    return FusionMetrics(
        gaps_filled=int(_parse_number(value.get("gaps_filled"), "fusion_metrics.gaps_filled", minimum=0)),
        max_gap_days=int(_parse_number(value.get("max_gap_days"), "fusion_metrics.max_gap_days", minimum=0)),
        radar_contribution=_parse_number(
            value.get("radar_contribution"), "fusion_metrics.radar_contribution", minimum=0, maximum=1
        ),
        continuity_score=_parse_number(
            value.get("continuity_score"), "fusion_metrics.continuity_score", minimum=0, maximum=1
        ),
        is_beta=_parse_flag(value.get("is_beta"), "fusion_metrics.is_beta"),
    )


def normalize_fusion_input(data: Union[Mapping[str, Any], EosFusionInput]) -> EosFusionInput:
    """
    Validate and default a raw fusion request.

    Args:
        data: Mapping with snake_case keys, or an EosFusionInput to re-validate.

    Returns:
        EosFusionInput with parsed dates, checked ranges and defaults applied.

    Raises:
        InvalidInputError: malformed request (bad dates, negative thermal units,
            NDVI out of [0, 1], unknown enum labels, non-finite numbers).
    """
    if isinstance(data, EosFusionInput):
        data = asdict(data)
    if not isinstance(data, Mapping):
        raise InvalidInputError(f"Fusion input must be a mapping, got {type(data).__name__}")

    planting_date = _parse_date(data.get("planting_date"), "planting_date")
    if planting_date is None:
        raise InvalidInputError("planting_date is required")

    stress_days = _parse_number(data.get("stress_days"), "stress_days", default=None, minimum=0)

    return EosFusionInput(
        planting_date=planting_date,
        eos_ndvi=_parse_date(data.get("eos_ndvi"), "eos_ndvi"),
        ndvi_confidence=int(round(_parse_number(
            data.get("ndvi_confidence"), "ndvi_confidence", minimum=0, maximum=100
        ))),
        current_ndvi=_parse_number(data.get("current_ndvi"), "current_ndvi", minimum=0, maximum=1),
        peak_ndvi=_parse_number(data.get("peak_ndvi"), "peak_ndvi", minimum=0, maximum=1),
        ndvi_decline_rate=_parse_number(data.get("ndvi_decline_rate"), "ndvi_decline_rate"),
        eos_gdd=_parse_date(data.get("eos_gdd"), "eos_gdd"),
        gdd_confidence=_parse_choice(
            data.get("gdd_confidence"), "gdd_confidence", GDD_CONFIDENCE_LEVELS, default="LOW"
        ),
        gdd_accumulated=_parse_number(data.get("gdd_accumulated"), "gdd_accumulated", minimum=0),
        gdd_required=_parse_number(data.get("gdd_required"), "gdd_required", minimum=0),
        water_stress_level=_parse_water_stress(data.get("water_stress_level"), stress_days),
        stress_days=stress_days,
        yield_impact=_parse_number(data.get("yield_impact"), "yield_impact", default=None),
        fusion_metrics=_parse_fusion_metrics(data.get("fusion_metrics")),
        crop_type=_parse_crop_type(data.get("crop_type")),
    )


# ==================== STAGE 3: CONVERGENCE & METHOD SELECTOR ====================

def _weighted_fusion(
    ndvi_date: date,
    ndvi_confidence: int,
    gdd_date: date,
    gdd_score: int,
) -> Tuple[date, int]:
    """Confidence-weighted mean of the two dates and scores (midpoint when both weights are 0)."""
    ndvi_weight = ndvi_confidence / 100
    gdd_weight = gdd_score / 100
    total_weight = ndvi_weight + gdd_weight
    if total_weight <= 0:
        ndvi_weight = gdd_weight = 0.5
        total_weight = 1.0

    ordinal = (ndvi_date.toordinal() * ndvi_weight + gdd_date.toordinal() * gdd_weight) / total_weight
    confidence = (ndvi_confidence * ndvi_weight + gdd_score * gdd_weight) / total_weight
    return date.fromordinal(int(round(ordinal))), int(round(confidence))


def select_baseline(
    fusion_input: EosFusionInput,
    today: date,
    config: EosFusionConfig = DEFAULT_CONFIG,
) -> Baseline:
    """Choose NDVI, GDD or FUSION from availability and agreement of the projections."""
    gdd_score = config.gdd_score(fusion_input.gdd_confidence)
    eos_ndvi = fusion_input.eos_ndvi
    eos_gdd = fusion_input.eos_gdd
    warnings: List[str] = []

    if eos_gdd is not None and not fusion_input.has_gdd:
        warnings.append("Projeção GDD ignorada: GDD necessário para maturação indisponível")

    if fusion_input.has_ndvi and fusion_input.has_gdd:
        convergence_days = abs((eos_ndvi - eos_gdd).days)
        both_factors = [
            f"NDVI: {format_date(eos_ndvi)} ({fusion_input.ndvi_confidence}%)",
            f"GDD: {format_date(eos_gdd)} ({gdd_score}%)",
        ]

        if convergence_days < config.convergence_window_days:
            eos, confidence = _weighted_fusion(eos_ndvi, fusion_input.ndvi_confidence, eos_gdd, gdd_score)
            logger.info(f"[EosFusion] Projections converge ({convergence_days}d) -> FUSION {eos}")
            return Baseline(
                method="FUSION",
                eos=eos,
                confidence=confidence,
                explanation=(
                    f"Projeções NDVI e GDD convergentes ({convergence_days}d de diferença). "
                    "Usando média ponderada por confiança."
                ),
                factors=both_factors,
                warnings=warnings,
                convergence_days=convergence_days,
            )

        warnings.append(
            f"Projeções divergentes: NDVI {format_date(eos_ndvi)} vs GDD {format_date(eos_gdd)} "
            f"({convergence_days}d de diferença)"
        )
        if fusion_input.ndvi_confidence >= gdd_score:
            logger.warning(f"[EosFusion] Projections diverge ({convergence_days}d) -> NDVI (higher confidence)")
            return Baseline(
                method="NDVI",
                eos=eos_ndvi,
                confidence=fusion_input.ndvi_confidence,
                explanation="Projeções NDVI e GDD divergentes. Usando curva NDVI histórica (maior confiança).",
                factors=both_factors,
                warnings=warnings,
                convergence_days=convergence_days,
            )
        logger.warning(f"[EosFusion] Projections diverge ({convergence_days}d) -> GDD (higher confidence)")
        return Baseline(
            method="GDD",
            eos=eos_gdd,
            confidence=gdd_score,
            explanation="Projeções NDVI e GDD divergentes. Usando soma térmica (maior confiança).",
            factors=both_factors,
            warnings=warnings,
            convergence_days=convergence_days,
        )

    if fusion_input.has_ndvi:
        return Baseline(
            method="NDVI",
            eos=eos_ndvi,
            confidence=fusion_input.ndvi_confidence,
            explanation="Projeção baseada em curva NDVI histórica.",
            factors=[f"Correlação histórica: {fusion_input.ndvi_confidence}%"],
            warnings=warnings,
        )

    if fusion_input.has_gdd:
        return Baseline(
            method="GDD",
            eos=eos_gdd,
            confidence=gdd_score,
            explanation="Projeção baseada em soma térmica (GDD).",
            factors=[f"Progresso GDD: {fusion_input.gdd_progress * 100:.0f}%"],
            warnings=warnings,
        )

    fallback_days = get_fallback_days(fusion_input.crop_type, config)
    logger.warning(
        f"[EosFusion] No projection available for {fusion_input.crop_type or 'unknown crop'} "
        f"- generic fallback of {fallback_days} days"
    )
    warnings.append("Sem dados disponíveis, usando projeção genérica")
    return Baseline(
        method="NDVI",
        eos=today + timedelta(days=fallback_days),
        confidence=config.no_data_confidence_cap,
        explanation="Dados insuficientes para projeção precisa.",
        factors=[f"Projeção genérica: hoje + {fallback_days} dias"],
        warnings=warnings,
        no_data=True,
    )


# ==================== STAGE 4: SANITY GUARD ====================

def project_days_to_senescence(
    current_ndvi: float,
    decline_rate: float,
    config: EosFusionConfig = DEFAULT_CONFIG,
) -> int:
    """
    Days until NDVI reaches the maturity threshold.

    decline_rate is the percentage of the current NDVI lost per sampling period.
    Flat or growing canopies (rate below the near-zero guard) get the maximum
    horizon. A declining canopy loses at least senescence_min_daily_loss NDVI
    points per day, so a barely declining 0.56 canopy projects sooner than a
    0.95 one. The result is clamped to [forward_min_days, forward_max_days]
    and is always at least one day.
    """
    if decline_rate < config.min_decline_rate:
        days = config.forward_max_days
    else:
        gap = max(0.0, current_ndvi - config.ndvi_maturity)
        observed_daily_loss = current_ndvi * decline_rate / 100 / config.sampling_period_days
        daily_loss = max(observed_daily_loss, config.senescence_min_daily_loss)
        days = math.ceil(gap / daily_loss)

    days = max(config.forward_min_days, min(config.forward_max_days, days))
    return max(1, days)


def _resolve_active_canopy_conflict(
    baseline: Baseline,
    fusion_input: EosFusionInput,
    today: date,
    config: EosFusionConfig,
) -> GuardOutcome:
    progress = fusion_input.gdd_progress
    ndvi_pct = fusion_input.current_ndvi * 100
    eos_gdd = fusion_input.eos_gdd
    eos_ndvi = fusion_input.eos_ndvi
    gdd_in_past = eos_gdd is not None and eos_gdd < today

    eos = baseline.eos
    method = baseline.method
    factors = baseline.factors + [
        f"GDD: {progress * 100:.0f}% ({format_date(eos_gdd)}) - inconsistente com o dossel",
        f"NDVI atual: {ndvi_pct:.0f}% (pico: {fusion_input.peak_ndvi * 100:.0f}%) - planta verde",
        f"Taxa NDVI: {fusion_input.ndvi_decline_rate:.2f}%/pt",
    ]
    warnings = list(baseline.warnings)

    if gdd_in_past and eos_ndvi is None:
        days = project_days_to_senescence(fusion_input.current_ndvi, fusion_input.ndvi_decline_rate, config)
        eos = today + timedelta(days=days)
        factors.append(f"Estimativa pela tendência NDVI: ~{days} dias a partir de hoje")
        warnings.append(
            f"GDD EOS ({format_date(eos_gdd)}) descartado: NDVI a {ndvi_pct:.0f}% contradiz maturação"
        )
        logger.warning(f"[SanityGuard] GDD EOS {eos_gdd} in the past with green canopy -> projecting {eos}")
    elif method == "GDD" and gdd_in_past and eos_ndvi is not None and eos_ndvi >= today:
        eos = eos_ndvi
        method = "NDVI"
        warnings.append(
            f"GDD EOS ({format_date(eos_gdd)}) descartado: usando projeção NDVI ({format_date(eos_ndvi)})"
        )
        logger.warning(f"[SanityGuard] GDD EOS {eos_gdd} in the past with green canopy -> NDVI {eos_ndvi}")

    cap = config.conflict_confidence_cap
    warnings.append(
        f"GDD indica maturação, mas NDVI a {ndvi_pct:.0f}% mostra dossel ativo - confiança limitada a {cap}%"
    )
    logger.warning(
        f"[SanityGuard] Thermal maturity ({progress:.2f}) contradicted by NDVI {fusion_input.current_ndvi:.2f}"
    )

    overridden = replace(
        baseline,
        method=method,
        eos=eos,
        confidence=min(baseline.confidence, cap),
        explanation=(
            "GDD indica maturação, mas NDVI mostra planta ainda em crescimento ativo. "
            "Maturação não confirmada - possível data de plantio incorreta ou ciclo diferente."
        ),
        factors=factors,
        warnings=warnings,
    )
    return GuardOutcome(
        baseline=overridden,
        rule=RULE_ACTIVE_CANOPY_CONFLICT,
        confidence_cap=cap,
        maturity_forbidden=True,
    )


def _resolve_stale_ndvi_projection(
    baseline: Baseline,
    fusion_input: EosFusionInput,
    today: date,
    config: EosFusionConfig,
) -> GuardOutcome:
    eos_ndvi = fusion_input.eos_ndvi
    eos_gdd = fusion_input.eos_gdd
    ndvi_pct = fusion_input.current_ndvi * 100
    factors = baseline.factors + [f"NDVI atual: {ndvi_pct:.0f}% (ainda alto)"]
    warnings = list(baseline.warnings)

    if fusion_input.has_gdd and eos_gdd > today:
        factors.append(f"GDD: {fusion_input.gdd_progress * 100:.0f}% concluído")
        warnings.append(f"EOS NDVI ({format_date(eos_ndvi)}) já passou - ajustado para GDD")
        logger.warning(f"[SanityGuard] NDVI EOS {eos_ndvi} in the past with green canopy -> GDD {eos_gdd}")
        switched = replace(
            baseline,
            method="GDD",
            eos=eos_gdd,
            confidence=config.gdd_score(fusion_input.gdd_confidence),
            explanation=(
                "Projeção NDVI histórica já passou, mas NDVI atual indica planta ainda verde. "
                "Usando soma térmica (GDD)."
            ),
            factors=factors,
            warnings=warnings,
        )
        return GuardOutcome(baseline=switched, rule=RULE_STALE_NDVI)

    days = project_days_to_senescence(fusion_input.current_ndvi, fusion_input.ndvi_decline_rate, config)
    eos = today + timedelta(days=days)
    cap = config.stale_ndvi_confidence_cap
    factors.append(f"Estimativa pela tendência NDVI: ~{days} dias a partir de hoje")
    warnings.append(
        f"EOS NDVI ({format_date(eos_ndvi)}) já passou, mas NDVI a {ndvi_pct:.0f}% indica planta verde"
    )
    warnings.append("Projeção com incerteza elevada")
    logger.warning(f"[SanityGuard] NDVI EOS {eos_ndvi} in the past with green canopy -> projecting {eos}")
    projected = replace(
        baseline,
        method="NDVI",
        eos=eos,
        confidence=min(baseline.confidence, cap),
        explanation="Projeção NDVI histórica já passou, mas planta ainda verde. Projeção pela tendência NDVI.",
        factors=factors,
        warnings=warnings,
    )
    return GuardOutcome(baseline=projected, rule=RULE_STALE_NDVI, confidence_cap=cap)


def apply_sanity_guard(
    baseline: Baseline,
    fusion_input: EosFusionInput,
    today: date,
    config: EosFusionConfig = DEFAULT_CONFIG,
) -> GuardOutcome:
    """
    Override the baseline when the live NDVI signal contradicts a projection.

    - Active canopy conflict: GDD >= 100% but NDVI above the active-canopy
      threshold without visible senescence. Maturity is forbidden, a past GDD
      date is replaced by a forward projection and confidence is capped.
    - Confirmed maturity: GDD >= 100% and NDVI below the maturity threshold.
      The computed date is kept as is, even when it is in the past.
    - Stale NDVI projection: the NDVI date chosen is in the past but the
      canopy is still above the vegetative threshold. A future GDD date
      replaces it, otherwise the date is projected forward and capped.
    - Past GDD projection: a GDD date in the past with no contradiction is
      kept, with confidence capped and a warning.
    - Otherwise the baseline passes through unchanged.
    """
    if fusion_input.gdd_required > 0 and fusion_input.gdd_progress >= 1.0:
        if (
            fusion_input.current_ndvi > config.ndvi_active_canopy
            and fusion_input.ndvi_decline_rate <= config.slow_decline_rate
        ):
            return _resolve_active_canopy_conflict(baseline, fusion_input, today, config)

        if fusion_input.current_ndvi < config.ndvi_maturity:
            warnings = list(baseline.warnings)
            if baseline.eos < today:
                warnings.append(f"Maturação já ocorreu em {format_date(baseline.eos)} - colheita deve ser imediata")
            logger.info(f"[SanityGuard] Maturity confirmed by GDD and NDVI - keeping EOS {baseline.eos}")
            confirmed = replace(
                baseline,
                explanation=(
                    f"{baseline.explanation} Maturação fisiológica atingida (GDD 100%) e confirmada por NDVI."
                ),
                factors=baseline.factors + [
                    f"GDD: {fusion_input.gdd_progress * 100:.0f}% - maturação fisiológica",
                    f"NDVI: {fusion_input.current_ndvi * 100:.0f}% - senescência confirmada",
                ],
                warnings=warnings,
            )
            return GuardOutcome(
                baseline=confirmed,
                rule=RULE_CONFIRMED_MATURITY,
                agreement_bonus=config.agreement_bonus,
            )

    if baseline.eos >= today:
        return GuardOutcome(baseline=baseline, rule=RULE_PASSTHROUGH)

    if (
        baseline.method in ("NDVI", "FUSION")
        and fusion_input.eos_ndvi is not None
        and fusion_input.eos_ndvi < today
        and fusion_input.current_ndvi > config.ndvi_vegetative_min
    ):
        return _resolve_stale_ndvi_projection(baseline, fusion_input, today, config)

    if baseline.method == "GDD":
        cap = config.past_gdd_confidence_cap
        logger.info(f"[SanityGuard] GDD EOS {baseline.eos} in the past - confidence capped at {cap}")
        flagged = replace(
            baseline,
            confidence=min(baseline.confidence, cap),
            warnings=baseline.warnings + [
                f"GDD EOS ({format_date(baseline.eos)}) no passado - confiança reduzida"
            ],
        )
        return GuardOutcome(baseline=flagged, rule=RULE_PAST_GDD, confidence_cap=cap)

    return GuardOutcome(baseline=baseline, rule=RULE_PASSTHROUGH)


# ==================== STAGE 5: WATER-STRESS ADJUSTER ====================

def apply_water_stress(
    baseline: Baseline,
    fusion_input: EosFusionInput,
    config: EosFusionConfig = DEFAULT_CONFIG,
) -> WaterStressOutcome:
    """Shift EOS earlier by stress severity and relabel pure NDVI/GDD methods."""
    level = fusion_input.water_stress_level
    adjustment = min(0, int(config.water_stress_adjustment_days.get(level, 0)))
    method = baseline.method
    factors: List[str] = []
    warnings: List[str] = []

    if adjustment != 0:
        method = ADJUSTED_METHODS.get(method, method)
        factors.append(f"Ajuste hídrico: {adjustment} dias (estresse {level})")
        logger.info(f"[WaterStress] {level}: EOS shifted {adjustment} days, method {baseline.method} -> {method}")

    stress_days = fusion_input.stress_days
    yield_impact = abs(fusion_input.yield_impact) if fusion_input.yield_impact is not None else None
    yield_risk = (
        level == "CRITICAL"
        or (stress_days is not None and stress_days >= config.yield_risk_stress_days)
        or (yield_impact is not None and yield_impact >= config.yield_risk_impact_pct)
    )

    if yield_risk:
        days_text = f"{stress_days:.0f} dias" if stress_days is not None else "dias n/d"
        impact_text = f"{yield_impact:.0f}%" if yield_impact is not None else "n/d"
        warnings.append(
            f"Risco à produtividade: estresse hídrico {level} ({days_text}), impacto estimado {impact_text}"
        )
        factors.append("Estresse hídrico acelera senescência")
    elif level == "HIGH":
        days_text = f"{stress_days:.0f} dias de estresse" if stress_days is not None else "dias n/d"
        warnings.append(f"Estresse hídrico elevado: {days_text}")

    return WaterStressOutcome(
        method=method,
        eos=baseline.eos + timedelta(days=adjustment),
        adjustment_days=adjustment,
        factors=factors,
        warnings=warnings,
    )


# ==================== STAGE 6: CONFIDENCE SCORER ====================

def _fusion_quality_bonus(
    fusion_input: EosFusionInput,
    config: EosFusionConfig,
    details: List[str],
) -> Tuple[int, int]:
    metrics = fusion_input.fusion_metrics
    if metrics is None or not fusion_input.has_ndvi:
        return 0, 0

    factor = config.beta_quality_factor if metrics.is_beta else 1.0
    beta_note = " (beta)" if metrics.is_beta else ""

    quality_bonus = 0
    if metrics.max_gap_days < config.quality_max_gap_days and metrics.continuity_score >= config.quality_min_continuity:
        quality_bonus = int(config.quality_bonus * factor)
        if quality_bonus > 0:
            details.append(
                f"Série contínua (max gap {metrics.max_gap_days}d, continuidade "
                f"{metrics.continuity_score:.0%}): +{quality_bonus}%{beta_note}"
            )

    radar_bonus = 0
    if metrics.gaps_filled > 0 and metrics.radar_contribution > 0:
        raw = min(config.radar_bonus_max, round(metrics.radar_contribution * config.radar_bonus_scale))
        radar_bonus = int(raw * factor)
        if radar_bonus > 0:
            details.append(f"{metrics.gaps_filled} gap(s) preenchidos por radar: +{radar_bonus}%{beta_note}")

    return max(0, quality_bonus), max(0, radar_bonus)


def score_confidence(
    guard: GuardOutcome,
    final_method: str,
    fusion_input: EosFusionInput,
    config: EosFusionConfig = DEFAULT_CONFIG,
) -> ConfidenceBreakdown:
    """
    confidence = clamp(base + bonuses, 0, 100), then capped.

    Caps (active canopy conflict, no data) are applied last, as a clamp, so
    no bonus can lift the score above them.
    """
    details: List[str] = []
    base = guard.baseline.confidence
    convergence_bonus = config.convergence_bonus if final_method == "FUSION" else 0
    quality_bonus, radar_bonus = _fusion_quality_bonus(fusion_input, config, details)

    caps = []
    if guard.confidence_cap is not None:
        caps.append(guard.confidence_cap)
    if guard.baseline.no_data:
        caps.append(config.no_data_confidence_cap)
    cap = min(caps) if caps else None

    score = base + guard.agreement_bonus + convergence_bonus + quality_bonus + radar_bonus
    score = max(0, min(100, score))
    if cap is not None and score > cap:
        details.append(f"Confiança limitada a {cap}%")
        score = cap

    return ConfidenceBreakdown(
        base=base,
        agreement_bonus=guard.agreement_bonus,
        convergence_bonus=convergence_bonus,
        quality_bonus=quality_bonus,
        radar_bonus=radar_bonus,
        cap=cap,
        final=int(score),
        details=details,
    )


# ==================== STAGE 7: PHENOLOGICAL STAGE CLASSIFIER ====================

def classify_phenological_stage(
    fusion_input: EosFusionInput,
    config: EosFusionConfig = DEFAULT_CONFIG,
    maturity_forbidden: bool = False,
) -> str:
    """
    Current phenological stage, NDVI prioritized over GDD progress.

    1. NDVI below the maturity threshold -> MATURITY
    2. NDVI above the vegetative threshold, flat or growing -> VEGETATIVE
    3. Otherwise banded by GDD progress. A thermal MATURITY contradicted by
       an active canopy is reported as GRAIN_FILLING; one with NDVI still at
       or above the senescence start is reported as SENESCENCE.
    """
    if fusion_input.current_ndvi < config.ndvi_maturity:
        return "MATURITY"

    if fusion_input.current_ndvi > config.ndvi_vegetative_min and fusion_input.ndvi_decline_rate <= 0:
        return "VEGETATIVE"

    progress = fusion_input.gdd_progress
    vegetative_end, reproductive_end, grain_filling_end, senescence_end = config.gdd_stage_bands
    if progress < vegetative_end:
        return "VEGETATIVE"
    if progress < reproductive_end:
        return "REPRODUCTIVE"
    if progress < grain_filling_end:
        return "GRAIN_FILLING"
    if progress < senescence_end:
        return "SENESCENCE"
    if maturity_forbidden:
        return "GRAIN_FILLING"
    if fusion_input.current_ndvi >= config.ndvi_senescence_start:
        return "SENESCENCE"
    return "MATURITY"


# ==================== STAGE 8: EXPLANATION BUILDER ====================

def _unique_preserve_order(items: List[str]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


def build_fusion_result(
    fusion_input: EosFusionInput,
    today: date,
    guard: GuardOutcome,
    water: WaterStressOutcome,
    confidence: ConfidenceBreakdown,
    phenological_stage: str,
    config: EosFusionConfig = DEFAULT_CONFIG,
) -> EosFusionResult:
    baseline = guard.baseline
    factors = baseline.factors + water.factors + confidence.details
    warnings = baseline.warnings + water.warnings

    explanation = baseline.explanation
    if water.adjustment_days != 0:
        explanation = f"{explanation} Ajuste por estresse hídrico: {water.adjustment_days} dias."

    cycle_days = (water.eos - fusion_input.planting_date).days
    if cycle_days > 0:
        factors.append(f"Ciclo estimado: {cycle_days} dias após o plantio")
    else:
        warnings.append(
            f"EOS estimado ({format_date(water.eos)}) não é posterior ao plantio "
            f"({format_date(fusion_input.planting_date)})"
        )

    projections = FusionProjections(
        ndvi=ProjectionSnapshot(
            date=fusion_input.eos_ndvi,
            confidence=fusion_input.ndvi_confidence,
            status=get_projection_status(fusion_input.eos_ndvi, today),
        ),
        gdd=ProjectionSnapshot(
            date=fusion_input.eos_gdd,
            confidence=config.gdd_score(fusion_input.gdd_confidence),
            status=get_gdd_projection_status(fusion_input.gdd_progress, fusion_input.eos_gdd, today),
        ),
        water_adjustment=water.adjustment_days,
    )

    return EosFusionResult(
        eos=water.eos,
        method=water.method,
        confidence=confidence.final,
        phenological_stage=phenological_stage,
        passed=water.eos < today,
        explanation=explanation,
        factors=_unique_preserve_order(factors),
        warnings=_unique_preserve_order(warnings),
        projections=projections,
    )


# ==================== ENTRY POINT ====================

def _resolve_today(today: Optional[Union[date, datetime]]) -> date:
    if today is None:
        return date.today()
    if isinstance(today, datetime):
        return today.date()
    return today


def calculate_fused_eos(
    data: Union[Mapping[str, Any], EosFusionInput],
    today: Optional[Union[date, datetime]] = None,
    config: Optional[EosFusionConfig] = None,
) -> EosFusionResult:
    """
    Estimate the End-Of-Season date by fusing NDVI and GDD projections.

    Args:
        data: Fusion request (mapping with snake_case keys or EosFusionInput).
        today: Frozen reference date. Read from the system clock once when omitted.
        config: Thresholds; defaults to DEFAULT_CONFIG.

    Returns:
        EosFusionResult. eos is always present, even without any projection.

    Raises:
        InvalidInputError: malformed request.
    """
    config = config or DEFAULT_CONFIG
    today = _resolve_today(today)

    fusion_input = normalize_fusion_input(data)
    baseline = select_baseline(fusion_input, today, config)
    guard = apply_sanity_guard(baseline, fusion_input, today, config)
    water = apply_water_stress(guard.baseline, fusion_input, config)
    confidence = score_confidence(guard, water.method, fusion_input, config)
    stage = classify_phenological_stage(fusion_input, config, guard.maturity_forbidden)

    result = build_fusion_result(fusion_input, today, guard, water, confidence, stage, config)
    logger.info(
        f"[EosFusion] {fusion_input.crop_type or 'N/A'}: eos={result.eos} method={result.method} "
        f"confidence={result.confidence} stage={result.phenological_stage} rule={guard.rule}"
    )
    return result
