"""
EOS Fusion Service - Presentation helpers.

Pure lookup tables and status strings consumed by reports and the API.
"""
from datetime import date
from typing import Optional

CONFIDENCE_LABEL_BANDS = (
    (70, "ALTA"),
    (40, "MEDIA"),
    (0, "BAIXA"),
)

METHOD_LABELS = {
    "NDVI": "NDVI Histórico",
    "GDD": "Soma Térmica",
    "FUSION": "NDVI + GDD",
    "NDVI_ADJUSTED": "NDVI + Hídrico",
    "GDD_ADJUSTED": "GDD + Hídrico",
}

PHENOLOGICAL_STAGE_LABELS = {
    "VEGETATIVE": "Vegetativo",
    "REPRODUCTIVE": "Reprodutivo",
    "GRAIN_FILLING": "Enchimento de Grãos",
    "SENESCENCE": "Senescência",
    "MATURITY": "Maturação",
}


def get_confidence_label(confidence: float) -> str:
    """Bucket a 0-100 confidence score into ALTA / MEDIA / BAIXA."""
    for floor, label in CONFIDENCE_LABEL_BANDS:
        if confidence >= floor:
            return label
    return "BAIXA"


def get_method_label(method: str) -> str:
    return METHOD_LABELS.get(method, method)


def get_phenological_stage_label(stage: str) -> str:
    return PHENOLOGICAL_STAGE_LABELS.get(stage, stage)


def format_date(value: Optional[date]) -> str:
    if value is None:
        return "N/A"
    return value.strftime("%d/%m/%y")


def get_projection_status(eos_date: Optional[date], today: date) -> str:
    """Human-readable position of a projected date relative to today."""
    if eos_date is None:
        return "Indisponível"

    diff_days = (eos_date - today).days
    if diff_days < 0:
        return f"Passou ({abs(diff_days)}d atrás)"
    if diff_days == 0:
        return "Hoje"
    return f"Em {diff_days}d"


def get_gdd_projection_status(gdd_progress: float, eos_gdd: Optional[date], today: date) -> str:
    """Status of the thermal projection, reporting progress once maturity is reached."""
    if gdd_progress >= 1.0:
        return f"Maturação atingida ({gdd_progress * 100:.0f}%)"

    if eos_gdd is None:
        return "Calculando..."

    diff_days = (eos_gdd - today).days
    if diff_days < 0:
        return "Deveria ter maturado"
    if diff_days == 0:
        return "Maturação hoje"
    return f"Em {diff_days}d ({gdd_progress * 100:.0f}%)"
