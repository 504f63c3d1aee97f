"""
EOS Fusion Router.
Provides endpoints for harvest-date (End-Of-Season) estimation.
"""
import logging

from fastapi import APIRouter, HTTPException, status

from app.schemas.eos_fusion_schemas import (
    EosFusionRequest,
    EosFusionResponse,
    FusionLabelsResponse,
)
from app.services.eos_fusion_service import calculate_fused_eos, InvalidInputError
from app.services.eos_fusion_helpers import (
    CONFIDENCE_LABEL_BANDS,
    METHOD_LABELS,
    PHENOLOGICAL_STAGE_LABELS,
    get_confidence_label,
    get_method_label,
    get_phenological_stage_label,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/eos-fusion", tags=["eos-fusion"])


@router.post("/calculate", response_model=EosFusionResponse)
def calculate_eos(request: EosFusionRequest):
    """Fuse NDVI and GDD projections into a single harvest date."""
    payload = request.model_dump(exclude={"as_of"})

    try:
        result = calculate_fused_eos(payload, today=request.as_of)
    except InvalidInputError as e:
        logger.warning(f"[EosFusionRouter] Rejected request: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    data = result.to_dict()
    data["method_label"] = get_method_label(result.method)
    data["confidence_label"] = get_confidence_label(result.confidence)
    data["phenological_stage_label"] = get_phenological_stage_label(result.phenological_stage)
    return EosFusionResponse(**data)


@router.get("/labels", response_model=FusionLabelsResponse)
def get_labels():
    return FusionLabelsResponse(
        methods=dict(METHOD_LABELS),
        phenological_stages=dict(PHENOLOGICAL_STAGE_LABELS),
        confidence_bands=[
            {"min_confidence": floor, "label": label}
            for floor, label in CONFIDENCE_LABEL_BANDS
        ],
    )
