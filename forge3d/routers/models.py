from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import CurrentUser, get_current_user
from ..db import get_db
from ..exceptions import ValidationError
from ..models import ModelStatus
from ..schemas import (
    RateModelRequest,
    ReuseModelRequest,
    SaveModelRequest,
    SimilarModelsRequest,
    serialize_model,
    serialize_reused_model,
    serialize_similar_model,
)
from ..services import model_records

router = APIRouter()

MAX_PAGE_SIZE = 100

@router.get("")
def list_models(
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    models, total = model_records.list_models(db, user.id, limit=min(limit, MAX_PAGE_SIZE), offset=offset)
    return {"models": [serialize_model(m) for m in models], "total": total}

@router.post("")
def save_model(
    body: SaveModelRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    model = model_records.save_model(
        db,
        user.id,
        task_id=body.task_id,
        service_type=body.service_type,
        credits_cost=body.credits_cost,
        model_url=body.model_url,
        thumbnail_url=body.thumbnail_url,
        prompt=body.prompt,
        status=body.status or ModelStatus.COMPLETED,
    )
    return serialize_model(model)

@router.delete("")
def delete_model(
    model_id: Optional[str] = Query(None, alias="id"),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not model_id:
        raise ValidationError("Model ID is required")
    model_records.delete_model(db, user.id, model_id)
    return {"success": True}

@router.post("/similar")
def similar_models(
    body: SimilarModelsRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = model_records.find_similar_models(
        db, user.id, body.prompt, threshold=body.threshold, limit=body.limit
    )
    return {
        "similarModels": [
            serialize_similar_model(match.model, match.similarity, user.id) for match in result.matches
        ],
        "exactMatch": result.exact_match,
        "searchPrompt": body.prompt,
        "threshold": body.threshold,
        "totalChecked": result.total_checked,
    }

@router.post("/reuse")
def reuse_model(
    body: ReuseModelRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    reused = model_records.reuse_model(db, user.id, body.original_model_id, body.new_prompt)
    return {
        "success": True,
        "reusedModel": serialize_reused_model(reused),
        "originalModelId": body.original_model_id,
        "message": "Model reused successfully",
    }

@router.put("/{model_id}/rating")
def rate_model(
    model_id: str,
    body: RateModelRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    model = model_records.rate_model(db, user.id, model_id, body.rating, body.comment)
    return {
        "success": True,
        "rating": model.rating,
        "comment": model.comment,
        "message": "Rating and comment saved successfully",
    }
