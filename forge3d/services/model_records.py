"""
Generated model records: listing, saving, rating, reuse and similarity search.

Ownership is enforced on every read and write. A record that does not exist and
a record owned by another user both surface as ``NotFoundOrForbiddenError``.
"""
import logging
import uuid
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..exceptions import DuplicateReuseError, NotFoundOrForbiddenError, PersistenceError, ValidationError
from ..models import GeneratedModel, ModelStatus
from ..schemas import serialize_model
from .credits import ensure_user
from .similarity import EXACT_MATCH_SCORE, combined_similarity

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (ModelStatus.COMPLETED, ModelStatus.FAILED)

class SimilarModel(NamedTuple):
    model: GeneratedModel
    similarity: float

class SimilarityResult(NamedTuple):
    matches: List[SimilarModel]
    exact_match: bool
    total_checked: int

def _owned_model(db: Session, user_id: str, model_id: str) -> GeneratedModel:
    model = (
        db.query(GeneratedModel)
        .filter(GeneratedModel.id == model_id, GeneratedModel.user_id == user_id)
        .first()
    )
    if model is None:
        raise NotFoundOrForbiddenError("Model")
    return model

def _commit(db: Session, operation: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(operation, str(getattr(e, "orig", None) or e)) from e

def _coerce_status(value) -> ModelStatus:
    try:
        return ModelStatus(value)
    except ValueError:
        raise ValidationError("Invalid status", details=f"'{value}' is not a model status")

def list_models(db: Session, user_id: str, limit: int = 50, offset: int = 0) -> Tuple[List[GeneratedModel], int]:
    query = db.query(GeneratedModel).filter(GeneratedModel.user_id == user_id)
    total = query.count()
    models = (
        query.order_by(GeneratedModel.created_at.desc(), GeneratedModel.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return models, total

def save_model(
    db: Session,
    user_id: str,
    task_id: str,
    service_type: str,
    credits_cost: int,
    model_url: Optional[str] = None,
    thumbnail_url: Optional[str] = None,
    prompt: Optional[str] = None,
    status=ModelStatus.COMPLETED,
) -> GeneratedModel:
    """Create or update the caller's record keyed by provider task id."""
    if not task_id or not service_type:
        raise ValidationError("Missing required fields", details="taskId and serviceType are required")
    if isinstance(credits_cost, bool) or not isinstance(credits_cost, int) or credits_cost < 0:
        raise ValidationError("Invalid creditsCost", details="creditsCost must be a non-negative integer")
    model_status = _coerce_status(status)

    model = db.get(GeneratedModel, task_id)
    if model is not None and model.user_id != user_id:
        raise NotFoundOrForbiddenError("Model")

    ensure_user(db, user_id)
    if model is None:
        model = GeneratedModel(
            id=task_id,
            user_id=user_id,
            service_type=service_type,
            credits_cost=credits_cost,
            prompt=prompt,
        )
        db.add(model)
    # An existing record keeps the cost and prompt it was created with
    model.model_url = model_url
    model.thumbnail_url = thumbnail_url
    model.status = model_status.value
    _commit(db, "save_model")
    db.refresh(model)
    logger.info(f"Saved model {task_id} for user {user_id} ({model_status.value})")
    return model

def create_pending_model(
    db: Session,
    user_id: str,
    task_id: str,
    service_type: str,
    credits_cost: int,
    prompt: Optional[str] = None,
) -> GeneratedModel:
    """Record a freshly created provider task. Runs as its own unit, after the spend has committed."""
    ensure_user(db, user_id)
    model = GeneratedModel(
        id=task_id,
        user_id=user_id,
        service_type=service_type,
        credits_cost=credits_cost,
        prompt=prompt,
        status=ModelStatus.PENDING.value,
    )
    db.add(model)
    _commit(db, "create_model")
    return model

def apply_task_status(
    db: Session,
    user_id: str,
    task_id: str,
    status: ModelStatus,
    model_url: Optional[str] = None,
    thumbnail_url: Optional[str] = None,
) -> int:
    """Move the caller's record for ``task_id`` to a terminal status.

    Applying the same terminal status twice writes the same values again.
    Returns the number of records updated.
    """
    if status not in TERMINAL_STATUSES:
        return 0
    values: Dict[Any, Any] = {GeneratedModel.status: status.value}
    if status == ModelStatus.COMPLETED:
        values[GeneratedModel.model_url] = model_url
        values[GeneratedModel.thumbnail_url] = thumbnail_url
    updated = (
        db.query(GeneratedModel)
        .filter(GeneratedModel.id == task_id, GeneratedModel.user_id == user_id)
        .update(values, synchronize_session=False)
    )
    _commit(db, "update_model_status")
    if updated:
        logger.info(f"Model {task_id} is now {status.value}")
    return updated

def delete_model(db: Session, user_id: str, model_id: str) -> None:
    model = _owned_model(db, user_id, model_id)
    db.delete(model)
    _commit(db, "delete_model")
    logger.info(f"Deleted model {model_id} for user {user_id}")

def rate_model(
    db: Session,
    user_id: str,
    model_id: str,
    rating: int,
    comment: Optional[str] = None,
) -> GeneratedModel:
    # Any status can be rated, including PENDING and FAILED
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Invalid rating", details="Rating must be an integer between 1 and 5")
    model = _owned_model(db, user_id, model_id)
    model.rating = rating
    model.comment = comment
    _commit(db, "rate_model")
    db.refresh(model)
    return model

def reuse_model(
    db: Session,
    user_id: str,
    original_model_id: str,
    new_prompt: Optional[str] = None,
) -> GeneratedModel:
    """Clone a completed model into a new zero-cost record, without calling the provider."""
    original = _owned_model(db, user_id, original_model_id)
    if original.status != ModelStatus.COMPLETED.value or not original.model_url:
        raise ValidationError(
            "Model is not available for reuse",
            details="Only completed models with a model file can be reused",
        )

    prompt = new_prompt or original.prompt
    existing = (
        db.query(GeneratedModel)
        .filter(
            GeneratedModel.user_id == user_id,
            GeneratedModel.model_url == original.model_url,
            GeneratedModel.prompt == prompt,
            GeneratedModel.id != original.id,
        )
        .first()
    )
    if existing is not None:
        raise DuplicateReuseError(serialize_model(existing))

    reused = GeneratedModel(
        id=str(uuid.uuid4()),
        user_id=user_id,
        service_type=original.service_type,
        model_url=original.model_url,
        thumbnail_url=original.thumbnail_url,
        prompt=prompt,
        credits_cost=0,
        status=ModelStatus.COMPLETED.value,
    )
    db.add(reused)
    _commit(db, "reuse_model")
    db.refresh(reused)
    logger.info(f"User {user_id} reused model {original_model_id} as {reused.id}")
    return reused

def find_similar_models(
    db: Session,
    user_id: str,
    prompt: str,
    threshold: float = 0.3,
    limit: int = 5,
) -> SimilarityResult:
    if not prompt or not prompt.strip():
        raise ValidationError("Prompt is required")

    candidates = (
        db.query(GeneratedModel)
        .filter(
            GeneratedModel.user_id == user_id,
            GeneratedModel.status == ModelStatus.COMPLETED.value,
            GeneratedModel.model_url.isnot(None),
            GeneratedModel.prompt.isnot(None),
        )
        .order_by(GeneratedModel.created_at.desc())
        .all()
    )

    scored = []
    for model in candidates:
        score = combined_similarity(prompt, model.prompt)
        if score >= threshold:
            scored.append(SimilarModel(model=model, similarity=score))
    scored.sort(key=lambda match: match.similarity, reverse=True)
    matches = scored[:limit]

    return SimilarityResult(
        matches=matches,
        exact_match=any(match.similarity >= EXACT_MATCH_SCORE for match in matches),
        total_checked=len(candidates),
    )

def list_all_models(db: Session, limit: int = 50, offset: int = 0) -> Tuple[List[GeneratedModel], int, Dict[str, Any]]:
    """Every user's models, newest first, with aggregate rating stats."""
    total = db.query(func.count(GeneratedModel.id)).scalar() or 0
    models = (
        db.query(GeneratedModel)
        .options(joinedload(GeneratedModel.user))
        .order_by(GeneratedModel.created_at.desc(), GeneratedModel.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    rated, average = (
        db.query(func.count(GeneratedModel.rating), func.avg(GeneratedModel.rating))
        .filter(GeneratedModel.rating.isnot(None))
        .one()
    )
    stats = {
        "totalRatedModels": rated or 0,
        "averageRating": round(float(average), 2) if average is not None else 0,
    }
    return models, total, stats
