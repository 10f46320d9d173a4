from typing import Optional
from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
import logging

from ..auth import CurrentUser, get_current_user
from ..db import get_db
from ..exceptions import InsufficientCreditsError, PersistenceError, ValidationError
from ..generation.providers import (
    GenerationProvider,
    GenerationRequest,
    extract_model_urls,
    get_generation_provider,
    map_provider_status,
)
from ..models import ModelStatus
from ..schemas import GenerateRequest
from ..services.catalog import catalog
from ..services.credits import get_balance, spend_credits
from ..services.model_records import apply_task_status, create_pending_model

router = APIRouter()
logger = logging.getLogger(__name__)

@router.post("")
async def create_generation(
    body: GenerateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    provider: GenerationProvider = Depends(get_generation_provider),
):
    """
    Start a generation task and pay for it.

    Order matters: affordability check, provider call, spend, model record.
    A provider failure aborts before anything is spent. A failed model record
    write after the spend is reported as a warning and the spend stands.
    """
    request = GenerationRequest(
        mode=body.mode,
        prompt=body.prompt,
        preview_task_id=body.preview_task_id,
        image_url=body.image_url,
    )
    request.validate()
    service_type = request.service_type
    # Blocking database work stays off the event loop
    loaded = await run_in_threadpool(catalog.ensure_loaded, db)
    cost = loaded.cost(service_type)

    available = await run_in_threadpool(get_balance, db, user.id)
    if available < cost:
        raise InsufficientCreditsError(required=cost, available=available, user_id=user.id)

    task_id = await provider.create_task(request)
    logger.info(f"Created {request.mode} task {task_id} for user {user.id}")

    spent = await run_in_threadpool(
        spend_credits,
        db,
        user.id,
        service_type,
        metadata={"taskId": task_id, "mode": request.mode, "prompt": request.prompt},
    )

    response = {
        "taskId": task_id,
        "result": task_id,
        "mode": request.mode,
        "serviceType": service_type,
        "creditsCost": cost,
        "remainingCredits": spent.remaining_credits,
        "transactionId": spent.transaction.id,
    }

    try:
        await run_in_threadpool(
            create_pending_model, db, user.id, task_id, service_type, cost, prompt=request.prompt
        )
    except PersistenceError as e:
        logger.error(f"Spend committed but model record for task {task_id} was not saved: {e.details}")
        response["warning"] = "Generation started but the model record could not be saved"

    return response

@router.get("")
async def task_status(
    task_id: Optional[str] = Query(None, alias="taskId"),
    task_type: Optional[str] = Query(None, alias="taskType"),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    provider: GenerationProvider = Depends(get_generation_provider),
):
    if not task_id:
        raise ValidationError("Task ID is required")

    payload = await provider.get_task(task_id, task_type)
    model_status = map_provider_status(payload.get("status"))
    if model_status != ModelStatus.PENDING:
        model_url, thumbnail_url = extract_model_urls(payload)
        await run_in_threadpool(
            apply_task_status, db, user.id, task_id, model_status, model_url, thumbnail_url
        )

    return {**payload, "modelStatus": model_status.value}
