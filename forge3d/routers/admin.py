from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
import logging

from ..auth import CurrentUser, require_admin
from ..db import get_db
from ..schemas import serialize_admin_model
from ..services.model_records import list_all_models

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200

@router.get("/models")
def all_models(
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    models, total, stats = list_all_models(db, limit=min(limit, MAX_PAGE_SIZE), offset=offset)
    logger.info(f"Admin {admin.id} listed {len(models)} of {total} models")
    return {
        "models": [serialize_admin_model(m) for m in models],
        "total": total,
        "stats": stats,
    }
