from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from ..auth import CurrentUser, get_current_user
from ..db import get_db
from ..exceptions import ValidationError
from ..schemas import (
    InitializeCreditsRequest,
    SpendCreditsRequest,
    serialize_spend_transaction,
    serialize_transaction,
)
from ..services.catalog import catalog
from ..services.credits import (
    get_balance,
    get_credit_history,
    get_credit_stats,
    initialize_user_credits,
    spend_credits,
)

router = APIRouter()

def _require_user_id(user_id: Optional[str]) -> str:
    if not user_id:
        raise ValidationError("User ID is required")
    return user_id

@router.post("/initialize")
def initialize(
    body: Optional[InitializeCreditsRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    body = body or InitializeCreditsRequest()
    if body.user_id and body.user_id != user.id:
        raise ValidationError("User ID does not match the session")
    head = initialize_user_credits(db, user.id, body.email or user.email)
    return {
        "success": True,
        "credits": head.current_credits,
        "message": "User credits initialized",
    }

@router.get("/balance")
def balance(user_id: Optional[str] = Query(None, alias="userId"), db: Session = Depends(get_db)):
    return {"success": True, "credits": get_balance(db, _require_user_id(user_id))}

@router.get("/stats")
def stats(user_id: Optional[str] = Query(None, alias="userId"), db: Session = Depends(get_db)):
    result = get_credit_stats(db, _require_user_id(user_id))
    return {
        "success": True,
        "currentCredits": result["current_credits"],
        "totalEarned": result["total_earned"],
        "totalSpent": result["total_spent"],
        "recentTransactions": [serialize_transaction(tx) for tx in result["recent_transactions"]],
    }

@router.get("/history")
def history(
    user_id: Optional[str] = Query(None, alias="userId"),
    limit: int = Query(20, ge=1),
    db: Session = Depends(get_db),
):
    rows = get_credit_history(db, _require_user_id(user_id), limit=limit)
    return {"success": True, "history": [serialize_transaction(tx) for tx in rows]}

@router.post("/spend")
def spend(body: SpendCreditsRequest, db: Session = Depends(get_db)):
    result = spend_credits(db, body.user_id, body.service_type, body.metadata)
    return {
        "success": True,
        "transaction": serialize_spend_transaction(result.transaction),
        "remainingCredits": result.remaining_credits,
        "message": "Credits spent",
    }

@router.get("/services")
def services(db: Session = Depends(get_db)):
    return {
        "success": True,
        "services": [
            {"id": entry.id, "name": entry.name, "description": entry.description, "creditCost": entry.credit_cost}
            for entry in catalog.ensure_loaded(db).entries()
        ],
    }
