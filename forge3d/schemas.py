from datetime import datetime
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, EmailStr, Field, StrictInt

from .models import CreditTransaction, GeneratedModel, User

# Request bodies use the camelCase keys the web client sends

class InitializeCreditsRequest(BaseModel):
    user_id: Optional[str] = Field(None, alias="userId")
    email: Optional[EmailStr] = None
    class Config:
        populate_by_name = True

class SpendCreditsRequest(BaseModel):
    user_id: str = Field(alias="userId", min_length=1)
    service_type: str = Field(alias="serviceType", min_length=1)
    metadata: Optional[Dict[str, Any]] = None
    class Config:
        populate_by_name = True

class GenerateRequest(BaseModel):
    mode: Literal["preview", "refine", "image"] = "preview"
    prompt: Optional[str] = None
    preview_task_id: Optional[str] = Field(None, alias="previewTaskId")
    image_url: Optional[str] = Field(None, alias="imageUrl")
    class Config:
        populate_by_name = True

class SaveModelRequest(BaseModel):
    task_id: str = Field(alias="taskId", min_length=1)
    service_type: str = Field(alias="serviceType", min_length=1)
    credits_cost: StrictInt = Field(alias="creditsCost")
    model_url: Optional[str] = Field(None, alias="modelUrl")
    thumbnail_url: Optional[str] = Field(None, alias="thumbnailUrl")
    prompt: Optional[str] = None
    status: Optional[str] = None
    class Config:
        populate_by_name = True
        protected_namespaces = ()

class RateModelRequest(BaseModel):
    rating: StrictInt
    comment: Optional[str] = None

class ReuseModelRequest(BaseModel):
    original_model_id: str = Field(alias="originalModelId", min_length=1)
    new_prompt: Optional[str] = Field(None, alias="newPrompt")
    class Config:
        populate_by_name = True

class SimilarModelsRequest(BaseModel):
    prompt: str = Field(min_length=1)
    threshold: float = Field(0.3, ge=0.0, le=1.0)
    limit: int = Field(5, ge=1, le=50)

# Response serializers

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def serialize_model(model: GeneratedModel) -> Dict[str, Any]:
    return {
        "id": model.id,
        "userId": model.user_id,
        "serviceType": model.service_type,
        "modelUrl": model.model_url,
        "thumbnailUrl": model.thumbnail_url,
        "prompt": model.prompt,
        "creditsCost": model.credits_cost,
        "status": model.status,
        "rating": model.rating,
        "comment": model.comment,
        "createdAt": _iso(model.created_at),
        "updatedAt": _iso(model.updated_at),
    }

def serialize_user(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {"id": user.id, "email": user.email, "createdAt": _iso(user.created_at)}

def serialize_admin_model(model: GeneratedModel) -> Dict[str, Any]:
    data = serialize_model(model)
    data["user"] = serialize_user(model.user)
    return data

def serialize_similar_model(model: GeneratedModel, similarity: float, user_id: str) -> Dict[str, Any]:
    return {
        "id": model.id,
        "prompt": model.prompt,
        "modelUrl": model.model_url,
        "thumbnailUrl": model.thumbnail_url,
        "serviceType": model.service_type,
        "createdAt": _iso(model.created_at),
        "userId": model.user_id,
        "similarity": similarity,
        "isOwnModel": model.user_id == user_id,
    }

def serialize_reused_model(model: GeneratedModel) -> Dict[str, Any]:
    return {
        "id": model.id,
        "prompt": model.prompt,
        "modelUrl": model.model_url,
        "thumbnailUrl": model.thumbnail_url,
        "serviceType": model.service_type,
        "createdAt": _iso(model.created_at),
        "creditsCost": model.credits_cost,
        "status": model.status,
    }

def serialize_transaction(tx: CreditTransaction) -> Dict[str, Any]:
    service_type = None
    if tx.service_type is not None:
        service_type = {"name": tx.service_type.name, "description": tx.service_type.description}
    return {
        "id": tx.id,
        "userId": tx.user_id,
        "amount": tx.amount,
        "type": tx.type,
        "description": tx.description,
        "balanceAfter": tx.balance_after,
        "metadata": tx.meta,
        "serviceType": service_type,
        "createdAt": _iso(tx.created_at),
    }

def serialize_spend_transaction(tx: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "amount": tx.amount,
        "description": tx.description,
        "createdAt": _iso(tx.created_at),
    }
