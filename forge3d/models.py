import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Integer, Boolean, ForeignKey, Text, JSON, Index, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .db import Base

def _uuid() -> str:
    return str(uuid.uuid4())

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class TransactionType(str, enum.Enum):
    EARN = "EARN"
    SPEND = "SPEND"
    BONUS = "BONUS"
    REFUND = "REFUND"

class ModelStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

class User(Base):
    __tablename__ = "users"
    # Issued by the identity provider, opaque to us
    id = Column(String(255), primary_key=True)
    email = Column(String(255), index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    credits = relationship("UserCredits", back_populates="user", uselist=False)

class ServiceType(Base):
    __tablename__ = "service_types"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text)
    credit_cost = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class UserCredits(Base):
    """Ledger head: one row per user, summarises credit_transactions."""
    __tablename__ = "user_credits"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(255), ForeignKey("users.id"), unique=True, nullable=False)
    current_credits = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="credits")

    __table_args__ = (
        CheckConstraint("current_credits >= 0", name="ck_user_credits_non_negative"),
    )

class CreditTransaction(Base):
    """Ledger body: append-only, rows are never updated or deleted."""
    __tablename__ = "credit_transactions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False)
    service_type_id = Column(Integer, ForeignKey("service_types.id"), nullable=True)
    amount = Column(Integer, nullable=False)  # +/- credits
    type = Column(String(20), nullable=False)
    description = Column(Text)
    balance_after = Column(Integer, nullable=False)
    meta = Column("metadata", JSON, nullable=True)
    idempotency_key = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    service_type = relationship("ServiceType")

    __table_args__ = (
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
    )

class GeneratedModel(Base):
    __tablename__ = "generated_models"
    # Provider task id for generated records, a fresh uuid for reused ones
    id = Column(String(255), primary_key=True)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False, index=True)
    service_type = Column(String(100), nullable=False)
    model_url = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    prompt = Column(Text, nullable=True)
    credits_cost = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=ModelStatus.PENDING.value)
    rating = Column(Integer, nullable=True)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User")

    __table_args__ = (
        CheckConstraint("rating IS NULL OR (rating >= 1 AND rating <= 5)", name="ck_generated_models_rating"),
        Index("ix_generated_models_user_created", "user_id", "created_at"),
    )
