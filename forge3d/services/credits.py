"""
Credit ledger.

Every balance change is one database transaction that updates the ledger head
(``user_credits``) and appends one row to the ledger body
(``credit_transactions``). Neither is ever written without the other.
"""
import logging
from typing import Any, Dict, List, NamedTuple, Optional, Union

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..config import settings
from ..exceptions import (
    InsufficientCreditsError,
    LedgerConflictError,
    PersistenceError,
    ValidationError,
)
from ..models import CreditTransaction, TransactionType, User, UserCredits
from .catalog import catalog

logger = logging.getLogger(__name__)

SIGNUP_BONUS_DESCRIPTION = "signup bonus"
CREDIT_TYPES = (TransactionType.EARN, TransactionType.BONUS, TransactionType.REFUND)

class SpendResult(NamedTuple):
    transaction: CreditTransaction
    remaining_credits: int

class CreditResult(NamedTuple):
    transaction: CreditTransaction
    new_balance: int

def signup_bonus_key(user_id: str) -> str:
    return f"signup-bonus:{user_id}"

def _ledger_failure(db: Session, user_id: str, operation: str, exc: SQLAlchemyError):
    """Roll back and translate a datastore error into a domain error."""
    db.rollback()
    error = str(getattr(exc, "orig", None) or exc)
    if isinstance(exc, OperationalError):
        # Lock timeouts, serialization failures and deadlocks: the unit did not apply
        return LedgerConflictError(user_id, error)
    return PersistenceError(operation, error)

def _get_head(db: Session, user_id: str, for_update: bool = False) -> Optional[UserCredits]:
    query = db.query(UserCredits).filter(UserCredits.user_id == user_id)
    if for_update:
        # Refresh any copy already in the identity map with the locked row
        query = query.with_for_update().populate_existing()
    return query.first()

def ensure_user(db: Session, user_id: str, email: Optional[str] = None) -> User:
    """Get or create the user row, updating the email when a new one is supplied. Does not commit."""
    user = db.get(User, user_id)
    if user is None:
        user = User(id=user_id, email=email)
        db.add(user)
        db.flush()
    elif email and user.email != email:
        user.email = email
    return user

def initialize_user_credits(db: Session, user_id: str, email: Optional[str] = None) -> UserCredits:
    """Create the ledger head with the signup bonus, once per user.

    An existing head is returned unchanged. Two concurrent first calls race on
    the unique ``user_credits.user_id`` and ``credit_transactions.idempotency_key``
    columns; the loser rolls back and returns the winner's head.
    """
    bonus = settings.signup_bonus_credits
    last_error: Optional[Exception] = None
    for _ in range(2):
        try:
            ensure_user(db, user_id, email)
            head = _get_head(db, user_id)
            if head is not None:
                db.commit()
                return head

            head = UserCredits(user_id=user_id, current_credits=bonus, total_earned=bonus, total_spent=0)
            db.add(head)
            if bonus > 0:
                db.add(CreditTransaction(
                    user_id=user_id,
                    amount=bonus,
                    type=TransactionType.EARN.value,
                    description=SIGNUP_BONUS_DESCRIPTION,
                    balance_after=bonus,
                    idempotency_key=signup_bonus_key(user_id),
                ))
            db.commit()
            logger.info(f"Initialized credits for user {user_id} with {bonus} signup credits")
            return head
        except IntegrityError as exc:
            db.rollback()
            logger.info(f"Concurrent credit initialization for user {user_id}, re-reading ledger head")
            head = _get_head(db, user_id)
            if head is not None:
                return head
            last_error = exc
        except SQLAlchemyError as exc:
            raise _ledger_failure(db, user_id, "initialize", exc) from exc
    raise PersistenceError("initialize", str(last_error))

def get_balance(db: Session, user_id: str) -> int:
    head = _get_head(db, user_id)
    return head.current_credits if head else 0

def has_enough_credits(db: Session, user_id: str, service_type: str) -> bool:
    required = catalog.ensure_loaded(db).cost(service_type)
    return get_balance(db, user_id) >= required

def spend_credits(
    db: Session,
    user_id: str,
    service_type: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> SpendResult:
    """Debit the price of ``service_type``, all or nothing.

    The balance is re-read under a row lock and the decrement is guarded by
    ``current_credits >= cost`` so concurrent spends can never overdraw,
    whatever isolation level the database runs at.
    """
    service = catalog.ensure_loaded(db).get(service_type)
    cost = service.credit_cost
    try:
        head = _get_head(db, user_id, for_update=True)
        if head is None or head.current_credits < cost:
            available = head.current_credits if head else 0
            db.rollback()
            raise InsufficientCreditsError(required=cost, available=available, user_id=user_id)

        updated = (
            db.query(UserCredits)
            .filter(UserCredits.user_id == user_id, UserCredits.current_credits >= cost)
            .update(
                {
                    UserCredits.current_credits: UserCredits.current_credits - cost,
                    UserCredits.total_spent: UserCredits.total_spent + cost,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.rollback()
            raise InsufficientCreditsError(required=cost, available=get_balance(db, user_id), user_id=user_id)

        db.refresh(head)
        remaining = head.current_credits
        transaction = CreditTransaction(
            user_id=user_id,
            service_type_id=service.id,
            amount=-cost,
            type=TransactionType.SPEND.value,
            description=f"used {service_type} service",
            balance_after=remaining,
            meta=metadata,
        )
        db.add(transaction)
        db.commit()
    except SQLAlchemyError as exc:
        raise _ledger_failure(db, user_id, "spend", exc) from exc

    logger.info(f"User {user_id} spent {cost} credits on {service_type}, {remaining} remaining")
    return SpendResult(transaction=transaction, remaining_credits=remaining)

def _coerce_credit_type(type: Union[TransactionType, str]) -> TransactionType:
    try:
        credit_type = TransactionType(type)
    except ValueError:
        raise ValidationError("Invalid transaction type", details=f"'{type}' is not a transaction type")
    if credit_type not in CREDIT_TYPES:
        raise ValidationError("Invalid transaction type", details="Credits can only be EARN, BONUS or REFUND")
    return credit_type

def _find_keyed_credit(db: Session, user_id: str, idempotency_key: str) -> Optional[CreditTransaction]:
    """Return the user's transaction already recorded under ``idempotency_key``.

    Keys are unique across the ledger, so a key recorded for another user is rejected.
    """
    existing = (
        db.query(CreditTransaction)
        .filter(CreditTransaction.idempotency_key == idempotency_key)
        .first()
    )
    if existing is not None and existing.user_id != user_id:
        raise ValidationError(
            "Idempotency key already used",
            details=f"Key '{idempotency_key}' belongs to another user's transaction",
        )
    return existing

def add_credits(
    db: Session,
    user_id: str,
    amount: int,
    type: Union[TransactionType, str] = TransactionType.EARN,
    description: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> CreditResult:
    """Credit ``amount`` to the user, creating the ledger head if needed.

    With an ``idempotency_key`` a repeated call returns the original transaction
    and applies nothing.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Invalid amount", details="Amount must be a positive integer")
    credit_type = _coerce_credit_type(type)

    try:
        if idempotency_key:
            existing = _find_keyed_credit(db, user_id, idempotency_key)
            if existing is not None:
                logger.info(f"Credit with key {idempotency_key} already applied")
                return CreditResult(transaction=existing, new_balance=get_balance(db, user_id))

        ensure_user(db, user_id)
        head = _get_head(db, user_id, for_update=True)
        if head is None:
            head = UserCredits(user_id=user_id, current_credits=amount, total_earned=amount, total_spent=0)
            db.add(head)
            db.flush()
        else:
            (
                db.query(UserCredits)
                .filter(UserCredits.user_id == user_id)
                .update(
                    {
                        UserCredits.current_credits: UserCredits.current_credits + amount,
                        UserCredits.total_earned: UserCredits.total_earned + amount,
                    },
                    synchronize_session=False,
                )
            )
            db.refresh(head)

        new_balance = head.current_credits
        transaction = CreditTransaction(
            user_id=user_id,
            amount=amount,
            type=credit_type.value,
            description=description or f"earned {amount} credits",
            balance_after=new_balance,
            idempotency_key=idempotency_key,
        )
        db.add(transaction)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if idempotency_key:
            existing = _find_keyed_credit(db, user_id, idempotency_key)
            if existing is not None:
                return CreditResult(transaction=existing, new_balance=get_balance(db, user_id))
        raise LedgerConflictError(user_id, str(getattr(exc, "orig", exc))) from exc
    except SQLAlchemyError as exc:
        raise _ledger_failure(db, user_id, "credit", exc) from exc

    logger.info(f"Credited {amount} ({credit_type.value}) to user {user_id}, balance {new_balance}")
    return CreditResult(transaction=transaction, new_balance=new_balance)

def refund_credits(db: Session, user_id: str, amount: int, reason: Optional[str] = None) -> CreditResult:
    return add_credits(db, user_id, amount, TransactionType.REFUND, reason or "credit refund")

def get_credit_history(db: Session, user_id: str, limit: int = 20) -> List[CreditTransaction]:
    return (
        db.query(CreditTransaction)
        .options(joinedload(CreditTransaction.service_type))
        .filter(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .limit(limit)
        .all()
    )

def get_credit_stats(db: Session, user_id: str) -> Dict[str, Any]:
    head = _get_head(db, user_id)
    return {
        "current_credits": head.current_credits if head else 0,
        "total_earned": head.total_earned if head else 0,
        "total_spent": head.total_spent if head else 0,
        "recent_transactions": get_credit_history(db, user_id, limit=5),
    }

def check_ledger_consistency(db: Session, user_id: str) -> List[str]:
    """Replay the ledger body against the head. Returns a list of violations, empty when consistent."""
    head = _get_head(db, user_id)
    rows = (
        db.query(CreditTransaction)
        .filter(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at, CreditTransaction.id)
        .all()
    )
    if head is None:
        return [f"{len(rows)} transactions without a ledger head"] if rows else []

    problems = []
    earned = sum(row.amount for row in rows if row.amount > 0)
    spent = -sum(row.amount for row in rows if row.amount < 0)
    if head.current_credits < 0:
        problems.append(f"negative balance {head.current_credits}")
    if head.current_credits != head.total_earned - head.total_spent:
        problems.append(
            f"current {head.current_credits} != earned {head.total_earned} - spent {head.total_spent}"
        )
    if earned != head.total_earned:
        problems.append(f"replayed earned {earned} != total_earned {head.total_earned}")
    if spent != head.total_spent:
        problems.append(f"replayed spent {spent} != total_spent {head.total_spent}")
    if rows and rows[-1].balance_after != head.current_credits:
        problems.append(f"last balance_after {rows[-1].balance_after} != current {head.current_credits}")
    return problems
