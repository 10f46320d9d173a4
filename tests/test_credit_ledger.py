import threading
import time

import pytest
from sqlalchemy.orm import Session

from forge3d.db import SessionLocal
from forge3d.exceptions import (
    InsufficientCreditsError,
    LedgerConflictError,
    UnknownServiceTypeError,
    ValidationError,
)
from forge3d.models import CreditTransaction, TransactionType, User, UserCredits
from forge3d.services.credits import (
    add_credits,
    check_ledger_consistency,
    get_balance,
    get_credit_history,
    get_credit_stats,
    has_enough_credits,
    initialize_user_credits,
    refund_credits,
    signup_bonus_key,
    spend_credits,
)

def _transactions(db: Session, user_id: str):
    return (
        db.query(CreditTransaction)
        .filter(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.id)
        .all()
    )

class TestInitialize:
    """Signup bonus grant."""

    def test_fresh_user_gets_signup_bonus(self, db_session: Session, user_id):
        head = initialize_user_credits(db_session, user_id, "new@example.com")

        assert head.current_credits == 45
        assert head.total_earned == 45
        assert head.total_spent == 0

        rows = _transactions(db_session, user_id)
        assert len(rows) == 1
        assert rows[0].type == TransactionType.EARN.value
        assert rows[0].amount == 45
        assert rows[0].balance_after == 45
        assert rows[0].description == "signup bonus"
        assert rows[0].idempotency_key == signup_bonus_key(user_id)

        user = db_session.get(User, user_id)
        assert user.email == "new@example.com"

    def test_initialize_is_idempotent(self, db_session: Session, user_id):
        initialize_user_credits(db_session, user_id, "a@example.com")
        spend_credits(db_session, user_id, "text-to-3d-preview")

        head = initialize_user_credits(db_session, user_id, "a@example.com")

        assert head.current_credits == 40
        bonus_rows = [r for r in _transactions(db_session, user_id) if r.description == "signup bonus"]
        assert len(bonus_rows) == 1

    def test_head_created_by_credit_is_returned_unchanged(self, db_session: Session, user_id):
        add_credits(db_session, user_id, 10)

        head = initialize_user_credits(db_session, user_id, "a@example.com")

        assert head.current_credits == 10
        assert len(_transactions(db_session, user_id)) == 1

    def test_concurrent_initialize_grants_one_bonus(self, user_id):
        errors = []
        barrier = threading.Barrier(4)

        def worker():
            session = SessionLocal()
            try:
                barrier.wait()
                for _ in range(20):
                    try:
                        initialize_user_credits(session, user_id, "race@example.com")
                        return
                    except LedgerConflictError:
                        time.sleep(0.01)
            except Exception as e:  # collected and asserted below
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        session = SessionLocal()
        try:
            assert get_balance(session, user_id) == 45
            assert len(_transactions(session, user_id)) == 1
            assert check_ledger_consistency(session, user_id) == []
        finally:
            session.close()

class TestBalance:
    def test_uninitialized_user_reads_zero(self, db_session: Session, user_id):
        assert get_balance(db_session, user_id) == 0
        assert db_session.query(UserCredits).count() == 0

    def test_can_afford_uses_catalog_cost(self, db_session: Session, user_id):
        add_credits(db_session, user_id, 5)

        assert has_enough_credits(db_session, user_id, "text-to-3d-preview") is True
        assert has_enough_credits(db_session, user_id, "text-to-3d-optimized") is False

    def test_can_afford_unknown_service_type(self, db_session: Session, user_id):
        with pytest.raises(UnknownServiceTypeError):
            has_enough_credits(db_session, user_id, "text-to-video")

class TestSpend:
    """Debits against the ledger head."""

    def test_spend_exact_balance(self, db_session: Session, user_id):
        add_credits(db_session, user_id, 5)

        result = spend_credits(db_session, user_id, "text-to-3d-preview", {"taskId": "t-1"})

        assert result.remaining_credits == 0
        assert result.transaction.amount == -5
        assert result.transaction.type == TransactionType.SPEND.value
        assert result.transaction.balance_after == 0
        assert result.transaction.meta == {"taskId": "t-1"}
        assert result.transaction.description == "used text-to-3d-preview service"
        assert result.transaction.service_type.name == "text-to-3d-preview"
        assert get_balance(db_session, user_id) == 0

    def test_spend_with_zero_balance_fails_without_side_effects(self, db_session: Session, user_id):
        with pytest.raises(InsufficientCreditsError) as exc_info:
            spend_credits(db_session, user_id, "text-to-3d-preview")

        assert exc_info.value.required == 5
        assert exc_info.value.available == 0
        assert _transactions(db_session, user_id) == []
        assert get_balance(db_session, user_id) == 0

    def test_spend_below_cost_leaves_balance(self, db_session: Session, user_id):
        add_credits(db_session, user_id, 7)

        with pytest.raises(InsufficientCreditsError):
            spend_credits(db_session, user_id, "text-to-3d-optimized")

        assert get_balance(db_session, user_id) == 7
        assert len(_transactions(db_session, user_id)) == 1

    def test_spend_unknown_service_type(self, db_session: Session, user_id):
        add_credits(db_session, user_id, 50)

        with pytest.raises(UnknownServiceTypeError):
            spend_credits(db_session, user_id, "hologram")

        assert get_balance(db_session, user_id) == 50

    def test_credit_then_spend_round_trip(self, db_session: Session, user_id):
        initialize_user_credits(db_session, user_id)
        before = get_balance(db_session, user_id)

        add_credits(db_session, user_id, 10)
        spend_credits(db_session, user_id, "text-to-3d-optimized")

        assert get_balance(db_session, user_id) == before
        new_rows = _transactions(db_session, user_id)[-2:]
        assert [r.amount for r in new_rows] == [10, -10]

    def test_concurrent_spends_never_overdraw(self, db_session: Session, user_id):
        add_credits(db_session, user_id, 20)
        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker():
            session = SessionLocal()
            try:
                barrier.wait()
                for _ in range(50):
                    try:
                        spend_credits(session, user_id, "text-to-3d-preview")
                        outcome = "ok"
                        break
                    except InsufficientCreditsError:
                        outcome = "insufficient"
                        break
                    except LedgerConflictError:
                        time.sleep(0.01)
                else:
                    outcome = "gave-up"
                with lock:
                    outcomes.append(outcome)
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 4
        assert outcomes.count("insufficient") == 4

        db_session.expire_all()
        assert get_balance(db_session, user_id) == 0
        assert check_ledger_consistency(db_session, user_id) == []

    def test_locked_read_sees_balance_changed_by_another_session(self, db_session: Session, user_id):
        initialize_user_credits(db_session, user_id)
        assert get_balance(db_session, user_id) == 45

        other = SessionLocal()
        try:
            for _ in range(4):
                spend_credits(other, user_id, "text-to-3d-optimized")
        finally:
            other.close()

        with pytest.raises(InsufficientCreditsError) as exc_info:
            spend_credits(db_session, user_id, "text-to-3d-optimized")

        assert exc_info.value.available == 5
        assert get_balance(db_session, user_id) == 5

class TestCredit:
    def test_credit_creates_head_lazily(self, db_session: Session, user_id):
        result = add_credits(db_session, user_id, 30, TransactionType.BONUS, "welcome back")

        assert result.new_balance == 30
        assert result.transaction.type == "BONUS"
        assert result.transaction.description == "welcome back"
        head = db_session.query(UserCredits).filter(UserCredits.user_id == user_id).one()
        assert head.total_earned == 30

    def test_credit_default_description(self, db_session: Session, user_id):
        result = add_credits(db_session, user_id, 12)
        assert result.transaction.description == "earned 12 credits"

    @pytest.mark.parametrize("amount", [0, -5, 2.5, True, "10"])
    def test_credit_rejects_bad_amounts(self, db_session: Session, user_id, amount):
        with pytest.raises(ValidationError):
            add_credits(db_session, user_id, amount)
        assert get_balance(db_session, user_id) == 0

    def test_credit_rejects_spend_type(self, db_session: Session, user_id):
        with pytest.raises(ValidationError):
            add_credits(db_session, user_id, 10, "SPEND")

    def test_credit_with_idempotency_key_applies_once(self, db_session: Session, user_id):
        first = add_credits(db_session, user_id, 25, idempotency_key="promo-2026")
        second = add_credits(db_session, user_id, 25, idempotency_key="promo-2026")

        assert first.transaction.id == second.transaction.id
        assert second.new_balance == 25
        assert len(_transactions(db_session, user_id)) == 1

    def test_idempotency_key_of_another_user_is_rejected(self, db_session: Session):
        add_credits(db_session, "alice", 25, idempotency_key="promo")

        with pytest.raises(ValidationError) as exc_info:
            add_credits(db_session, "bob", 25, idempotency_key="promo")

        assert exc_info.value.message == "Idempotency key already used"
        assert get_balance(db_session, "bob") == 0
        assert get_balance(db_session, "alice") == 25
        assert _transactions(db_session, "bob") == []

    def test_refund(self, db_session: Session, user_id):
        initialize_user_credits(db_session, user_id)
        spend_credits(db_session, user_id, "text-to-3d-optimized")

        result = refund_credits(db_session, user_id, 10)

        assert result.new_balance == 45
        assert result.transaction.type == "REFUND"
        assert result.transaction.description == "credit refund"
        assert check_ledger_consistency(db_session, user_id) == []

class TestHistoryAndStats:
    def test_history_newest_first_with_limit(self, db_session: Session, user_id):
        initialize_user_credits(db_session, user_id)
        for _ in range(3):
            spend_credits(db_session, user_id, "text-to-3d-preview")

        history = get_credit_history(db_session, user_id, limit=2)

        assert len(history) == 2
        assert [tx.balance_after for tx in history] == [30, 35]

    def test_stats(self, db_session: Session, user_id):
        initialize_user_credits(db_session, user_id)
        for _ in range(6):
            spend_credits(db_session, user_id, "text-to-3d-preview")

        stats = get_credit_stats(db_session, user_id)

        assert stats["current_credits"] == 15
        assert stats["total_earned"] == 45
        assert stats["total_spent"] == 30
        assert len(stats["recent_transactions"]) == 5
        assert stats["recent_transactions"][0].balance_after == 15

    def test_stats_for_unknown_user(self, db_session: Session, user_id):
        stats = get_credit_stats(db_session, user_id)
        assert stats["current_credits"] == 0
        assert stats["recent_transactions"] == []

    def test_ledger_invariants_hold_after_mixed_activity(self, db_session: Session, user_id):
        initialize_user_credits(db_session, user_id)
        spend_credits(db_session, user_id, "text-to-3d-preview")
        add_credits(db_session, user_id, 7, TransactionType.BONUS)
        spend_credits(db_session, user_id, "text-to-3d-optimized")
        refund_credits(db_session, user_id, 3)

        head = db_session.query(UserCredits).filter(UserCredits.user_id == user_id).one()
        latest = get_credit_history(db_session, user_id, limit=1)[0]

        assert head.current_credits == head.total_earned - head.total_spent
        assert head.current_credits == latest.balance_after == 40
        assert check_ledger_consistency(db_session, user_id) == []
