import logging
from datetime import timedelta

import pytest

from creatorpay.callbacks import CallbackVerifier
from creatorpay.errors import (
    GatewayUnavailable,
    TamperedCallback,
    UnknownOrder,
    VerificationError,
)
from creatorpay.gateway import GatewayVerification
from creatorpay.intents import PaymentIntentService
from creatorpay.models import CANCELLED, COMPLETED, FAILED, PENDING, Supporter, Transaction
from creatorpay.reconciler import TransactionReconciler
from tests.conftest import CREATOR, FAN, NOW


@pytest.fixture
def verifier(db, gateway, clock):
    return CallbackVerifier(db, gateway, TransactionReconciler(db, gateway, clock=clock))


@pytest.fixture
def intent(db, gateway, clock):
    return PaymentIntentService(db, gateway, clock=clock).create_intent(CREATOR, FAN, "tip", amount_minor=10000)


def stored(db, intent):
    db.expire_all()
    return db.get(Transaction, intent.transaction_id)


def test_successful_callback_completes_and_credits(verifier, intent, gateway, db):
    session_id = gateway.settle(intent.gateway_order_id)

    result = verifier.handle_callback(intent.gateway_order_id, session_id, "completed")

    assert result.status == COMPLETED
    assert result.amount_minor == 10000
    assert result.currency == "INR"
    assert result.replayed is False
    assert stored(db, intent).payment_method == "upi"
    assert db.query(Supporter).one().total_contributed_minor == 10000


def test_duplicate_callback_is_answered_from_the_database(verifier, intent, gateway, db):
    session_id = gateway.settle(intent.gateway_order_id)

    first = verifier.handle_callback(intent.gateway_order_id, session_id)
    second = verifier.handle_callback(intent.gateway_order_id, session_id)

    assert first.status == second.status == COMPLETED
    assert second.replayed is True
    assert gateway.verify_calls == 1
    db.expire_all()
    assert db.query(Supporter).one().total_contributed_minor == 10000


def test_unknown_order_mutates_nothing(verifier, intent, db, gateway):
    with pytest.raises(UnknownOrder):
        verifier.handle_callback("cp_doesnotexist", "cs_whatever", "completed")

    assert gateway.verify_calls == 0
    assert db.query(Transaction).count() == 1
    assert stored(db, intent).status == PENDING


def test_tampered_callback_leaves_transaction_pending(verifier, intent, gateway, db):
    gateway.settle(intent.gateway_order_id)

    with pytest.raises(TamperedCallback):
        verifier.handle_callback(intent.gateway_order_id, "cs_forged", "completed")

    assert stored(db, intent).status == PENDING
    assert db.query(Supporter).count() == 0


def test_unsupported_gateway_status_is_rejected(verifier, intent, gateway, db):
    gateway.verdicts[intent.gateway_order_id] = GatewayVerification(authentic=True, status="refunded")

    with pytest.raises(VerificationError):
        verifier.handle_callback(intent.gateway_order_id, f"cs_{intent.gateway_order_id}")

    assert stored(db, intent).status == PENDING


def test_gateway_still_processing_stays_pending(verifier, intent, db):
    result = verifier.handle_callback(intent.gateway_order_id, f"cs_{intent.gateway_order_id}", "completed")

    assert result.status == PENDING
    assert stored(db, intent).status == PENDING
    assert db.query(Supporter).count() == 0


def test_gateway_timeout_leaves_pending(verifier, intent, gateway, db):
    gateway.fail_verify = True

    with pytest.raises(GatewayUnavailable):
        verifier.handle_callback(intent.gateway_order_id, f"cs_{intent.gateway_order_id}")

    assert stored(db, intent).status == PENDING


def test_failed_payment(verifier, intent, gateway, db):
    session_id = gateway.settle(intent.gateway_order_id, status=FAILED, payment_method=None)

    result = verifier.handle_callback(intent.gateway_order_id, session_id, "failed")

    assert result.status == FAILED
    assert stored(db, intent).gateway_transaction_id == session_id
    assert db.query(Supporter).count() == 0


@pytest.mark.parametrize("order_id,gateway_transaction_id", [(None, "cs_1"), ("", "")])
def test_missing_order_id(verifier, order_id, gateway_transaction_id):
    with pytest.raises(VerificationError):
        verifier.handle_callback(order_id, gateway_transaction_id)


def test_cancel_redirect_without_session_uses_stored_checkout(verifier, intent, gateway, db):
    result = verifier.handle_callback(intent.gateway_order_id, None, "cancelled")

    assert result.status == PENDING
    assert result.transaction_id == intent.transaction_id
    assert gateway.verify_calls == 1
    assert stored(db, intent).status == PENDING


def test_missing_session_falls_back_to_stored_checkout_on_completion(verifier, intent, gateway, db):
    gateway.settle(intent.gateway_order_id)

    result = verifier.handle_callback(intent.gateway_order_id, None)

    assert result.status == COMPLETED
    assert stored(db, intent).gateway_transaction_id == f"cs_{intent.gateway_order_id}"


def test_row_without_any_session_is_rejected(verifier, intent, db):
    db.query(Transaction).update({"gateway_session_id": None})
    db.commit()

    with pytest.raises(VerificationError):
        verifier.handle_callback(intent.gateway_order_id, None)


def expire(db, gateway, intent):
    gateway.settle(intent.gateway_order_id, status=FAILED, payment_method=None)
    later = PaymentIntentService(db, gateway, clock=lambda: NOW + timedelta(days=2))
    assert later.expire_stale_intents() == 1


def test_callback_after_expiry_is_a_replay(verifier, intent, gateway, db):
    expire(db, gateway, intent)
    session_id = f"cs_{intent.gateway_order_id}"

    result = verifier.handle_callback(intent.gateway_order_id, session_id, "failed")

    assert result.status == CANCELLED
    assert result.replayed is True
    assert db.query(Supporter).count() == 0


def test_payment_on_cancelled_intent_raises_alert(verifier, intent, gateway, db, caplog):
    expire(db, gateway, intent)
    session_id = gateway.settle(intent.gateway_order_id)

    with caplog.at_level(logging.CRITICAL):
        result = verifier.handle_callback(intent.gateway_order_id, session_id, "completed")

    assert result.status == CANCELLED
    assert result.replayed is True
    alerts = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert [r.getMessage() for r in alerts] == ["cancelled_transaction_paid"]
    assert alerts[0].transaction_id == intent.transaction_id
    assert alerts[0].amount_minor == 10000
    assert db.query(Supporter).count() == 0


def test_claimed_status_mismatch_is_logged(verifier, intent, gateway, caplog):
    session_id = gateway.settle(intent.gateway_order_id, status=FAILED)

    with caplog.at_level(logging.WARNING):
        result = verifier.handle_callback(intent.gateway_order_id, session_id, "completed")

    assert result.status == FAILED
    assert "callback_status_mismatch" in [r.getMessage() for r in caplog.records]
