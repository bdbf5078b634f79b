import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from creatorpay.errors import TamperedCallback, UnknownOrder, VerificationError
from creatorpay.gateway import GatewayClient, normalize_status
from creatorpay.models import CANCELLED, COMPLETED, PENDING, Transaction
from creatorpay.reconciler import TransactionReconciler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedResult:
    transaction_id: str
    status: str
    amount_minor: int
    currency: str
    replayed: bool = False


class CallbackVerifier:
    """Turns a gateway redirect or webhook into a verified, reconciled status.

    Callbacks are untrusted: the order must already exist, a terminal order is
    answered from the database, and anything else is authenticated with the
    gateway before state changes. A cancel redirect carries no gateway id, so
    the checkout session stored at intent creation is verified instead.
    """

    def __init__(self, db: Session, gateway: GatewayClient, reconciler: Optional[TransactionReconciler] = None):
        self.db = db
        self.gateway = gateway
        self.reconciler = reconciler or TransactionReconciler(db, gateway)

    def handle_callback(self, order_id, gateway_transaction_id=None, claimed_status=None) -> VerifiedResult:
        if not order_id:
            raise VerificationError("Callback is missing the order id")

        transaction = (
            self.db.query(Transaction)
            .filter(Transaction.gateway_order_id == order_id)
            .one_or_none()
        )
        if transaction is None:
            raise UnknownOrder(order_id=order_id)

        gateway_transaction_id = gateway_transaction_id or transaction.gateway_session_id
        if not gateway_transaction_id:
            raise VerificationError("Callback is missing the gateway transaction id", order_id=order_id)

        if transaction.status == CANCELLED:
            self._check_cancelled(transaction, gateway_transaction_id)

        if transaction.is_terminal:
            if transaction.gateway_transaction_id not in (None, gateway_transaction_id):
                logger.warning(
                    "callback_replay_mismatch",
                    extra={
                        "order_id": order_id,
                        "recorded_gateway_transaction_id": transaction.gateway_transaction_id,
                        "gateway_transaction_id": gateway_transaction_id,
                    },
                )
            logger.info("callback_replayed", extra={"order_id": order_id, "status": transaction.status})
            return _verified(transaction, transaction.status, replayed=True)

        verification = self.gateway.verify_callback(order_id, gateway_transaction_id)
        if not verification.authentic:
            raise TamperedCallback(order_id=order_id, gateway_transaction_id=gateway_transaction_id)

        status = normalize_status(verification.status)
        if claimed_status and claimed_status.lower() != status:
            logger.warning(
                "callback_status_mismatch",
                extra={"order_id": order_id, "claimed_status": claimed_status, "verified_status": status},
            )

        if status == PENDING:
            logger.info("callback_still_pending", extra={"order_id": order_id})
            return _verified(transaction, PENDING)

        reconciled = self.reconciler.reconcile(
            transaction.id,
            status,
            gateway_transaction_id,
            verification.payment_method,
        )
        return VerifiedResult(
            transaction_id=reconciled.transaction_id,
            status=reconciled.status,
            amount_minor=reconciled.amount_minor,
            currency=reconciled.currency,
            replayed=not reconciled.won,
        )

    def _check_cancelled(self, transaction, gateway_transaction_id):
        """Alert when the gateway took money for an intent already cancelled here.

        The row stays cancelled; an operator has to refund or credit by hand.
        """
        verification = self.gateway.verify_callback(transaction.gateway_order_id, gateway_transaction_id)
        if verification.authentic and verification.status == COMPLETED:
            logger.critical(
                "cancelled_transaction_paid",
                extra={
                    "transaction_id": transaction.id,
                    "order_id": transaction.gateway_order_id,
                    "gateway_transaction_id": gateway_transaction_id,
                    "amount_minor": transaction.amount_minor,
                    "currency": transaction.currency,
                },
            )


def _verified(transaction, status, replayed=False):
    return VerifiedResult(
        transaction_id=transaction.id,
        status=status,
        amount_minor=transaction.amount_minor,
        currency=transaction.currency,
        replayed=replayed,
    )
