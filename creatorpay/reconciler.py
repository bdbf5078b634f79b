"""Applies verified gateway outcomes to Transaction and Supporter state.

Every transition is a compare-and-swap on ``transactions.status``: the update
only matches while the row is still pending. Whoever loses that race reads
back the winner's row instead of applying anything a second time.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creatorpay.errors import UnknownOrder, VerificationError
from creatorpay.fees import split
from creatorpay.gateway import GatewayClient
from creatorpay.models import (
    COMPLETED,
    PENDING,
    SUPPORTER_ACTIVE,
    TERMINAL_STATUSES,
    Supporter,
    Transaction,
    utcnow,
)
from creatorpay.settings import PLATFORM_FEE_BPS, RENEWAL_PERIOD_DAYS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciledResult:
    transaction_id: str
    status: str
    amount_minor: int
    currency: str
    won: bool
    supporter_applied: bool
    completed_at: Optional[datetime] = None
    platform_fee_minor: Optional[int] = None
    payout_minor: Optional[int] = None
    next_billing_date: Optional[datetime] = None


class TransactionReconciler:
    def __init__(
        self,
        db: Session,
        gateway: GatewayClient,
        fee_bps: int = PLATFORM_FEE_BPS,
        renewal_period: timedelta = timedelta(days=RENEWAL_PERIOD_DAYS),
        clock=utcnow,
    ):
        self.db = db
        self.gateway = gateway
        self.fee_bps = fee_bps
        self.renewal_period = renewal_period
        self.clock = clock

    def reconcile(
        self,
        transaction_id: str,
        verified_status: str,
        gateway_transaction_id: str,
        payment_method: Optional[str] = None,
    ) -> ReconciledResult:
        if verified_status not in TERMINAL_STATUSES:
            raise VerificationError("Only terminal statuses can be reconciled", status=verified_status)

        transaction = self.db.get(Transaction, transaction_id)
        if transaction is None:
            raise UnknownOrder(transaction_id=transaction_id)

        now = self.clock()
        values = {"status": verified_status, "gateway_transaction_id": gateway_transaction_id}
        if verified_status == COMPLETED:
            fee, payout = split(transaction.amount_minor, self.fee_bps)
            values.update(
                completed_at=now,
                payment_method=payment_method,
                platform_fee_minor=fee,
                payout_minor=payout,
            )

        swapped = self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == PENDING)
            .values(**values)
        )
        if swapped.rowcount == 0:
            return self._read_back(transaction_id)

        next_billing_date = None
        if verified_status == COMPLETED:
            next_billing_date = self._apply_effects_safely(transaction, now)

        self.db.commit()
        self.db.refresh(transaction)
        logger.info(
            "transaction_reconciled",
            extra={
                "transaction_id": transaction_id,
                "status": verified_status,
                "amount_minor": transaction.amount_minor,
                "supporter_applied": transaction.supporter_applied,
            },
        )

        if next_billing_date is not None:
            self._schedule_next_charge(transaction, next_billing_date)

        return _result(transaction, won=True, next_billing_date=next_billing_date)

    def repair_supporter_effects(self, limit: int = 100) -> int:
        """Apply Supporter effects for completed transactions flagged as unapplied.

        Returns how many transactions this call applied.
        """
        pending_repairs = (
            self.db.query(Transaction)
            .filter(Transaction.status == COMPLETED, Transaction.supporter_applied.is_(False))
            .order_by(Transaction.completed_at)
            .limit(limit)
            .all()
        )
        repaired = 0
        for transaction in pending_repairs:
            paid_at = transaction.completed_at or self.clock()
            next_billing_date = self._apply_effects_safely(transaction, paid_at)
            self.db.commit()
            self.db.refresh(transaction)
            if not transaction.supporter_applied:
                continue
            repaired += 1
            logger.info("supporter_effects_repaired", extra={"transaction_id": transaction.id})
            if next_billing_date is not None:
                self._schedule_next_charge(transaction, next_billing_date)
        return repaired

    def _read_back(self, transaction_id):
        # lost the race: drop our snapshot and report what the winner stored
        self.db.rollback()
        stored = self.db.get(Transaction, transaction_id)
        logger.info(
            "transaction_already_reconciled",
            extra={"transaction_id": transaction_id, "status": stored.status},
        )
        return _result(stored, won=False)

    def _apply_effects_safely(self, transaction, paid_at):
        """Run the Supporter step in a savepoint.

        Money has already moved at the gateway, so a failure here must not undo
        the completed transition; the row keeps ``supporter_applied = False``
        for the repair sweep.
        """
        try:
            with self.db.begin_nested():
                return self._apply_effects(transaction, paid_at)
        except Exception:
            logger.critical(
                "supporter_reconciliation_failed",
                extra={
                    "transaction_id": transaction.id,
                    "creator_id": transaction.creator_id,
                    "user_id": transaction.supporter_user_id,
                    "amount_minor": transaction.amount_minor,
                },
                exc_info=True,
            )
            return None

    def _apply_effects(self, transaction, paid_at):
        claimed = self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction.id, Transaction.supporter_applied.is_(False))
            .values(supporter_applied=True)
        )
        if claimed.rowcount == 0:
            return None

        supporter = self._get_or_create_supporter(transaction.creator_id, transaction.supporter_user_id)
        values = {
            "total_contributed_minor": Supporter.total_contributed_minor + transaction.amount_minor,
            "last_payment_at": paid_at,
        }
        next_billing_date = None
        if transaction.is_membership:
            next_billing_date = paid_at + self.renewal_period
            values.update(
                status=SUPPORTER_ACTIVE,
                tier_id=transaction.membership_tier_id,
                next_billing_date=next_billing_date,
            )
        self.db.execute(update(Supporter).where(Supporter.id == supporter.id).values(**values))
        return next_billing_date

    def _get_or_create_supporter(self, creator_id, user_id):
        supporter = self._find_supporter(creator_id, user_id)
        if supporter is not None:
            return supporter
        try:
            with self.db.begin_nested():
                supporter = Supporter(
                    creator_id=creator_id,
                    user_id=user_id,
                    status=SUPPORTER_ACTIVE,
                    total_contributed_minor=0,
                )
                self.db.add(supporter)
            logger.info("supporter_created", extra={"creator_id": creator_id, "user_id": user_id})
            return supporter
        except IntegrityError:
            # a concurrent first payment inserted the row; use theirs
            return self._find_supporter(creator_id, user_id)

    def _find_supporter(self, creator_id, user_id):
        return (
            self.db.query(Supporter)
            .filter(Supporter.creator_id == creator_id, Supporter.user_id == user_id)
            .one_or_none()
        )

    def _schedule_next_charge(self, transaction, next_billing_date):
        # runs after commit: the payment is recorded whatever happens here
        supporter_id = None
        try:
            supporter = self._find_supporter(transaction.creator_id, transaction.supporter_user_id)
            if supporter is None:
                raise LookupError("supporter row missing after reconciliation")
            supporter_id = supporter.id
            self.gateway.schedule_next_charge(supporter_id, next_billing_date)
        except Exception:
            logger.error(
                "billing_schedule_failed",
                extra={"transaction_id": transaction.id, "supporter_id": supporter_id},
                exc_info=True,
            )


def _result(transaction, won, next_billing_date=None):
    return ReconciledResult(
        transaction_id=transaction.id,
        status=transaction.status,
        amount_minor=transaction.amount_minor,
        currency=transaction.currency,
        won=won,
        supporter_applied=transaction.supporter_applied,
        completed_at=transaction.completed_at,
        platform_fee_minor=transaction.platform_fee_minor,
        payout_minor=transaction.payout_minor,
        next_billing_date=next_billing_date,
    )
