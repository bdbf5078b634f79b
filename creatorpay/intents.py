import logging
import re
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from creatorpay.errors import (
    GatewayUnavailable,
    InputError,
    InvalidAmount,
    PaymentError,
    PaymentTypeNotAccepted,
    SelfSupport,
    TierFull,
    TierUnavailable,
)
from creatorpay.fees import split
from creatorpay.gateway import GatewayClient, normalize_status
from creatorpay.models import (
    CANCELLED,
    COMPLETED,
    FAILED,
    MEMBERSHIP_RENEWAL,
    PENDING,
    SUPPORTER_ACTIVE,
    TIP,
    TRANSACTION_KINDS,
    CreatorPaymentSettings,
    MembershipTier,
    Supporter,
    Transaction,
    utcnow,
)
from creatorpay.reconciler import TransactionReconciler
from creatorpay.settings import (
    DEFAULT_CURRENCY,
    INTENT_TTL_MINUTES,
    MAX_TIP_MINOR,
    MIN_TIP_MINOR,
    PLATFORM_FEE_BPS,
)

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")


@dataclass(frozen=True)
class IntentResult:
    transaction_id: str
    gateway_order_id: str
    redirect_url: str
    amount_minor: int
    currency: str
    platform_fee_minor: int
    payout_minor: int


def new_order_id():
    return f"cp_{uuid.uuid4().hex}"


class PaymentIntentService:
    """Creates pending transactions and the matching gateway checkout.

    The gateway order is created before anything is written. If the gateway
    call fails nothing is stored, so there are never pending rows without a
    checkout behind them.
    """

    def __init__(
        self,
        db: Session,
        gateway: GatewayClient,
        fee_bps: int = PLATFORM_FEE_BPS,
        min_tip_minor: int = MIN_TIP_MINOR,
        max_tip_minor: int = MAX_TIP_MINOR,
        default_currency: str = DEFAULT_CURRENCY,
        clock=utcnow,
    ):
        self.db = db
        self.gateway = gateway
        self.fee_bps = fee_bps
        self.min_tip_minor = min_tip_minor
        self.max_tip_minor = max_tip_minor
        self.default_currency = default_currency
        self.clock = clock

    def create_intent(
        self,
        creator_id: str,
        supporter_user_id: str,
        kind: str,
        amount_minor: Optional[int] = None,
        tier_id: Optional[str] = None,
        currency: Optional[str] = None,
        message: Optional[str] = None,
        is_public: bool = True,
    ) -> IntentResult:
        if kind not in TRANSACTION_KINDS:
            raise InputError("Unknown payment kind")
        if creator_id == supporter_user_id:
            raise SelfSupport()
        self._check_accepted(creator_id, kind)
        message = _clean_message(message)

        tier = None
        if kind == TIP:
            amount_minor = self._check_tip_amount(amount_minor)
            currency = (currency or self.default_currency).upper()
            if not CURRENCY_PATTERN.match(currency):
                raise InputError("Currency must be a three-letter code")
            description = "One-time tip to creator"
        else:
            tier = self._available_tier(creator_id, supporter_user_id, kind, tier_id)
            amount_minor = tier.price_minor
            currency = tier.currency
            description = f"{tier.name} membership"

        fee, payout = split(amount_minor, self.fee_bps)
        order_id = new_order_id()

        try:
            session = self.gateway.create_order(order_id, amount_minor, currency, kind, description)
        except GatewayUnavailable:
            logger.warning("intent_gateway_order_failed", extra={"order_id": order_id, "creator_id": creator_id})
            raise

        transaction = Transaction(
            creator_id=creator_id,
            supporter_user_id=supporter_user_id,
            kind=kind,
            amount_minor=amount_minor,
            currency=currency,
            status=PENDING,
            gateway_order_id=order_id,
            gateway_session_id=session.session_id,
            membership_tier_id=tier.id if tier else None,
            message=message,
            is_public=is_public,
            created_at=self.clock(),
        )
        self.db.add(transaction)
        self.db.commit()
        self.db.refresh(transaction)

        logger.info(
            "intent_created",
            extra={
                "transaction_id": transaction.id,
                "order_id": order_id,
                "kind": kind,
                "amount_minor": amount_minor,
                "currency": currency,
            },
        )
        return IntentResult(
            transaction_id=transaction.id,
            gateway_order_id=order_id,
            redirect_url=session.redirect_url,
            amount_minor=amount_minor,
            currency=currency,
            platform_fee_minor=fee,
            payout_minor=payout,
        )

    def expire_stale_intents(self, older_than: Optional[timedelta] = None, limit: int = 100) -> int:
        """Cancel pending intents whose checkout the gateway reports as dead.

        Each stale row is checked with the gateway first. Only rows whose
        checkout failed or expired are cancelled; a payment that settled late
        is reconciled as completed instead, and anything still open is left
        pending. Cancelling uses the same pending-only conditional update as
        reconciliation, so a callback racing the sweep is never overwritten.

        Returns how many intents were cancelled.
        """
        cutoff = self.clock() - (older_than or timedelta(minutes=INTENT_TTL_MINUTES))
        stale = (
            self.db.query(Transaction)
            .filter(Transaction.status == PENDING, Transaction.created_at < cutoff)
            .order_by(Transaction.created_at)
            .limit(limit)
            .all()
        )
        cancelled = 0
        for transaction in stale:
            status, payment_method = self._gateway_status(transaction)
            if status == COMPLETED:
                logger.warning("stale_intent_paid", extra={"transaction_id": transaction.id})
                self._reconciler().reconcile(transaction.id, COMPLETED, transaction.gateway_session_id, payment_method)
            elif status == FAILED:
                cancelled += self._cancel(transaction.id)
        if cancelled:
            logger.info("stale_intents_cancelled", extra={"count": cancelled})
        return cancelled

    def _gateway_status(self, transaction):
        if transaction.gateway_session_id is None:
            # no checkout was ever opened for this row
            return FAILED, None
        try:
            verification = self.gateway.verify_callback(transaction.gateway_order_id, transaction.gateway_session_id)
            if not verification.authentic:
                logger.error("stale_intent_unverifiable", extra={"transaction_id": transaction.id})
                return PENDING, None
            return normalize_status(verification.status), verification.payment_method
        except PaymentError as exc:
            logger.warning(
                "stale_intent_check_failed",
                extra={"transaction_id": transaction.id, "error": type(exc).__name__},
            )
            return PENDING, None

    def _cancel(self, transaction_id):
        expired = self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == PENDING)
            .values(status=CANCELLED, error_message="Checkout abandoned")
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return expired.rowcount

    def _reconciler(self):
        return TransactionReconciler(self.db, self.gateway, fee_bps=self.fee_bps, clock=self.clock)

    def _check_accepted(self, creator_id, kind):
        # creators without a settings row accept both payment types
        settings = self.db.get(CreatorPaymentSettings, creator_id)
        if settings is None:
            return
        if kind == TIP and not settings.accept_tips:
            raise PaymentTypeNotAccepted("Creator doesn't accept tips", creator_id=creator_id)
        if kind != TIP and not settings.accept_memberships:
            raise PaymentTypeNotAccepted("Creator doesn't accept memberships", creator_id=creator_id)

    def _check_tip_amount(self, amount_minor):
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
            raise InvalidAmount("Amount must be a whole number of minor units")
        if amount_minor < self.min_tip_minor:
            raise InvalidAmount(f"Minimum amount is {self.min_tip_minor} minor units")
        if amount_minor > self.max_tip_minor:
            raise InvalidAmount(f"Maximum amount is {self.max_tip_minor} minor units")
        return amount_minor

    def _available_tier(self, creator_id, supporter_user_id, kind, tier_id):
        tier = self.db.get(MembershipTier, tier_id) if tier_id else None
        if tier is None or tier.creator_id != creator_id or not tier.is_active:
            raise TierUnavailable(tier_id=tier_id)

        if tier.max_supporters is None:
            return tier
        if kind == MEMBERSHIP_RENEWAL and self._holds_seat(tier, supporter_user_id):
            return tier

        active = (
            self.db.query(func.count(Supporter.id))
            .filter(Supporter.tier_id == tier.id, Supporter.status == SUPPORTER_ACTIVE)
            .scalar()
        )
        if active >= tier.max_supporters:
            raise TierFull(tier_id=tier.id)
        return tier

    def _holds_seat(self, tier, user_id):
        return (
            self.db.query(Supporter.id)
            .filter(
                Supporter.creator_id == tier.creator_id,
                Supporter.user_id == user_id,
                Supporter.tier_id == tier.id,
                Supporter.status == SUPPORTER_ACTIVE,
            )
            .first()
            is not None
        )


def _clean_message(message):
    if message is None:
        return None
    message = message.strip()
    if len(message) > MAX_MESSAGE_LENGTH:
        raise InputError("Message too long")
    return message or None
