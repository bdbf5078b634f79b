import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from creatorpay.database import Base

TIP = "tip"
MEMBERSHIP_INITIAL = "membership_initial"
MEMBERSHIP_RENEWAL = "membership_renewal"
TRANSACTION_KINDS = (TIP, MEMBERSHIP_INITIAL, MEMBERSHIP_RENEWAL)
MEMBERSHIP_KINDS = (MEMBERSHIP_INITIAL, MEMBERSHIP_RENEWAL)

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)

SUPPORTER_ACTIVE = "active"
SUPPORTER_PAUSED = "paused"
SUPPORTER_CANCELLED = "cancelled"


def _new_id():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class MembershipTier(Base):
    __tablename__ = "membership_tiers"

    id = Column(String, primary_key=True, default=_new_id)
    creator_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    price_minor = Column(Integer, nullable=False)           # paise, never rupees
    currency = Column(String(3), nullable=False, default="INR")
    tier_level = Column(Integer, nullable=False, default=1)
    benefits = Column(JSON, nullable=False, default=list)
    max_supporters = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=_new_id)
    creator_id = Column(String, index=True, nullable=False)
    supporter_user_id = Column(String, index=True, nullable=False)
    kind = Column(String, nullable=False)                   # tip | membership_initial | membership_renewal
    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default=PENDING, index=True)  # pending | completed | failed | cancelled

    gateway_order_id = Column(String, unique=True, index=True, nullable=False)
    gateway_session_id = Column(String, nullable=True)
    gateway_transaction_id = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)

    membership_tier_id = Column(String, ForeignKey("membership_tiers.id"), nullable=True)
    message = Column(String(500), nullable=True)
    is_public = Column(Boolean, nullable=False, default=True)

    platform_fee_minor = Column(Integer, nullable=True)
    payout_minor = Column(Integer, nullable=True)
    supporter_applied = Column(Boolean, nullable=False, default=False)
    error_message = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    @property
    def is_membership(self):
        return self.kind in MEMBERSHIP_KINDS


class Supporter(Base):
    __tablename__ = "supporters"
    __table_args__ = (
        UniqueConstraint("creator_id", "user_id", name="uq_supporters_creator_user"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    creator_id = Column(String, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    status = Column(String, nullable=False, default=SUPPORTER_ACTIVE)  # active | paused | cancelled
    tier_id = Column(String, ForeignKey("membership_tiers.id"), nullable=True)
    total_contributed_minor = Column(Integer, nullable=False, default=0)
    last_payment_at = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class CreatorPaymentSettings(Base):
    __tablename__ = "creator_payment_settings"

    creator_id = Column(String, primary_key=True)
    accept_tips = Column(Boolean, nullable=False, default=True)
    accept_memberships = Column(Boolean, nullable=False, default=True)
