from dataclasses import asdict
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field, StrictInt
from sqlalchemy.exc import SQLAlchemyError

from creatorpay.auth import require_admin, verify_token
from creatorpay.callbacks import CallbackVerifier
from creatorpay.database import SessionLocal
from creatorpay.errors import PaymentError
from creatorpay.gateway import GatewayClient
from creatorpay.intents import PaymentIntentService
from creatorpay.models import SUPPORTER_ACTIVE, Supporter, Transaction
from creatorpay.reconciler import TransactionReconciler
from creatorpay.redirects import RedirectResolver
from creatorpay.stripe_service import StripeGateway

router = APIRouter()


def get_gateway() -> GatewayClient:
    return StripeGateway()


class PaymentRequest(BaseModel):
    creator_id: str = Field(min_length=1, max_length=64)
    kind: Literal["tip", "membership_initial", "membership_renewal"] = "tip"
    amount_minor: Optional[StrictInt] = None
    tier_id: Optional[str] = None
    currency: Optional[str] = Field(default=None, pattern=r"^[A-Za-z]{3}$")
    message: Optional[str] = Field(default=None, max_length=500)
    is_public: bool = True


class PaymentIntentOut(BaseModel):
    transaction_id: str
    gateway_order_id: str
    redirect_url: str
    amount_minor: int
    currency: str
    platform_fee_minor: int
    payout_minor: int


class TransactionOut(BaseModel):
    id: str
    creator_id: str
    supporter_user_id: str
    kind: str
    amount_minor: int
    currency: str
    status: str
    gateway_order_id: str
    gateway_transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    membership_tier_id: Optional[str] = None
    message: Optional[str] = None
    is_public: bool
    platform_fee_minor: Optional[int] = None
    payout_minor: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SupporterOut(BaseModel):
    id: str
    user_id: str
    status: str
    tier_id: Optional[str] = None
    total_contributed_minor: int
    last_payment_at: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None

    model_config = {"from_attributes": True}


@router.post("/payments", response_model=PaymentIntentOut)
def create_payment_api(
    request: PaymentRequest,
    claims=Depends(verify_token),
    gateway: GatewayClient = Depends(get_gateway),
):
    db = SessionLocal()
    try:
        intent = PaymentIntentService(db, gateway).create_intent(
            creator_id=request.creator_id,
            supporter_user_id=claims["sub"],
            kind=request.kind,
            amount_minor=request.amount_minor,
            tier_id=request.tier_id,
            currency=request.currency,
            message=request.message,
            is_public=request.is_public,
        )
    finally:
        db.close()

    return PaymentIntentOut(**asdict(intent))


@router.get("/payments/callback")
def payment_callback(
    order_id: Optional[str] = None,
    # absent on the cancel redirect; the stored checkout session is used
    gateway_transaction_id: Optional[str] = None,
    status: Optional[str] = None,
    gateway: GatewayClient = Depends(get_gateway),
):
    resolver = RedirectResolver()
    db = SessionLocal()
    try:
        result = CallbackVerifier(db, gateway).handle_callback(order_id, gateway_transaction_id, status)
        redirect = resolver.resolve(result.status, result.transaction_id, result.amount_minor, result.currency)
    except PaymentError as exc:
        db.rollback()
        redirect = resolver.resolve_error(exc, transaction_id=_transaction_id_for(db, order_id))
    except SQLAlchemyError as exc:
        db.rollback()
        redirect = resolver.resolve_error(exc)
    finally:
        db.close()

    return RedirectResponse(redirect.url, status_code=303)


def _transaction_id_for(db, order_id):
    if not order_id:
        return None
    return db.query(Transaction.id).filter(Transaction.gateway_order_id == order_id).scalar()


@router.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: str, claims=Depends(verify_token)):
    db = SessionLocal()
    try:
        transaction = db.get(Transaction, transaction_id)
        # payers and creators only; anyone else gets the same 404 as a missing id
        if transaction is None or claims["sub"] not in (transaction.supporter_user_id, transaction.creator_id):
            raise HTTPException(status_code=404, detail="Transaction not found")
        return TransactionOut.model_validate(transaction)
    finally:
        db.close()


@router.get("/creators/{creator_id}/supporters", response_model=List[SupporterOut])
def list_supporters(creator_id: str, claims=Depends(verify_token)):
    if claims["sub"] != creator_id:
        raise HTTPException(status_code=403, detail="Not your supporters")

    db = SessionLocal()
    try:
        supporters = (
            db.query(Supporter)
            .filter(Supporter.creator_id == creator_id, Supporter.status == SUPPORTER_ACTIVE)
            .order_by(Supporter.total_contributed_minor.desc())
            .all()
        )
        return [SupporterOut.model_validate(s) for s in supporters]
    finally:
        db.close()


@router.post("/admin/reconcile")
def repair_supporters(limit: int = 100, admin=Depends(require_admin), gateway: GatewayClient = Depends(get_gateway)):
    db = SessionLocal()
    try:
        repaired = TransactionReconciler(db, gateway).repair_supporter_effects(limit=limit)
    finally:
        db.close()
    return {"repaired": repaired}


@router.post("/admin/expire-intents")
def expire_intents(admin=Depends(require_admin), gateway: GatewayClient = Depends(get_gateway)):
    db = SessionLocal()
    try:
        cancelled = PaymentIntentService(db, gateway).expire_stale_intents()
    finally:
        db.close()
    return {"cancelled": cancelled}
