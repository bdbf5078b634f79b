import logging
from contextlib import asynccontextmanager

import stripe
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from creatorpay import settings
from creatorpay.callbacks import CallbackVerifier
from creatorpay.database import Base, engine, SessionLocal
from creatorpay.errors import GENERIC_TRUST_DETAIL, GatewayUnavailable, InputError, TrustError
from creatorpay.gateway import GatewayClient
from creatorpay.logging_config import configure_logging
from creatorpay.models import COMPLETED, FAILED
from creatorpay.routes import get_gateway, router

logger = logging.getLogger(__name__)

# Checkout events and the status they claim; the gateway is asked to confirm.
WEBHOOK_EVENTS = {
    "checkout.session.completed": COMPLETED,
    "checkout.session.async_payment_succeeded": COMPLETED,
    "checkout.session.async_payment_failed": FAILED,
    "checkout.session.expired": FAILED,
}


@asynccontextmanager
async def lifespan(app):
    configure_logging()
    yield


app = FastAPI(title="Creator Payments Service", lifespan=lifespan)

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(InputError)
async def input_error_handler(request: Request, exc: InputError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_detail})


@app.exception_handler(TrustError)
async def trust_error_handler(request: Request, exc: TrustError):
    logger.error(
        "trust_error",
        extra={"error": type(exc).__name__, "path": request.url.path, **exc.context},
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": GENERIC_TRUST_DETAIL})


@app.exception_handler(GatewayUnavailable)
async def gateway_error_handler(request: Request, exc: GatewayUnavailable):
    logger.warning("gateway_unavailable", extra={"path": request.url.path, **exc.context})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_detail})


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    gateway: GatewayClient = Depends(get_gateway),
):
    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            settings.STRIPE_WEBHOOK_SECRET
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.error("webhook_signature_invalid")
        raise HTTPException(status_code=400, detail="Invalid signature")

    claimed_status = WEBHOOK_EVENTS.get(event["type"])
    if claimed_status is None:
        return {"ok": True}

    session = event["data"]["object"]
    order_id = session.get("client_reference_id")
    if not order_id:
        # checkout not started by this service
        logger.info("webhook_foreign_session", extra={"session_id": session.get("id")})
        return {"ok": True}

    db = SessionLocal()
    try:
        result = CallbackVerifier(db, gateway).handle_callback(order_id, session.get("id"), claimed_status)
    finally:
        db.close()

    return {"ok": True, "status": result.status}
