import logging
from datetime import datetime

import stripe

from creatorpay.errors import GatewayUnavailable
from creatorpay.gateway import GatewayClient, GatewaySession, GatewayVerification
from creatorpay.models import COMPLETED, FAILED, PENDING, MEMBERSHIP_KINDS
from creatorpay.settings import (
    APP_URL,
    GATEWAY_MAX_RETRIES,
    GATEWAY_TIMEOUT_SECONDS,
    STRIPE_SECRET_KEY,
)

logger = logging.getLogger(__name__)

stripe.api_key = STRIPE_SECRET_KEY
# The SDK retries connection errors with exponential backoff; verify is a
# read so retrying it never changes gateway state.
stripe.max_network_retries = GATEWAY_MAX_RETRIES
stripe.default_http_client = stripe.RequestsClient(timeout=GATEWAY_TIMEOUT_SECONDS)

TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


def callback_url(order_id: str, claimed_status: str, with_session: bool = True) -> str:
    # Stripe substitutes {CHECKOUT_SESSION_ID} in success_url only
    url = f"{APP_URL}/payments/callback?order_id={order_id}&status={claimed_status}"
    if with_session:
        url += "&gateway_transaction_id={CHECKOUT_SESSION_ID}"
    return url


class StripeGateway(GatewayClient):
    """GatewayClient backed by Stripe Checkout Sessions.

    The local order id travels as ``client_reference_id``; the checkout
    session id is what comes back as the gateway transaction id.
    """

    def create_order(self, order_id, amount_minor, currency, kind, description):
        params = dict(
            mode="payment",
            client_reference_id=order_id,
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": amount_minor,
                    "product_data": {"name": description},
                },
            }],
            metadata={"order_id": order_id, "kind": kind},
            success_url=callback_url(order_id, COMPLETED),
            cancel_url=callback_url(order_id, "cancelled", with_session=False),
            idempotency_key=order_id,
        )
        if kind in MEMBERSHIP_KINDS:
            # keep the card on file for the off-session renewal charge
            params["customer_creation"] = "always"
            params["payment_intent_data"] = {"setup_future_usage": "off_session"}

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as exc:
            logger.error("gateway_create_order_failed", extra={"order_id": order_id, "error": str(exc)})
            raise GatewayUnavailable(order_id=order_id) from exc

        return GatewaySession(session_id=session.id, redirect_url=session.url)

    def verify_callback(self, order_id, gateway_transaction_id):
        try:
            session = stripe.checkout.Session.retrieve(
                gateway_transaction_id,
                expand=["payment_intent.payment_method"],
            )
        except stripe.InvalidRequestError:
            # no such session: the id in the callback was never issued by us
            return GatewayVerification(authentic=False)
        except TRANSIENT_ERRORS as exc:
            raise GatewayUnavailable(order_id=order_id) from exc
        except stripe.StripeError as exc:
            logger.error("gateway_verify_failed", extra={"order_id": order_id, "error": str(exc)})
            raise GatewayUnavailable(order_id=order_id) from exc

        if getattr(session, "client_reference_id", None) != order_id:
            return GatewayVerification(authentic=False)

        return GatewayVerification(
            authentic=True,
            status=session_status(session),
            payment_method=payment_method_type(session),
        )

    def schedule_next_charge(self, supporter_id, date: datetime):
        metadata = {"supporter_id": supporter_id, "next_charge_at": date.isoformat()}
        try:
            found = stripe.Customer.search(query=f"metadata['supporter_id']:'{supporter_id}'")
            if found.data:
                stripe.Customer.modify(found.data[0].id, metadata=metadata)
            else:
                stripe.Customer.create(metadata=metadata, idempotency_key=f"supporter-{supporter_id}")
        except stripe.StripeError as exc:
            raise GatewayUnavailable(supporter_id=supporter_id) from exc


def session_status(session) -> str:
    payment_status = getattr(session, "payment_status", None)
    status = getattr(session, "status", None)
    if payment_status in ("paid", "no_payment_required"):
        return COMPLETED
    if status == "expired":
        return FAILED
    intent = getattr(session, "payment_intent", None)
    # delayed methods leave a complete session unpaid until the bank settles
    if status == "complete" and intent is not None and not isinstance(intent, str):
        if getattr(intent, "status", None) in ("canceled", "requires_payment_method"):
            return FAILED
    return PENDING


def payment_method_type(session):
    intent = getattr(session, "payment_intent", None)
    if intent is None or isinstance(intent, str):
        return None
    method = getattr(intent, "payment_method", None)
    if method is None or isinstance(method, str):
        return None
    return getattr(method, "type", None)
