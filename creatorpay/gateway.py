"""Payment gateway port.

The lifecycle services only talk to the gateway through this interface, so the
Stripe adapter can be swapped for a test double without touching them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from creatorpay.errors import VerificationError
from creatorpay.models import COMPLETED, FAILED, PENDING

# Only these gateway-reported statuses are ever accepted.
ALLOWED_GATEWAY_STATUSES = (COMPLETED, FAILED, PENDING)


@dataclass(frozen=True)
class GatewaySession:
    """Checkout session created for an order."""

    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class GatewayVerification:
    """Gateway's answer to "is this callback real, and what happened?"."""

    authentic: bool
    status: Optional[str] = None
    payment_method: Optional[str] = None


class GatewayClient(ABC):
    @abstractmethod
    def create_order(
        self,
        order_id: str,
        amount_minor: int,
        currency: str,
        kind: str,
        description: str,
    ) -> GatewaySession:
        """Create the gateway-side order the payer is redirected to."""
        ...

    @abstractmethod
    def verify_callback(self, order_id: str, gateway_transaction_id: str) -> GatewayVerification:
        """Authenticate a redirect/webhook. Must not change gateway state."""
        ...

    @abstractmethod
    def schedule_next_charge(self, supporter_id: str, date: datetime) -> None:
        """Record when the next membership charge is due."""
        ...


def normalize_status(raw_status) -> str:
    status = (raw_status or "").strip().lower() if isinstance(raw_status, str) else None
    if status not in ALLOWED_GATEWAY_STATUSES:
        raise VerificationError("Gateway reported an unsupported status", raw_status=raw_status)
    return status
