import logging
from dataclasses import dataclass
from urllib.parse import urlencode

from creatorpay.errors import GENERIC_TRUST_DETAIL, GatewayUnavailable, TrustError
from creatorpay.models import COMPLETED, FAILED
from creatorpay.settings import APP_URL

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILED_PAGE = "failed"
PENDING_PAGE = "pending"
ERROR = "error"


@dataclass(frozen=True)
class Redirect:
    outcome: str
    url: str


class RedirectResolver:
    def __init__(self, base_url: str = APP_URL):
        self.base_url = base_url.rstrip("/")

    def resolve(self, status, transaction_id, amount_minor=None, currency=None) -> Redirect:
        if status == COMPLETED:
            return self._page(SUCCESS, transaction_id=transaction_id, amount_minor=amount_minor, currency=currency)
        if status == FAILED:
            return self._page(FAILED_PAGE, transaction_id=transaction_id)
        return self._page(PENDING_PAGE, transaction_id=transaction_id)

    def resolve_error(self, exc: Exception, transaction_id=None) -> Redirect:
        context = getattr(exc, "context", {})
        if isinstance(exc, GatewayUnavailable):
            # nothing was decided; the transaction is still pending
            logger.warning("callback_gateway_unavailable", extra={"transaction_id": transaction_id, **context})
            return self._page(PENDING_PAGE, transaction_id=transaction_id)

        logger.error(
            "callback_rejected",
            extra={"error": type(exc).__name__, "transaction_id": transaction_id, **context},
            exc_info=None if isinstance(exc, TrustError) else exc,
        )
        return self._page(ERROR, transaction_id=transaction_id, message=GENERIC_TRUST_DETAIL)

    def _page(self, outcome, **params):
        query = urlencode({key: value for key, value in params.items() if value is not None})
        url = f"{self.base_url}/support/{outcome}"
        return Redirect(outcome=outcome, url=f"{url}?{query}" if query else url)
