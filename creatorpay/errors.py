"""Error taxonomy for the payment lifecycle.

Input errors are caller mistakes and are reported back as-is. Trust errors
mean either an attack or a gateway integration bug; they are logged loudly
and the caller only ever sees a generic message.
"""

GENERIC_TRUST_DETAIL = "Payment verification failed"


class PaymentError(Exception):
    status_code = 500
    detail = "Payment processing error"

    def __init__(self, message=None, **context):
        super().__init__(message or self.detail)
        self.context = context


class InputError(PaymentError):
    status_code = 400

    @property
    def public_detail(self):
        return str(self)


class InvalidAmount(InputError):
    detail = "Invalid payment amount"


class SelfSupport(InputError):
    detail = "Creators cannot support themselves"


class PaymentTypeNotAccepted(InputError):
    detail = "Creator doesn't accept this payment type"


class TierUnavailable(InputError):
    status_code = 404
    detail = "Membership tier is not available"


class TierFull(InputError):
    status_code = 409
    detail = "Membership tier is full"


class TrustError(PaymentError):
    status_code = 400

    @property
    def public_detail(self):
        return GENERIC_TRUST_DETAIL


class UnknownOrder(TrustError):
    detail = "Unknown gateway order"


class TamperedCallback(TrustError):
    detail = "Gateway rejected callback authenticity"


class VerificationError(TrustError):
    detail = "Gateway callback could not be verified"


class GatewayUnavailable(PaymentError):
    """Network failure or timeout talking to the gateway. State is left untouched."""

    status_code = 502
    detail = "Payment gateway unavailable"

    @property
    def public_detail(self):
        return self.detail
