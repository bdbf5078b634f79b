import logging

import pytest
from sqlalchemy.exc import OperationalError

from creatorpay.errors import GatewayUnavailable, TamperedCallback, UnknownOrder, VerificationError
from creatorpay.redirects import RedirectResolver

resolver = RedirectResolver("https://creators.test/")


def test_completed_goes_to_success_with_amount():
    redirect = resolver.resolve("completed", "tx-1", 10000, "INR")
    assert redirect.outcome == "success"
    assert redirect.url == "https://creators.test/support/success?transaction_id=tx-1&amount_minor=10000&currency=INR"


def test_failed_goes_to_failed_page():
    redirect = resolver.resolve("failed", "tx-1", 10000, "INR")
    assert redirect.outcome == "failed"
    assert redirect.url == "https://creators.test/support/failed?transaction_id=tx-1"


@pytest.mark.parametrize("status", ["pending", "cancelled", "processing", None])
def test_everything_else_is_pending(status):
    assert resolver.resolve(status, "tx-1").outcome == "pending"


@pytest.mark.parametrize("error", [UnknownOrder(order_id="cp_x"), TamperedCallback(), VerificationError()])
def test_trust_errors_get_generic_error_page(error, caplog):
    with caplog.at_level(logging.ERROR):
        redirect = resolver.resolve_error(error)

    assert redirect.outcome == "error"
    assert "cp_x" not in redirect.url
    assert "message=Payment+verification+failed" in redirect.url
    assert [r.getMessage() for r in caplog.records] == ["callback_rejected"]
    assert caplog.records[0].error == type(error).__name__


def test_database_errors_also_get_error_page(caplog):
    error = OperationalError("UPDATE transactions", {}, Exception("database is locked"))
    with caplog.at_level(logging.ERROR):
        redirect = resolver.resolve_error(error, transaction_id="tx-9")

    assert redirect.outcome == "error"
    assert "locked" not in redirect.url
    assert caplog.records[0].exc_info[1] is error


def test_gateway_outage_resolves_to_pending():
    redirect = resolver.resolve_error(GatewayUnavailable(order_id="cp_1"), transaction_id="tx-1")
    assert redirect.outcome == "pending"
    assert redirect.url == "https://creators.test/support/pending?transaction_id=tx-1"
