import httpx
import pytest

from relay.errors import (
    AmountOutOfRangeError,
    GatewayConnectionError,
    GatewayHtmlError,
    GatewayRejectedError,
    GatewayTlsError,
    GatewayUnexpectedResponseError,
    MissingFieldsError,
)
from gateway.bill_creation import amount_to_cents
from gateway.reference_codec import decode_external_reference
from gateway.toyyibpay_client import parse_create_bill_response
from schemas.payment_definitions import BillRequest


def bill_request(**overrides) -> BillRequest:
    payload = {
        "amount": "25.50",
        "driverId": "drv_abcdef12",
        "reference": "weekly",
        "returnUrl": "https://app.example.com/return",
        "callbackUrl": "https://relay.example.com/api/toyyibpay/callback",
    }
    payload.update(overrides)
    return BillRequest(**payload)


# =============================================================================
# ORCHESTRATOR
# =============================================================================

async def test_valid_bill_is_created_and_mapped(services, fake_db, fake_gateway):
    created = await services.bills.create_bill(bill_request())

    assert created.bill_code == "rp123"
    assert "rp123" in created.payment_url
    assert created.payment_url == "https://dev.toyyibpay.com/rp123"
    assert created.qr_code_url == "https://dev.toyyibpay.com/rp123/qr"
    assert created.mapping_stored

    mapping = fake_db.tree["bill_mappings"]["rp123"]
    assert mapping["driverId"] == "drv_abcdef12"
    assert mapping["amount"] == 25.5
    assert mapping["billExternalReferenceNo"].startswith("weekly_drv_abcd_25.5_")

    assert fake_gateway.urls == ["https://dev.toyyibpay.com/index.php/api/createBill"]
    form = fake_gateway.forms[0]
    assert form["billAmount"] == "2550"
    assert form["userSecretKey"] == "sk-test-1234567890"
    assert form["categoryCode"] == "cat-test"
    assert form["billTo"] == "drv_abcdef12"
    assert form["billEmail"] == "drv_abcdef12@urbandrive.com"
    assert form["billName"] == "Pay Commission"
    assert form["billPriceSetting"] == "1"
    assert form["billPayorInfo"] == "1"
    assert form["billSplitPayment"] == "0"
    assert form["billPaymentChannel"] == "0"


@pytest.mark.parametrize("amount", ["0.99", "10000.01", 0, "-5", "lots"])
async def test_out_of_range_amount_never_reaches_gateway(services, fake_gateway, amount):
    with pytest.raises(AmountOutOfRangeError):
        await services.bills.create_bill(bill_request(amount=amount))
    assert fake_gateway.forms == []


@pytest.mark.parametrize("amount", ["1", "10000", 1, 10000.0])
async def test_boundary_amounts_are_accepted(services, amount):
    created = await services.bills.create_bill(bill_request(amount=amount))
    assert created.bill_code == "rp123"


@pytest.mark.parametrize("overrides", [
    {"amount": None}, {"driverId": None}, {"reference": None}, {"reference": "   "}, {"amount": ""},
])
async def test_missing_fields(services, fake_gateway, overrides):
    with pytest.raises(MissingFieldsError):
        await services.bills.create_bill(bill_request(**overrides))
    assert fake_gateway.forms == []


async def test_missing_fields_checked_before_range(services):
    with pytest.raises(MissingFieldsError):
        await services.bills.create_bill(bill_request(amount="0.5", reference=""))


async def test_long_description_truncated_to_100(services, fake_gateway):
    await services.bills.create_bill(bill_request(billDescription="d" * 150, billName="n" * 120))
    form = fake_gateway.forms[0]
    assert len(form["billDescription"]) == 100
    assert len(form["billName"]) == 100


async def test_phone_is_digits_only_with_fallback(services, fake_gateway):
    await services.bills.create_bill(bill_request(billPhone="+60 12-345 6789"))
    await services.bills.create_bill(bill_request(billPhone="n/a"))
    assert fake_gateway.forms[0]["billPhone"] == "60123456789"
    assert fake_gateway.forms[1]["billPhone"] == "0123456789"


async def test_external_reference_is_at_most_50(services, fake_gateway):
    await services.bills.create_bill(bill_request(reference="R" * 80))
    external = fake_gateway.forms[0]["billExternalReferenceNo"]
    assert len(external) == 50
    decoded = decode_external_reference(external)
    assert decoded.amount is not None
    assert decoded.issued_at is not None


async def test_mapping_failure_does_not_fail_the_bill(services, fake_db):
    fake_db.fail("PUT", "bill_mappings/rp123", status=401, body="Permission denied")
    created = await services.bills.create_bill(bill_request())
    assert created.bill_code == "rp123"
    assert created.mapping_stored is False
    assert created.to_response()["mappingStored"] is False


async def test_gateway_rejection_propagates(services, fake_gateway, fake_db):
    fake_gateway.response_text = "[KEY-DID-NOT-EXIST]"
    with pytest.raises(GatewayRejectedError) as excinfo:
        await services.bills.create_bill(bill_request())
    assert excinfo.value.token == "[KEY-DID-NOT-EXIST]"
    assert excinfo.value.http_status == 400
    assert "bill_mappings" not in fake_db.tree


async def test_connection_failure(services, fake_gateway):
    fake_gateway.raise_error = httpx.ConnectError("Name or service not known")
    with pytest.raises(GatewayConnectionError):
        await services.bills.create_bill(bill_request())


async def test_certificate_failure(services, fake_gateway):
    fake_gateway.raise_error = httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed")
    with pytest.raises(GatewayTlsError):
        await services.bills.create_bill(bill_request())


def test_amount_to_cents_rounds_half_up():
    from decimal import Decimal
    assert amount_to_cents(Decimal("25.50")) == 2550
    assert amount_to_cents(Decimal("10.005")) == 1001
    assert amount_to_cents(Decimal("1")) == 100


# =============================================================================
# RESPONSE GRAMMAR
# =============================================================================

def test_array_response():
    assert parse_create_bill_response('[{"BillCode":"abc123"}]') == "abc123"


def test_object_response():
    assert parse_create_bill_response('{"billCode":"abc123"}') == "abc123"


def test_object_error_response():
    with pytest.raises(GatewayRejectedError):
        parse_create_bill_response('{"error":"Invalid category"}')


@pytest.mark.parametrize("token", [
    "[KEY-DID-NOT-EXIST-OR-USER-IS-NOT-ACTIVE]", "[KEY-DID-NOT-EXIST]",
    "[USER-IS-NOT-ACTIVE]", "[CATEGORY-NOT-EXIST]", "[FALSE]",
])
def test_known_tokens(token):
    with pytest.raises(GatewayRejectedError) as excinfo:
        parse_create_bill_response(token)
    assert excinfo.value.token == token


def test_unknown_bracket_token():
    with pytest.raises(GatewayRejectedError) as excinfo:
        parse_create_bill_response("[BILL-AMOUNT-INVALID]")
    assert excinfo.value.token == "[BILL-AMOUNT-INVALID]"


def test_html_page():
    with pytest.raises(GatewayHtmlError) as excinfo:
        parse_create_bill_response("<!DOCTYPE html><html><body>Oops</body></html>")
    assert not isinstance(excinfo.value, GatewayTlsError)
    assert excinfo.value.http_status == 500


def test_cloudflare_certificate_page():
    page = "<html><title>Invalid SSL certificate | Error code 526</title></html>"
    with pytest.raises(GatewayTlsError):
        parse_create_bill_response(page)


@pytest.mark.parametrize("text", ["", "OK", "[]", '{"status": "ok"}', "42"])
def test_unexpected_shapes(text):
    with pytest.raises(GatewayUnexpectedResponseError):
        parse_create_bill_response(text)


def test_raw_text_kept_for_operators():
    with pytest.raises(GatewayUnexpectedResponseError) as excinfo:
        parse_create_bill_response("x" * 900)
    assert len(excinfo.value.raw) == 500
    assert excinfo.value.to_dict()["raw"] == "x" * 500
