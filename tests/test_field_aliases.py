import pytest

from reconciliation.field_aliases import CallbackFields, lookup


@pytest.mark.parametrize("key", ["billCode", "BillCode", "bill_code", "billcode", "Billcode", "BILL-CODE"])
def test_bill_code_aliases(key):
    assert lookup("bill_code", {key: "rp123"}) == "rp123"


def test_body_wins_over_query():
    assert lookup("bill_code", {"billcode": "from-body"}, {"billCode": "from-query"}) == "from-body"


def test_query_used_when_body_lacks_field():
    assert lookup("bill_code", {"status": "1"}, {"billcode": "q1"}) == "q1"


def test_blank_values_are_skipped():
    assert lookup("bill_code", {"billCode": "  "}, {"billcode": "q1"}) == "q1"


def test_values_are_trimmed():
    assert lookup("bill_code", {"billCode": " rp123 "}) == "rp123"


def test_alias_order_decides_between_spellings():
    body = {"status": "3", "billpaymentStatus": "1"}
    assert lookup("status", body) == "1"


def test_toyyibpay_callback_shape():
    fields = CallbackFields({
        "refno": "TP2401011234",
        "status": "1",
        "reason": "Approved",
        "billcode": "rp123",
        "order_id": "REF_drv_abcd_25.5_1700000000000",
        "amount": "25.50",
    })
    assert fields.bill_code == "rp123"
    assert fields.status == "1"
    assert fields.invoice_no == "TP2401011234"
    assert fields.external_reference_no == "REF_drv_abcd_25.5_1700000000000"


def test_redirect_shape_from_query():
    fields = CallbackFields(None, {"status_id": "3", "billcode": "rp999", "msg": "failed",
                                   "transaction_id": "TX1"})
    assert fields.status == "3"
    assert fields.bill_code == "rp999"
    assert fields.get("message") == "failed"


def test_numeric_status_is_stringified():
    assert CallbackFields({"billCode": "a", "billpaymentStatus": 1}).status == "1"


def test_missing_everything():
    fields = CallbackFields({}, {})
    assert fields.bill_code is None
    assert fields.status is None

