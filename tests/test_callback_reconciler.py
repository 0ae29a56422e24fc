from datetime import timedelta
from decimal import Decimal

import pytest

from reconciliation.retry_policy import RetryPolicy
from relay.errors import AlreadyProcessedError, LedgerWriteFailure, MissingFieldsError, ReconciliationGap
from schemas.payment_definitions import utc_now

from conftest import build_services


def seed(fake_db, mapping=None, unpaid=100.0, paid=0.0, total=100.0, driver_id="drv_abcdef12"):
    fake_db.tree = {
        "drivers": {driver_id: {"name": "Aina"}},
        "driver_commissions": {driver_id: {"commission_summary": {
            "unpaid_commission": unpaid,
            "paid_commission": paid,
            "total_commission": total,
            "total_rides": 10,
        }}},
    }
    if mapping is not None:
        fake_db.tree["bill_mappings"] = {"rp123": mapping}


def summary(fake_db, driver_id="drv_abcdef12"):
    return fake_db.tree["driver_commissions"][driver_id]["commission_summary"]


def payments(fake_db, driver_id="drv_abcdef12"):
    return list(fake_db.tree.get("commission_payment", {}).get(driver_id, {}).values())


MAPPING = {"driverId": "drv_abcdef12", "amount": 25.50, "reference": "weekly",
           "billExternalReferenceNo": "weekly_drv_abcd_25.5_1700000000000",
           "createdAt": "2024-01-01T00:00:00Z", "timestamp": 1704067200000}


# =============================================================================
# HAPPY PATH
# =============================================================================

async def test_paid_callback_records_once_and_updates_ledger(services, fake_db):
    seed(fake_db, MAPPING, unpaid=100.0, paid=20.0, total=120.0)

    ack = await services.reconciler.handle_callback({"billCode": "rp123", "billpaymentStatus": "1"})

    assert ack == {"received": True, "success": True, "billCode": "rp123",
                   "paymentRecorded": True, "commissionUpdated": True}
    records = payments(fake_db)
    assert len(records) == 1
    assert records[0]["amount"] == 25.5
    assert records[0]["billCode"] == "rp123"
    assert records[0]["reference"] == "weekly"
    # unpaid = max(0, total - (paid + 25.50))
    assert summary(fake_db)["paid_commission"] == 45.5
    assert summary(fake_db)["unpaid_commission"] == 74.5
    assert fake_db.tree["processed_callbacks"]["rp123"]["status"] == "completed"


async def test_toyyibpay_form_shape(services, fake_db):
    seed(fake_db, MAPPING)
    ack = await services.reconciler.handle_callback({
        "refno": "TP2401", "status": "1", "reason": "Approved", "billcode": "rp123",
        "order_id": "weekly_drv_abcd_25.5_1700000000000", "amount": "25.50",
    })
    assert ack["success"] is True
    assert payments(fake_db)[0]["invoiceNo"] == "TP2401"


async def test_bill_code_from_query(services, fake_db):
    seed(fake_db, MAPPING)
    ack = await services.reconciler.handle_callback({}, {"billcode": "rp123", "status_id": "1"})
    assert ack["success"] is True


# =============================================================================
# STATUS HANDLING
# =============================================================================

async def test_missing_bill_code(services, fake_db):
    ack = await services.reconciler.handle_callback({"status": "1"}, {})
    assert ack == {"received": True, "error": "NoBillCode"}
    assert fake_db.calls == []


async def test_absent_status_is_treated_as_paid(services, fake_db):
    """Policy: a resolvable bill code without any status counts as a successful payment."""
    seed(fake_db, MAPPING)
    ack = await services.reconciler.handle_callback({"billCode": "rp123"})
    assert ack["success"] is True
    assert len(payments(fake_db)) == 1


@pytest.mark.parametrize("status", ["2", "3", "0"])
async def test_unpaid_status_leaves_ledger_alone(services, fake_db, status):
    seed(fake_db, MAPPING)
    ack = await services.reconciler.handle_callback({"billCode": "rp123", "status": status})
    assert ack == {"received": True, "billCode": "rp123", "status": status, "processed": False}
    assert payments(fake_db) == []
    assert summary(fake_db)["unpaid_commission"] == 100.0


# =============================================================================
# RESOLUTION
# =============================================================================

async def test_fallback_to_external_reference_and_prefix_search(services, fake_db):
    seed(fake_db, mapping=None, unpaid=80.0, paid=0.0, total=80.0)
    ack = await services.reconciler.handle_callback({
        "billCode": "rp123",
        "billpaymentStatus": "1",
        "billExternalReferenceNo": "REF_drv_abcd_25.5_1700000000000",
    })
    assert ack["success"] is True
    record = payments(fake_db)[0]
    assert record["amount"] == 25.5
    assert record["reference"] == "REF"
    assert summary(fake_db)["unpaid_commission"] == 54.5


async def test_partial_mapping_uses_its_own_external_reference(services, fake_db):
    seed(fake_db, {"driverId": None, "amount": None,
                   "billExternalReferenceNo": "weekly_drv_abcd_25.5_1700000000000"})
    ack = await services.reconciler.handle_callback({"billCode": "rp123", "status": "1"})
    assert ack["success"] is True
    assert payments(fake_db)[0]["amount"] == 25.5


async def test_prefix_search_falls_back_to_commission_directory(services, fake_db):
    seed(fake_db, mapping=None)
    del fake_db.tree["drivers"]
    ack = await services.reconciler.handle_callback({
        "billCode": "rp123", "status": "1", "order_id": "REF_drv_abcd_25.5_1700000000000"})
    assert ack["success"] is True


async def test_unresolvable_payment_is_a_reconciliation_gap(services, fake_db, clock):
    seed(fake_db, mapping=None)
    ack = await services.reconciler.handle_callback({"billCode": "rp123", "status": "1"})
    assert ack == {"received": True, "error": "MissingDriverOrAmount", "billCode": "rp123"}
    assert payments(fake_db) == []
    assert clock.sleeps == [1.0, 2.0]


async def test_unknown_prefix_is_a_reconciliation_gap(services, fake_db):
    seed(fake_db, mapping=None)
    ack = await services.reconciler.handle_callback({
        "billCode": "rp123", "status": "1", "order_id": "REF_zzzzzzzz_25.5_1700000000000"})
    assert ack["error"] == "MissingDriverOrAmount"


async def test_cut_amount_in_external_reference_is_a_gap_not_a_credit(services, fake_db):
    seed(fake_db, mapping=None, unpaid=100.0, paid=0.0, total=100.0)
    ack = await services.reconciler.handle_callback({
        "billCode": "rp123", "status": "1", "order_id": "X" * 38 + "_drv_abcd_25"})
    assert ack == {"received": True, "error": "MissingDriverOrAmount", "billCode": "rp123"}
    assert payments(fake_db) == []
    assert summary(fake_db)["paid_commission"] == 0.0


async def test_transient_mapping_read_is_retried_with_linear_backoff(services, fake_db, clock):
    seed(fake_db, MAPPING)
    fake_db.fail("GET", "bill_mappings/rp123", status=503, times=2)
    ack = await services.reconciler.handle_callback({"billCode": "rp123", "status": "1"})
    assert ack["success"] is True
    assert clock.sleeps == [1.0, 2.0]
    assert fake_db.count("GET", "bill_mappings/rp123") == 3


async def test_complete_mapping_needs_no_retry(services, fake_db, clock):
    seed(fake_db, MAPPING)
    await services.reconciler.handle_callback({"billCode": "rp123", "status": "1"})
    assert clock.sleeps == []


async def test_retry_policy_stops_at_max_attempts(clock):
    calls = []

    async def operation():
        calls.append(1)
        return "still-bad"

    policy = RetryPolicy(max_attempts=4, base_delay=0.5, sleep=clock)
    result = await policy.run(operation, lambda r: True)
    assert result == "still-bad"
    assert len(calls) == 4
    assert clock.sleeps == [0.5, 1.0, 1.5]


# =============================================================================
# ORDERING: RECORD BEFORE LEDGER
# =============================================================================

async def test_record_failure_stops_before_ledger(services, fake_db):
    seed(fake_db, MAPPING)
    fake_db.fail("POST", "commission_payment/drv_abcdef12", status=401, body="Permission denied")
    ack = await services.reconciler.handle_callback({"billCode": "rp123", "status": "1"})
    assert ack == {"received": True, "error": "PaymentRecordFailed", "billCode": "rp123",
                   "processed": False}
    assert summary(fake_db)["unpaid_commission"] == 100.0
    assert fake_db.count("PATCH", "driver_commissions") == 0
    # Claim released so a retry can go through.
    assert "rp123" not in fake_db.tree.get("processed_callbacks", {})


async def test_ledger_failure_is_reported_and_resumable(services, fake_db):
    seed(fake_db, MAPPING, unpaid=100.0, paid=0.0, total=100.0)
    fake_db.fail("PATCH", "driver_commissions/drv_abcdef12/commission_summary",
                 status=403, body="Permission denied", times=1)

    ack = await services.reconciler.handle_callback({"billCode": "rp123", "status": "1"})
    assert ack == {"received": True, "warning": "CommissionUpdateFailed", "billCode": "rp123",
                   "paymentRecorded": True, "commissionUpdated": False}
    assert len(payments(fake_db)) == 1
    assert fake_db.tree["processed_callbacks"]["rp123"]["status"] == "ledger_failed"

    # Gateway retry: ledger only, no second payment record.
    retry = await services.reconciler.handle_callback({"billCode": "rp123", "status": "1"})
    assert retry["success"] is True
    assert len(payments(fake_db)) == 1
    assert summary(fake_db)["unpaid_commission"] == 74.5


async def test_marker_claim_failure(services, fake_db):
    seed(fake_db, MAPPING)
    fake_db.fail("GET", "processed_callbacks/rp123", status=500)
    ack = await services.reconciler.handle_callback({"billCode": "rp123", "status": "1"})
    assert ack == {"received": True, "error": "DedupClaimFailed", "billCode": "rp123",
                   "processed": False}
    assert payments(fake_db) == []


# =============================================================================
# REPLAYS
# =============================================================================

async def test_replay_without_dedup_decrements_twice(config, fake_db, fake_gateway, clock):
    """Known gap when the processed marker is switched off: each replay is applied again."""
    config.callback_dedup_enabled = False
    services = build_services(config, fake_db, fake_gateway, clock)
    seed(fake_db, MAPPING, unpaid=100.0, paid=0.0, total=100.0)
    callback = {"billCode": "rp123", "billpaymentStatus": "1"}

    first = await services.reconciler.handle_callback(callback)
    second = await services.reconciler.handle_callback(callback)
    await services.close()

    assert first["success"] and second["success"]
    assert len(payments(fake_db)) == 2
    assert summary(fake_db)["paid_commission"] == 51.0
    assert summary(fake_db)["unpaid_commission"] == 49.0
    assert "processed_callbacks" not in fake_db.tree


async def test_replay_with_dedup_is_acked_as_duplicate(services, fake_db):
    seed(fake_db, MAPPING, unpaid=100.0, paid=0.0, total=100.0)
    callback = {"billCode": "rp123", "billpaymentStatus": "1"}

    first = await services.reconciler.handle_callback(callback)
    second = await services.reconciler.handle_callback(callback)

    assert first["success"] is True
    assert second == {"received": True, "duplicate": True, "billCode": "rp123", "processed": False}
    assert len(payments(fake_db)) == 1
    assert summary(fake_db)["unpaid_commission"] == 74.5


async def test_concurrent_duplicate_is_in_progress(services, fake_db):
    seed(fake_db, MAPPING)
    fake_db.tree["processed_callbacks"] = {"rp123": {"status": "processing",
                                                     "claimedAt": utc_now().isoformat()}}
    ack = await services.reconciler.handle_callback({"billCode": "rp123", "status": "1"})
    assert ack == {"received": True, "duplicate": True, "inProgress": True,
                   "billCode": "rp123", "processed": False}
    assert payments(fake_db) == []


async def test_stale_processing_claim_is_reprocessed(services, fake_db):
    seed(fake_db, MAPPING)
    old = (utc_now() - timedelta(hours=1)).isoformat()
    fake_db.tree["processed_callbacks"] = {"rp123": {"status": "processing", "claimedAt": old}}
    ack = await services.reconciler.handle_callback({"billCode": "rp123", "status": "1"})
    assert ack["success"] is True


# =============================================================================
# OPERATOR TOOLS
# =============================================================================

async def test_manual_process_uses_mapping(services, fake_db):
    seed(fake_db, MAPPING)
    body = await services.reconciler.process("rp123")
    assert body["success"] is True
    assert body["driverId"] == "drv_abcdef12"
    assert body["amount"] == 25.5
    assert body["commission"]["unpaid_commission"] == 74.5

    with pytest.raises(AlreadyProcessedError):
        await services.reconciler.process("rp123")


async def test_manual_process_overrides_take_precedence(services, fake_db):
    seed(fake_db, MAPPING)
    body = await services.reconciler.process("rp123", "drv_abcdef12", "10", "fixup")
    assert body["amount"] == 10.0
    assert body["source"] == "override"
    assert payments(fake_db)[0]["reference"] == "fixup"


async def test_manual_process_requires_bill_code(services):
    with pytest.raises(MissingFieldsError):
        await services.reconciler.process(None)


async def test_manual_process_unresolvable(services, fake_db):
    seed(fake_db, mapping=None)
    with pytest.raises(ReconciliationGap) as excinfo:
        await services.reconciler.process("rp123")
    assert excinfo.value.http_status == 404


async def test_manual_process_ledger_failure(services, fake_db):
    seed(fake_db, MAPPING)
    fake_db.fail("PATCH", "driver_commissions/drv_abcdef12/commission_summary", status=403,
                 body="Permission denied")
    with pytest.raises(LedgerWriteFailure) as excinfo:
        await services.reconciler.process("rp123")
    assert excinfo.value.to_dict()["paymentRecorded"] is True


async def test_recover_rewrites_mapping_then_processes(services, fake_db):
    seed(fake_db, mapping=None)
    body = await services.reconciler.recover("rp123", "drv_abcdef12", "25.50", "recovered")
    assert body["success"] is True
    assert body["mappingRecovered"] is True
    assert fake_db.tree["bill_mappings"]["rp123"]["recovered"] is True
    assert summary(fake_db)["unpaid_commission"] == 74.5


async def test_update_commission(services, fake_db):
    seed(fake_db, unpaid=100.0, paid=0.0, total=100.0)
    body = await services.reconciler.update_commission("drv_abcdef12", "40")
    assert body["commission"]["unpaid_commission"] == 60.0
    assert payments(fake_db) == []
    with pytest.raises(MissingFieldsError):
        await services.reconciler.update_commission(None, "40")


async def test_redirect_status(services, fake_db):
    seed(fake_db, MAPPING)
    await services.reconciler.handle_callback({"billCode": "rp123", "status": "1"})

    paid = await services.reconciler.redirect_status(
        {"status_id": "1", "billcode": "rp123", "order_id": "x", "transaction_id": "TP1"})
    assert paid["status"] == "paid"
    assert paid["driverId"] == "drv_abcdef12"
    assert paid["paymentRecorded"] is True
    assert paid["processing"] == "completed"

    failed = await services.reconciler.redirect_status({"status_id": "3", "billcode": "rp999"})
    assert failed["status"] == "failed"
    assert "driverId" not in failed

    trusted = await services.reconciler.redirect_status({"billcode": "rp999"})
    assert trusted["status"] == "paid"

    pending = await services.reconciler.redirect_status({"status_id": "2"})
    assert pending == {"billCode": None, "status": "pending", "statusId": "2", "orderId": None,
                       "transactionId": None, "message": None}


def test_amounts_are_decimal_internally():
    from schemas.payment_definitions import CommissionSummary
    summary_ = CommissionSummary(paid_commission=Decimal("0.1"), total_commission=Decimal("0.3"))
    after = summary_.apply_payment(Decimal("0.2"))
    assert after.unpaid_commission == Decimal("0.0")
