# reconciliation/callback_reconciler.py
# ============================================================================
# RIDEPAY RELAY — CALLBACK RECONCILER
# ============================================================================
# Purpose: Turn a gateway callback into exactly one payment record and one
# ledger update.
#
# STATE MACHINE:
#   Received -> BillCodeResolved -> DataResolved -> [MarkerClaimed]
#            -> PaymentRecorded -> LedgerUpdated -> Acked
# Any failure exits straight to Acked. The gateway always gets HTTP 200;
# outcomes travel in the JSON body.
#
# RESOLUTION ORDER for {driverId, amount, reference}:
# 1. operator overrides (manual processing only)
# 2. bill mapping, read through the retry policy
# 3. external reference decode + driver id prefix search
# ============================================================================

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import structlog

from relay.config import RelayConfig
from relay.errors import (
    AlreadyProcessedError,
    DedupClaimFailure,
    LedgerWriteFailure,
    MissingFieldsError,
    PaymentRecordFailure,
    ReconciliationGap,
    StoreTransientError,
    ValidationError,
)
from gateway.reference_codec import decode_external_reference
from reconciliation.field_aliases import CallbackFields
from reconciliation.retry_policy import RetryPolicy
from schemas.payment_definitions import (
    BillMapping,
    GatewayPaymentStatus,
    to_decimal,
    to_store_number,
)
from storage.bill_mappings import BillMappingStore
from storage.callback_markers import CallbackMarkers, ClaimOutcome
from storage.commission_ledger import CommissionLedger, LedgerResult
from storage.driver_directory import DriverDirectory
from storage.payment_records import PaymentRecordWriter
from storage.realtime_db import StoreResult, StoreStatus

logger = structlog.get_logger().bind(component="callback_reconciler")


# ============================================================================
# SECTION 1: RESULT TYPES
# ============================================================================

class Settlement(str, Enum):
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"
    DEDUP_FAILED = "dedup_failed"
    RECORD_FAILED = "record_failed"
    LEDGER_FAILED = "ledger_failed"


@dataclass
class ResolvedPayment:
    driver_id: str
    amount: Decimal
    reference: str
    source: str


@dataclass
class SettlementResult:
    outcome: Settlement
    bill_code: str
    payment: ResolvedPayment
    payment_id: Optional[str] = None
    ledger: Optional[LedgerResult] = None
    resumed: bool = False


def _mapping_needs_retry(result: StoreResult) -> bool:
    if result.status in (StoreStatus.TRANSIENT_FAILURE, StoreStatus.NOT_FOUND):
        return True
    return result.ok and not result.data.is_complete


def is_paid_status(status: Optional[str]) -> bool:
    return status == GatewayPaymentStatus.PAID.value


# ============================================================================
# SECTION 2: RECONCILER
# ============================================================================

class CallbackReconciler:
    def __init__(
        self,
        config: RelayConfig,
        mappings: BillMappingStore,
        directory: DriverDirectory,
        records: PaymentRecordWriter,
        ledger: CommissionLedger,
        markers: CallbackMarkers,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.config = config
        self.mappings = mappings
        self.directory = directory
        self.records = records
        self.ledger = ledger
        self.markers = markers
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.mapping_lookup_attempts,
            base_delay=config.mapping_backoff_seconds,
        )

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    async def _read_mapping(self, bill_code: str) -> Optional[BillMapping]:
        result = await self.retry_policy.run(
            lambda: self.mappings.lookup(bill_code),
            _mapping_needs_retry,
            label="bill_mapping_lookup",
        )
        if result.ok:
            return result.data
        logger.warning("bill_mapping_unavailable", bill_code=bill_code,
                       store_status=result.status.value)
        return None

    async def resolve(
        self,
        bill_code: str,
        external_reference_no: Optional[str] = None,
        driver_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        reference: Optional[str] = None,
    ) -> Optional[ResolvedPayment]:
        """Fill in driver, amount and reference; None when they cannot be recovered."""
        if driver_id and amount is not None:
            return ResolvedPayment(driver_id, amount, reference or "", source="override")

        mapping = await self._read_mapping(bill_code)
        if mapping is not None:
            driver_id = driver_id or mapping.driver_id
            amount = amount if amount is not None else mapping.amount
            reference = reference or mapping.reference
        if driver_id and amount is not None and amount > 0:
            return ResolvedPayment(driver_id, amount, reference or "", source="mapping")

        external = external_reference_no or (mapping.bill_external_reference_no if mapping else None)
        decoded = decode_external_reference(external)
        if decoded is None:
            logger.warning("external_reference_unusable", bill_code=bill_code,
                           external_reference_no=external)
            return None

        logger.info("external_reference_decoded", bill_code=bill_code,
                    reference=decoded.reference, driver_prefix=decoded.driver_prefix,
                    amount=str(decoded.amount) if decoded.amount is not None else None)
        if amount is None or amount <= 0:
            amount = decoded.amount
        reference = reference or decoded.reference
        if not driver_id:
            driver_id = await self.directory.resolve_prefix(decoded.driver_prefix)

        if driver_id and amount is not None and amount > 0:
            return ResolvedPayment(driver_id, amount, reference or "", source="external_reference")
        return None

    # =========================================================================
    # SETTLEMENT (marker -> payment record -> ledger -> marker)
    # =========================================================================

    async def settle(
        self,
        bill_code: str,
        payment: ResolvedPayment,
        invoice_no: Optional[str] = None,
    ) -> SettlementResult:
        log = logger.bind(bill_code=bill_code, driver_id=payment.driver_id,
                          amount=str(payment.amount))
        dedup = self.config.callback_dedup_enabled
        payment_id = None
        resumed = False

        if dedup:
            claim = await self.markers.claim(bill_code, payment.driver_id, payment.amount)
            if claim.outcome == ClaimOutcome.ALREADY_COMPLETED:
                return SettlementResult(Settlement.DUPLICATE, bill_code, payment,
                                        payment_id=claim.marker.payment_id)
            if claim.outcome == ClaimOutcome.IN_PROGRESS:
                return SettlementResult(Settlement.IN_PROGRESS, bill_code, payment)
            if claim.outcome == ClaimOutcome.STORE_FAILURE:
                log.error("dedup_claim_failed", store_status=claim.store_status.value)
                return SettlementResult(Settlement.DEDUP_FAILED, bill_code, payment)
            if claim.outcome == ClaimOutcome.RESUME_LEDGER:
                resumed = True
                payment_id = claim.marker.payment_id
                if claim.marker.driver_id and claim.marker.amount is not None:
                    payment = ResolvedPayment(claim.marker.driver_id, claim.marker.amount,
                                              payment.reference, source="marker")
        else:
            log.warning("callback_dedup_disabled")

        if not resumed:
            appended = await self.records.append(
                payment.driver_id, payment.amount, bill_code, payment.reference, invoice_no,
            )
            if not appended.ok:
                log.error("payment_record_not_written", store_status=appended.status.value)
                if dedup:
                    await self.markers.release(bill_code)
                return SettlementResult(Settlement.RECORD_FAILED, bill_code, payment)
            payment_id = appended.data.payment_id
            if dedup:
                await self.markers.attach_payment(bill_code, payment_id)

        ledger = await self.ledger.reduce_unpaid(
            payment.driver_id, payment.amount, bill_code, payment.reference,
        )
        if not ledger.ok:
            log.error("commission_update_failed", payment_id=payment_id,
                      store_status=ledger.status.value,
                      hint="payment recorded but ledger stale; reprocess the bill")
            if dedup:
                await self.markers.mark_ledger_failed(bill_code, payment_id)
            return SettlementResult(Settlement.LEDGER_FAILED, bill_code, payment,
                                    payment_id=payment_id, ledger=ledger, resumed=resumed)

        if dedup:
            await self.markers.complete(bill_code, payment_id)
        log.info("payment_reconciled", payment_id=payment_id, source=payment.source,
                 resumed=resumed)
        return SettlementResult(Settlement.SUCCESS, bill_code, payment,
                                payment_id=payment_id, ledger=ledger, resumed=resumed)

    # =========================================================================
    # GATEWAY CALLBACK
    # =========================================================================

    async def handle_callback(
        self,
        body: Optional[Mapping[str, Any]],
        query: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Process one callback and return the ack body (always sent with 200)."""
        fields = CallbackFields(body, query)
        logger.info("callback_received", **fields.summary())

        bill_code = fields.bill_code
        if not bill_code:
            logger.error("callback_without_bill_code", body=dict(fields.body),
                         query=dict(fields.query))
            return {"received": True, "error": "NoBillCode"}

        status = fields.status
        if status is None:
            logger.warning("callback_status_absent_treated_as_paid", bill_code=bill_code)
        elif not is_paid_status(status):
            logger.info("callback_not_paid", bill_code=bill_code, status=status)
            return {"received": True, "billCode": bill_code, "status": status, "processed": False}

        payment = await self.resolve(bill_code, fields.external_reference_no)
        if payment is None:
            logger.error("reconciliation_gap", bill_code=bill_code,
                         external_reference_no=fields.external_reference_no,
                         invoice_no=fields.invoice_no,
                         hint="paid at gateway but driver/amount unknown; use /api/payment/recover")
            return {"received": True, "error": ReconciliationGap.code, "billCode": bill_code}

        result = await self.settle(bill_code, payment, fields.invoice_no)
        return self._callback_ack(result)

    @staticmethod
    def _callback_ack(result: SettlementResult) -> Dict[str, Any]:
        bill_code = result.bill_code
        if result.outcome == Settlement.SUCCESS:
            return {"received": True, "success": True, "billCode": bill_code,
                    "paymentRecorded": True, "commissionUpdated": True}
        if result.outcome == Settlement.DUPLICATE:
            return {"received": True, "duplicate": True, "billCode": bill_code, "processed": False}
        if result.outcome == Settlement.IN_PROGRESS:
            return {"received": True, "duplicate": True, "inProgress": True,
                    "billCode": bill_code, "processed": False}
        if result.outcome == Settlement.DEDUP_FAILED:
            return {"received": True, "error": DedupClaimFailure.code,
                    "billCode": bill_code, "processed": False}
        if result.outcome == Settlement.RECORD_FAILED:
            return {"received": True, "error": PaymentRecordFailure.code,
                    "billCode": bill_code, "processed": False}
        return {"received": True, "warning": LedgerWriteFailure.code, "billCode": bill_code,
                "paymentRecorded": True, "commissionUpdated": False}

    # =========================================================================
    # OPERATOR TOOLS
    # =========================================================================

    async def process(
        self,
        bill_code: Optional[str],
        driver_id: Optional[str] = None,
        amount: Any = None,
        reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Manual reprocess of a bill. Raises RelayError subclasses for non-200 outcomes."""
        if not bill_code:
            raise MissingFieldsError("billCode is required", missing=["billCode"])
        amount_dec = None
        if amount is not None and str(amount).strip() != "":
            amount_dec = to_decimal(amount)
            if amount_dec is None or amount_dec <= 0:
                raise ValidationError("amount must be a positive number", amount=str(amount))

        payment = await self.resolve(bill_code, None, (driver_id or "").strip() or None,
                                     amount_dec, reference)
        if payment is None:
            raise ReconciliationGap(
                "Driver or amount could not be resolved for this bill; supply them via recovery",
                billCode=bill_code,
            )

        logger.info("manual_processing", bill_code=bill_code, driver_id=payment.driver_id,
                    amount=str(payment.amount), source=payment.source)
        result = await self.settle(bill_code, payment)

        if result.outcome in (Settlement.DUPLICATE, Settlement.IN_PROGRESS):
            raise AlreadyProcessedError(
                "This bill has already been processed" if result.outcome == Settlement.DUPLICATE
                else "This bill is being processed by another request",
                billCode=bill_code, paymentId=result.payment_id,
                inProgress=result.outcome == Settlement.IN_PROGRESS or None,
            )
        if result.outcome == Settlement.DEDUP_FAILED:
            raise DedupClaimFailure("Could not claim the bill for processing", billCode=bill_code)
        if result.outcome == Settlement.RECORD_FAILED:
            raise PaymentRecordFailure("Payment record could not be written", billCode=bill_code,
                                       processed=False)
        if result.outcome == Settlement.LEDGER_FAILED:
            raise LedgerWriteFailure(
                "Payment recorded but the commission ledger was not updated",
                billCode=bill_code, paymentId=result.payment_id,
                paymentRecorded=True, commissionUpdated=False,
            )

        return {
            "success": True,
            "billCode": bill_code,
            "driverId": result.payment.driver_id,
            "amount": to_store_number(result.payment.amount),
            "reference": result.payment.reference,
            "paymentId": result.payment_id,
            "source": result.payment.source,
            "resumed": result.resumed,
            "paymentRecorded": True,
            "commissionUpdated": True,
            "commission": result.ledger.to_dict(),
        }

    async def recover(
        self,
        bill_code: Optional[str],
        driver_id: Optional[str],
        amount: Any,
        reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Rewrite a lost or partial mapping with operator-supplied values, then process it."""
        missing = [name for name, value in (("billCode", bill_code), ("driverId", driver_id),
                                            ("amount", amount)) if not value]
        if missing:
            raise MissingFieldsError("billCode, driverId and amount are required", missing=missing)
        amount_dec = to_decimal(amount)
        if amount_dec is None or amount_dec <= 0:
            raise ValidationError("amount must be a positive number", amount=str(amount))

        written = await self.mappings.overwrite_recovered(bill_code, driver_id, amount_dec, reference)
        if not written.ok:
            logger.error("mapping_recovery_failed", bill_code=bill_code,
                         store_status=written.status.value)
            raise StoreTransientError(
                "Bill mapping could not be rewritten",
                billCode=bill_code, storeStatus=written.status.value,
            )
        body = await self.process(bill_code, driver_id, amount_dec, reference)
        body["mappingRecovered"] = True
        return body

    async def update_commission(
        self,
        driver_id: Optional[str],
        amount: Any,
        bill_code: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Direct ledger adjustment; no payment record, no marker."""
        missing = [name for name, value in (("driverId", driver_id), ("amount", amount)) if not value]
        if missing:
            raise MissingFieldsError("driverId and amount are required", missing=missing)
        amount_dec = to_decimal(amount)
        if amount_dec is None or amount_dec <= 0:
            raise ValidationError("amount must be a positive number", amount=str(amount))

        result = await self.ledger.reduce_unpaid(driver_id, amount_dec, bill_code or "manual", reference)
        if not result.ok:
            raise LedgerWriteFailure("Commission ledger update failed", driverId=driver_id,
                                     storeStatus=result.status.value)
        logger.warning("manual_commission_update", driver_id=driver_id, amount=str(amount_dec),
                       bill_code=bill_code, reference=reference)
        return {"success": True, "commission": result.to_dict()}

    async def redirect_status(self, query: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """JSON status for the gateway's return redirect."""
        fields = CallbackFields(None, query)
        bill_code = fields.bill_code
        status = fields.status

        if is_paid_status(status) or (status is None and bill_code):
            state = "paid"
        elif status == GatewayPaymentStatus.FAILED.value:
            state = "failed"
        elif status == GatewayPaymentStatus.PENDING.value:
            state = "pending"
        else:
            state = "unknown"

        body: Dict[str, Any] = {
            "billCode": bill_code,
            "status": state,
            "statusId": status,
            "orderId": fields.external_reference_no,
            "transactionId": fields.invoice_no,
            "message": fields.get("message"),
        }
        if not bill_code:
            return body

        mapping = await self.mappings.get(bill_code)
        if mapping is not None:
            body.update({
                "driverId": mapping.driver_id,
                "amount": to_store_number(mapping.amount) if mapping.amount is not None else None,
                "reference": mapping.reference,
            })
            if mapping.driver_id:
                record = await self.records.find_by_bill_code(mapping.driver_id, bill_code)
                body["paymentRecorded"] = record is not None
        marker = await self.markers.get(bill_code)
        if marker is not None:
            body["processing"] = marker.status.value
        logger.info("redirect_status", bill_code=bill_code, status=state,
                    payment_recorded=body.get("paymentRecorded"))
        return body
