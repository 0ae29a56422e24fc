# storage/payment_records.py
# ============================================================================
# RIDEPAY RELAY — PAYMENT RECORD WRITER
# ============================================================================
# Append-only transaction history under commission_payment/{driverId}.
# A record must be durable before the commission ledger is touched.
# ============================================================================

import string
import uuid
from dataclasses import dataclass
from typing import Any, List, Optional

import structlog

from schemas.payment_definitions import PaymentRecord, epoch_millis, to_decimal
from storage.realtime_db import RealtimeDatabase, StoreResult, StoreStatus, store_path

logger = structlog.get_logger().bind(component="payment_records")


BASE36 = string.digits + string.ascii_lowercase
SUFFIX_LENGTH = 9


def generate_payment_id() -> str:
    # Timestamp + 9 base-36 random chars; collisions only cost a cosmetic duplicate id.
    n = uuid.uuid4().int
    suffix = []
    for _ in range(SUFFIX_LENGTH):
        n, digit = divmod(n, 36)
        suffix.append(BASE36[digit])
    return f"payment_{epoch_millis()}_{''.join(suffix)}"


@dataclass
class AppendedPayment:
    payment_id: str
    push_key: Optional[str]
    record: PaymentRecord


class PaymentRecordWriter:
    ROOT = "commission_payment"

    def __init__(self, db: RealtimeDatabase):
        self.db = db

    async def append(
        self,
        driver_id: str,
        amount: Any,
        bill_code: str,
        reference: Optional[str] = None,
        invoice_no: Optional[str] = None,
    ) -> StoreResult:
        """POST a new record. On success ``data`` is an AppendedPayment."""
        amount_dec = to_decimal(amount)
        if not driver_id or not bill_code or amount_dec is None or amount_dec <= 0:
            logger.error("payment_record_rejected", driver_id=driver_id,
                         bill_code=bill_code, amount=str(amount))
            return StoreResult.rejected("driverId, amount and billCode are required")

        record = PaymentRecord(
            payment_id=generate_payment_id(),
            amount=amount_dec,
            bill_code=bill_code,
            reference=reference or "",
            invoice_no=invoice_no or None,
        )
        path = store_path(self.ROOT, driver_id)
        result = await self.db.post(path, record.to_store())

        if not result.ok:
            if result.status == StoreStatus.PERMISSION_DENIED:
                logger.error("payment_record_permission_denied", driver_id=driver_id,
                             bill_code=bill_code, path=path,
                             hint="commission_payment needs write access in database rules")
            logger.error("payment_record_failed", driver_id=driver_id,
                         bill_code=bill_code, store_status=result.status.value,
                         http_status=result.http_status, response=result.body[:500])
            return result

        push_key = result.data.get("name") if isinstance(result.data, dict) else None
        logger.info("payment_record_saved", driver_id=driver_id, bill_code=bill_code,
                    payment_id=record.payment_id, push_key=push_key,
                    amount=str(amount_dec))
        return StoreResult(
            status=StoreStatus.OK,
            data=AppendedPayment(payment_id=record.payment_id, push_key=push_key, record=record),
            http_status=result.http_status,
        )

    async def list_for_driver(self, driver_id: str) -> StoreResult:
        result = await self.db.get(store_path(self.ROOT, driver_id))
        if result.status == StoreStatus.NOT_FOUND:
            return StoreResult(status=StoreStatus.OK, data=[])
        if not result.ok:
            return result
        records: List[dict] = []
        if isinstance(result.data, dict):
            records = [r for r in result.data.values() if isinstance(r, dict)]
        return StoreResult(status=StoreStatus.OK, data=records)

    async def find_by_bill_code(self, driver_id: str, bill_code: str) -> Optional[dict]:
        result = await self.list_for_driver(driver_id)
        if not result.ok:
            return None
        for record in result.data:
            if record.get("billCode") == bill_code:
                return record
        return None

    async def bill_codes_by_driver(self) -> StoreResult:
        """Every recorded bill code, grouped per driver (one read of the whole tree)."""
        result = await self.db.get(self.ROOT)
        if result.status == StoreStatus.NOT_FOUND:
            return StoreResult(status=StoreStatus.OK, data={})
        if not result.ok:
            return result
        grouped = {}
        if isinstance(result.data, dict):
            for driver_id, entries in result.data.items():
                if isinstance(entries, dict):
                    grouped[driver_id] = {
                        e.get("billCode") for e in entries.values()
                        if isinstance(e, dict) and e.get("billCode")
                    }
        return StoreResult(status=StoreStatus.OK, data=grouped)
