# storage/commission_ledger.py
# ============================================================================
# RIDEPAY RELAY — COMMISSION LEDGER ACCESSOR
# ============================================================================
# Reads and patches a driver's commission summary.
#
# PATHS (first readable wins):
# 1. driver_commissions/{driverId}/commission_summary   (primary)
# 2. commissions/{driverId}                             (legacy)
# A zeroed summary is created at the primary path only when both are absent.
#
# INVARIANT: unpaid_commission == max(0, total_commission - paid_commission)
# ============================================================================

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Tuple

import structlog

from schemas.payment_definitions import (
    CommissionSummary,
    now_iso,
    to_decimal,
    to_store_number,
)
from storage.realtime_db import RealtimeDatabase, StoreResult, StoreStatus, store_path

logger = structlog.get_logger().bind(component="commission_ledger")


@dataclass
class LedgerResult:
    status: StoreStatus
    driver_id: Optional[str] = None
    path: Optional[str] = None
    amount: Optional[Decimal] = None
    before: Optional[CommissionSummary] = None
    after: Optional[CommissionSummary] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == StoreStatus.OK

    def to_dict(self) -> dict:
        body = {"driverId": self.driver_id, "path": self.path, "status": self.status.value}
        if self.after is not None:
            body.update({
                "unpaid_commission": to_store_number(self.after.unpaid_commission),
                "paid_commission": to_store_number(self.after.paid_commission),
                "total_commission": to_store_number(self.after.total_commission),
            })
        return body


class CommissionLedger:
    PRIMARY_ROOT = "driver_commissions"
    SUMMARY_NODE = "commission_summary"
    LEGACY_ROOT = "commissions"

    def __init__(self, db: RealtimeDatabase):
        self.db = db

    def primary_path(self, driver_id: str) -> str:
        return store_path(self.PRIMARY_ROOT, driver_id, self.SUMMARY_NODE)

    def legacy_path(self, driver_id: str) -> str:
        return store_path(self.LEGACY_ROOT, driver_id)

    async def _load(self, driver_id: str) -> Tuple[StoreResult, Optional[str], Optional[CommissionSummary]]:
        primary = self.primary_path(driver_id)
        first = await self.db.get(primary)
        if first.ok and isinstance(first.data, dict):
            return first, primary, CommissionSummary.from_store(first.data)

        logger.warning("ledger_primary_unavailable", driver_id=driver_id,
                       store_status=first.status.value)
        legacy = self.legacy_path(driver_id)
        second = await self.db.get(legacy)
        if second.ok and isinstance(second.data, dict):
            logger.info("ledger_using_legacy_path", driver_id=driver_id, path=legacy)
            return second, legacy, CommissionSummary.from_store(second.data)

        primary_absent = first.status == StoreStatus.NOT_FOUND or (
            first.ok and not isinstance(first.data, dict)
        )
        if not primary_absent:
            # Never overwrite a summary we merely failed to read.
            return first, None, None

        zeroed = CommissionSummary.zeroed()
        created = await self.db.put(primary, zeroed.to_store())
        if not created.ok:
            logger.error("ledger_create_failed", driver_id=driver_id,
                         store_status=created.status.value, response=created.body[:500])
            return created, None, None
        logger.info("ledger_summary_created", driver_id=driver_id, path=primary)
        return created, primary, zeroed

    async def reduce_unpaid(
        self,
        driver_id: str,
        amount: Any,
        bill_code: str,
        reference: Optional[str] = None,
    ) -> LedgerResult:
        amount_dec = to_decimal(amount)
        if not driver_id or not bill_code or amount_dec is None or amount_dec <= 0:
            logger.error("ledger_update_rejected", driver_id=driver_id,
                         bill_code=bill_code, amount=str(amount))
            return LedgerResult(status=StoreStatus.REJECTED, driver_id=driver_id,
                                detail="driverId, billCode and a positive amount are required")

        loaded, path, before = await self._load(driver_id)
        if before is None:
            return LedgerResult(status=loaded.status, driver_id=driver_id,
                                amount=amount_dec, detail=loaded.body[:500])

        after = before.apply_payment(amount_dec)
        update = {
            "unpaid_commission": to_store_number(after.unpaid_commission),
            "paid_commission": to_store_number(after.paid_commission),
            "last_payment_date": now_iso(),
            "last_payment_amount": to_store_number(amount_dec),
        }
        result = await self.db.patch(path, update)

        if not result.ok:
            if result.status == StoreStatus.PERMISSION_DENIED:
                logger.error("ledger_permission_denied", driver_id=driver_id, path=path,
                             hint="database rules must allow writes to commission summaries")
            logger.error("ledger_update_failed", driver_id=driver_id, bill_code=bill_code,
                         store_status=result.status.value, response=result.body[:500])
            return LedgerResult(status=result.status, driver_id=driver_id, path=path,
                                amount=amount_dec, before=before, detail=result.body[:500])

        logger.info("ledger_updated", driver_id=driver_id, bill_code=bill_code,
                    reference=reference, path=path, amount=str(amount_dec),
                    old_unpaid=str(before.unpaid_commission),
                    old_paid=str(before.paid_commission),
                    new_unpaid=str(after.unpaid_commission),
                    new_paid=str(after.paid_commission),
                    total=str(after.total_commission))
        return LedgerResult(status=StoreStatus.OK, driver_id=driver_id, path=path,
                            amount=amount_dec, before=before, after=after)
