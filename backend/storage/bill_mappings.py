"""
Bill Mapping Store
==================
bill_mappings/{billCode} links a gateway bill back to the driver and amount
it was created for. One writer (bill creation), several readers (callback,
manual processing, redirect status, audit).
"""

from typing import Any, List, Optional

import structlog

from schemas.payment_definitions import (
    BillMapping,
    epoch_millis,
    now_iso,
    to_decimal,
)
from storage.realtime_db import RealtimeDatabase, StoreResult, StoreStatus, store_path

logger = structlog.get_logger().bind(component="bill_mappings")


class BillMappingStore:
    ROOT = "bill_mappings"

    def __init__(self, db: RealtimeDatabase):
        self.db = db

    async def put(
        self,
        bill_code: str,
        driver_id: str,
        amount: Any,
        reference: Optional[str],
        external_reference_no: Optional[str],
    ) -> StoreResult:
        """Full-replace write. Returns a typed result and never raises."""
        amount_dec = to_decimal(amount)
        if not bill_code or not driver_id or amount_dec is None or amount_dec <= 0:
            logger.error("mapping_rejected_invalid_input",
                         bill_code=bill_code, driver_id=driver_id,
                         amount=str(amount), reference=reference)
            return StoreResult.rejected("billCode, driverId and a positive amount are required")

        mapping = BillMapping(
            bill_code=bill_code,
            driver_id=str(driver_id).strip(),
            amount=amount_dec,
            reference=str(reference).strip() if reference else "",
            bill_external_reference_no=external_reference_no or "",
            created_at=now_iso(),
            timestamp=epoch_millis(),
        )
        result = await self.db.put(store_path(self.ROOT, bill_code), mapping.to_store())

        if result.ok:
            logger.info("mapping_stored", bill_code=bill_code,
                        driver_id=mapping.driver_id, amount=str(mapping.amount))
        else:
            logger.error("mapping_store_failed", bill_code=bill_code,
                         store_status=result.status.value,
                         http_status=result.http_status, response=result.body)
        return result

    async def lookup(self, bill_code: str) -> StoreResult:
        """Single read. ``data`` is a BillMapping when the status is OK."""
        result = await self.db.get(store_path(self.ROOT, bill_code))
        if not result.ok:
            return result
        if not isinstance(result.data, dict):
            logger.warning("mapping_payload_not_an_object", bill_code=bill_code,
                           payload=str(result.data)[:200])
            return StoreResult(status=StoreStatus.NOT_FOUND, http_status=result.http_status,
                               body=result.body)
        return StoreResult(status=StoreStatus.OK,
                           data=BillMapping.from_store(bill_code, result.data),
                           http_status=result.http_status)

    async def get(self, bill_code: str) -> Optional[BillMapping]:
        result = await self.lookup(bill_code)
        return result.data if result.ok else None

    async def overwrite_recovered(
        self,
        bill_code: str,
        driver_id: str,
        amount: Any,
        reference: Optional[str],
    ) -> StoreResult:
        """Operator recovery: replace the mapping with known-good values."""
        amount_dec = to_decimal(amount)
        if not bill_code or not driver_id or amount_dec is None or amount_dec <= 0:
            return StoreResult.rejected("billCode, driverId and a positive amount are required")

        existing = await self.get(bill_code)
        mapping = BillMapping(
            bill_code=bill_code,
            driver_id=str(driver_id).strip(),
            amount=amount_dec,
            reference=(reference or (existing.reference if existing else "")).strip(),
            bill_external_reference_no=existing.bill_external_reference_no if existing else "",
            created_at=existing.created_at if existing and existing.created_at else now_iso(),
            timestamp=existing.timestamp if existing else epoch_millis(),
            recovered=True,
            recovered_at=now_iso(),
        )
        result = await self.db.put(store_path(self.ROOT, bill_code), mapping.to_store())
        logger.warning("mapping_recovered", bill_code=bill_code,
                       driver_id=mapping.driver_id, amount=str(amount_dec),
                       store_status=result.status.value)
        return result

    async def list_all(self) -> StoreResult:
        result = await self.db.get(self.ROOT)
        if result.status == StoreStatus.NOT_FOUND:
            return StoreResult(status=StoreStatus.OK, data=[])
        if not result.ok:
            return result
        mappings: List[BillMapping] = []
        if isinstance(result.data, dict):
            for code, raw in result.data.items():
                if isinstance(raw, dict):
                    mappings.append(BillMapping.from_store(code, raw))
        return StoreResult(status=StoreStatus.OK, data=mappings)
