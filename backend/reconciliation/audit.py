"""
Reconciliation Audit
====================
Operator report of bills that may be paid at the gateway but are not reflected
in the ledger:

- ``no_payment_record``: mapping older than the threshold with no payment
  record for its bill code (abandoned bills show up here too)
- ``ledger_failed``: payment recorded, ledger update failed
- ``stale_processing``: a claim that never finished
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import structlog

from relay.errors import StoreTransientError
from schemas.payment_definitions import MarkerStatus, now_iso, to_store_number, utc_now
from storage.bill_mappings import BillMappingStore
from storage.callback_markers import CallbackMarkers
from storage.payment_records import PaymentRecordWriter

logger = structlog.get_logger().bind(component="reconciliation_audit")


@dataclass
class Gap:
    kind: str
    bill_code: str
    driver_id: Optional[str] = None
    amount: Optional[float] = None
    created_at: Optional[str] = None
    age_minutes: Optional[float] = None
    payment_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "billCode": self.bill_code,
            "driverId": self.driver_id,
            "amount": self.amount,
            "createdAt": self.created_at,
            "ageMinutes": self.age_minutes,
            "paymentId": self.payment_id,
        }


def _age_minutes(created_at: Optional[str], timestamp: Optional[int] = None) -> Optional[float]:
    now = utc_now()
    if timestamp:
        created = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
    elif created_at:
        try:
            created = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        except ValueError:
            return None
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
    else:
        return None
    return round((now - created).total_seconds() / 60, 1)


class ReconciliationAudit:
    def __init__(
        self,
        mappings: BillMappingStore,
        records: PaymentRecordWriter,
        markers: CallbackMarkers,
    ):
        self.mappings = mappings
        self.records = records
        self.markers = markers

    async def find_gaps(self, min_age_minutes: float = 30) -> dict:
        mappings = await self.mappings.list_all()
        recorded = await self.records.bill_codes_by_driver()
        for name, result in (("bill_mappings", mappings), ("commission_payment", recorded)):
            if not result.ok:
                logger.error("audit_store_unreadable", node=name, store_status=result.status.value)
                raise StoreTransientError(f"Could not read {name}", storeStatus=result.status.value)

        gaps: List[Gap] = []
        for mapping in mappings.data:
            age = _age_minutes(mapping.created_at, mapping.timestamp)
            if age is not None and age < min_age_minutes:
                continue
            if mapping.bill_code in recorded.data.get(mapping.driver_id or "", set()):
                continue
            gaps.append(Gap(
                kind="no_payment_record",
                bill_code=mapping.bill_code,
                driver_id=mapping.driver_id,
                amount=to_store_number(mapping.amount) if mapping.amount is not None else None,
                created_at=mapping.created_at,
                age_minutes=age,
            ))

        for bill_code, marker in await self.markers.list_unfinished():
            seconds = marker.age_seconds()
            if marker.status == MarkerStatus.LEDGER_FAILED:
                kind = "ledger_failed"
            elif seconds >= self.markers.claim_ttl_seconds:
                kind = "stale_processing"
            else:
                continue
            # Unparseable claimedAt reads as infinitely old.
            age = round(seconds / 60, 1) if seconds != float("inf") else None
            gaps.append(Gap(
                kind=kind,
                bill_code=bill_code,
                driver_id=marker.driver_id,
                amount=to_store_number(marker.amount) if marker.amount is not None else None,
                created_at=marker.claimed_at,
                age_minutes=age,
                payment_id=marker.payment_id,
            ))

        logger.info("audit_completed", gaps=len(gaps), mappings=len(mappings.data),
                    min_age_minutes=min_age_minutes)
        return {
            "generatedAt": now_iso(),
            "minAgeMinutes": min_age_minutes,
            "count": len(gaps),
            "gaps": [g.to_dict() for g in gaps],
        }
