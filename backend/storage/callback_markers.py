"""
Callback Markers
================
processed_callbacks/{billCode} records how far a callback got, so a replayed
or concurrent callback for the same bill cannot touch the ledger twice.

Claiming is a compare-and-set on the Realtime Database: read the node with
``X-Firebase-ETag: true`` then PUT with ``if-match``. A 412 means another
request won the race.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Optional

import structlog

from schemas.payment_definitions import CallbackMarker, MarkerStatus, now_iso
from storage.realtime_db import RealtimeDatabase, StoreStatus, store_path

logger = structlog.get_logger().bind(component="callback_markers")


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    RESUME_LEDGER = "resume_ledger"
    ALREADY_COMPLETED = "already_completed"
    IN_PROGRESS = "in_progress"
    STORE_FAILURE = "store_failure"


@dataclass
class Claim:
    outcome: ClaimOutcome
    marker: Optional[CallbackMarker] = None
    store_status: Optional[StoreStatus] = None

    @property
    def may_proceed(self) -> bool:
        return self.outcome in (ClaimOutcome.CLAIMED, ClaimOutcome.RESUME_LEDGER)


class CallbackMarkers:
    ROOT = "processed_callbacks"

    def __init__(self, db: RealtimeDatabase, claim_ttl_seconds: int = 300):
        self.db = db
        self.claim_ttl_seconds = claim_ttl_seconds

    def _path(self, bill_code: str) -> str:
        return store_path(self.ROOT, bill_code)

    async def claim(self, bill_code: str, driver_id: str, amount: Decimal) -> Claim:
        path = self._path(bill_code)
        current = await self.db.get_with_etag(path)
        if current.status not in (StoreStatus.OK, StoreStatus.NOT_FOUND):
            return Claim(ClaimOutcome.STORE_FAILURE, store_status=current.status)

        existing = CallbackMarker.from_store(current.data) if isinstance(current.data, dict) else None
        if existing is not None:
            if existing.status == MarkerStatus.COMPLETED:
                logger.info("callback_already_processed", bill_code=bill_code,
                            payment_id=existing.payment_id)
                return Claim(ClaimOutcome.ALREADY_COMPLETED, marker=existing)
            if existing.status == MarkerStatus.PROCESSING:
                if existing.age_seconds() < self.claim_ttl_seconds:
                    logger.info("callback_in_progress_elsewhere", bill_code=bill_code,
                                claimed_at=existing.claimed_at)
                    return Claim(ClaimOutcome.IN_PROGRESS, marker=existing)
                logger.warning("callback_stale_claim_taken_over", bill_code=bill_code,
                               claimed_at=existing.claimed_at)

        # A marker carrying a paymentId means the record is already durable.
        resume = existing is not None and bool(existing.payment_id)
        if resume:
            marker = CallbackMarker(status=MarkerStatus.PROCESSING,
                                    driver_id=existing.driver_id or driver_id,
                                    amount=existing.amount if existing.amount is not None else amount,
                                    payment_id=existing.payment_id)
        else:
            marker = CallbackMarker(status=MarkerStatus.PROCESSING, driver_id=driver_id, amount=amount)

        written = await self.db.put(path, marker.to_store(), if_match=current.etag)
        if written.status == StoreStatus.CONFLICT:
            logger.info("callback_claim_lost_race", bill_code=bill_code)
            return Claim(ClaimOutcome.IN_PROGRESS)
        if not written.ok:
            return Claim(ClaimOutcome.STORE_FAILURE, store_status=written.status)
        if resume:
            logger.info("callback_resuming_ledger", bill_code=bill_code,
                        payment_id=marker.payment_id)
            return Claim(ClaimOutcome.RESUME_LEDGER, marker=marker)
        return Claim(ClaimOutcome.CLAIMED, marker=marker)

    async def attach_payment(self, bill_code: str, payment_id: str) -> bool:
        """Record the paymentId on a claim still in processing."""
        result = await self.db.patch(self._path(bill_code),
                                     {"paymentId": payment_id, "updatedAt": now_iso()})
        if not result.ok:
            logger.warning("callback_marker_attach_failed", bill_code=bill_code,
                           payment_id=payment_id, store_status=result.status.value)
        return result.ok

    async def _set_status(self, bill_code: str, status: MarkerStatus,
                          payment_id: Optional[str]) -> bool:
        update = {"status": status.value, "updatedAt": now_iso()}
        if payment_id:
            update["paymentId"] = payment_id
        result = await self.db.patch(self._path(bill_code), update)
        if not result.ok:
            logger.error("callback_marker_update_failed", bill_code=bill_code,
                         target_status=status.value, store_status=result.status.value)
        return result.ok

    async def complete(self, bill_code: str, payment_id: Optional[str]) -> bool:
        return await self._set_status(bill_code, MarkerStatus.COMPLETED, payment_id)

    async def mark_ledger_failed(self, bill_code: str, payment_id: Optional[str]) -> bool:
        return await self._set_status(bill_code, MarkerStatus.LEDGER_FAILED, payment_id)

    async def release(self, bill_code: str) -> bool:
        """Drop a claim so the bill can be processed again (nothing durable was written)."""
        result = await self.db.delete(self._path(bill_code))
        if not result.ok:
            logger.error("callback_marker_release_failed", bill_code=bill_code,
                         store_status=result.status.value)
        return result.ok

    async def get(self, bill_code: str) -> Optional[CallbackMarker]:
        result = await self.db.get(self._path(bill_code))
        if result.ok and isinstance(result.data, dict):
            return CallbackMarker.from_store(result.data)
        return None

    async def list_unfinished(self) -> List[tuple]:
        """(billCode, marker) pairs that are not completed."""
        result = await self.db.get(self.ROOT)
        if not result.ok or not isinstance(result.data, dict):
            return []
        pending = []
        for code, raw in result.data.items():
            marker = CallbackMarker.from_store(raw) if isinstance(raw, dict) else None
            if marker is not None and marker.status != MarkerStatus.COMPLETED:
                pending.append((code, marker))
        return pending
