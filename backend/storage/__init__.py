# storage/__init__.py
# ============================================================================
# RIDEPAY RELAY — STORAGE MODULE
# ============================================================================
# Realtime Database accessors: mappings, ledger, payment history, markers
# ============================================================================

from storage.realtime_db import (
    RealtimeDatabase,
    StoreResult,
    StoreStatus,
    store_path,
)
from storage.bill_mappings import BillMappingStore
from storage.callback_markers import CallbackMarkers, Claim, ClaimOutcome
from storage.commission_ledger import CommissionLedger, LedgerResult
from storage.driver_directory import DriverDirectory
from storage.payment_records import AppendedPayment, PaymentRecordWriter

__all__ = [
    "RealtimeDatabase",
    "StoreResult",
    "StoreStatus",
    "store_path",
    "BillMappingStore",
    "CallbackMarkers",
    "Claim",
    "ClaimOutcome",
    "CommissionLedger",
    "LedgerResult",
    "DriverDirectory",
    "AppendedPayment",
    "PaymentRecordWriter",
]
