# schemas/__init__.py
from schemas.payment_definitions import (
    BillCreated,
    BillMapping,
    BillRequest,
    CallbackMarker,
    CommissionSummary,
    GatewayBill,
    GatewayPaymentStatus,
    ManualPaymentRequest,
    MarkerStatus,
    PaymentRecord,
)

__all__ = [
    "BillCreated",
    "BillMapping",
    "BillRequest",
    "CallbackMarker",
    "CommissionSummary",
    "GatewayBill",
    "GatewayPaymentStatus",
    "ManualPaymentRequest",
    "MarkerStatus",
    "PaymentRecord",
]
