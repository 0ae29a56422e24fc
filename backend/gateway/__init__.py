# gateway/__init__.py
# ============================================================================
# RIDEPAY RELAY — GATEWAY MODULE
# ============================================================================
# ToyyibPay bill creation and the external reference codec
# ============================================================================

from gateway.reference_codec import (
    DecodedReference,
    decode_external_reference,
    driver_prefix,
    encode_external_reference,
)
from gateway.toyyibpay_client import ToyyibPayClient, parse_create_bill_response
from gateway.bill_creation import BillCreationOrchestrator, amount_to_cents

__all__ = [
    "DecodedReference",
    "decode_external_reference",
    "driver_prefix",
    "encode_external_reference",
    "ToyyibPayClient",
    "parse_create_bill_response",
    "BillCreationOrchestrator",
    "amount_to_cents",
]
