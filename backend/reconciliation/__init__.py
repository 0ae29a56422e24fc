# reconciliation/__init__.py
# ============================================================================
# RIDEPAY RELAY — RECONCILIATION MODULE
# ============================================================================
# Callback handling, manual reprocessing and the gap audit
# ============================================================================

from reconciliation.field_aliases import FIELD_ALIASES, CallbackFields, lookup, normalize_key
from reconciliation.retry_policy import RetryPolicy
from reconciliation.callback_reconciler import (
    CallbackReconciler,
    ResolvedPayment,
    Settlement,
    SettlementResult,
)
from reconciliation.audit import Gap, ReconciliationAudit

__all__ = [
    "FIELD_ALIASES",
    "CallbackFields",
    "lookup",
    "normalize_key",
    "RetryPolicy",
    "CallbackReconciler",
    "ResolvedPayment",
    "Settlement",
    "SettlementResult",
    "Gap",
    "ReconciliationAudit",
]
