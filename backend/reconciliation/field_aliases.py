"""
Callback Field Aliases
======================
Gateway integrations spell the same field many ways (``billCode``,
``BillCode``, ``bill_code``, ``billcode``...). Aliases are declared once here
and matched after normalisation (lowercase, ``_`` and ``-`` removed), body
first, then query string.
"""

from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "bill_code": ("billCode", "BillCode", "bill_code", "billcode", "Billcode"),
    "status": ("billpaymentStatus", "statuscode", "StatusCode", "status_id", "status"),
    "invoice_no": ("billpaymentInvoiceNo", "refno", "invoiceNo", "transaction_id"),
    "external_reference_no": ("billExternalReferenceNo", "externalReferenceNo", "order_id"),
    "amount": ("billpaymentAmount", "amount"),
    "message": ("msg", "reason"),
}


def normalize_key(key: str) -> str:
    return str(key).lower().replace("_", "").replace("-", "")


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    return True


def _index(source: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Normalised key -> first non-empty value."""
    index: Dict[str, Any] = {}
    for key, value in (source or {}).items():
        norm = normalize_key(key)
        if norm not in index and _present(value):
            index[norm] = value.strip() if isinstance(value, str) else value
    return index


def lookup(field: str, *sources: Optional[Mapping[str, Any]]) -> Optional[Any]:
    """First value for ``field`` across sources, in source order then alias order."""
    aliases: Iterable[str] = FIELD_ALIASES[field]
    normalized = [normalize_key(a) for a in aliases]
    for source in sources:
        index = _index(source)
        for alias in normalized:
            if alias in index:
                return index[alias]
    return None


class CallbackFields:
    """Resolved view over one callback's body and query."""

    def __init__(self, body: Optional[Mapping[str, Any]] = None,
                 query: Optional[Mapping[str, Any]] = None):
        self.body = dict(body or {})
        self.query = dict(query or {})

    def get(self, field: str) -> Optional[Any]:
        return lookup(field, self.body, self.query)

    @property
    def bill_code(self) -> Optional[str]:
        value = self.get("bill_code")
        return str(value) if value is not None else None

    @property
    def status(self) -> Optional[str]:
        value = self.get("status")
        return str(value).strip() if value is not None else None

    @property
    def invoice_no(self) -> Optional[str]:
        value = self.get("invoice_no")
        return str(value) if value is not None else None

    @property
    def external_reference_no(self) -> Optional[str]:
        value = self.get("external_reference_no")
        return str(value) if value is not None else None

    def summary(self) -> dict:
        return {
            "bill_code": self.bill_code,
            "status": self.status,
            "invoice_no": self.invoice_no,
            "external_reference_no": self.external_reference_no,
            "body_keys": sorted(self.body.keys()),
            "query_keys": sorted(self.query.keys()),
        }
