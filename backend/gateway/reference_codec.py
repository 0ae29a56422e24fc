"""
Bill Reference Codec
====================
The gateway echoes ``billExternalReferenceNo`` back (as ``order_id`` on
callbacks and redirects), so it doubles as a fallback correlation channel:

    {reference}_{driverId[:8]}_{amount}_{epochMillis}      (max 50 chars)

Only the reference is shortened to fit, so the prefix, amount and timestamp
always survive encoding. Driver ids may themselves contain underscores
(``drv_abcdef12`` -> prefix ``drv_abcd``), so decoding anchors on a full
millisecond timestamp first and only falls back to a fixed-width prefix when
the tail has been cut. An amount is trusted only when a separator follows it.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from schemas.payment_definitions import epoch_millis, format_amount, to_decimal

MAX_LENGTH = 50
PREFIX_LENGTH = 8
TIMESTAMP_DIGITS = 13
SEPARATOR = "_"
DEFAULT_REFERENCE = "REF"


@dataclass
class DecodedReference:
    reference: str
    driver_prefix: str
    amount: Optional[Decimal]
    issued_at: Optional[int] = None


def driver_prefix(driver_id: str) -> str:
    return str(driver_id).strip()[:PREFIX_LENGTH]


def encode_external_reference(
    reference: Optional[str],
    driver_id: str,
    amount: Any,
    timestamp_ms: Optional[int] = None,
) -> str:
    ref = (reference or "").strip().replace(SEPARATOR, "-") or DEFAULT_REFERENCE
    amount_dec = to_decimal(amount)
    amount_text = format_amount(amount_dec) if amount_dec is not None else str(amount)
    ts = timestamp_ms if timestamp_ms is not None else epoch_millis()
    tail = SEPARATOR + SEPARATOR.join([driver_prefix(driver_id), amount_text, str(ts)])
    ref = ref[:max(1, MAX_LENGTH - len(tail))]
    return (ref + tail)[:MAX_LENGTH]


def _positive(text: str) -> Optional[Decimal]:
    value = to_decimal(text)
    return value if value is not None and value > 0 else None


def _full_timestamp(text: str) -> bool:
    return text.isdigit() and len(text) >= TIMESTAMP_DIGITS


def decode_external_reference(value: Optional[str]) -> Optional[DecodedReference]:
    """Recover reference, driver-id prefix and amount. None for foreign formats."""
    if not value:
        return None
    value = str(value).strip()
    parts = value.split(SEPARATOR)
    if len(parts) < 4:
        return None

    # Intact tail: ..._{amount}_{epochMillis}
    if _full_timestamp(parts[-1]) and _positive(parts[-2]) is not None:
        prefix = SEPARATOR.join(parts[1:-2])
        if prefix:
            return DecodedReference(
                reference=parts[0],
                driver_prefix=prefix,
                amount=_positive(parts[-2]),
                issued_at=int(parts[-1]),
            )

    # Cut tail: the prefix is fixed width right after the reference, and the
    # amount counts only if the separator after it survived.
    reference = parts[0]
    rest = value[len(reference) + 1:]
    if len(rest) > PREFIX_LENGTH and rest[PREFIX_LENGTH] == SEPARATOR:
        tail = rest[PREFIX_LENGTH + 1:].split(SEPARATOR)
        issued = tail[1] if len(tail) > 1 and _full_timestamp(tail[1]) else None
        return DecodedReference(
            reference=reference,
            driver_prefix=rest[:PREFIX_LENGTH],
            amount=_positive(tail[0]) if len(tail) > 1 else None,
            issued_at=int(issued) if issued else None,
        )

    return DecodedReference(
        reference=reference,
        driver_prefix=parts[1],
        amount=_positive(parts[2]),
        issued_at=int(parts[3]) if _full_timestamp(parts[3]) else None,
    )
