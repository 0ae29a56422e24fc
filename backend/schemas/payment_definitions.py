# schemas/payment_definitions.py
# ============================================================================
# RIDEPAY RELAY — PAYMENT SCHEMAS
# ============================================================================
# Purpose: Type-safe records for bills, mappings, ledger summaries, payment
# records and callback markers, plus the tolerant converters used when reading
# the schemaless store.
#
# NOTE: the store holds camelCase keys (shared with the mobile app and older
# backend revisions); models keep snake_case attributes with camelCase aliases.
# ============================================================================

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# SECTION 1: AMOUNT HELPERS
# ============================================================================

CENT = Decimal("0.01")


def to_decimal(value: Any) -> Optional[Decimal]:
    """Best-effort conversion of a stored or posted amount. None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        result = value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            result = Decimal(text)
        except (InvalidOperation, ValueError):
            return None
    if not result.is_finite():
        return None
    return result


def format_amount(amount: Decimal) -> str:
    """Render an amount the way the gateway echoes it: 25.50 -> '25.5', 10 -> '10'."""
    text = f"{amount.normalize():f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def stringify_scalar(value: Any) -> Any:
    """Numbers become strings; everything else is left for the model to validate."""
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return str(value)
    return value


def to_store_number(amount: Optional[Decimal]) -> float:
    if amount is None:
        return 0.0
    return float(amount.quantize(CENT))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")


def epoch_millis() -> int:
    return int(utc_now().timestamp() * 1000)


# ============================================================================
# SECTION 2: ENUMS
# ============================================================================

class GatewayPaymentStatus(str, Enum):
    """ToyyibPay status codes (callback ``status`` / redirect ``status_id``)."""
    PAID = "1"
    PENDING = "2"
    FAILED = "3"


class MarkerStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    LEDGER_FAILED = "ledger_failed"


# ============================================================================
# SECTION 3: BILL CREATION
# ============================================================================

class BillRequest(BaseModel):
    """Bill creation request from the driver app. Validation happens in the orchestrator."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Optional[Any] = None
    driver_id: Optional[str] = Field(default=None, alias="driverId")
    reference: Optional[str] = None
    return_url: Optional[str] = Field(default=None, alias="returnUrl")
    callback_url: Optional[str] = Field(default=None, alias="callbackUrl")
    bill_to: Optional[str] = Field(default=None, alias="billTo")
    bill_email: Optional[str] = Field(default=None, alias="billEmail")
    bill_name: Optional[str] = Field(default=None, alias="billName")
    bill_description: Optional[str] = Field(default=None, alias="billDescription")
    bill_phone: Optional[str] = Field(default=None, alias="billPhone")

    @field_validator(
        "driver_id", "reference", "return_url", "callback_url", "bill_to",
        "bill_email", "bill_name", "bill_description", "bill_phone",
        mode="before",
    )
    @classmethod
    def coerce_text(cls, value: Any) -> Any:
        # The app sometimes posts ids and phone numbers as JSON numbers.
        return stringify_scalar(value)


class GatewayBill(BaseModel):
    """The bill as it is sent to ToyyibPay, after defaults and truncation."""
    bill_name: str
    bill_description: str
    bill_to: str
    bill_email: str
    bill_phone: str
    bill_amount_cents: int
    bill_return_url: str = ""
    bill_callback_url: str = ""
    bill_external_reference_no: str
    bill_content_email: str

    def to_form(self, secret_key: str, category_code: str) -> Dict[str, str]:
        return {
            "userSecretKey": secret_key,
            "categoryCode": category_code,
            "billName": self.bill_name,
            "billDescription": self.bill_description,
            "billPriceSetting": "1",
            "billPayorInfo": "1",
            "billAmount": str(self.bill_amount_cents),
            "billReturnUrl": self.bill_return_url,
            "billCallbackUrl": self.bill_callback_url,
            "billExternalReferenceNo": self.bill_external_reference_no,
            "billTo": self.bill_to,
            "billEmail": self.bill_email,
            "billPhone": self.bill_phone,
            "billSplitPayment": "0",
            "billSplitPaymentArgs": "",
            "billPaymentChannel": "0",
            "billContentEmail": self.bill_content_email,
        }


class BillCreated(BaseModel):
    bill_code: str
    payment_url: str
    qr_code_url: str
    mapping_stored: bool
    external_reference_no: str

    def to_response(self) -> dict:
        return {
            "success": True,
            "billCode": self.bill_code,
            "paymentUrl": self.payment_url,
            "qrCodeUrl": self.qr_code_url,
            "mappingStored": self.mapping_stored,
            "message": "Bill created successfully",
        }


# ============================================================================
# SECTION 4: STORED RECORDS
# ============================================================================

class BillMapping(BaseModel):
    """bill_mappings/{billCode}"""
    bill_code: str
    driver_id: Optional[str] = None
    amount: Optional[Decimal] = None
    reference: str = ""
    bill_external_reference_no: str = ""
    created_at: Optional[str] = None
    timestamp: Optional[int] = None
    recovered: bool = False
    recovered_at: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.driver_id) and self.amount is not None and self.amount > 0

    @classmethod
    def from_store(cls, bill_code: str, data: Dict[str, Any]) -> "BillMapping":
        driver_id = data.get("driverId")
        external = data.get("billExternalReferenceNo") or data.get("bill_external_reference_no") or ""
        timestamp = data.get("timestamp")
        return cls(
            bill_code=bill_code,
            driver_id=str(driver_id).strip() if driver_id else None,
            amount=to_decimal(data.get("amount")),
            reference=str(data.get("reference") or ""),
            bill_external_reference_no=str(external),
            created_at=data.get("createdAt"),
            timestamp=timestamp if isinstance(timestamp, int) else None,
            recovered=bool(data.get("recovered", False)),
            recovered_at=data.get("recoveredAt"),
        )

    def to_store(self) -> Dict[str, Any]:
        record = {
            "driverId": self.driver_id,
            "amount": to_store_number(self.amount),
            "reference": self.reference,
            "billExternalReferenceNo": self.bill_external_reference_no,
            "createdAt": self.created_at,
            "timestamp": self.timestamp,
        }
        if self.recovered:
            record["recovered"] = True
            record["recoveredAt"] = self.recovered_at
        return record


class CommissionSummary(BaseModel):
    """driver_commissions/{driverId}/commission_summary (or legacy commissions/{driverId})."""
    unpaid_commission: Decimal = Decimal("0")
    paid_commission: Decimal = Decimal("0")
    total_commission: Decimal = Decimal("0")
    total_rides: int = 0

    @classmethod
    def zeroed(cls) -> "CommissionSummary":
        return cls()

    @classmethod
    def from_store(cls, data: Dict[str, Any]) -> "CommissionSummary":
        rides = data.get("total_rides")
        return cls(
            unpaid_commission=to_decimal(data.get("unpaid_commission")) or Decimal("0"),
            paid_commission=to_decimal(data.get("paid_commission")) or Decimal("0"),
            total_commission=to_decimal(data.get("total_commission")) or Decimal("0"),
            total_rides=rides if isinstance(rides, int) else 0,
        )

    def to_store(self) -> Dict[str, Any]:
        return {
            "unpaid_commission": to_store_number(self.unpaid_commission),
            "paid_commission": to_store_number(self.paid_commission),
            "total_commission": to_store_number(self.total_commission),
            "total_rides": self.total_rides,
        }

    def apply_payment(self, amount: Decimal) -> "CommissionSummary":
        """Paid grows by the amount; unpaid is recomputed from total so drift self-heals."""
        new_paid = self.paid_commission + amount
        new_unpaid = max(Decimal("0"), self.total_commission - new_paid)
        return self.model_copy(update={
            "paid_commission": new_paid,
            "unpaid_commission": new_unpaid,
        })


class PaymentRecord(BaseModel):
    """commission_payment/{driverId}/{pushKey}"""
    payment_id: str
    amount: Decimal
    bill_code: str
    reference: str = ""
    invoice_no: Optional[str] = None
    status: str = "paid"
    payment_method: str = "ToyyibPay"
    timestamp: str = Field(default_factory=now_iso)
    created_at: str = Field(default_factory=now_iso)

    def to_store(self) -> Dict[str, Any]:
        return {
            "amount": to_store_number(self.amount),
            "billCode": self.bill_code,
            "reference": self.reference,
            "invoiceNo": self.invoice_no,
            "status": self.status,
            "paymentId": self.payment_id,
            "timestamp": self.timestamp,
            "paymentMethod": self.payment_method,
            "createdAt": self.created_at,
        }


class CallbackMarker(BaseModel):
    """processed_callbacks/{billCode}"""
    status: MarkerStatus
    claimed_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    driver_id: Optional[str] = None
    amount: Optional[Decimal] = None
    payment_id: Optional[str] = None

    @classmethod
    def from_store(cls, data: Dict[str, Any]) -> Optional["CallbackMarker"]:
        try:
            status = MarkerStatus(data.get("status"))
        except ValueError:
            return None
        return cls(
            status=status,
            claimed_at=data.get("claimedAt") or now_iso(),
            updated_at=data.get("updatedAt") or now_iso(),
            driver_id=data.get("driverId"),
            amount=to_decimal(data.get("amount")),
            payment_id=data.get("paymentId"),
        )

    def to_store(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "claimedAt": self.claimed_at,
            "updatedAt": self.updated_at,
            "driverId": self.driver_id,
            "amount": to_store_number(self.amount) if self.amount is not None else None,
            "paymentId": self.payment_id,
        }

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        try:
            claimed = datetime.fromisoformat(self.claimed_at.replace("Z", "+00:00"))
        except ValueError:
            return float("inf")
        if claimed.tzinfo is None:
            claimed = claimed.replace(tzinfo=timezone.utc)
        return (now - claimed).total_seconds()


# ============================================================================
# SECTION 5: OPERATOR REQUESTS
# ============================================================================

class ManualPaymentRequest(BaseModel):
    """Body of /api/payment/process, /api/payment/recover and /api/commission/update."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    bill_code: Optional[str] = Field(default=None, alias="billCode")
    driver_id: Optional[str] = Field(default=None, alias="driverId")
    amount: Optional[Any] = None
    reference: Optional[str] = None

    @field_validator("bill_code", "driver_id", "reference", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Any:
        return stringify_scalar(value)
