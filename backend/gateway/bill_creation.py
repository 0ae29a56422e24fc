"""
Bill Creation Orchestrator
==========================
Validate the driver app's request, build the gateway bill (defaults, digit-only
phone, silent truncation to the gateway's field limits), create it at
ToyyibPay and persist the bill mapping before answering, so a fast callback
can already find it.
"""

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import structlog

from relay.config import RelayConfig
from relay.errors import AmountOutOfRangeError, MissingFieldsError
from gateway.reference_codec import encode_external_reference
from gateway.toyyibpay_client import ToyyibPayClient
from schemas.payment_definitions import BillCreated, BillRequest, GatewayBill, to_decimal
from storage.bill_mappings import BillMappingStore

logger = structlog.get_logger().bind(component="bill_creation")


# Gateway field limits
FIELD_LIMITS = {
    "bill_name": 100,
    "bill_description": 100,
    "bill_to": 100,
    "bill_email": 100,
    "bill_phone": 20,
    "bill_external_reference_no": 50,
}

NON_DIGITS = re.compile(r"\D")


def _truncate(field: str, value: str) -> str:
    limit = FIELD_LIMITS[field]
    if len(value) > limit:
        logger.info("bill_field_truncated", field=field,
                    original_length=len(value), limit=limit)
        return value[:limit]
    return value


def _text(value: Optional[str]) -> str:
    return str(value).strip() if value is not None else ""


def amount_to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class BillCreationOrchestrator:
    def __init__(
        self,
        config: RelayConfig,
        client: ToyyibPayClient,
        mappings: BillMappingStore,
    ):
        self.config = config
        self.client = client
        self.mappings = mappings

    def validate(self, request: BillRequest) -> Decimal:
        """Raise MissingFields / AmountOutOfRange; return the parsed amount."""
        raw_amount = request.amount
        missing = [
            name for name, present in (
                ("amount", raw_amount is not None and _text(raw_amount) != ""),
                ("driverId", bool(_text(request.driver_id))),
                ("reference", bool(_text(request.reference))),
            ) if not present
        ]
        if missing:
            raise MissingFieldsError(
                "Missing required fields: amount, driverId, reference",
                missing=missing,
            )

        amount = to_decimal(raw_amount)
        minimum = Decimal(str(self.config.min_amount))
        maximum = Decimal(str(self.config.max_amount))
        if amount is None or amount < minimum or amount > maximum:
            raise AmountOutOfRangeError(
                f"Amount must be between RM{self.config.min_amount:g} and RM{self.config.max_amount:g}",
                amount=str(raw_amount),
            )
        return amount

    def build_bill(self, request: BillRequest, amount: Decimal) -> GatewayBill:
        driver_id = _text(request.driver_id)
        reference = _text(request.reference)

        phone = NON_DIGITS.sub("", _text(request.bill_phone)) or self.config.default_bill_phone
        external_ref = encode_external_reference(reference, driver_id, amount)

        return GatewayBill(
            bill_name=_truncate("bill_name", _text(request.bill_name) or self.config.default_bill_name),
            bill_description=_truncate(
                "bill_description",
                _text(request.bill_description) or self.config.default_bill_description,
            ),
            bill_to=_truncate("bill_to", _text(request.bill_to) or driver_id),
            bill_email=_truncate(
                "bill_email",
                _text(request.bill_email) or f"{driver_id}@{self.config.bill_email_domain}",
            ),
            bill_phone=_truncate("bill_phone", phone),
            bill_amount_cents=amount_to_cents(amount),
            bill_return_url=_text(request.return_url),
            bill_callback_url=_text(request.callback_url),
            bill_external_reference_no=_truncate("bill_external_reference_no", external_ref),
            bill_content_email=self.config.bill_content_email,
        )

    async def create_bill(self, request: BillRequest) -> BillCreated:
        amount = self.validate(request)
        bill = self.build_bill(request, amount)
        driver_id = _text(request.driver_id)
        reference = _text(request.reference)

        log = logger.bind(driver_id=driver_id, reference=reference, amount=str(amount))
        log.info("bill_creation_started", environment=self.config.toyyibpay_env,
                 amount_cents=bill.bill_amount_cents)

        bill_code = await self.client.create_bill(bill)
        payment_url = self.client.payment_url(bill_code)

        stored = await self.mappings.put(
            bill_code, driver_id, amount, reference, bill.bill_external_reference_no,
        )
        if not stored.ok:
            log.error("bill_mapping_not_stored", bill_code=bill_code,
                      store_status=stored.status.value,
                      hint="callback will fall back to the external reference")

        log.info("bill_created", bill_code=bill_code, payment_url=payment_url,
                 mapping_stored=stored.ok)
        return BillCreated(
            bill_code=bill_code,
            payment_url=payment_url,
            qr_code_url=f"{payment_url}/qr",
            mapping_stored=stored.ok,
            external_reference_no=bill.bill_external_reference_no,
        )
