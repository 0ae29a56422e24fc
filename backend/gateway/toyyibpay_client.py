# gateway/toyyibpay_client.py
# ============================================================================
# RIDEPAY RELAY — TOYYIBPAY CLIENT
# ============================================================================
# Purpose: POST createBill and make sense of what comes back.
#
# RESPONSE GRAMMAR (checked in this order):
# - HTML page                  -> GatewayHtmlError (GatewayTlsError for the
#                                 Cloudflare "Invalid SSL certificate" page)
# - known [TOKEN] answers      -> GatewayRejectedError
# - JSON [{"BillCode": ...}]   -> bill code
# - JSON {"billCode": ...}     -> bill code
# - JSON {"error": ...}        -> GatewayRejectedError
# - any other [TOKEN]          -> GatewayRejectedError
# - everything else            -> GatewayUnexpectedResponseError
# ============================================================================

import json
import re
from typing import Any, Dict, Optional

import httpx
import structlog

from relay.config import RelayConfig, mask_secret
from relay.errors import (
    GatewayConnectionError,
    GatewayHtmlError,
    GatewayRejectedError,
    GatewayTlsError,
    GatewayUnexpectedResponseError,
)
from schemas.payment_definitions import GatewayBill

logger = structlog.get_logger().bind(component="toyyibpay_client")


KNOWN_ERROR_TOKENS = {
    "[KEY-DID-NOT-EXIST-OR-USER-IS-NOT-ACTIVE]": "Invalid userSecretKey/categoryCode or user account is not active",
    "[KEY-DID-NOT-EXIST]": "Invalid userSecretKey or categoryCode",
    "[USER-IS-NOT-ACTIVE]": "User account is not active",
    "[CATEGORY-NOT-EXIST]": "Invalid categoryCode",
    "[FALSE]": "Bill validation failed (field values, required fields or field lengths)",
}

BRACKET_TOKEN = re.compile(r"\[([A-Z][A-Z0-9-]*)\]")
TLS_MARKERS = ("certificate", "ssl", "tls")
TLS_PAGE_MARKERS = ("Invalid SSL certificate", "Error code 526")
BILL_CODE_KEYS = ("BillCode", "billCode", "billcode", "bill_code")


def _looks_like_html(text: str) -> bool:
    lowered = text.lower()
    return "<!doctype html" in lowered or "<html" in lowered


def _bill_code_from(obj: Any) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    for key in BILL_CODE_KEYS:
        value = obj.get(key)
        if value:
            return str(value)
    return None


def parse_create_bill_response(text: str) -> str:
    """Return the bill code or raise the matching GatewayError."""
    raw = text or ""

    if _looks_like_html(raw):
        if any(marker in raw for marker in TLS_PAGE_MARKERS):
            raise GatewayTlsError("Gateway endpoint is behind an invalid SSL certificate (Cloudflare 526)", raw=raw)
        raise GatewayHtmlError("Gateway returned an HTML error page; check credentials and endpoint", raw=raw)

    stripped = raw.strip()

    for token, meaning in KNOWN_ERROR_TOKENS.items():
        if token in stripped:
            raise GatewayRejectedError(f"Gateway rejected the bill: {meaning}", token=token, raw=raw)

    try:
        parsed = json.loads(stripped)
    except ValueError:
        match = BRACKET_TOKEN.search(stripped)
        if match:
            raise GatewayRejectedError(f"Gateway rejected the bill: {match.group(0)}",
                                       token=match.group(0), raw=raw)
        raise GatewayUnexpectedResponseError("Gateway returned a non-JSON response", raw=raw)

    if isinstance(parsed, list) and parsed:
        code = _bill_code_from(parsed[0])
        if code:
            return code
    if isinstance(parsed, dict):
        code = _bill_code_from(parsed)
        if code:
            return code
        if parsed.get("error"):
            raise GatewayRejectedError(f"Gateway error: {parsed['error']}",
                                       token=str(parsed["error"]), raw=raw)

    raise GatewayUnexpectedResponseError("Gateway returned an unexpected response shape", raw=raw)


class ToyyibPayClient:
    """Async ToyyibPay API client (one AsyncClient for the process lifetime)."""

    def __init__(
        self,
        config: RelayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.http_timeout_seconds,
                transport=self._transport,
            )
            logger.info("toyyibpay_client_initialized",
                        environment=self.config.toyyibpay_env,
                        base_url=self.config.toyyibpay_base_url,
                        secret_key=mask_secret(self.config.toyyibpay_secret_key),
                        category_code=self.config.toyyibpay_category_code or "MISSING")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def payment_url(self, bill_code: str) -> str:
        return f"{self.config.toyyibpay_base_url}/{bill_code}"

    async def create_bill(self, bill: GatewayBill) -> str:
        await self.initialize()
        form: Dict[str, str] = bill.to_form(
            self.config.toyyibpay_secret_key,
            self.config.toyyibpay_category_code,
        )
        log = logger.bind(external_reference_no=bill.bill_external_reference_no,
                          amount_cents=bill.bill_amount_cents)
        log.info("gateway_create_bill_request", api_url=self.config.create_bill_url)

        try:
            response = await self._client.post(self.config.create_bill_url, data=form)
        except httpx.HTTPError as e:
            message = str(e)
            log.error("gateway_unreachable", error=message, error_type=type(e).__name__)
            if any(marker in message.lower() for marker in TLS_MARKERS):
                raise GatewayTlsError(
                    f"TLS failure talking to {self.config.toyyibpay_base_url}: {message}",
                    raw=message,
                ) from e
            raise GatewayConnectionError(f"Failed to connect to gateway: {message}", raw=message) from e

        text = response.text
        log.info("gateway_create_bill_response", status=response.status_code, body=text[:500])
        try:
            return parse_create_bill_response(text)
        except GatewayRejectedError as e:
            log.error("gateway_rejected", token=e.token, environment=self.config.toyyibpay_env,
                      hint="credentials may belong to the other environment (sandbox/production)")
            raise
