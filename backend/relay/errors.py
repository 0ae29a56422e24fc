"""
Relay Error Taxonomy
====================
Validation and gateway errors propagate to the HTTP layer. Store and
reconciliation problems on the callback path are reported in the ack body
instead; the classes below give them names for logs and typed outcomes.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for every error the relay raises on purpose."""

    code: str = "RelayError"
    http_status: int = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


# =============================================================================
# CALLER INPUT
# =============================================================================

class ValidationError(RelayError):
    code = "ValidationError"
    http_status = 400


class MissingFieldsError(ValidationError):
    code = "MissingFields"


class AmountOutOfRangeError(ValidationError):
    code = "AmountOutOfRange"


# =============================================================================
# PAYMENT GATEWAY
# =============================================================================

class GatewayError(RelayError):
    """Upstream rejection or malformed response. ``raw`` keeps the gateway text."""

    code = "GatewayError"
    http_status = 500

    def __init__(self, message: str, raw: Optional[str] = None, **details):
        super().__init__(message, **details)
        self.raw = (raw or "")[:500]

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.raw:
            body["raw"] = self.raw
        return body


class GatewayConnectionError(GatewayError):
    code = "GatewayConnectionError"


class GatewayHtmlError(GatewayError):
    code = "GatewayHtmlError"


class GatewayTlsError(GatewayHtmlError):
    code = "GatewayTlsError"


class GatewayRejectedError(GatewayError):
    code = "GatewayRejected"
    http_status = 400

    def __init__(self, message: str, token: str, raw: Optional[str] = None, **details):
        super().__init__(message, raw=raw, token=token, **details)
        self.token = token


class GatewayUnexpectedResponseError(GatewayError):
    code = "GatewayUnexpectedResponse"
    http_status = 400


# =============================================================================
# STORE / RECONCILIATION
# =============================================================================

class StoreTransientError(RelayError):
    """The store could not be read; operator endpoints answer 500."""

    code = "StoreUnavailable"


class ReconciliationGap(RelayError):
    code = "MissingDriverOrAmount"
    http_status = 404


class DedupClaimFailure(RelayError):
    code = "DedupClaimFailed"


class PaymentRecordFailure(RelayError):
    code = "PaymentRecordFailed"


class LedgerWriteFailure(RelayError):
    code = "CommissionUpdateFailed"


class AlreadyProcessedError(RelayError):
    code = "AlreadyProcessed"
    http_status = 409
