# api/server.py
# ============================================================================
# RIDEPAY RELAY — FASTAPI SERVER
# ============================================================================
# Bill creation, gateway callback/redirect and operator reconciliation tools.
# The callback route always answers 200; everything else maps RelayError
# subclasses to their HTTP status.
# ============================================================================

import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import structlog
import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relay.config import RelayConfig, configure_logging
from relay.errors import RelayError, ValidationError
from gateway.bill_creation import BillCreationOrchestrator
from gateway.toyyibpay_client import ToyyibPayClient
from reconciliation.audit import ReconciliationAudit
from reconciliation.callback_reconciler import CallbackReconciler
from reconciliation.field_aliases import lookup
from reconciliation.retry_policy import RetryPolicy
from schemas.payment_definitions import BillRequest, ManualPaymentRequest
from storage import (
    BillMappingStore,
    CallbackMarkers,
    CommissionLedger,
    DriverDirectory,
    PaymentRecordWriter,
    RealtimeDatabase,
)

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# ============================================================================
# SERVICE WIRING
# ============================================================================

@dataclass
class RelayServices:
    """Every component, built once per process around one store client."""

    config: RelayConfig
    db: RealtimeDatabase
    gateway: ToyyibPayClient
    mappings: BillMappingStore
    directory: DriverDirectory
    records: PaymentRecordWriter
    ledger: CommissionLedger
    markers: CallbackMarkers
    reconciler: CallbackReconciler
    bills: BillCreationOrchestrator
    audit: ReconciliationAudit

    @classmethod
    def build(
        cls,
        config: RelayConfig,
        db_transport: Optional[httpx.AsyncBaseTransport] = None,
        gateway_transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "RelayServices":
        db = RealtimeDatabase(config, transport=db_transport)
        gateway = ToyyibPayClient(config, transport=gateway_transport)
        mappings = BillMappingStore(db)
        directory = DriverDirectory(db)
        records = PaymentRecordWriter(db)
        ledger = CommissionLedger(db)
        markers = CallbackMarkers(db, claim_ttl_seconds=config.callback_claim_ttl_seconds)
        reconciler = CallbackReconciler(config, mappings, directory, records, ledger,
                                        markers, retry_policy=retry_policy)
        return cls(
            config=config,
            db=db,
            gateway=gateway,
            mappings=mappings,
            directory=directory,
            records=records,
            ledger=ledger,
            markers=markers,
            reconciler=reconciler,
            bills=BillCreationOrchestrator(config, gateway, mappings),
            audit=ReconciliationAudit(mappings, records, markers),
        )

    async def start(self) -> None:
        await self.db.initialize()
        await self.gateway.initialize()

    async def close(self) -> None:
        await self.gateway.close()
        await self.db.close()


def _services(request: Request) -> RelayServices:
    return request.app.state.services


# ============================================================================
# REQUEST PARSING
# ============================================================================

async def read_callback_body(request: Request) -> Dict[str, Any]:
    """Callbacks arrive as urlencoded, multipart or JSON; anything unreadable is empty."""
    content_type = request.headers.get("content-type", "").lower()
    try:
        if "application/json" in content_type:
            payload = await request.json()
            return payload if isinstance(payload, dict) else {}
        if "form" in content_type:
            form = await request.form()
            return {key: value for key, value in form.items() if isinstance(value, str)}
    except ValueError as e:
        logger.warning("callback_body_unreadable", content_type=content_type, error=str(e))
    return {}


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(services: Optional[RelayServices] = None) -> FastAPI:
    """
    Build the app. Tests pass prebuilt services; otherwise they are created
    from the environment during startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            config = RelayConfig.from_env()
            configure_logging(config.log_level)
            app.state.services = RelayServices.build(config)
        await app.state.services.start()
        logger.info("relay_started", version=VERSION, **app.state.services.config.diagnostics())

        yield

        await app.state.services.close()
        logger.info("relay_stopped")

    app = FastAPI(
        title="RidePay Relay",
        description="ToyyibPay bill creation and commission reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.started_at = datetime.now(timezone.utc)

    cors_origins = services.config.cors_origins if services else RelayConfig.from_env().cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # MIDDLEWARE & ERROR HANDLING
    # ========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        log = logger.error if exc.http_status >= 500 else logger.warning
        log("request_failed", path=request.url.path, error=exc.code,
            message=exc.message, http_status=exc.http_status)
        body = {"success": False}
        body.update(exc.to_dict())
        return JSONResponse(status_code=exc.http_status, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Unparseable or mistyped bodies answer 400 in the relay error shape.
        problems = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
             "type": err.get("type"), "message": err.get("msg")}
            for err in exc.errors()
        ]
        error = ValidationError("Request body could not be parsed", fields=problems)
        return await relay_error_handler(request, error)

    # ========================================================================
    # ENDPOINTS
    # ========================================================================

    @app.get("/api/health")
    async def health_check(request: Request):
        uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
        return {
            "status": "healthy",
            "version": VERSION,
            "uptimeSeconds": round(uptime, 1),
            "environment": _services(request).config.toyyibpay_env,
        }

    @app.get("/api/toyyibpay/verify")
    async def verify_config(request: Request):
        """Configuration diagnostics (secrets masked)."""
        return _services(request).config.diagnostics()

    @app.post("/api/toyyibpay/create-bill")
    async def create_bill(payload: BillRequest, request: Request):
        created = await _services(request).bills.create_bill(payload)
        return created.to_response()

    @app.post("/api/toyyibpay/callback")
    async def toyyibpay_callback(request: Request):
        """Gateway callback. Always 200 so the gateway does not retry-storm."""
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=uuid.uuid4().hex[:12])
        try:
            body = await read_callback_body(request)
            query = dict(request.query_params)
            structlog.contextvars.bind_contextvars(bill_code=lookup("bill_code", body, query))
            ack = await _services(request).reconciler.handle_callback(body, query)
        except Exception as e:
            logger.exception("callback_internal_error", error=str(e))
            ack = {"received": True, "error": "InternalError"}
        finally:
            structlog.contextvars.clear_contextvars()
        return JSONResponse(status_code=200, content=ack)

    @app.get("/api/toyyibpay/success")
    async def payment_redirect(request: Request):
        """Return-redirect status as JSON."""
        return await _services(request).reconciler.redirect_status(dict(request.query_params))

    @app.post("/api/payment/process")
    async def process_payment(payload: ManualPaymentRequest, request: Request):
        return await _services(request).reconciler.process(
            payload.bill_code, payload.driver_id, payload.amount, payload.reference,
        )

    @app.post("/api/payment/recover")
    async def recover_payment(payload: ManualPaymentRequest, request: Request):
        return await _services(request).reconciler.recover(
            payload.bill_code, payload.driver_id, payload.amount, payload.reference,
        )

    @app.post("/api/commission/update")
    async def update_commission(payload: ManualPaymentRequest, request: Request):
        return await _services(request).reconciler.update_commission(
            payload.driver_id, payload.amount, payload.bill_code, payload.reference,
        )

    @app.get("/api/ops/reconciliation-gaps")
    async def reconciliation_gaps(
        request: Request,
        min_age_minutes: float = Query(30, alias="minAgeMinutes", ge=0),
    ):
        return await _services(request).audit.find_gaps(min_age_minutes)

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    config = RelayConfig.from_env()
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=config.port,
        reload=config.env == "development",
        log_level=config.log_level.lower(),
    )
