# relay/config.py
# ============================================================================
# RIDEPAY RELAY — CONFIGURATION & LOGGING
# ============================================================================
# One RelayConfig is built at process start (RelayConfig.from_env) and handed
# to every component constructor. Components never read os.environ.
# ============================================================================

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import structlog


SANDBOX_ALIASES = {"sandbox", "dev", "development", "test", "testing"}

SANDBOX_BASE_URL = "https://dev.toyyibpay.com"
PRODUCTION_BASE_URL = "https://toyyibpay.com"


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def normalize_gateway_env(raw: Optional[str]) -> str:
    """Collapse the many spellings operators use into sandbox/production."""
    value = (raw or "production").strip().lower()
    return "sandbox" if value in SANDBOX_ALIASES else "production"


def mask_secret(value: Optional[str], visible: int = 8) -> str:
    if not value:
        return "MISSING"
    return f"{value[:visible]}..."


@dataclass
class RelayConfig:
    """Configuration for the payment relay."""

    # ToyyibPay
    toyyibpay_secret_key: str = ""
    toyyibpay_category_code: str = ""
    toyyibpay_env: str = "production"

    # Firebase Realtime Database
    database_url: str = ""
    database_secret: Optional[str] = None

    # Transport
    http_timeout_seconds: float = 15.0

    # Callback reconciliation
    mapping_lookup_attempts: int = 3
    mapping_backoff_seconds: float = 1.0
    callback_dedup_enabled: bool = True
    callback_claim_ttl_seconds: int = 300

    # Bill defaults
    bill_email_domain: str = "urbandrive.com"
    default_bill_name: str = "Pay Commission"
    default_bill_description: str = "Pay commission to company UrbanDriveSdnBhd"
    default_bill_phone: str = "0123456789"
    bill_content_email: str = "Thank you for your payment!"
    min_amount: float = 1.0
    max_amount: float = 10000.0

    # Server
    env: str = "development"
    port: int = 8000
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    def __post_init__(self):
        self.toyyibpay_env = normalize_gateway_env(self.toyyibpay_env)
        self.database_url = (self.database_url or "").rstrip("/")

    @classmethod
    def from_env(cls) -> "RelayConfig":
        return cls(
            toyyibpay_secret_key=os.getenv("TOYYIBPAY_USER_SECRET_KEY", ""),
            toyyibpay_category_code=os.getenv("TOYYIBPAY_CATEGORY_CODE", ""),
            toyyibpay_env=os.getenv("TOYYIBPAY_ENV", "production"),
            database_url=os.getenv("FIREBASE_DATABASE_URL", ""),
            database_secret=os.getenv("FIREBASE_DATABASE_SECRET") or None,
            http_timeout_seconds=float(os.getenv("RELAY_HTTP_TIMEOUT", "15.0")),
            mapping_lookup_attempts=int(os.getenv("MAPPING_LOOKUP_ATTEMPTS", "3")),
            mapping_backoff_seconds=float(os.getenv("MAPPING_LOOKUP_BACKOFF", "1.0")),
            callback_dedup_enabled=_env_bool("CALLBACK_DEDUP_ENABLED", True),
            callback_claim_ttl_seconds=int(os.getenv("CALLBACK_CLAIM_TTL", "300")),
            bill_email_domain=os.getenv("BILL_EMAIL_DOMAIN", "urbandrive.com"),
            env=os.getenv("ENV", "development"),
            port=int(os.getenv("PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
        )

    @property
    def is_sandbox(self) -> bool:
        return self.toyyibpay_env == "sandbox"

    @property
    def toyyibpay_base_url(self) -> str:
        return SANDBOX_BASE_URL if self.is_sandbox else PRODUCTION_BASE_URL

    @property
    def create_bill_url(self) -> str:
        return f"{self.toyyibpay_base_url}/index.php/api/createBill"

    def diagnostics(self) -> dict:
        """Safe-to-expose view of the configuration (secrets masked)."""
        return {
            "environment": self.toyyibpay_env.upper(),
            "hasSecretKey": bool(self.toyyibpay_secret_key),
            "hasCategoryCode": bool(self.toyyibpay_category_code),
            "secretKeyPreview": mask_secret(self.toyyibpay_secret_key),
            "categoryCodePreview": self.toyyibpay_category_code or "MISSING",
            "baseUrl": self.toyyibpay_base_url,
            "apiUrl": self.create_bill_url,
            "databaseUrl": self.database_url or "MISSING",
            "hasDatabaseSecret": bool(self.database_secret),
            "callbackDedupEnabled": self.callback_dedup_enabled,
        }


# ============================================================================
# STRUCTURED LOGGING
# ============================================================================

def configure_logging(level: str = "INFO") -> None:
    """Configure structlog JSON output for the whole process."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
