# relay/__init__.py
# ============================================================================
# RIDEPAY RELAY — CORE
# ============================================================================
# Process configuration, structured logging and the error taxonomy
# ============================================================================

from relay.config import RelayConfig, configure_logging
from relay.errors import RelayError

__all__ = [
    "RelayConfig",
    "configure_logging",
    "RelayError",
]
