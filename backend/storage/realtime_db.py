# storage/realtime_db.py
# ============================================================================
# RIDEPAY RELAY — REALTIME DATABASE REST CLIENT
# ============================================================================
# Purpose: Thin async client for the Firebase Realtime Database REST API.
#
# FAILURE HANDLING:
# - Never raises: every call returns a StoreResult with a StoreStatus
# - Plain-text payloads (region redirects, HTML) on reads are "not found"
# - Permission errors are classified separately so callers can log them
# ============================================================================

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
import structlog

from relay.config import RelayConfig

logger = structlog.get_logger().bind(component="realtime_db")


# ============================================================================
# SECTION 1: TYPED RESULTS
# ============================================================================

class StoreStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    TRANSIENT_FAILURE = "transient_failure"
    PERMISSION_DENIED = "permission_denied"
    CONFLICT = "conflict"
    REJECTED = "rejected"


@dataclass
class StoreResult:
    status: StoreStatus
    data: Any = None
    http_status: Optional[int] = None
    body: str = ""
    etag: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == StoreStatus.OK

    @property
    def is_transient(self) -> bool:
        return self.status == StoreStatus.TRANSIENT_FAILURE

    @classmethod
    def rejected(cls, reason: str) -> "StoreResult":
        return cls(status=StoreStatus.REJECTED, body=reason)


def _is_permission_denied(status_code: int, body: str) -> bool:
    return status_code in (401, 403) or "permission denied" in body.lower()


def store_path(*segments: str) -> str:
    """Join path segments, escaping each one (bill codes and ids come from callers)."""
    return "/".join(quote(str(s).strip("/"), safe="") for s in segments if str(s).strip("/"))


# ============================================================================
# SECTION 2: CLIENT
# ============================================================================

class RealtimeDatabase:
    """
    REST access to a Firebase Realtime Database tree.

    Semantics of the remote store:
    - PUT is a full replace, PATCH a shallow merge, POST appends under a push key
    - no transactions; compare-and-set only via ETag / if-match
    """

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
                base_url=self.config.database_url,
                timeout=self.config.http_timeout_seconds,
                transport=self._transport,
            )
            logger.info("realtime_db_initialized",
                        database_url=self.config.database_url,
                        has_secret=bool(self.config.database_secret))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _params(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        params = dict(extra or {})
        if self.config.database_secret:
            params["auth"] = self.config.database_secret
        return params

    async def _request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> StoreResult:
        await self.initialize()
        url = f"/{path}.json"
        try:
            response = await self._client.request(
                method,
                url,
                params=self._params(params),
                json=payload if method in ("PUT", "PATCH", "POST") else None,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.warning("store_unreachable", method=method, path=path,
                           error=str(e), error_type=type(e).__name__)
            return StoreResult(status=StoreStatus.TRANSIENT_FAILURE, body=str(e))

        return self._classify(method, path, response)

    def _classify(self, method: str, path: str, response: httpx.Response) -> StoreResult:
        body = response.text
        etag = response.headers.get("ETag")
        code = response.status_code

        if response.is_success:
            try:
                data = json.loads(body) if body else None
            except ValueError:
                # Wrong-region databases answer with a plain-text redirect notice.
                logger.warning("store_non_json_payload", method=method, path=path,
                               status=code, body=body[:200])
                if method == "GET":
                    return StoreResult(status=StoreStatus.NOT_FOUND, http_status=code, body=body)
                return StoreResult(status=StoreStatus.OK, http_status=code, body=body, etag=etag)
            if method == "GET" and data is None:
                return StoreResult(status=StoreStatus.NOT_FOUND, http_status=code, body=body, etag=etag)
            return StoreResult(status=StoreStatus.OK, data=data, http_status=code, body=body, etag=etag)

        if _is_permission_denied(code, body):
            logger.error("store_permission_denied", method=method, path=path,
                         status=code, body=body[:500],
                         hint="database rules or FIREBASE_DATABASE_SECRET do not allow this access")
            return StoreResult(status=StoreStatus.PERMISSION_DENIED, http_status=code, body=body)
        if code == 412:
            return StoreResult(status=StoreStatus.CONFLICT, http_status=code, body=body, etag=etag)
        if code == 404:
            return StoreResult(status=StoreStatus.NOT_FOUND, http_status=code, body=body)
        if code == 429 or code >= 500:
            logger.warning("store_transient_failure", method=method, path=path,
                           status=code, body=body[:500])
            return StoreResult(status=StoreStatus.TRANSIENT_FAILURE, http_status=code, body=body)

        logger.error("store_request_rejected", method=method, path=path,
                     status=code, body=body[:500])
        return StoreResult(status=StoreStatus.REJECTED, http_status=code, body=body)

    # =========================================================================
    # VERBS
    # =========================================================================

    async def get(self, path: str, shallow: bool = False) -> StoreResult:
        params = {"shallow": "true"} if shallow else None
        return await self._request("GET", path, params=params)

    async def get_with_etag(self, path: str) -> StoreResult:
        """Read a node together with its ETag (absent nodes have one too)."""
        return await self._request("GET", path, headers={"X-Firebase-ETag": "true"})

    async def put(self, path: str, payload: Any, if_match: Optional[str] = None) -> StoreResult:
        headers = {"if-match": if_match} if if_match else None
        return await self._request("PUT", path, payload=payload, headers=headers)

    async def patch(self, path: str, payload: Dict[str, Any]) -> StoreResult:
        return await self._request("PATCH", path, payload=payload)

    async def post(self, path: str, payload: Any) -> StoreResult:
        return await self._request("POST", path, payload=payload)

    async def delete(self, path: str) -> StoreResult:
        return await self._request("DELETE", path)
