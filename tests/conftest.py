"""Shared fixtures: in-memory Realtime Database and ToyyibPay fakes behind httpx.MockTransport."""

import hashlib
import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, unquote

import httpx
import pytest

from api.server import RelayServices
from relay.config import RelayConfig
from reconciliation.retry_policy import RetryPolicy
from storage.realtime_db import RealtimeDatabase

DATABASE_URL = "https://ridepay-test-default-rtdb.firebaseio.com"


# =============================================================================
# FAKE REALTIME DATABASE
# =============================================================================

def etag_of(value: Any) -> str:
    return hashlib.sha1(json.dumps(value, sort_keys=True).encode()).hexdigest()


class FakeRealtimeDatabase:
    """
    Minimal Firebase RTDB REST semantics over a nested dict:
    GET (shallow, X-Firebase-ETag), PUT (if-match), PATCH, POST (push keys), DELETE.
    """

    def __init__(self):
        self.tree: Dict[str, Any] = {}
        self.calls: List[Tuple[str, str]] = []
        self.requests: List[httpx.Request] = []
        self._failures: List[dict] = []
        self._push_counter = 0

    # --- failure injection ---------------------------------------------------

    def fail(self, method: str, path: str, status: int = 503, body: str = "Service Unavailable",
             times: Optional[int] = None, raise_error: bool = False) -> None:
        self._failures.append({"method": method, "path": path, "status": status,
                               "body": body, "times": times, "raise": raise_error})

    def _failure_for(self, method: str, path: str) -> Optional[dict]:
        for failure in self._failures:
            if failure["method"] == method and failure["path"] == path:
                if failure["times"] is None:
                    return failure
                if failure["times"] > 0:
                    failure["times"] -= 1
                    return failure
        return None

    # --- tree helpers --------------------------------------------------------

    def get_node(self, path: str) -> Any:
        node: Any = self.tree
        for segment in [s for s in path.split("/") if s]:
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return node

    def set_node(self, path: str, value: Any) -> None:
        segments = [s for s in path.split("/") if s]
        if not segments:
            self.tree = value if isinstance(value, dict) else {}
            return
        node = self.tree
        for segment in segments[:-1]:
            if not isinstance(node.get(segment), dict):
                node[segment] = {}
            node = node[segment]
        if value is None:
            node.pop(segments[-1], None)
        else:
            node[segments[-1]] = value

    def count(self, method: str, prefix: str = "") -> int:
        return sum(1 for m, p in self.calls if m == method and p.startswith(prefix))

    # --- transport -----------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = unquote(request.url.path).lstrip("/")
        if path.endswith(".json"):
            path = path[: -len(".json")]
        method = request.method
        self.calls.append((method, path))
        self.requests.append(request)

        failure = self._failure_for(method, path)
        if failure is not None:
            if failure["raise"]:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(failure["status"], text=failure["body"])

        current = self.get_node(path)
        headers = {}

        if method == "GET":
            value = current
            if request.url.params.get("shallow") == "true" and isinstance(value, dict):
                value = {key: True for key in value}
            if request.headers.get("X-Firebase-ETag") == "true":
                headers["ETag"] = etag_of(current)
            return httpx.Response(200, text=json.dumps(value), headers=headers)

        payload = json.loads(request.content) if request.content else None

        if method == "PUT":
            expected = request.headers.get("if-match")
            if expected is not None and expected != etag_of(current):
                return httpx.Response(412, json={"error": "ETag mismatch"},
                                      headers={"ETag": etag_of(current)})
            self.set_node(path, payload)
            return httpx.Response(200, text=json.dumps(payload))

        if method == "PATCH":
            merged = dict(current) if isinstance(current, dict) else {}
            merged.update(payload or {})
            self.set_node(path, merged)
            return httpx.Response(200, text=json.dumps(payload))

        if method == "POST":
            self._push_counter += 1
            key = f"-Npush{self._push_counter:06d}"
            self.set_node(f"{path}/{key}", payload)
            return httpx.Response(200, json={"name": key})

        if method == "DELETE":
            self.set_node(path, None)
            return httpx.Response(200, text="null")

        return httpx.Response(405, text="method not allowed")


# =============================================================================
# FAKE TOYYIBPAY
# =============================================================================

class FakeGateway:
    """Scripted createBill responses; records every submitted form."""

    def __init__(self):
        self.forms: List[Dict[str, str]] = []
        self.urls: List[str] = []
        self.response_text = '[{"BillCode":"rp123"}]'
        self.raise_error: Optional[Exception] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.urls.append(str(request.url))
        parsed = parse_qs(request.content.decode(), keep_blank_values=True)
        self.forms.append({key: values[0] for key, values in parsed.items()})
        if self.raise_error is not None:
            raise self.raise_error
        return httpx.Response(200, text=self.response_text)


class FakeClock:
    def __init__(self):
        self.sleeps: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.sleeps.append(seconds)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def config() -> RelayConfig:
    return RelayConfig(
        toyyibpay_secret_key="sk-test-1234567890",
        toyyibpay_category_code="cat-test",
        toyyibpay_env="sandbox",
        database_url=DATABASE_URL,
        database_secret="db-secret",
        mapping_lookup_attempts=3,
        mapping_backoff_seconds=1.0,
    )


@pytest.fixture
def fake_db() -> FakeRealtimeDatabase:
    return FakeRealtimeDatabase()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def db(config, fake_db):
    client = RealtimeDatabase(config, transport=httpx.MockTransport(fake_db.handler))
    yield client
    await client.close()


def build_services(config, fake_db, fake_gateway, clock) -> RelayServices:
    return RelayServices.build(
        config,
        db_transport=httpx.MockTransport(fake_db.handler),
        gateway_transport=httpx.MockTransport(fake_gateway.handler),
        retry_policy=RetryPolicy(max_attempts=config.mapping_lookup_attempts,
                                 base_delay=config.mapping_backoff_seconds, sleep=clock),
    )


@pytest.fixture
async def services(config, fake_db, fake_gateway, clock):
    built = build_services(config, fake_db, fake_gateway, clock)
    yield built
    await built.close()
