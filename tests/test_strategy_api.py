"""Tests for the strategy HTTP API."""

from __future__ import annotations

import asyncio
import time

import httpx
import orjson
import pytest
from fastapi.testclient import TestClient

from conftest import OTHER_USER_KEY, TOKEN_MINT, USER_KEY
from velocity.api.app import check_request_age, create_app
from velocity.api.rate_limit import RateLimitTracker
from velocity.config.settings import Settings
from velocity.connectors.rpc_client import SolanaRpcClient
from velocity.execution.engine import StrategyEngine
from velocity.strategy.errors import AuthenticationError, UpstreamCause, UpstreamError
from velocity.strategy.models import StrategyStatus

PREFIX = "/api/v1/strategy"
HEADERS = {"X-Public-Key": USER_KEY}


@pytest.fixture
def engine(settings, store, pricing) -> StrategyEngine:
    return StrategyEngine(settings, store, pricing)


@pytest.fixture
def client(settings, store, service, engine) -> TestClient:
    app = create_app(
        settings=settings,
        store=store,
        service=service,
        engine=engine,
        rate_limiter=RateLimitTracker(max_requests=1000),
    )
    return TestClient(app)


def _create(client: TestClient, body: dict, headers: dict = HEADERS) -> dict:
    response = client.post(PREFIX, json=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["data"]


def test_health_endpoint(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["environment"] == "devnet"
    assert "uptime_sec" in data


def test_missing_public_key_is_rejected(client: TestClient) -> None:
    response = client.get(PREFIX)
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Missing public key", "code": "AUTH_REQUIRED"}


def test_malformed_public_key_is_rejected(client: TestClient) -> None:
    response = client.get(PREFIX, headers={"X-Public-Key": "not-a-key"})
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_KEY"


def test_stale_signed_request_is_rejected(client: TestClient) -> None:
    stale = str(int(time.time() * 1000) - 10 * 60 * 1000)
    response = client.get(
        PREFIX, headers={**HEADERS, "X-Signature": "sig", "X-Timestamp": stale}
    )
    assert response.status_code == 401
    assert response.json()["code"] == "EXPIRED"


def test_timestamp_without_signature_is_not_checked(client: TestClient) -> None:
    response = client.get(PREFIX, headers={**HEADERS, "X-Timestamp": "0"})
    assert response.status_code == 200


def test_check_request_age_window() -> None:
    now = 1_700_000_000_000
    check_request_age(str(now - 299_000), now_ms=now)
    with pytest.raises(AuthenticationError):
        check_request_age(str(now - 301_000), now_ms=now)
    with pytest.raises(AuthenticationError):
        check_request_age("yesterday", now_ms=now)


def test_create_list_and_get(client: TestClient, strategy_body) -> None:
    created = _create(client, strategy_body(type="take_profit", trigger_price=150.0))
    assert created["status"] == "active"
    assert created["token_mint"] == TOKEN_MINT

    listed = client.get(PREFIX, headers=HEADERS).json()
    assert listed["success"] is True
    assert [s["id"] for s in listed["data"]] == [created["id"]]

    fetched = client.get(f"{PREFIX}/{created['id']}", headers=HEADERS).json()["data"]
    assert fetched == created


def test_create_validation_error(client: TestClient, strategy_body) -> None:
    response = client.post(PREFIX, json=strategy_body(token_mint="bad"), headers=HEADERS)
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"] == [{"field": "token_mint", "message": "Invalid token mint address"}]


def test_non_object_body_is_a_validation_error(client: TestClient) -> None:
    response = client.post(PREFIX, json=["not", "an", "object"], headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_limit_reached(client: TestClient, strategy_body, store) -> None:
    for _ in range(10):
        _create(client, strategy_body())

    response = client.post(PREFIX, json=strategy_body(), headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["code"] == "LIMIT_REACHED"
    user = store.get_or_create_user(USER_KEY)
    assert store.count_active(user.id) == 10


def test_status_update(client: TestClient, strategy_body) -> None:
    created = _create(client, strategy_body())

    paused = client.put(f"{PREFIX}/{created['id']}/status", json={"status": "paused"}, headers=HEADERS)
    assert paused.status_code == 200
    assert paused.json()["data"]["status"] == "paused"

    bad = client.put(f"{PREFIX}/{created['id']}/status", json={"status": "executed"}, headers=HEADERS)
    assert bad.status_code == 400


def test_other_users_get_not_found(client: TestClient, strategy_body) -> None:
    created = _create(client, strategy_body())
    stranger = {"X-Public-Key": OTHER_USER_KEY}

    assert client.get(f"{PREFIX}/{created['id']}", headers=stranger).status_code == 404
    assert client.delete(f"{PREFIX}/{created['id']}", headers=stranger).status_code == 404
    assert client.get(f"{PREFIX}/{created['id']}/execute", headers=stranger).status_code == 404
    assert client.get(PREFIX, headers=stranger).json()["data"] == []


def test_delete(client: TestClient, strategy_body) -> None:
    created = _create(client, strategy_body())
    response = client.delete(f"{PREFIX}/{created['id']}", headers=HEADERS)
    assert response.json() == {"success": True, "data": {"deleted": True}}
    assert client.get(f"{PREFIX}/{created['id']}", headers=HEADERS).status_code == 404


def test_execute_requires_triggered(client: TestClient, strategy_body, pricing) -> None:
    created = _create(client, strategy_body())

    response = client.get(f"{PREFIX}/{created['id']}/execute", headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE"
    assert response.json()["status"] == "active"
    assert pricing.calls == 0


def test_full_trigger_execute_confirm_flow(client: TestClient, strategy_body, engine, pricing) -> None:
    created = _create(client, strategy_body(type="take_profit", trigger_price=150.0))
    pricing.prices[TOKEN_MINT] = 160.0

    [result] = asyncio.run(engine.evaluate_triggers())
    assert result.did_trigger is True

    prepared = client.get(f"{PREFIX}/{created['id']}/execute", headers=HEADERS)
    assert prepared.status_code == 200
    data = prepared.json()["data"]
    assert data["swap"]["swap_transaction"] == "AQAAAA=="
    assert data["strategy"]["status"] == "triggered"

    confirmed = client.post(
        f"{PREFIX}/{created['id']}/confirm", json={"tx_signature": "5sig"}, headers=HEADERS
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["data"]["strategy"]["status"] == "executed"

    again = client.post(
        f"{PREFIX}/{created['id']}/confirm", json={"tx_signature": "5sig"}, headers=HEADERS
    )
    assert again.status_code == 200

    executions = client.get(f"{PREFIX}/{created['id']}/executions", headers=HEADERS).json()["data"]
    assert [e["status"] for e in executions] == ["executed"]
    assert executions[0]["tx_signature"] == "5sig"


def test_execute_surfaces_preparation_cause(client: TestClient, make_strategy, pricing) -> None:
    strategy = make_strategy(status=StrategyStatus.TRIGGERED)
    pricing.quote_error = UpstreamError("Quote failed: 400", UpstreamCause.QUOTE_FAILED)

    response = client.get(f"{PREFIX}/{strategy.id}/execute", headers=HEADERS)

    assert response.status_code == 502
    body = response.json()
    assert body["code"] == "EXECUTION_ERROR"
    assert body["cause"] == "quote_failed"


def test_confirm_requires_signature(client: TestClient, make_strategy) -> None:
    strategy = make_strategy(status=StrategyStatus.TRIGGERED)
    response = client.post(f"{PREFIX}/{strategy.id}/confirm", json={}, headers=HEADERS)
    assert response.status_code == 400


def test_fail_execution(client: TestClient, make_strategy, store) -> None:
    strategy = make_strategy(status=StrategyStatus.TRIGGERED)

    response = client.post(
        f"{PREFIX}/{strategy.id}/fail", json={"reason": "wallet rejected"}, headers=HEADERS
    )

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "failed"
    [attempt] = store.list_attempts(strategy.id)
    assert attempt.error_message == "wallet rejected"


def test_mutating_routes_are_rate_limited(store, service, engine, strategy_body) -> None:
    settings = Settings(
        environment="devnet", monitoring={"api_rate_limit_per_minute": 3}, _env_file=None
    )
    client = TestClient(create_app(settings=settings, store=store, service=service, engine=engine))

    created = [_create(client, strategy_body()) for _ in range(3)]
    limited = client.post(PREFIX, json=strategy_body(), headers=HEADERS)

    assert limited.status_code == 429
    assert limited.json() == {"success": False, "error": "Rate limit exceeded", "code": "RATE_LIMIT"}
    assert client.delete(f"{PREFIX}/{created[0]['id']}", headers=HEADERS).status_code == 429
    # Reads are not limited, and the window is per public key.
    assert client.get(PREFIX, headers=HEADERS).status_code == 200
    assert client.post(PREFIX, json=strategy_body(), headers={"X-Public-Key": OTHER_USER_KEY}).status_code == 200


class _ChainNode:
    """JSON-RPC node reporting ``status`` for every signature lookup."""

    def __init__(self, status: dict | None, block_height: int = 10) -> None:
        self.status = status
        self.block_height = block_height
        self.methods: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = orjson.loads(request.content)
        self.methods.append(body["method"])
        if body["method"] == "getSignatureStatuses":
            result = {"context": {"slot": 1}, "value": [self.status]}
        else:
            result = self.block_height
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


@pytest.fixture
def chain_settings() -> Settings:
    return Settings(
        environment="devnet",
        rpc={
            "primary_url": "https://primary.rpc.test",
            "confirm_timeout_sec": 0.5,
            "confirm_poll_sec": 0.01,
            "confirm_error_poll_sec": 0.01,
        },
        _env_file=None,
    )


def _chain_client(chain_settings, store, service, pricing, node: _ChainNode) -> TestClient:
    rpc = SolanaRpcClient(
        chain_settings.rpc, http=httpx.AsyncClient(transport=httpx.MockTransport(node))
    )
    engine = StrategyEngine(chain_settings, store, pricing, rpc)
    app = create_app(
        settings=chain_settings,
        store=store,
        service=service,
        engine=engine,
        rate_limiter=RateLimitTracker(max_requests=1000),
    )
    return TestClient(app)


def test_confirm_waits_for_chain_confirmation(chain_settings, store, service, pricing, make_strategy) -> None:
    node = _ChainNode({"slot": 5, "confirmations": 1, "err": None, "confirmationStatus": "confirmed"})
    client = _chain_client(chain_settings, store, service, pricing, node)
    strategy = make_strategy(status=StrategyStatus.TRIGGERED)

    response = client.post(
        f"{PREFIX}/{strategy.id}/confirm",
        json={"tx_signature": "5sig", "blockhash": "Hash111", "last_valid_block_height": 100},
        headers=HEADERS,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["confirmed"] is True
    assert data["strategy"]["status"] == "executed"
    assert data["strategy"]["tx_signature"] == "5sig"
    assert "getSignatureStatuses" in node.methods


def test_confirm_reports_unconfirmed_transaction(chain_settings, store, service, pricing, make_strategy) -> None:
    node = _ChainNode(
        {"slot": 5, "confirmations": 0, "err": {"InstructionError": [0, "Custom"]}, "confirmationStatus": "processed"}
    )
    client = _chain_client(chain_settings, store, service, pricing, node)
    strategy = make_strategy(status=StrategyStatus.TRIGGERED)

    response = client.post(
        f"{PREFIX}/{strategy.id}/confirm",
        json={"tx_signature": "5sig", "blockhash": "Hash111", "last_valid_block_height": 100},
        headers=HEADERS,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["confirmed"] is False
    assert data["strategy"]["status"] == "triggered"
    assert store.get_by_id(strategy.id).tx_signature is None


@pytest.mark.parametrize("last_valid", ["100", True, 1.5])
def test_confirm_rejects_non_integer_block_height(
    chain_settings, store, service, pricing, make_strategy, last_valid
) -> None:
    node = _ChainNode(None)
    client = _chain_client(chain_settings, store, service, pricing, node)
    strategy = make_strategy(status=StrategyStatus.TRIGGERED)

    response = client.post(
        f"{PREFIX}/{strategy.id}/confirm",
        json={"tx_signature": "5sig", "blockhash": "Hash111", "last_valid_block_height": last_valid},
        headers=HEADERS,
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"] == [{"field": "last_valid_block_height", "message": "must be an integer"}]
    assert node.methods == []


def test_confirm_without_rpc_records_signature_directly(client: TestClient, make_strategy) -> None:
    strategy = make_strategy(status=StrategyStatus.TRIGGERED)

    response = client.post(
        f"{PREFIX}/{strategy.id}/confirm",
        json={"tx_signature": "5sig", "blockhash": "Hash111", "last_valid_block_height": 100},
        headers=HEADERS,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["confirmed"] is True
    assert data["strategy"]["status"] == "executed"
