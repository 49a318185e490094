from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from p2p_guard.config.models import AppConfig
from p2p_guard.engine.disputes import ArbitratorProfile
from p2p_guard.engine.lp_matcher import LiquidityProvider
from p2p_guard.engine.service import TradeGuardEngine
from p2p_guard.web import ARBITRATOR_HEADER, ARBITRATOR_KEY_HEADER, AuthManager, create_app

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)

POOL = [
    LiquidityProvider(address="0xlp1", stake=500, rate=1.002),
    LiquidityProvider(address="0xlp2", stake=250, rate=1.001),
    LiquidityProvider(address="0xlp3", stake=100, rate=1.0),
    LiquidityProvider(address="0xlp4", stake=450, rate=1.003),
]

ARBITRATORS = [
    ArbitratorProfile(address="0xarb1", stake=1000, completed_trades=80, dispute_rate=0.01),
    ArbitratorProfile(address="0xadmin", stake=1000, completed_trades=80, dispute_rate=0.01),
]


class _SimpleAuth(AuthManager):
    def __init__(self) -> None:
        super().__init__({"0xarb1": "pw1", "0xadmin": "pw2"}, admins=["0xadmin"])

    def authenticate(self, address: str, key: str) -> bool:  # type: ignore[override]
        return self.arbitrators.get(address.lower()) == key


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _ExplodingScorer:
    def analyze(self, order, history, now):
        raise RuntimeError("model offline")


def _engine() -> TradeGuardEngine:
    return TradeGuardEngine(clock=_Clock(NOW), liquidity_pool=POOL, arbitrators=ARBITRATORS)


@pytest.fixture
def client() -> TestClient:
    return TestClient(create_app(AppConfig(), engine=_engine()))


@pytest.fixture
def secured() -> TestClient:
    return TestClient(create_app(AppConfig(), engine=_engine(), auth_manager=_SimpleAuth()))


def _analyze_body(amount=55, user="0xuser") -> dict:
    return {"orderData": {"amountUsdc": amount, "paymentMethod": "upi"}, "userAddress": user}


def _open_dispute(client: TestClient) -> str:
    response = client.post(
        "/api/disputes",
        json={"orderId": "order-1", "userAddress": "0xuser", "lpAddress": "0xlp1", "amount": 1000},
    )
    assert response.status_code == 201
    return response.json()["dispute"]["id"]


def test_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_analyze_returns_assessment(client: TestClient):
    response = client.post("/api/fraud/analyze", json=_analyze_body())

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "riskScore": 20,
        "riskLevel": "medium",
        "blocked": False,
        "requiredActions": ["manual_review"],
    }


@pytest.mark.parametrize(
    "body, error",
    [
        ({"userAddress": "0xuser"}, "orderData must be an object"),
        ({"orderData": {}, "userAddress": "0xuser"}, "orderData.amountUsdc is required"),
        ({"orderData": {"amountUsdc": 50}}, "userAddress is required"),
        ({"orderData": {"amountUsdc": "lots"}, "userAddress": "0xuser"}, "amountUsdc must be numeric"),
    ],
)
def test_analyze_rejects_malformed_requests(client: TestClient, body, error):
    response = client.post("/api/fraud/analyze", json=body)

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": error}


def test_analyze_rejects_invalid_json(client: TestClient):
    response = client.post(
        "/api/fraud/analyze", content="{not json", headers={"content-type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid JSON payload"


def test_velocity_breach_is_blocked(client: TestClient):
    for _ in range(6):
        assert client.post("/api/activity", json={"userAddress": "0xuser", "amount": 50}).status_code == 200

    body = client.post("/api/fraud/analyze", json=_analyze_body(50)).json()

    assert body["blocked"] is True
    assert body["riskScore"] == 60
    assert body["riskLevel"] == "critical"
    assert body["requiredActions"] == ["manual_review", "delayed_release"]


def test_scoring_failure_fails_closed(client: TestClient):
    client.app.state.engine.scorer = _ExplodingScorer()

    response = client.post("/api/fraud/analyze", json=_analyze_body())

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Fraud analysis failed", "blocked": True}


def test_risk_profile_lookup(client: TestClient):
    assert client.get("/api/fraud/analyze").status_code == 400
    assert client.get("/api/fraud/analyze", params={"address": "0xnobody"}).status_code == 404

    client.post("/api/activity", json={"userAddress": "0xuser", "amount": 80, "completed": True})
    history = client.get("/api/fraud/analyze", params={"address": "0xUSER"}).json()["history"]

    assert history["ordersLastHour"] == 1
    assert history["averageOrderAmount"] == 80


def test_order_admission(client: TestClient):
    body = {**_analyze_body(600, "0xtrader"), "type": "buy"}

    payload = client.post("/api/orders", json=body).json()

    assert payload["admitted"] is True
    assert payload["requiredStake"] == 45
    assert payload["match"]["matched"]["address"] == "0xlp1"


def test_order_below_minimum_is_rejected(client: TestClient):
    response = client.post("/api/orders", json=_analyze_body(5))

    assert response.status_code == 400


def test_lp_matching(client: TestClient):
    high = client.post("/api/lp", json={"amount": 600, "type": "buy"}).json()
    low = client.post("/api/lp", json={"amount": 80, "type": "sell"}).json()
    bad = client.post("/api/lp", json={"amount": 80, "type": "hold"})

    assert high["success"] is True
    assert high["matched"]["address"] == "0xlp1"
    assert high["isHighValue"] is True
    assert low["matched"]["address"] == "POOL_BASELINE"
    assert low["estimatedRate"] == 0.999
    assert bad.status_code == 400


def test_lp_pool_summary(client: TestClient):
    body = client.get("/api/lp").json()

    assert body["totalLiquidity"] == 1300
    assert len(body["providers"]) == 4


def test_activity_resets(client: TestClient):
    client.post("/api/activity", json={"userAddress": "0xa", "amount": 10})

    assert client.post("/api/activity/reset-hourly").json() == {"success": True, "usersReset": 1}
    assert client.post("/api/activity/reset-daily").json()["usersReset"] == 1


def test_completing_an_order_updates_average_without_recounting(client: TestClient):
    client.post("/api/activity", json={"userAddress": "0xuser", "amount": 80})

    body = client.post("/api/activity/complete", json={"userAddress": "0xuser", "amount": 80}).json()

    assert body["success"] is True
    assert body["history"]["ordersLastHour"] == 1
    assert body["history"]["completedOrders"] == 1
    assert body["history"]["averageOrderAmount"] == 80
    assert client.post("/api/activity/complete", json={"userAddress": "0xuser", "amount": 0}).status_code == 400


def test_dispute_resolution_is_idempotent(client: TestClient):
    dispute_id = _open_dispute(client)

    first = client.post(f"/api/disputes/{dispute_id}/resolve", json={"decision": "user_wins", "slashPercentage": 100})
    second = client.post(f"/api/disputes/{dispute_id}/resolve", json={"decision": "lp_wins"})

    assert first.status_code == 200
    resolution = first.json()["resolution"]
    assert resolution["actions"] == {
        "fundsReleased": True,
        "fundsRefunded": False,
        "lpSlashed": True,
        "lpBanned": True,
        "userBanned": False,
    }
    assert second.status_code == 409
    assert second.json()["success"] is False
    detail = client.get(f"/api/disputes/{dispute_id}").json()["dispute"]
    assert detail["status"] == "resolved"
    assert detail["resolution"]["decision"] == "user_wins"


def test_lp_win_records_requested_slash(client: TestClient):
    dispute_id = _open_dispute(client)

    body = client.post(
        f"/api/disputes/{dispute_id}/resolve", json={"decision": "lp_wins", "slashPercentage": 50}
    ).json()

    assert body["resolution"]["slashPercentage"] == 0
    assert body["resolution"]["requestedSlashPercentage"] == 50
    assert body["resolution"]["actions"]["userBanned"] is True


@pytest.mark.parametrize(
    "body, error",
    [
        ({"decision": "draw"}, 'Invalid decision. Must be "user_wins" or "lp_wins"'),
        ({"decision": "user_wins", "slashPercentage": 30}, "Invalid slash percentage. Must be 0, 20, 50, or 100"),
        ({"slashPercentage": 20}, "decision is required"),
    ],
)
def test_invalid_resolution_is_rejected(client: TestClient, body, error):
    dispute_id = _open_dispute(client)

    response = client.post(f"/api/disputes/{dispute_id}/resolve", json=body)

    assert response.status_code == 400
    assert response.json()["error"] == error
    assert client.get(f"/api/disputes/{dispute_id}").json()["dispute"]["status"] == "opened"


def test_unknown_dispute(client: TestClient):
    response = client.post("/api/disputes/dispute-404/resolve", json={"decision": "user_wins"})

    assert response.status_code == 404
    assert response.json()["success"] is False


def test_dispute_detail_and_listing(client: TestClient):
    dispute_id = _open_dispute(client)

    detail = client.get(f"/api/disputes/{dispute_id}").json()["dispute"]
    listing = client.get("/api/disputes", params={"status": "opened", "address": "0xlp1"}).json()

    assert detail["tier"] == "auto"
    assert detail["lp"]["stake"] == 500
    assert detail["adminDeadline"] > detail["raisedAt"]
    assert [item["id"] for item in listing["disputes"]] == [dispute_id]
    assert client.get("/api/disputes", params={"status": "weird"}).status_code == 400


def test_duplicate_dispute_for_order_conflicts(client: TestClient):
    _open_dispute(client)

    response = client.post(
        "/api/disputes",
        json={"orderId": "order-1", "userAddress": "0xuser", "lpAddress": "0xlp1", "amount": 1000},
    )

    assert response.status_code == 409


def test_evidence_submission(client: TestClient):
    dispute_id = _open_dispute(client)

    ok = client.post(
        f"/api/disputes/{dispute_id}/evidence",
        json={"submittedBy": "0xuser", "utrReference": "123456789012", "screenshots": ["ipfs://a"]},
    )
    bad = client.post(
        f"/api/disputes/{dispute_id}/evidence", json={"submittedBy": "0xuser", "screenshots": "ipfs://a"}
    )

    assert ok.status_code == 200
    assert ok.json()["dispute"]["evidence"][0]["screenshots"] == ["ipfs://a"]
    assert bad.status_code == 400


def test_vote_without_auth_uses_payload_arbitrator(client: TestClient):
    dispute_id = _open_dispute(client)
    client.app.state.engine.clock.now = NOW + timedelta(minutes=10)

    body = client.post(
        f"/api/disputes/{dispute_id}/votes", json={"arbitrator": "0xarb1", "favorUser": True}
    ).json()

    assert body["dispute"]["votesForUser"] == 1
    assert body["resolution"] is None


def test_vote_during_auto_resolution_window_conflicts(client: TestClient):
    dispute_id = _open_dispute(client)

    response = client.post(
        f"/api/disputes/{dispute_id}/votes", json={"arbitrator": "0xarb1", "favorUser": True}
    )

    assert response.status_code == 409
    assert client.get(f"/api/disputes/{dispute_id}").json()["dispute"]["votesForUser"] == 0


def test_rejected_dispute_open_does_not_register_parties(client: TestClient):
    response = client.post(
        "/api/disputes",
        json={
            "orderId": "order-9",
            "userAddress": "0xnewuser",
            "lpAddress": "0xnewlp",
            "amount": 50,
            "raisedBy": "bogus",
        },
    )

    assert response.status_code == 400
    assert client.get("/api/fraud/analyze", params={"address": "0xnewuser"}).status_code == 404
    assert client.get("/api/fraud/analyze", params={"address": "0xnewlp"}).status_code == 404


def test_penalty_endpoint(client: TestClient):
    body = client.post(
        "/api/penalties", json={"lpAddress": "0xlp2", "stake": 250, "reason": "order_timeout"}
    ).json()

    assert body["penalty"] == {"reason": "order_timeout", "percentage": 20, "stake": 250, "amount": 50}


def test_resolution_requires_arbitrator_credentials(secured: TestClient):
    dispute_id = _open_dispute(secured)

    anonymous = secured.post(f"/api/disputes/{dispute_id}/resolve", json={"decision": "user_wins"})
    wrong = secured.post(
        f"/api/disputes/{dispute_id}/resolve",
        json={"decision": "user_wins"},
        headers={ARBITRATOR_HEADER: "0xarb1", ARBITRATOR_KEY_HEADER: "nope"},
    )
    signed = secured.post(
        f"/api/disputes/{dispute_id}/resolve",
        json={"decision": "user_wins"},
        headers={ARBITRATOR_HEADER: "0xarb1", ARBITRATOR_KEY_HEADER: "pw1"},
    )

    assert anonymous.status_code == 401
    assert anonymous.json() == {"success": False, "error": "Arbitrator authentication required"}
    assert wrong.status_code == 401
    assert signed.status_code == 200
    assert signed.json()["resolution"]["resolvedBy"] == "0xarb1"


def test_scheduler_endpoints_require_admin(secured: TestClient):
    arbitrator = {ARBITRATOR_HEADER: "0xarb1", ARBITRATOR_KEY_HEADER: "pw1"}
    admin = {ARBITRATOR_HEADER: "0xadmin", ARBITRATOR_KEY_HEADER: "pw2"}

    assert secured.post("/api/activity/reset-hourly").status_code == 401
    assert secured.post("/api/activity/reset-hourly", headers=arbitrator).status_code == 403
    assert secured.post("/api/activity/reset-hourly", headers=admin).status_code == 200
    assert secured.post("/api/activity/complete", json={"userAddress": "0xa", "amount": 5}).status_code == 401
    assert secured.post("/api/fraud/analyze", json=_analyze_body()).status_code == 200
