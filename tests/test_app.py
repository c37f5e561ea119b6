import pytest
from fastapi.testclient import TestClient

from app import app, get_store, utcnow


@pytest.fixture
def client(store, clock):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[utcnow] = lambda: clock()
    yield TestClient(app)
    app.dependency_overrides.clear()


def _signup(client, username, referral_code=None):
    res = client.post(
        "/api/users/signup",
        json={"username": username, "referral_code": referral_code},
    )
    assert res.status_code == 201
    return res.json()


def _as(user):
    return {"X-User-Id": str(user["user_id"])}


def _wire_chain_via_api(client, depth):
    """
    signup root, then each next user with the previous user's code.
    returns users ordered root -> buyer.
    """
    users = [_signup(client, "root")]
    for i in range(1, depth + 1):
        users.append(_signup(client, f"user{i}", users[-1]["referral_code"]))
    return users


def test_full_api_flow(client):
    """
    end-to-end flow:
      - wire a 10-deep chain
      - top up the buyer with 1000
      - buy for 100
      - check payouts and balances
    """
    users = _wire_chain_via_api(client, 10)
    buyer = users[-1]

    res = client.post("/api/add-balance", json={"amount": 1000}, headers=_as(buyer))
    assert res.status_code == 201
    assert res.json()["new_balance"] == "1000.000000"

    res = client.post("/api/transactions/buy", json={"amount": "100"}, headers=_as(buyer))
    assert res.status_code == 201
    data = res.json()
    assert data["new_balance"] == "900.000000"

    tx = data["transaction"]
    assert tx["type"] == "buy"
    assert tx["amount"] == "-100.000000"
    assert tx["total_commission_paid"] == "20.000000"
    assert [c["amount"] for c in tx["commissions"]] == (
        ["3.000000"] * 3 + ["2.000000"] * 4 + ["0.600000"] * 3
    )

    # L1 is the buyer's direct referrer
    res = client.get("/api/users/profile", headers=_as(users[-2]))
    assert res.status_code == 200
    assert res.json()["balance"] == "3.000000"
    assert res.json()["referred_by_code"] == users[-3]["referral_code"]


def test_buy_with_insufficient_balance(client):
    user = _signup(client, "broke")

    res = client.post("/api/transactions/buy", json={"amount": 5}, headers=_as(user))

    assert res.status_code == 400
    assert "Insufficient balance" in res.json()["detail"]

    res = client.get("/api/transactions/recent", headers=_as(user))
    assert res.json() == []


@pytest.mark.parametrize("body", [{}, {"amount": 0}, {"amount": -3}, {"amount": "1.234"}])
def test_invalid_amounts_are_400(client, body):
    user = _signup(client, "someone")

    assert client.post("/api/transactions/buy", json=body, headers=_as(user)).status_code == 400
    assert client.post("/api/add-balance", json=body, headers=_as(user)).status_code == 400


@pytest.mark.parametrize("amount", ["1e22", "10000000000000000000000", "1000000000000.01"])
def test_oversized_amounts_are_400(client, amount):
    user = _signup(client, "rich")

    res = client.post("/api/add-balance", json={"amount": amount}, headers=_as(user))
    assert res.status_code == 400
    assert client.post(
        "/api/transactions/buy", json={"amount": amount}, headers=_as(user)
    ).status_code == 400

    res = client.get("/api/users/profile", headers=_as(user))
    assert res.json()["balance"] == "0.000000"


def test_missing_identity_is_401(client):
    assert client.post("/api/transactions/buy", json={"amount": 1}).status_code == 401
    assert client.get("/api/analytics/dashboard", headers={"X-User-Id": "abc"}).status_code == 401


def test_unknown_user_is_404(client):
    res = client.post("/api/add-balance", json={"amount": 1}, headers={"X-User-Id": "777"})
    assert res.status_code == 404


def test_signup_with_bad_referral_code(client):
    res = client.post("/api/users/signup", json={"username": "x", "referral_code": "REF_BAD"})
    assert res.status_code == 400
    assert "referral_code" in res.json()["detail"]


def test_duplicate_signup(client):
    _signup(client, "dup")
    res = client.post("/api/users/signup", json={"username": "dup"})
    assert res.status_code == 400


def test_recent_transactions_is_idempotent(client):
    user = _signup(client, "reader")
    for amount in ("10", "20", "30", "40", "50"):
        client.post("/api/add-balance", json={"amount": amount}, headers=_as(user))
    client.post("/api/transactions/buy", json={"amount": "15"}, headers=_as(user))

    first = client.get("/api/transactions/recent?limit=3", headers=_as(user)).json()
    second = client.get("/api/transactions/recent?limit=3", headers=_as(user)).json()
    assert first == second
    assert len(first) == 3
    assert first[0]["type"] == "buy"

    topups = client.get("/api/add-balance/recent", headers=_as(user)).json()
    assert len(topups) == 4
    assert all(t["type"] == "add-balance" for t in topups)

    res = client.get("/api/transactions/recent?limit=1000", headers=_as(user))
    assert res.status_code == 400


def test_dashboard_and_commission_endpoints(client, clock):
    users = _wire_chain_via_api(client, 2)
    buyer, l1 = users[-1], users[-2]
    client.post("/api/add-balance", json={"amount": 100}, headers=_as(buyer))
    client.post("/api/transactions/buy", json={"amount": 100}, headers=_as(buyer))

    res = client.get("/api/analytics/dashboard", headers=_as(buyer))
    assert res.status_code == 200
    stats = res.json()["stats"]
    assert stats["total_sales"] == "100.000000"
    assert stats["current_balance"] == "0.000000"
    assert stats["forfeited_commission"] == "14.000000"

    res = client.get("/api/commissions/today-summary", headers=_as(l1))
    assert res.status_code == 200
    assert res.json()["today_commission"] == "3.000000"
    assert res.json()["trend"] == "up"

    res = client.get("/api/commissions/today-detailed", headers=_as(l1))
    assert res.status_code == 200
    assert res.json()["commission_by_users"][0]["sender_id"] == buyer["user_id"]

    res = client.get(
        "/api/commissions/date-range?startDate=2025-03-01&endDate=2025-03-31",
        headers=_as(l1),
    )
    assert res.status_code == 200
    assert res.json()["commission_data"] == [
        {"date": "2025-03-14", "total": "3.000000", "count": 1}
    ]

    res = client.get("/api/commissions/summary", headers=_as(l1))
    assert res.status_code == 200
    assert len(res.json()["commission_data"]) == 1

    res = client.get("/api/analytics/sales", headers=_as(l1))
    assert res.status_code == 200
    assert res.json()["top_users"][0]["user_id"] == buyer["user_id"]


def test_referral_network(client):
    users = _wire_chain_via_api(client, 3)
    root = users[0]

    res = client.get("/api/referral/network?max_levels=3&limit_per_level=10", headers=_as(root))
    assert res.status_code == 200
    data = res.json()

    assert data["user_id"] == root["user_id"]
    assert len(data["levels"]) == 3
    level_ids = [{u["user_id"] for u in lv["users"]} for lv in data["levels"]]
    assert level_ids == [
        {users[1]["user_id"]},
        {users[2]["user_id"]},
        {users[3]["user_id"]},
    ]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
