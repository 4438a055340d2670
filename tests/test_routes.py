from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from routes.base import router
from routes.dependencies import current_user_get

from conftest import SELLER, T0, T1


class Caller:
    def __init__(self):
        self.claims = {"sub": SELLER}

    def as_user(self, user_id, roles=None):
        self.claims = {"sub": user_id, "roles": roles or []}


@pytest.fixture
def caller():
    return Caller()


@pytest.fixture
def client(engine, caller):
    app = FastAPI()
    app.include_router(router)
    app.state.engine = engine
    app.dependency_overrides[current_user_get] = lambda: caller.claims
    return TestClient(app)


@pytest.fixture
def auction_id(client):
    response = client.post("/api/auctions/", json={
        "title": "Vintage bicycle",
        "starting_bid": 1000,
        "reserve_price": 1500,
        "increment_amount": 100,
        "start_time": T0.isoformat(),
        "end_time": T1.isoformat(),
    })
    assert response.status_code == 201, response.text
    return response.json()["id"]


def test_create_auction(client, auction_id):
    body = client.get(f"/api/auctions/{auction_id}").json()
    assert body["seller_id"] == SELLER
    assert body["status"] == "active"
    assert body["minimum_next_bid"] == 1000
    assert body["bid_count"] == 0


def test_create_invalid_auction(client):
    response = client.post("/api/auctions/", json={
        "title": "Broken",
        "starting_bid": 10,
        "start_time": T1.isoformat(),
        "end_time": T0.isoformat(),
    })
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_auction"


def test_place_bid_flow(client, caller, clock, auction_id):
    clock.advance(seconds=1)
    caller.as_user("alice")

    response = client.post(f"/api/auctions/{auction_id}/bid", json={"amount": 1000})
    assert response.status_code == 201
    body = response.json()
    assert body["auction"]["current_bid"]["amount"] == 1000
    assert body["auction"]["current_bid"]["bidder_id"] == "alice"
    assert body["bid"]["outcome"] == "accepted"
    assert body["replayed"] is False

    caller.as_user("bob")
    response = client.post(f"/api/auctions/{auction_id}/bid", json={"amount": 1050})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "bid_too_low"

    bids = client.get(f"/api/auctions/{auction_id}/bids").json()
    assert [(b["bidder_id"], b["outcome"]) for b in bids] == [("alice", "accepted"), ("bob", "rejected")]


def test_bid_error_statuses(client, caller, clock, auction_id):
    response = client.post("/api/auctions/missing/bid", json={"amount": 10})
    assert response.status_code == 404

    clock.advance(seconds=1)
    response = client.post(f"/api/auctions/{auction_id}/bid", json={"amount": 5000})
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "self_bid_forbidden"

    caller.as_user("alice")
    clock.advance(hours=3)
    response = client.post(f"/api/auctions/{auction_id}/bid", json={"amount": 5000})
    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "ended"

    response = client.post(f"/api/auctions/{auction_id}/bid", json={"amount": 6000})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "auction_closed"


def test_idempotency_key_header(client, caller, clock, auction_id):
    clock.advance(seconds=1)
    caller.as_user("alice")
    headers = {"Idempotency-Key": "retry-1"}

    first = client.post(f"/api/auctions/{auction_id}/bid", json={"amount": 1000}, headers=headers)
    second = client.post(f"/api/auctions/{auction_id}/bid", json={"amount": 1000}, headers=headers)

    assert first.json()["bid"]["id"] == second.json()["bid"]["id"]
    assert second.json()["replayed"] is True
    assert client.get(f"/api/auctions/{auction_id}").json()["bid_count"] == 1


def test_watch_toggle(client, caller, auction_id):
    caller.as_user("watcher")

    assert client.put(f"/api/auctions/{auction_id}/watch").json() == {"auction_id": auction_id, "is_watching": True}
    assert client.put(f"/api/auctions/{auction_id}/watch").json()["is_watching"] is True
    assert client.get(f"/api/auctions/{auction_id}/watch").json()["is_watching"] is True
    assert [a["id"] for a in client.get("/api/auctions/watching").json()] == [auction_id]
    assert client.delete(f"/api/auctions/{auction_id}/watch").json()["is_watching"] is False


def test_settle_requires_admin(client, caller, clock, auction_id):
    caller.as_user("alice")
    assert client.get(f"/api/auctions/{auction_id}/settle").status_code == 403

    caller.as_user("ops", roles=["admin"])
    clock.advance(hours=3)
    response = client.get(f"/api/auctions/{auction_id}/settle")
    assert response.status_code == 200
    assert response.json()["status"] == "unsold"


def test_transition_and_delete(client, caller, auction_id):
    caller.as_user("stranger")
    assert client.delete(f"/api/auctions/{auction_id}").status_code == 403

    caller.as_user(SELLER)
    response = client.post(f"/api/auctions/{auction_id}/status", json={"status": "sold"})
    assert response.status_code == 409

    assert client.delete(f"/api/auctions/{auction_id}").status_code == 204
    assert client.get(f"/api/auctions/{auction_id}").status_code == 404


def test_list_views(client, auction_id):
    assert [a["id"] for a in client.get("/api/auctions/").json()] == [auction_id]
    assert client.get("/api/auctions/", params={"view": "upcoming"}).json() == []
    assert client.get("/api/auctions/", params={"view": "nope"}).status_code == 422
    assert [a["id"] for a in client.get("/api/auctions/me").json()] == [auction_id]


def test_non_finite_amounts_rejected(client, caller, clock, auction_id):
    clock.advance(seconds=1)
    caller.as_user("mallory")
    headers = {"Content-Type": "application/json"}

    response = client.post(f"/api/auctions/{auction_id}/bid", content='{"amount": 1e999}', headers=headers)
    assert response.status_code == 422

    caller.as_user("alice")
    response = client.post(f"/api/auctions/{auction_id}/bid", json={"amount": 1000})
    assert response.status_code == 201
    assert response.json()["auction"]["current_bid"]["amount"] == 1000

    response = client.post("/api/auctions/", content=(
        '{"title": "Lamp", "starting_bid": 1e999, '
        f'"start_time": "{T0.isoformat()}", "end_time": "{T1.isoformat()}"}}'
    ), headers=headers)
    assert response.status_code == 422


def test_update_auction(client, caller, clock):
    upcoming = client.post("/api/auctions/", json={
        "title": "Desk",
        "starting_bid": 50,
        "start_time": (T0 + timedelta(minutes=30)).isoformat(),
        "end_time": T1.isoformat(),
    }).json()["id"]

    caller.as_user("stranger")
    assert client.put(f"/api/auctions/{upcoming}", json={"title": "Taken"}).status_code == 403

    caller.as_user(SELLER)
    response = client.put(f"/api/auctions/{upcoming}", json={"title": "Oak desk", "increment_amount": 5})
    assert response.status_code == 200
    body = response.json()
    assert body["title"] == "Oak desk"
    assert body["increment_amount"] == 5
    assert body["starting_bid"] == 50

    response = client.put(f"/api/auctions/{upcoming}", json={"end_time": T0.isoformat()})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_auction"

    clock.advance(hours=1)
    response = client.put(f"/api/auctions/{upcoming}", json={"title": "Too late"})
    assert response.status_code == 409


def test_featured_toggle_and_listing(client, caller, auction_id):
    caller.as_user("alice")
    assert client.patch(f"/api/auctions/{auction_id}/featured").status_code == 403

    caller.as_user("ops", roles=["admin"])
    response = client.patch(f"/api/auctions/{auction_id}/featured")
    assert response.status_code == 200
    assert response.json()["featured"] is True

    featured = client.get("/api/auctions/", params={"view": "featured"}).json()
    assert [a["id"] for a in featured] == [auction_id]

    assert client.patch(f"/api/auctions/{auction_id}/featured").json()["featured"] is False
    assert client.get("/api/auctions/", params={"view": "featured"}).json() == []
