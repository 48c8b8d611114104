import json

import httpx

AUTH = {"Authorization": "Bearer dev_token"}


def _seed(client, *subscribers: str, topic: str = "x") -> None:
    store = client.app.state.hub.store
    for sub in subscribers:
        store.put(sub, "", topic, 1)


def test_publish_requires_auth(hub_client):
    response = hub_client.post("/publish", json={"topic": "x", "content": "hi"})

    assert response.status_code == 401


def test_publish_rejects_bad_token(hub_client):
    response = hub_client.post(
        "/publish",
        json={"topic": "x", "content": "hi"},
        headers={"Authorization": "Bearer wrong"},
    )

    assert response.status_code == 403


def test_publish_evicts_failing_subscriber(hub_client, subscribers, drain):
    _seed(hub_client, "http://ok", "http://bad")
    subscribers.route("ok", lambda request: httpx.Response(200))
    subscribers.route("bad", lambda request: httpx.Response(500))

    response = hub_client.post(
        "/publish", json={"topic": "x", "content": "hi"}, headers=AUTH
    )

    assert response.status_code == 202
    assert response.json()["subscribers"] == 2
    drain()
    remaining = hub_client.app.state.hub.store.list_by_topic("x")
    assert [s.subscriber for s in remaining] == ["http://ok"]
    (push,) = subscribers.to("ok")
    assert json.loads(push.content) == {"topic": "x", "content": "hi"}


def test_publish_without_subscribers(hub_client, subscribers, drain):
    response = hub_client.post(
        "/publish", json={"topic": "empty", "content": "hi"}, headers=AUTH
    )

    assert response.status_code == 202
    assert response.json()["subscribers"] == 0
    drain()
    assert subscribers.requests == []


def test_publish_validates_payload(hub_client):
    response = hub_client.post("/publish", json={"content": "hi"}, headers=AUTH)

    assert response.status_code == 422


def test_demo_publisher_pushes_advice(hub_client, subscribers, drain):
    _seed(hub_client, "http://a", topic="advice")
    subscribers.route(
        "api.adviceslip.com",
        lambda request: httpx.Response(
            200, json={"slip": {"id": 1, "advice": "Drink water."}}
        ),
    )
    subscribers.route("a", lambda request: httpx.Response(200))

    response = hub_client.get("/publish", headers=AUTH)

    assert response.status_code == 202
    assert response.json()["content"] == "Drink water."
    assert response.json()["topic"] == "advice"
    drain()
    (push,) = subscribers.to("a")
    assert json.loads(push.content)["content"] == "Drink water."


def test_demo_publisher_source_failure(hub_client, subscribers):
    subscribers.route("api.adviceslip.com", lambda request: httpx.Response(503))

    response = hub_client.get("/publish", headers=AUTH)

    assert response.status_code == 502


def test_subscription_listing_hides_secrets(hub_client):
    hub_client.app.state.hub.store.put("http://a", "hidden", "x", 7)

    response = hub_client.get("/subscriptions", params={"topic": "x"}, headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["subscriptions"] == [
        {"subscriber": "http://a", "timestamp": 7, "failures": 0}
    ]
    assert "hidden" not in response.text
