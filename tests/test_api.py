import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.main import app

from tests.conftest import EVENT_ID, make_token


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def auth(role: str, user_id: str = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(role, user_id=user_id)}"}


def receive_until(ws, event: str, ack=None) -> dict:
    """Read frames until ``event`` (with ``ack`` id, if given) arrives."""
    while True:
        message = ws.receive_json()
        if message["event"] == event and (ack is None or message.get("ack") == ack):
            return message


def create(client, *item_ids, role="Waiter", **fields) -> dict:
    payload = {"eventId": EVENT_ID, "items": [{"menuItem": i, "quantity": 1} for i in item_ids]}
    payload.update(fields)
    response = client.post("/api/orders", json=payload, headers=auth(role))
    assert response.status_code == 201, response.text
    return response.json()


# =============================================================================
# HTTP
# =============================================================================

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "operational"
    assert data["database"] == "healthy"
    assert data["broadcaster"] == "memory: healthy"


def test_order_routes_require_staff(client):
    assert client.get("/api/orders").status_code == 401
    assert client.get("/api/orders", headers={"Authorization": "Bearer nonsense"}).status_code == 401
    assert client.get("/api/orders", headers=auth("Kitchen")).json() == []
    assert client.get("/api/orders/last", headers=auth("Kitchen")).status_code == 403


def test_create_order(client, menu):
    order = create(client, menu["pizza"], tableNumber="7")

    assert order["status"] == "New"
    assert order["isActive"] is True
    assert order["createdAt"] == order["updatedAt"]
    assert order["items"][0]["menuItem"] == {
        "id": menu["pizza"],
        "name": "Pizza",
        "price": 12.5,
        "category": "Main",
        "requiresPrep": True,
    }

    last = client.get("/api/orders/last", headers=auth("Admin")).json()
    assert last == {"orderNumber": order["orderNumber"]}


def test_last_order_number_when_empty(client):
    assert client.get("/api/orders/last", headers=auth("Waiter")).json() == {"orderNumber": ""}


def test_create_order_errors(client, menu):
    payload = {"eventId": EVENT_ID, "items": [{"menuItem": menu["pizza"], "quantity": 1}]}
    assert client.post("/api/orders", json=payload, headers=auth("Kitchen")).status_code == 403

    empty = client.post("/api/orders", json={"eventId": EVENT_ID, "items": []}, headers=auth("Waiter"))
    assert empty.status_code == 422
    assert empty.json()["error"] == "EmptyOrder"

    foreign = client.post(
        "/api/orders",
        json={"eventId": EVENT_ID, "items": [{"menuItem": menu["foreign"], "quantity": 1}]},
        headers=auth("Waiter"),
    )
    assert foreign.status_code == 422
    assert foreign.json()["error"] == "InvalidItems"


def test_event_and_kitchen_views(client, menu):
    mixed = create(client, menu["pizza"], menu["coke"])
    drinks_only = create(client, menu["coke"])

    event_orders = client.get(f"/api/orders/event/{EVENT_ID}", headers=auth("Waiter")).json()
    assert [o["id"] for o in event_orders] == [drinks_only["id"], mixed["id"]]

    kitchen = client.get(f"/api/orders/kitchen/{EVENT_ID}", headers=auth("Kitchen")).json()
    assert [o["id"] for o in kitchen] == [mixed["id"]]
    assert [line["menuItem"]["name"] for line in kitchen[0]["items"]] == ["Pizza"]


def test_settle_tab(client, menu):
    first = create(client, menu["pizza"], tabId="tab-4")
    second = create(client, menu["coke"], tabId="tab-4")

    assert client.post(
        "/api/orders/tab/settle", json={"eventId": EVENT_ID, "tabId": "tab-4"}, headers=auth("Kitchen")
    ).status_code == 403

    response = client.post(
        "/api/orders/tab/settle", json={"eventId": EVENT_ID, "tabId": "tab-4"}, headers=auth("Waiter")
    )
    assert response.status_code == 200
    body = response.json()
    assert body["settled"] == 2
    assert {o["id"] for o in body["orders"]} == {first["id"], second["id"]}
    assert all(o["status"] == "Collected" and o["isPaid"] for o in body["orders"])

    tab = client.get("/api/orders/public/tab/tab-4").json()
    assert {o["status"] for o in tab} == {"Collected"}


# =============================================================================
# WEBSOCKET
# =============================================================================

def test_socket_rejects_bad_token(client):
    with client.websocket_connect("/ws?token=garbage") as ws:
        assert ws.receive_json()["event"] == "auth_error"
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 1008


def test_kitchen_flow_over_socket(client, menu):
    order = create(client, menu["pizza"])
    waiter_token = make_token("Waiter", user_id="waiter-9")
    kitchen_token = make_token("Kitchen", user_id="chef-1")

    with client.websocket_connect(f"/ws?token={waiter_token}") as waiter, \
            client.websocket_connect(f"/ws?token={kitchen_token}") as kitchen:
        snapshot = receive_until(kitchen, "initial_orders")["data"]
        assert [o["id"] for o in snapshot] == [order["id"]]
        receive_until(waiter, "initial_orders")

        kitchen.send_json({"event": "update_order_status", "data": {"orderId": order["id"], "status": "Preparing"}, "ack": 1})
        assert receive_until(kitchen, "ack", ack=1)["data"]["order"]["status"] == "Preparing"

        board = client.get(f"/api/orders/public/status/{EVENT_ID}").json()
        assert [(o["id"], o["status"]) for o in board] == [(order["id"], "Preparing")]

        kitchen.send_json({"event": "update_order_status", "data": {"orderId": order["id"], "status": "Ready"}, "ack": 2})
        receive_until(kitchen, "ack", ack=2)

        note = receive_until(waiter, "order_ready_notification")["data"]
        assert note == {"orderNumber": order["orderNumber"], "orderId": order["id"], "triggeredBy": "chef-1"}

        kitchen.send_json({"event": "update_order_status", "data": {"orderId": order["id"], "status": "Collected"}})
        error = receive_until(kitchen, "error")["data"]
        assert error["code"] == "Forbidden"


def test_guest_orders_over_socket(client, menu):
    with client.websocket_connect("/ws?tabId=tab-5") as guest:
        assert receive_until(guest, "initial_orders")["data"] == []

        guest.send_json({
            "event": "new_public_order",
            "data": {"eventId": EVENT_ID, "customerName": "Ann", "items": [{"menuItem": menu["coke"], "quantity": 2}]},
            "ack": "x1",
        })
        reply = receive_until(guest, "ack", ack="x1")["data"]
        assert reply["status"] == "ok"
        assert reply["order"]["tabId"] == "tab-5"
        assert reply["order"]["isPaid"] is False

    tab = client.get("/api/orders/public/tab/tab-5").json()
    assert [o["customerName"] for o in tab] == ["Ann"]
