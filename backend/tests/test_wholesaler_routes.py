"""
HTTP contract of /api/wholesalers with the service and store overridden.
"""
from unittest.mock import AsyncMock, MagicMock

from routes.wholesalers import get_notification_service, get_order_store
from server import app


def _override_service(**methods):
    service = MagicMock()
    for name, mock in methods.items():
        setattr(service, name, mock)
    app.dependency_overrides[get_notification_service] = lambda: service
    return service


def _override_store(**methods):
    store = MagicMock()
    for name, mock in methods.items():
        setattr(store, name, mock)
    app.dependency_overrides[get_order_store] = lambda: store
    return store


def test_test_endpoint_lists_routes(client):
    response = client.get("/api/wholesalers/test")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Wholesaler notification system is active"
    assert "timestamp" in body
    assert len(body["endpoints"]) == 4


def test_process_notifications_success_envelope(client):
    results = [{"orderNumber": "ORD-1", "wholesalerEmail": "w1@example.com", "status": "success", "messageId": "m1"}]
    _override_service(process_pending_notifications=AsyncMock(return_value={
        "success": True, "processed": 1, "successCount": 1, "errorCount": 0, "results": results,
    }))

    response = client.post("/api/wholesalers/process-notifications")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Notification processing completed",
        "data": {"processed": 1, "successCount": 1, "errorCount": 0, "results": results},
    }


def test_process_notifications_empty_sweep_defaults_counts(client):
    _override_service(process_pending_notifications=AsyncMock(return_value={"success": True, "processed": 0}))

    response = client.post("/api/wholesalers/process-notifications")

    assert response.json()["data"] == {"processed": 0, "successCount": 0, "errorCount": 0, "results": []}


def test_process_notifications_failure_is_500(client):
    _override_service(process_pending_notifications=AsyncMock(return_value={"success": False, "error": "db down"}))

    response = client.post("/api/wholesalers/process-notifications")

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "db down"}


def test_process_notifications_unexpected_exception_is_500(client):
    _override_service(process_pending_notifications=AsyncMock(side_effect=RuntimeError("boom")))

    response = client.post("/api/wholesalers/process-notifications")

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "boom"}


def test_notify_order_success(client):
    service = _override_service(process_order_notifications=AsyncMock(return_value={
        "success": True, "orderNumber": "ORD-1", "results": [],
    }))

    response = client.post("/api/wholesalers/notify/abc123")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Order notifications processed",
        "data": {"orderNumber": "ORD-1", "results": []},
    }
    service.process_order_notifications.assert_awaited_once_with("abc123")


def test_notify_order_nothing_pending_passes_message_through(client):
    _override_service(process_order_notifications=AsyncMock(return_value={
        "success": True, "message": "No pending wholesaler notifications for this order", "results": [],
    }))

    body = client.post("/api/wholesalers/notify/abc123").json()

    assert body["message"] == "No pending wholesaler notifications for this order"
    assert body["data"] == {"orderNumber": None, "results": []}


def test_notify_order_failure_is_400(client):
    _override_service(process_order_notifications=AsyncMock(return_value={
        "success": False, "error": "Order not found",
    }))

    response = client.post("/api/wholesalers/notify/missing")

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Order not found"}


def test_pending_lists_summaries(client):
    orders = [{
        "orderId": "o1",
        "orderNumber": "ORD-1",
        "orderDate": "2024-03-05T10:30:00+00:00",
        "status": "processing",
        "paymentStatus": "paid",
        "pendingWholesalers": [{"wholesalerName": "One", "wholesalerEmail": "w1@example.com", "productCode": "A"}],
    }]
    _override_store(find_pending_summaries=AsyncMock(return_value=orders))

    response = client.get("/api/wholesalers/pending")

    assert response.status_code == 200
    assert response.json() == {"success": True, "data": {"count": 1, "orders": orders}}


def test_pending_store_failure_is_500(client):
    _override_store(find_pending_summaries=AsyncMock(side_effect=RuntimeError("db down")))

    response = client.get("/api/wholesalers/pending")

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "db down"}


def test_status_for_unknown_order_is_404(client):
    _override_store(find_order_status=AsyncMock(return_value=None))

    response = client.get("/api/wholesalers/status/does-not-exist")

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Order not found"}


def test_status_for_known_order(client):
    status = {
        "orderNumber": "ORD-1",
        "wholesalers": [{
            "wholesalerName": "One", "wholesalerEmail": "w1@example.com", "productCode": "A",
            "notified": True, "notifiedAt": "2024-03-05T11:00:00+00:00",
        }],
    }
    store = _override_store(find_order_status=AsyncMock(return_value=status))

    response = client.get("/api/wholesalers/status/o1")

    assert response.status_code == 200
    assert response.json() == {"success": True, "data": status}
    store.find_order_status.assert_awaited_once_with("o1")


def test_status_for_unknown_order_through_real_store_is_404(client):
    from services.order_store import OrderStore

    db = MagicMock()
    db.orders.find_one = AsyncMock(return_value=None)
    app.dependency_overrides[get_order_store] = lambda: OrderStore(db)

    response = client.get("/api/wholesalers/status/65f0c0ffee0000000000abcd")

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Order not found"}
