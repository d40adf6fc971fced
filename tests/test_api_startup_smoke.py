from fastapi.testclient import TestClient


REQUIRED_ROUTES = {
    "/api/branches",
    "/api/inventory/items",
    "/api/inventory/items/{item_id}/receive",
    "/api/inventory/items/{item_id}/adjust",
    "/api/inventory/items/{item_id}/cost",
    "/api/inventory/movements",
    "/api/menu/items",
    "/api/menu/items/{menu_item_id}/recipe",
    "/api/menu/costs/resync",
    "/api/menu/pos-items",
    "/api/menu/deduction-setup",
    "/api/orders/complete",
    "/api/orders/{order_id}/fulfill",
    "/api/sync/status",
    "/api/sync/failed",
    "/api/internal/metrics",
}


def test_api_startup_and_router_registration(monkeypatch):
    from inventory_engine import main

    monkeypatch.setattr(main, "_startup_tasks", lambda: None)
    monkeypatch.setattr(main, "BACKGROUND_WORKERS_ENABLED", False)

    with TestClient(main.app) as client:
        response = client.get("/")
        health_response = client.get("/health")
        openapi_response = client.get("/openapi.json")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert health_response.json()["status"] == "healthy"
    assert openapi_response.status_code == 200

    paths = {route.path for route in main.app.routes}
    assert REQUIRED_ROUTES.issubset(paths)


def test_order_replay_handler_is_registered():
    from inventory_engine import main
    from inventory_engine.services.deductor import ORDER_FULFILLMENT

    assert ORDER_FULFILLMENT in main.sync_queue._handlers
