import json
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from inventory_engine.core.logging_setup import JsonFormatter
from inventory_engine.core.metrics import EngineMetrics
from inventory_engine.core.request_context import clear_request_context, scope_context, set_request_context
from inventory_engine.middleware import observability
from inventory_engine.middleware.observability import ObservabilityMiddleware
from inventory_engine.services.event_bus import EventBus


def _record(message: str, *args, **extra) -> logging.LogRecord:
    record = logging.LogRecord("inventory_engine.test", logging.WARNING, __file__, 1, message, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_scope_from_context():
    formatter = JsonFormatter("%(message)s")
    set_request_context(request_id="req-1")
    try:
        with scope_context("acme-coffee", "loc_B1"):
            payload = json.loads(formatter.format(_record("[DEDUCTION] order %s applied", "k-1", order_id="o-1")))
    finally:
        clear_request_context()

    assert payload["request_id"] == "req-1"
    assert payload["tenant_id"] == "acme-coffee"
    assert payload["location_id"] == "loc_B1"
    assert payload["message"] == "[DEDUCTION] order k-1 applied"
    assert payload["order_id"] == "o-1"
    assert payload["level"] == "WARNING"


def test_json_formatter_masks_credentials():
    payload = json.loads(JsonFormatter("%(message)s").format(_record("store url token=abc123 password=hunter2")))

    assert "abc123" not in payload["message"]
    assert "hunter2" not in payload["message"]


def test_scope_context_is_restored_after_background_work():
    with scope_context("acme-coffee", "loc_B1"):
        with scope_context("acme-coffee", "loc_B2"):
            inner = json.loads(JsonFormatter("%(message)s").format(_record("x")))
        outer = json.loads(JsonFormatter("%(message)s").format(_record("x")))

    assert inner["location_id"] == "loc_B2"
    assert outer["location_id"] == "loc_B1"


def test_event_bus_isolates_failing_handlers():
    bus = EventBus()
    received = []

    def broken(payload):
        raise RuntimeError("handler bug")

    bus.subscribe("menu_item.cost.changed", broken)
    bus.subscribe("menu_item.cost.changed", received.append)
    bus.subscribe("menu_item.cost.changed", received.append)

    bus.emit("menu_item.cost.changed", {"menu_item_id": "m1"})
    bus.unsubscribe("menu_item.cost.changed", received.append)
    bus.emit("menu_item.cost.changed", {"menu_item_id": "m2"})

    assert received == [{"menu_item_id": "m1"}]


def test_middleware_records_request_metrics(monkeypatch):
    metrics = EngineMetrics()
    monkeypatch.setattr(observability, "engine_metrics", metrics)
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)

    @app.get("/ping")
    def ping():
        return {"ok": True}

    client = TestClient(app)
    response = client.get("/ping", headers={"X-Request-ID": "req-42"})
    client.get("/missing")

    assert response.headers["X-Request-ID"] == "req-42"
    snapshot = metrics.snapshot()
    assert snapshot["endpoints"]["GET /ping"]["total_requests"] == 1
    assert snapshot["endpoints"]["GET /missing"]["error_count"] == 1
