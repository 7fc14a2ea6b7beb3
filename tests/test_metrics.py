import os

from fastapi.testclient import TestClient

from machine_controller.config import get_settings

os.environ["DISABLE_BACKGROUND_LOOPS"] = "true"
get_settings.cache_clear()

from machine_controller.metrics import Metrics, metrics  # noqa: E402
from machine_controller.main import app  # noqa: E402


def test_metrics_endpoint_exposes_counters_and_gauges():
    metrics.inc("vm_clone_total", 2)
    metrics.set_gauge("machines_ready", 3)
    client = TestClient(app)
    response = client.get("/metrics")
    assert response.status_code == 200
    body = response.json()
    assert body["vm_clone_total"] >= 2
    assert body["machines_ready"] == 3


def test_gauges_are_overwritten_and_reset():
    registry = Metrics()
    registry.set_gauge("machines_pending", 4)
    registry.set_gauge("machines_pending", 1)
    registry.inc("reconcile_total")

    assert registry.snapshot() == {"machines_pending": 1, "reconcile_total": 1}
    registry.reset()
    assert registry.snapshot() == {}
