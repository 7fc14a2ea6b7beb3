import threading

from machine_controller import loops
from machine_controller.config import get_settings


def test_client_is_built_from_settings(monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "proxmox_url", "https://pve.example.test:8006/")
    monkeypatch.setattr(settings, "proxmox_token_secret", "s3cret")
    monkeypatch.setattr(settings, "request_attempts", 2)

    client = loops.build_proxmox_client()
    try:
        assert client.base_url == "https://pve.example.test:8006"
        assert str(client.client.base_url) == "https://pve.example.test:8006/api2/json/"
        assert client.client.headers["Authorization"].endswith("=s3cret")
        assert client.retry.attempts == 2
    finally:
        client.close()


def test_worker_survives_failing_ticks(monkeypatch):
    stop_event = threading.Event()
    ticks = []

    def failing_tick(client_factory):
        ticks.append(client_factory)
        if len(ticks) >= 2:
            stop_event.set()
        raise RuntimeError("proxmox unreachable")

    monkeypatch.setattr(loops, "reconcile_once", failing_tick)
    monkeypatch.setattr(get_settings(), "loop_interval_sec", 0)

    threads = loops.start_loops(stop_event)
    for thread in threads:
        thread.join(timeout=5)

    assert [thread.name for thread in threads] == ["reconcile-worker"]
    assert len(ticks) == 2
    assert ticks[0] is loops.build_proxmox_client
