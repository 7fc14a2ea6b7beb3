import logging
import threading
import time

from machine_controller.clients.http import RetryPolicy
from machine_controller.clients.proxmox import ProxmoxClient
from machine_controller.config import get_settings
from machine_controller.services.controller import reconcile_once


logger = logging.getLogger(__name__)


def build_proxmox_client() -> ProxmoxClient:
    settings = get_settings()
    if not settings.proxmox_token_secret:
        logger.warning(
            "proxmox token secret is empty token_id=%s", settings.proxmox_token_id
        )
    return ProxmoxClient(
        base_url=settings.proxmox_url,
        token_id=settings.proxmox_token_id,
        token_secret=settings.proxmox_token_secret,
        retry=RetryPolicy(settings.request_attempts, settings.request_sleep_sec),
        verify_tls=settings.proxmox_verify_tls,
        timeout=settings.proxmox_timeout_sec,
    )


def start_loops(stop_event: threading.Event) -> list[threading.Thread]:
    settings = get_settings()

    def reconcile_worker() -> None:
        while not stop_event.is_set():
            try:
                reconcile_once(build_proxmox_client)
            except Exception as exc:  # noqa: BLE001
                logger.exception("reconcile tick failed: %s", exc)
            stop_event.wait(settings.loop_interval_sec)

    worker = threading.Thread(
        target=reconcile_worker, name="reconcile-worker", daemon=True
    )
    worker.start()
    time.sleep(0.01)
    return [worker]
