import logging
import threading
from urllib.parse import urlparse

from fastapi import FastAPI

from machine_controller.api import router
from machine_controller.config import get_settings
from machine_controller.db import init_db
from machine_controller.logging_config import configure_logging
from machine_controller.loops import start_loops


logger = logging.getLogger(__name__)
stop_event = threading.Event()
loop_threads: list[threading.Thread] = []


app = FastAPI(title="Proxmox Machine Controller")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    if not settings.disable_background_loops:
        if not urlparse(settings.proxmox_url).hostname:
            raise RuntimeError(
                f"PROXMOX_URL must be an absolute url, got {settings.proxmox_url!r}"
            )

    init_db()

    if not settings.disable_background_loops:
        global loop_threads
        loop_threads = start_loops(stop_event)
        logger.info(
            "reconcile loop started proxmox_url=%s interval_sec=%s",
            settings.proxmox_url,
            settings.loop_interval_sec,
        )
    logger.info("machine-controller startup complete")


@app.on_event("shutdown")
def shutdown() -> None:
    stop_event.set()
    for thread in loop_threads:
        thread.join(timeout=1)
