import logging
import threading

from fastapi import FastAPI

from hyperfleet_controller.api import router
from hyperfleet_controller.config import get_settings
from hyperfleet_controller.db import init_db
from hyperfleet_controller.logging_config import configure_logging
from hyperfleet_controller.loops import start_loops


logger = logging.getLogger(__name__)
stop_event = threading.Event()
loop_threads: list[threading.Thread] = []


app = FastAPI(title="HyperFleet Controller")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    if not settings.operator_instance_id:
        raise RuntimeError("OPERATOR_INSTANCE_ID is required")

    init_db()

    if not settings.disable_background_loops:
        global loop_threads
        loop_threads = start_loops(stop_event)
    logger.info(
        "controller startup complete operator_instance=%s",
        settings.operator_instance_id,
    )


@app.on_event("shutdown")
def shutdown() -> None:
    stop_event.set()
    for thread in loop_threads:
        thread.join(timeout=1)
