import time
import asyncio
import logging
import uuid
from dotenv import load_dotenv

# Load environment variables from .env file before anything else
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from slotbook.core.config import settings
from slotbook.core.logging import setup_logging, request_id_ctx
from slotbook.core.errors import BookingError
from slotbook.api.router import api_router
from slotbook.core.db import init_models
from slotbook.modules.events.outbox import run_outbox_relay
from slotbook.modules.reconciliation.worker import run_reconciliation_sweeper


setup_logging()
app = FastAPI(title=settings.APP_NAME)
logger = logging.getLogger(__name__)

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
    request_id_ctx.set(rid)
    response = await call_next(request)
    response.headers["x-request-id"] = rid
    return response

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    process_time = (time.time() - start_time) * 1000
    logger.info(
        f"Request: {request.method} {request.url.path} - Response: {response.status_code} - Time: {process_time:.2f}ms"
    )
    return response

@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} for {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.critical(f"Unhandled exception for request {request.method} {request.url.path}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"message": "An internal server error occurred."},
    )


@app.on_event("startup")
async def on_startup():
    await init_models()
    app.state.tasks = []
    if settings.BACKGROUND_TASKS_ENABLED:
        app.state.tasks.append(asyncio.create_task(run_outbox_relay(settings.OUTBOX_POLL_SECONDS)))
        app.state.tasks.append(asyncio.create_task(run_reconciliation_sweeper(settings.RECONCILE_INTERVAL_SECONDS)))

@app.on_event("shutdown")
async def on_shutdown():
    for task in getattr(app.state, "tasks", []):
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


app.include_router(api_router, prefix=settings.API_PREFIX)
