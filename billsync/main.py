import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

# Load env from the project .env before settings are read
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(project_dir, ".env"))

from billsync.core.config import settings, validate_config
from billsync.core.logging import configure_logging
from billsync.core.middleware.request_id import RequestIdMiddleware
from billsync.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from billsync.api import admin_billing, health

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("billsync")
    logger.info("Starting billsync service...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("billsync").info("Stopping billsync service...")


app = FastAPI(title="billsync - Billing reconciliation", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.root_router, tags=["health"])
app.include_router(admin_billing.router, tags=["admin-billing"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("billsync.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
