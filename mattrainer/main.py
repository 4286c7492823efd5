import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from the project .env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env"))

from mattrainer.core.config import settings, log_config_summary
from mattrainer.core.logging import configure_logging
from mattrainer.core.middleware.request_id import RequestIdMiddleware
from mattrainer.core.validation import validate_env
from mattrainer.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from mattrainer.api import billing, webhooks, admin_billing, health
from mattrainer.features.billing.service import get_runtime

configure_logging(settings.ENV)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("mattrainer")
    validate_env()
    log_config_summary()
    if os.getenv("SKIP_ENV_VALIDATION") != "1":
        # Missing gateway credentials fail here, not on the first webhook
        get_runtime()
    logger.info("Starting MatTrainer billing service...")
    try:
        yield
    finally:
        logger.info("Stopping MatTrainer billing service...")


app = FastAPI(title="MatTrainer - Billing", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["health"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(webhooks.router, prefix="/api", tags=["webhooks"])
app.include_router(admin_billing.router, prefix="/api", tags=["admin-billing"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("mattrainer.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
