import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# .env from the working directory; tests configure the environment themselves
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from clinic_billing.api import billing, health, webhooks
from clinic_billing.core.config import settings, validate_config
from clinic_billing.core.errors import register_error_handlers
from clinic_billing.core.logging import configure_logging
from clinic_billing.core.middleware.request_id import RequestIdMiddleware
from clinic_billing.core.validation import validate_env
from clinic_billing.features.billing.service import billing_enabled, strict_ordering_enabled

configure_logging(settings.ENV, settings.LOG_LEVEL)
validate_env()
validate_config()

logger = logging.getLogger("clinic_billing")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "billing backend starting",
        extra={"status": "billing_enabled" if billing_enabled() else "billing_disabled"},
    )
    if strict_ordering_enabled():
        logger.info("strict event ordering enabled")
    yield
    logger.info("billing backend stopped")


app = FastAPI(title="Clinic Billing", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)

app.include_router(webhooks.router, prefix="/api")
app.include_router(billing.router, prefix="/api")
app.include_router(health.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("clinic_billing.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
