import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load env from backoffice/.env
backoffice_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backoffice_dir, ".env"))

# Import after dotenv is loaded
from backoffice.core.config import settings, validate_config  # noqa: E402
from backoffice.core.logging import configure_logging  # noqa: E402
from backoffice.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from backoffice.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from backoffice.core.errors import install_error_handlers  # noqa: E402
from backoffice.core.database import create_all_tables  # noqa: E402
from backoffice.api import admin, features, health, metrics, plans, subscriptions, webhooks  # noqa: E402
from backoffice.api.deps import get_services  # noqa: E402

configure_logging(settings.ENV, settings.LOG_LEVEL)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("backoffice")
    logger.info("Starting back-office billing service...")
    create_all_tables()
    get_services().catalog.seed_plans()
    try:
        yield
    finally:
        logger.info("Stopping back-office billing service...")


app = FastAPI(title="Back-office - Subscriptions & Billing", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

install_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])
app.include_router(plans.router)
app.include_router(subscriptions.router)
app.include_router(webhooks.router)
app.include_router(features.router)
app.include_router(admin.router)
