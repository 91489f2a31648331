import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from showroom.api.routes import router as api_router
from showroom.core.config import get_settings
from showroom.logging import configure_logging
from showroom.middleware.correlation_id import CorrelationIdMiddleware
from showroom.middleware.request_logging import RequestLoggingMiddleware
from showroom.otel import setup_otel


configure_logging()
logger = logging.getLogger("showroom.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("system.started")
    yield


app = FastAPI(title="Showroom API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app)
