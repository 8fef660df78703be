from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from companyos.api.errors import data_access_exception_handler
from companyos.api.routes import router as api_router
from companyos.core.config import get_settings
from companyos.logging import configure_logging
from companyos.middleware.correlation_id import CorrelationIdMiddleware
from companyos.middleware.request_logging import RequestLoggingMiddleware
from companyos.otel import get_fastapi_server_request_hook, setup_otel
from companyos.platform.security.errors import DataAccessError


configure_logging()
logger = logging.getLogger("companyos.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("system.started", extra={"status": settings.app_env})
    yield
    logger.info("system.stopped", extra={"status": settings.app_env})


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(DataAccessError, data_access_exception_handler)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("companyos-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
