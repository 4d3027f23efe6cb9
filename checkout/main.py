"""FastAPI application for the Stripe checkout service.

Run with ``uvicorn checkout.main:create_app --factory``.
"""

from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from checkout.config import Settings
from checkout.database import Base, create_db_engine, create_session_factory
from checkout.errors import CheckoutError
from checkout.intents import IntentStore, IntentTracker
from checkout.logging_config import configure_logging
from checkout.processor import StripeProcessorClient
from checkout.routes import router
from checkout.webhooks import build_dispatcher


logger = structlog.get_logger(__name__)


async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("request_crashed", path=request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = {str(part) for error in exc.errors() for part in error.get("loc", ())}
    message = "Invalid amount" if "amount" in fields else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    engine = create_db_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    store = IntentStore(create_session_factory(engine))

    app = FastAPI(
        title="Stripe Payment Gateway API",
        description="API for integrating Stripe payments",
        version="1.0.0",
    )

    app.state.settings = settings
    processor = StripeProcessorClient(settings.stripe_secret_key, settings.stripe_timeout_seconds)
    app.state.tracker = IntentTracker(settings, processor, store)
    app.state.dispatcher = build_dispatcher(store, settings.seen_events_capacity)

    # Permissive by default; scope CORS_ORIGINS for production
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)

    @app.get("/health")
    def health_check():
        return {
            "status": "healthy",
            "service": settings.service_name,
            "environment": settings.environment,
        }

    logger.info("checkout_service_configured", environment=settings.environment)
    return app
