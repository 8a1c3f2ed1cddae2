"""
Ad attribution service: tracking-link clicks in, weighted conversions out.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from app.api.consent import router as consent_router
from app.api.conversions import router as conversions_router
from app.api.redirect import router as redirect_router
from app.api.scheduler import router as scheduler_router
from app.config import Settings, get_settings
from app.core import attribution, bot_detection, param_injection
from app.core.reporters import WebhookReporter, register_reporter
from app.middleware.security import SecurityHeadersMiddleware
from app.models.database import dispose_engine

import structlog

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

VERSION = "0.1.0"


def configure_extensions(settings: Settings) -> None:
    """Register the built-in extensions that configuration switches on."""
    if settings.bot_detect_ua_library:
        bot_detection.register_detector("ua_library", bot_detection.ua_library_detector, replace=True)

    unknown = param_injection.enable_known_capturers(settings.click_id_platforms)
    if unknown:
        logger.warning("click_id_platforms_unknown", platforms=unknown)

    if settings.webhook_reporter_url:
        webhook = WebhookReporter(settings.webhook_reporter_url, timeout=settings.webhook_reporter_timeout)
        register_reporter(webhook.as_reporter(), replace=True)

    if settings.attribution_model not in attribution.policies:
        logger.warning("attribution_model_unknown", model=settings.attribution_model,
                       available=attribution.policies.keys())


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_extensions(settings)
    logger.info("attribution_starting", base_url=settings.base_url, url_prefix=settings.url_prefix)
    yield
    await dispose_engine()
    logger.info("attribution_shutting_down")


app = FastAPI(
    title=get_settings().app_name,
    description="Tracking-link clicks to weighted conversions, with at-least-once delivery.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

# Security headers on every response
app.add_middleware(SecurityHeadersMiddleware, url_prefix=get_settings().url_prefix)

# --- Routes ---
app.include_router(redirect_router)
app.include_router(conversions_router)
app.include_router(consent_router)
app.include_router(scheduler_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "ad-attribution", "version": VERSION}


@app.get("/robots.txt", response_class=PlainTextResponse)
async def robots():
    return f"User-agent: *\nDisallow: /{get_settings().url_prefix}/\n"
