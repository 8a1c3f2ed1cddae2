"""
Conversion trigger — POST /v1/conversions

Called from the advertiser's site when a business event happens. The
visitor's own cookies carry the click token, so the request must come from
the visitor's browser (first-party fetch / form post).
"""

import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.common import apply_artifacts, get_real_ip
from app.api.scheduler import request_drain
from app.config import Settings, get_settings
from app.core.conversion import ConversionContext, ConversionEngine
from app.core.cookies import CLICKS_COOKIE, LAST_CONVERSION_COOKIE, CookieDedupStore
from app.models.database import get_db

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1", tags=["conversions"])


class ConversionPayload(BaseModel):
    page_url: str | None = None


@router.post("/conversions")
async def trigger_conversion(
    request: Request,
    payload: ConversionPayload | None = None,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    context = ConversionContext(
        timestamp=int(time.time()),
        ip=get_real_ip(request),
        user_agent=request.headers.get("user-agent"),
        origin=request.headers.get("origin"),
        page_url=(payload.page_url if payload else None) or request.headers.get("referer"),
    )
    dedup = CookieDedupStore(request.cookies.get(LAST_CONVERSION_COOKIE))

    engine = ConversionEngine(db, settings, schedule=request_drain)
    outcome = await engine.trigger(request.cookies.get(CLICKS_COOKIE), dedup, context)

    if not outcome.recorded:
        logger.info("conversion_skipped", status=outcome.status.value)

    response = JSONResponse({
        "status": outcome.status.value,
        "credits": outcome.credits,
        "jobs_enqueued": outcome.jobs_enqueued,
    })
    return apply_artifacts(response, outcome.artifacts)
