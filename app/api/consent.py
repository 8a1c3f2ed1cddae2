"""
Deferred-consent pickup — POST /v1/set-cookie

When a click happened while consent was undetermined, only a short-lived
transport artifact (_aah_pending cookie or #_aah fragment) was handed out.
Once the visitor consents, client-side script posts the pending hashes here
and they are merged into the durable click token. Requests are limited per
client IP.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.common import apply_artifacts, get_real_ip
from app.config import Settings, get_settings
from app.core.ingest import ClickIngest
from app.middleware.rate_limit import rate_limit_ip
from app.models.database import get_db

router = APIRouter(prefix="/v1", tags=["consent"])


class PickupPayload(BaseModel):
    hashes: list[str] = Field(default_factory=list, max_length=50)


@router.post("/set-cookie")
async def pick_up_pending(
    payload: PickupPayload,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    rate_limit_ip(request, "pickup", settings.pickup_rate_limit_per_minute)

    context = {
        "user_agent": request.headers.get("user-agent"),
        "cookies": dict(request.cookies),
        "ip": get_real_ip(request),
    }
    outcome = await ClickIngest(db, settings).pick_up(payload.hashes, dict(request.cookies), context)
    if outcome.refused:
        # Still clears the pending transport cookie
        response = JSONResponse({"detail": "Consent denied"}, status_code=403)
    else:
        response = JSONResponse({"status": "ok", "merged": outcome.merged})
    return apply_artifacts(response, outcome.artifacts)
