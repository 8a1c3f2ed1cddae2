"""
Click intake endpoint — /{url_prefix}/{link_hash}

Every rejection (malformed hash, unknown or inactive link, no target,
redirect loop) is the same bare 404 so the response never reveals whether
a link exists.

Redirect method:
  302 → plain Location redirect
  js  → tiny HTML page that navigates via script, so client-side consent
        tooling gets a chance to run on the way through
"""

import secrets

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.common import apply_artifacts, get_real_ip
from app.config import Settings, get_settings
from app.core.errors import NotFoundError
from app.core.ingest import ClickIngest, ClickRequest
from app.models.database import get_db

import structlog

logger = structlog.get_logger()
router = APIRouter()


@router.get("/" + get_settings().url_prefix + "/{link_hash}")
async def redirect_click(
    link_hash: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    click = ClickRequest(
        link_hash=link_hash,
        user_agent=request.headers.get("user-agent"),
        query_params=dict(request.query_params),
        cookies=dict(request.cookies),
        ip=get_real_ip(request),
    )

    try:
        outcome = await ClickIngest(db, settings).handle(click)
    except NotFoundError as e:
        logger.info("click_rejected", reason=e.reason, hash=link_hash[:12])
        raise HTTPException(status_code=404, detail="Not found")

    response = _redirect(outcome.location, settings)
    return apply_artifacts(response, outcome.artifacts)


def _redirect(location: str, settings: Settings) -> Response:
    if settings.redirect_method == "js":
        return _script_redirect(location)
    return RedirectResponse(url=location, status_code=302)


def _script_redirect(destination: str) -> HTMLResponse:
    nonce = secrets.token_urlsafe(16)

    html = f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="robots" content="noindex,nofollow">
<title>Redirecting…</title>
</head>
<body>
<noscript>
<p>Redirecting… <a href="{_html_escape(destination)}">Click here</a> if not redirected.</p>
</noscript>
<script nonce="{nonce}">
window.location.replace({_js_string(destination)});
</script>
</body>
</html>"""

    return HTMLResponse(
        content=html,
        headers={
            "Content-Security-Policy": f"default-src 'none'; script-src 'nonce-{nonce}'",
            "X-Robots-Tag": "noindex, nofollow",
        },
    )


def _js_string(s: str) -> str:
    """Safely encode a string for inline JS."""
    return (
        '"'
        + s.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("<", "\\x3c")
        .replace(">", "\\x3e")
        + '"'
    )


def _html_escape(s: str) -> str:
    """Basic HTML escaping for noscript fallback link."""
    return s.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")
