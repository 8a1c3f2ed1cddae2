from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, url_prefix: str = "ad"):
        super().__init__(app)
        self.tracking_prefix = "/" + url_prefix.strip("/") + "/"

    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)

        if "server" in response.headers:
            del response.headers["server"]

        path = request.url.path
        tracking = path.startswith(self.tracking_prefix)

        # Redirects and cookie-setting responses must never be cached
        if path.startswith("/v1/") or tracking:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
            response.headers["Pragma"] = "no-cache"
            response.headers["Expires"] = "0"

        if tracking:
            response.headers["Referrer-Policy"] = "no-referrer-when-downgrade"
            response.headers["X-Robots-Tag"] = "noindex, nofollow"
        else:
            response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        response.headers["X-Frame-Options"] = "DENY"
        # Keep a route's own CSP (the script redirect sets a nonce-based one)
        if "Content-Security-Policy" not in response.headers:
            response.headers["Content-Security-Policy"] = "frame-ancestors 'none'"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response
