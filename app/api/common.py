"""Helpers shared by the routers."""

from fastapi import Request, Response

from app.core.cookies import ClientArtifact

PRIVATE_PREFIXES = (
    "10.", "172.16.", "172.17.", "172.18.", "172.19.", "172.20.", "172.21.", "172.22.",
    "172.23.", "172.24.", "172.25.", "172.26.", "172.27.", "172.28.", "172.29.", "172.30.",
    "172.31.", "192.168.", "127.", "::1",
)


def get_real_ip(request: Request) -> str:
    """Extract real client IP from x-forwarded-for or request."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # First public IP in chain is the client
        ips = [ip.strip() for ip in forwarded.split(",")]
        for ip in ips:
            if not ip.startswith(PRIVATE_PREFIXES):
                return ip
        return ips[0]
    return request.client.host if request.client else "unknown"


def apply_artifacts(response: Response, artifacts: list[ClientArtifact]) -> Response:
    for artifact in artifacts:
        response.set_cookie(
            key=artifact.name,
            value=artifact.value,
            max_age=artifact.max_age,
            path=artifact.path,
            samesite=artifact.samesite,
            secure=artifact.secure,
            httponly=artifact.httponly,
        )
    return response
