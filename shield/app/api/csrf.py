"""CSRF token endpoints.

``GET /csrf/token`` issues a token; ``POST /csrf/token`` refreshes it and
invalidates the previous token when its signed cookie verifies.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from shield.app.api.deps import get_services
from shield.app.container import SecurityServices
from shield.app.middleware.security import get_client_ip, get_session_id

router = APIRouter(prefix="/csrf", tags=["csrf"])


async def _issue(request: Request, services: SecurityServices, refresh: bool) -> JSONResponse:
    settings = services.settings
    session_id = getattr(request.state, "session_id", None) or get_session_id(
        request, settings.session_cookie_names
    )
    client_ip = getattr(request.state, "client_ip", None) or get_client_ip(
        request, settings.trust_forwarded_headers
    )

    issued = await services.csrf.issue_for_client(
        session_id,
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip,
        previous_cookie=request.cookies.get(services.csrf.cookie_name) if refresh else None,
    )

    data = {"csrfToken": issued.token}
    if refresh:
        data["message"] = "CSRF token refreshed"
    response = JSONResponse({"success": True, "data": data})
    response.headers.append("set-cookie", issued.cookie)

    if issued.new_session and settings.session_cookie_names:
        response.set_cookie(
            settings.session_cookie_names[-1],
            issued.session_id,
            httponly=True,
            samesite=settings.csrf_cookie_same_site,
            secure=settings.csrf_cookie_secure,
        )
    return response


@router.get("/token")
async def get_csrf_token(
    request: Request,
    services: SecurityServices = Depends(get_services),
) -> JSONResponse:
    return await _issue(request, services, refresh=False)


@router.post("/token")
async def refresh_csrf_token(
    request: Request,
    services: SecurityServices = Depends(get_services),
) -> JSONResponse:
    return await _issue(request, services, refresh=True)
