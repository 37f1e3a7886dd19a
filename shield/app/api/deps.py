"""Shared FastAPI dependencies."""

import hmac

from fastapi import HTTPException, Request

from shield.app.container import SecurityServices


def get_services(request: Request) -> SecurityServices:
    return request.app.state.services


def get_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth[7:].strip()


def require_admin(request: Request) -> str:
    """Validate the admin bearer token.

    Raises:
        HTTPException: 401 if the token is missing, wrong, or no admin token
            is configured
    """
    expected = get_services(request).settings.admin_token.strip()
    token = get_bearer_token(request) or ""

    # Always compare so timing does not reveal whether a token was sent
    valid = hmac.compare_digest(token.encode(), expected.encode())
    if not expected or not valid:
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")
    return "admin"
