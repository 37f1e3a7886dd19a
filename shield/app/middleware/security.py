"""Abuse-prevention middleware.

Builds a ``RequestContext`` from the incoming request, runs it through the
security orchestrator and either short-circuits with a structured denial or
forwards the request with rate limit headers attached to the response.
"""

import json
from typing import Any, Iterable, Optional
from urllib.parse import parse_qsl

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from shield.app.container import SecurityServices
from shield.app.core.config import Settings
from shield.app.core.logging import get_logger
from shield.app.services.orchestrator import RequestContext

logger = get_logger(__name__)

MAX_IDENTITY_LENGTH = 512


def get_client_ip(request: Request, trust_forwarded: bool = True) -> str:
    """Source address, honoring proxy headers when they are trusted."""
    if trust_forwarded:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()
            if client_ip:
                return client_ip
        for header in ("X-Real-IP", "CF-Connecting-IP"):
            value = request.headers.get(header)
            if value:
                return value.strip()
    return request.client.host if request.client else "unknown"


def get_session_id(request: Request, cookie_names: list[str]) -> Optional[str]:
    for name in cookie_names:
        value = request.cookies.get(name)
        if value:
            return value
    return None


def _collapse(pairs: Iterable[tuple[str, Any]]) -> dict[str, Any]:
    """Group repeated keys into lists so no value escapes inspection."""
    grouped: dict[str, list[Any]] = {}
    for key, value in pairs:
        grouped.setdefault(key, []).append(value)
    return {k: v[0] if len(v) == 1 else v for k, v in grouped.items()}


def _parse_form(raw: str) -> dict[str, Any]:
    return _collapse(parse_qsl(raw, keep_blank_values=True))


async def _parse_multipart(request: Request) -> Optional[dict[str, Any]]:
    try:
        async with request.form() as form:
            # Uploaded files are passed through; only text fields are inspected
            return _collapse((k, v) for k, v in form.multi_items() if isinstance(v, str))
    except (MultiPartException, HTTPException):
        return None


async def read_body(request: Request) -> Any:
    """Decode a body for inspection.

    JSON and form bodies are decoded into fields; any other non-empty body,
    including malformed JSON or multipart, is inspected as plain text.
    """
    raw = await request.body()
    if not raw:
        return None
    content_type = request.headers.get("content-type", "").lower()

    if "multipart/form-data" in content_type:
        fields = await _parse_multipart(request)
        if fields is not None:
            return fields

    text = raw.decode("utf-8", errors="replace")
    if "application/json" in content_type:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    if "application/x-www-form-urlencoded" in content_type:
        return _parse_form(text)
    return text


class SecurityMiddleware(BaseHTTPMiddleware):
    """Middleware enforcing the abuse-prevention pipeline on every request.

    Services are looked up on ``app.state.services`` at dispatch time so the
    middleware can be installed before the composition root runs.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        services: SecurityServices = request.app.state.services
        settings: Settings = services.settings

        path = request.url.path
        if any(path == p or path.startswith(p.rstrip("/") + "/") for p in settings.exempt_path_prefixes):
            return await call_next(request)

        identity = request.headers.get(settings.identity_header)
        if identity and len(identity) > MAX_IDENTITY_LENGTH:
            identity = None

        ctx = RequestContext(
            ip_address=get_client_ip(request, settings.trust_forwarded_headers),
            method=request.method,
            path=path,
            headers=dict(request.headers),
            body=await read_body(request),
            query=_collapse(request.query_params.multi_items()) or None,
            identity=identity or None,
            session_id=get_session_id(request, settings.session_cookie_names),
            user_agent=request.headers.get("user-agent"),
        )

        decision = await services.orchestrator.evaluate(ctx)
        if not decision.allowed:
            return JSONResponse(
                status_code=decision.status_code,
                content=decision.to_response(),
                headers=decision.headers(),
            )

        # Handlers read sanitized payloads from here instead of the raw body
        request.state.security = decision
        request.state.client_ip = ctx.ip_address
        request.state.session_id = ctx.session_id

        response = await call_next(request)
        for name, value in decision.headers().items():
            response.headers[name] = value
        return response
