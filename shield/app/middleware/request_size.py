"""Request body size limit middleware.

Caps incoming bodies before the security pipeline reads them, so the
injection stage never has to scan an unbounded payload. Enforced for both
Content-Length and chunked transfer encoding.
"""

import json

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from shield.app.core.logging import get_logger
from shield.app.exceptions import PayloadTooLargeError

logger = get_logger(__name__)


class SizeLimitedStream:
    """Wraps an ASGI ``receive`` and counts body bytes as they arrive.

    Counting while reading catches chunked bodies that carry no
    Content-Length header.
    """

    def __init__(self, receive: Receive, max_size: int):
        self._receive = receive
        self._max_size = max_size
        self._bytes_read = 0

    async def receive(self) -> Message:
        message = await self._receive()
        if message["type"] == "http.request":
            self._bytes_read += len(message.get("body", b""))
            if self._bytes_read > self._max_size:
                raise PayloadTooLargeError(self._max_size)
        return message


class RequestSizeLimitMiddleware:
    """ASGI middleware rejecting oversized bodies with HTTP 413.

    Raw ASGI rather than ``BaseHTTPMiddleware`` so ``receive`` is wrapped
    before any Starlette ``Request`` reads from it.

    Usage:
        app.add_middleware(RequestSizeLimitMiddleware, max_body_size=1024 * 1024)
    """

    def __init__(self, app: ASGIApp, max_body_size: int = 1024 * 1024):
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        content_length = None
        for name, value in scope.get("headers", []):
            if name.lower() == b"content-length":
                content_length = value.decode()
                break

        if content_length:
            try:
                if int(content_length) > self.max_body_size:
                    await self._reject(send, PayloadTooLargeError(self.max_body_size))
                    return
            except ValueError:
                # Fall through to counting while streaming
                pass

        limited = SizeLimitedStream(receive, self.max_body_size)
        try:
            await self.app(scope, limited.receive, send)
        except PayloadTooLargeError as exc:
            await self._reject(send, exc)

    async def _reject(self, send: Send, exc: PayloadTooLargeError) -> None:
        logger.warning(exc.message, extra={"status_code": exc.status_code, "error_code": exc.error_code})
        body = json.dumps(exc.to_response()).encode()
        await send(
            {
                "type": "http.response.start",
                "status": exc.status_code,
                "headers": [
                    [b"content-type", b"application/json"],
                    [b"content-length", str(len(body)).encode()],
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})
