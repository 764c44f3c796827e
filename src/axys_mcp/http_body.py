"""Bounded request-body reading and replay for ASGI handlers."""

from __future__ import annotations

from dataclasses import dataclass

from starlette.requests import Request
from starlette.types import Message, Receive

DEFAULT_MAX_BODY_BYTES = 1_000_000


@dataclass(frozen=True)
class BodyTooLargeError(Exception):
    max_body_bytes: int

    def __str__(self) -> str:
        return f"Request body exceeds max_body_bytes={self.max_body_bytes}"


async def read_request_body(request: Request, *, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES) -> bytes:
    """Read an HTTP request body, refusing to buffer more than ``max_body_bytes``."""
    content_length = request.headers.get("content-length")
    if content_length is not None and content_length.isdigit() and int(content_length) > max_body_bytes:
        raise BodyTooLargeError(max_body_bytes)

    body = bytearray()
    async for chunk in request.stream():
        if len(body) + len(chunk) > max_body_bytes:
            raise BodyTooLargeError(max_body_bytes)
        body.extend(chunk)
    return bytes(body)


def replay_body(body: bytes, receive: Receive) -> Receive:
    """Return a ``receive`` callable that yields ``body`` once, then defers to ``receive``.

    Used when the body had to be inspected before handing the request to an
    ASGI app that reads it again. Later calls still observe the client
    disconnect through the original channel.
    """
    replayed = False

    async def receive_replayed() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return receive_replayed
