import pytest
from starlette.requests import Request
from starlette.types import Message

from axys_mcp.http_body import BodyTooLargeError, read_request_body, replay_body


def make_request(chunks: list[bytes], headers: list[tuple[bytes, bytes]] | None = None) -> Request:
    messages: list[Message] = [
        {"type": "http.request", "body": chunk, "more_body": index < len(chunks) - 1}
        for index, chunk in enumerate(chunks)
    ]

    async def receive() -> Message:
        if messages:
            return messages.pop(0)
        return {"type": "http.disconnect"}

    return Request({"type": "http", "method": "POST", "headers": headers or []}, receive)


@pytest.mark.anyio
async def test_reads_chunked_body():
    request = make_request([b'{"jsonrpc":', b' "2.0"}'])
    assert await read_request_body(request, max_body_bytes=64) == b'{"jsonrpc": "2.0"}'


@pytest.mark.anyio
async def test_rejects_declared_content_length():
    request = make_request([b"x"], headers=[(b"content-length", b"1000")])
    with pytest.raises(BodyTooLargeError) as exc_info:
        await read_request_body(request, max_body_bytes=10)
    assert str(exc_info.value) == "Request body exceeds max_body_bytes=10"


@pytest.mark.anyio
async def test_rejects_streamed_body_over_limit():
    request = make_request([b"12345", b"67890", b"!"])
    with pytest.raises(BodyTooLargeError):
        await read_request_body(request, max_body_bytes=10)


@pytest.mark.anyio
async def test_replay_body_then_defers_to_receive():
    async def receive() -> Message:
        return {"type": "http.disconnect"}

    replayed = replay_body(b"payload", receive)

    assert await replayed() == {"type": "http.request", "body": b"payload", "more_body": False}
    assert await replayed() == {"type": "http.disconnect"}
