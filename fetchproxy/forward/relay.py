"""
Relay of upstream responses back to the waiting client.

The first body chunk is read before any header is sent, so a failure that
early still turns into a 502. Later failures can only abort the connection.
"""

import logging
from typing import AsyncIterator, List, Optional, Tuple

import httpx
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from fetchproxy.forward.dispatcher import ForwardRequest
from fetchproxy.utils.exception_logging import log_exception_with_details
from fetchproxy.vars import RELAY_DECODED_CONTENT

logger = logging.getLogger("uvicorn.error")

STREAM_ERRORS = (httpx.HTTPError, httpx.StreamError)

# Only meaningful for the encoded bytes the upstream sent
ENCODING_HEADERS = frozenset({b"content-encoding", b"content-length"})


def gateway_error_response(message: str) -> Response:
    return PlainTextResponse(message, status_code=502)


def relay_headers(
    headers: httpx.Headers, decoded: bool = False
) -> List[Tuple[bytes, bytes]]:
    """Copy upstream headers for the client, repeated fields included."""
    raw = [(name.lower(), value) for name, value in headers.raw]
    if decoded:
        raw = [(name, value) for name, value in raw if name not in ENCODING_HEADERS]
    return raw


async def _first_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def _stream_body(
    first: Optional[bytes],
    chunks: AsyncIterator[bytes],
    upstream: httpx.Response,
    forward: ForwardRequest,
) -> AsyncIterator[bytes]:
    try:
        if first:
            yield first
        async for chunk in chunks:
            yield chunk
    except STREAM_ERRORS as e:
        log_exception_with_details(
            logger,
            f"[Relay] Upstream stream broke after headers were sent. {forward.method} {forward.url}",
            e,
        )
        raise
    finally:
        await upstream.aclose()


async def relay_response(
    upstream: httpx.Response,
    forward: ForwardRequest,
    decoded: bool = RELAY_DECODED_CONTENT,
) -> Response:
    """Turn an open upstream response into the client response."""
    if upstream.is_stream_consumed:
        # Only the decoded body is left once httpx has read it
        return buffered_response(upstream)

    chunks = upstream.aiter_bytes() if decoded else upstream.aiter_raw()
    try:
        first = await _first_chunk(chunks)
    except STREAM_ERRORS as e:
        await upstream.aclose()
        log_exception_with_details(
            logger,
            f"[Relay] Reading the upstream body failed. {forward.method} {forward.url}",
            e,
        )
        return gateway_error_response("Error streaming target")

    response = StreamingResponse(
        _stream_body(first, chunks, upstream, forward),
        status_code=upstream.status_code,
    )
    response.raw_headers = relay_headers(upstream.headers, decoded=decoded)
    return response


def buffered_response(upstream: httpx.Response) -> Response:
    """Relay an upstream response whose decoded body was already read."""
    response = Response(content=upstream.content, status_code=upstream.status_code)
    response.raw_headers.extend(
        (name, value)
        for name, value in relay_headers(upstream.headers, decoded=True)
        if name != b"transfer-encoding"
    )
    return response
