"""
Adaptive acquisition of inbound request bodies.

Small JSON and form bodies are buffered so JSON can be re-encoded before it is
forwarded. Once a body grows past ``MAX_BUFFER_FOR_PARSING`` buffering is
abandoned: what was collected so far is emitted first and the rest of the
inbound stream is piped straight through. Every other body is never buffered.
"""

import json
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Deque, Mapping, Optional

import httpx
from starlette.requests import ClientDisconnect

from fetchproxy.forward.errors import InboundReadError
from fetchproxy.vars import MAX_BUFFER_FOR_PARSING

logger = logging.getLogger("uvicorn.error")

BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
JSON_CONTENT_TYPE = "application/json"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
BUFFERABLE_CONTENT_TYPES = frozenset({JSON_CONTENT_TYPE, FORM_CONTENT_TYPE})

_READ_ERRORS = (ClientDisconnect, OSError)


class BodyState(str, Enum):
    COLLECTING = "collecting"
    STREAMING = "streaming"
    COMPLETE = "complete"


@dataclass
class AcquiredBody:
    """
    The outbound representation of an inbound body.

    At most one of ``content``, ``stream`` or a JSON value (``is_json``) is set.
    ``state`` is None when the body bypassed buffering entirely.
    """

    state: Optional[BodyState] = None
    content: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None
    json_value: Any = None
    is_json: bool = False

    def request_kwargs(self) -> dict:
        if self.is_json:
            return {"json": self.json_value}
        if self.content is not None:
            return {"content": self.content}
        if self.stream is not None:
            return {"content": self.stream}
        return {}

    def adjust_headers(self, headers: httpx.Headers) -> httpx.Headers:
        # The outbound body is framed by the client, never by the inbound request
        if "transfer-encoding" in headers:
            del headers["transfer-encoding"]
        # A re-encoded JSON body has a new length
        if self.is_json and "content-length" in headers:
            del headers["content-length"]
        return headers


def media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def should_buffer(method: str, content_type: Optional[str]) -> bool:
    return (
        method.upper() in BODY_METHODS
        and media_type(content_type) in BUFFERABLE_CONTENT_TYPES
    )


def declares_body(headers: Mapping[str, str]) -> bool:
    if headers.get("transfer-encoding"):
        return True
    try:
        return int(headers.get("content-length") or "0") > 0
    except ValueError:
        return False


def _reject_constant(name: str):
    raise ValueError(f"{name} is not valid JSON")


async def _read_chunk(iterator: AsyncIterator[bytes]) -> Optional[bytes]:
    """Return the next chunk, or None once the inbound body is exhausted."""
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None
    except _READ_ERRORS as e:
        raise InboundReadError(f"Reading the request body failed: {e}", e) from e


async def guard_stream(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Pass chunks through, reporting read failures as InboundReadError."""
    iterator = chunks.__aiter__()
    while True:
        chunk = await _read_chunk(iterator)
        if chunk is None:
            return
        if chunk:
            yield chunk


class BodyAcquisition:
    """
    Buffer-or-stream state machine for one inbound request body.

    COLLECTING moves to STREAMING when the running total exceeds the ceiling
    and to COMPLETE at end of input. STREAMING is final: the body is never
    parsed after the switch.
    """

    def __init__(self, content_type: str, ceiling: int = MAX_BUFFER_FOR_PARSING):
        self.content_type = media_type(content_type)
        self.ceiling = ceiling
        self.state = BodyState.COLLECTING
        self.size = 0
        self._chunks: Deque[bytes] = deque()

    async def acquire(self, chunks: AsyncIterator[bytes]) -> AcquiredBody:
        if self.state is not BodyState.COLLECTING:
            raise RuntimeError(f"Body acquisition already {self.state.value}")

        iterator = chunks.__aiter__()
        while True:
            chunk = await _read_chunk(iterator)
            if chunk is None:
                return self._complete()
            if not chunk:
                continue
            self.size += len(chunk)
            self._chunks.append(chunk)
            if self.size > self.ceiling:
                return self._switch_to_streaming(iterator)

    def _switch_to_streaming(self, iterator: AsyncIterator[bytes]) -> AcquiredBody:
        self.state = BodyState.STREAMING
        logger.info(
            f"[Body] Body exceeded {self.ceiling} bytes after {self.size} bytes, streaming the rest"
        )
        return AcquiredBody(state=self.state, stream=self._drain(iterator))

    async def _drain(self, iterator: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        while self._chunks:
            yield self._chunks.popleft()
        while True:
            chunk = await _read_chunk(iterator)
            if chunk is None:
                return
            if chunk:
                self.size += len(chunk)
                yield chunk

    def _complete(self) -> AcquiredBody:
        self.state = BodyState.COMPLETE
        collected = b"".join(self._chunks)
        self._chunks.clear()

        if self.content_type == JSON_CONTENT_TYPE:
            try:
                value = json.loads(
                    collected.decode("utf-8"), parse_constant=_reject_constant
                )
            except ValueError:
                # UnicodeDecodeError is a ValueError too
                logger.debug("[Body] JSON body did not parse, forwarding raw bytes")
                return AcquiredBody(state=self.state, content=collected)
            return AcquiredBody(state=self.state, json_value=value, is_json=True)

        return AcquiredBody(state=self.state, content=collected)


async def acquire_body(
    method: str, headers: Mapping[str, str], chunks: AsyncIterator[bytes]
) -> AcquiredBody:
    """Choose and run the body strategy for one inbound request."""
    content_type = headers.get("content-type", "")
    if should_buffer(method, content_type):
        return await BodyAcquisition(content_type).acquire(chunks)
    if not declares_body(headers):
        return AcquiredBody()
    return AcquiredBody(stream=guard_stream(chunks))
