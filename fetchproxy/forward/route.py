"""
Forwarding routes.

Usage:
    /fetch?url=<target>&cookie=<uri-encoded>&headers=<json>&referer=<url>

Any method is accepted. Large request and response bodies are streamed.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from opentelemetry import trace
from starlette.requests import ClientDisconnect

from fetchproxy.auth import require_api_key
from fetchproxy.forward.body import AcquiredBody, acquire_body
from fetchproxy.forward.challenge import ChallengeFetcher
from fetchproxy.forward.dispatcher import ForwardRequest, UpstreamDispatcher
from fetchproxy.forward.errors import (
    InboundReadError,
    MissingTargetError,
    UpstreamUnreachableError,
)
from fetchproxy.forward.headers import HeaderOverrides, build_forward_headers
from fetchproxy.forward.relay import buffered_response, relay_response
from fetchproxy.utils.exception_logging import log_exception_with_details
from fetchproxy.utils.traced_requests import traced_request

router = APIRouter(dependencies=[Depends(require_api_key)])
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def get_dispatcher(request: Request) -> UpstreamDispatcher:
    return request.app.state.dispatcher


def get_challenge_fetcher(request: Request) -> ChallengeFetcher:
    return request.app.state.challenge_fetcher


def _target_url(request: Request) -> str:
    target_url = request.query_params.get("url")
    if not target_url:
        raise MissingTargetError()
    return target_url


def _start_message(prefix: str, method: str, target_url: str, headers) -> str:
    cookie = headers.get("cookie")
    if cookie:
        return f"{prefix} {method} -> {target_url} with cookie {cookie}"
    return f"{prefix} {method} -> {target_url}"


async def forward_request(request: Request, dispatcher: UpstreamDispatcher) -> Response:
    target_url = _target_url(request)
    overrides = HeaderOverrides.from_query(request.query_params)
    headers = build_forward_headers(request.headers, overrides)

    with traced_request(
        tracer,
        operation="proxy_fetch",
        target_url=target_url,
        method=request.method,
        start_message=_start_message("[Fetch]", request.method, target_url, headers),
        secret=headers.get("cookie"),
        extra_attrs={"proxy.route": request.url.path},
    ) as span:
        try:
            body = await acquire_body(request.method, request.headers, request.stream())
            if body.state is not None:
                span.set_attribute("proxy.body_state", body.state.value)
            forward = ForwardRequest(
                url=target_url, method=request.method, headers=headers, body=body
            )
            upstream = await dispatcher.send(forward)
        except InboundReadError as e:
            logger.warning(f"[Fetch] {request.method} {target_url}: {e}")
            span.set_attribute("proxy.error", "inbound_read")
            raise
        except UpstreamUnreachableError as e:
            log_exception_with_details(logger, "[Fetch]", e)
            span.set_attribute("proxy.error", "upstream_unreachable")
            raise

        span.set_attribute("proxy.status_code", upstream.status_code)
        logger.debug(
            f"[Fetch] {request.method} {target_url} answered {upstream.status_code}"
        )
        return await relay_response(upstream, forward)


@router.api_route("/fetch", methods=PROXY_METHODS)
async def fetch(request: Request, dispatcher: UpstreamDispatcher = Depends(get_dispatcher)):
    """Universal streaming proxy endpoint."""
    return await forward_request(request, dispatcher)


@router.api_route("/video", methods=PROXY_METHODS)
async def video(request: Request, dispatcher: UpstreamDispatcher = Depends(get_dispatcher)):
    """Old alias of /fetch, kept for existing clients."""
    return await forward_request(request, dispatcher)


@router.api_route("/fetch-auth", methods=PROXY_METHODS)
async def fetch_auth(
    request: Request, fetcher: ChallengeFetcher = Depends(get_challenge_fetcher)
):
    """Fetch that retries once with shared cookies when it hits a reload challenge."""
    target_url = _target_url(request)
    headers = build_forward_headers(request.headers)

    with traced_request(
        tracer,
        operation="proxy_fetch_auth",
        target_url=target_url,
        method=request.method,
        start_message=_start_message("[Fetch-Auth]", request.method, target_url, headers),
        secret=headers.get("cookie"),
        extra_attrs={"proxy.route": request.url.path},
    ) as span:
        try:
            raw_body = await request.body()
        except ClientDisconnect as e:
            span.set_attribute("proxy.error", "inbound_read")
            raise InboundReadError("Client disconnected while sending the body", e) from e

        forward = ForwardRequest(
            url=target_url,
            method=request.method,
            headers=headers,
            body=AcquiredBody(content=raw_body) if raw_body else AcquiredBody(),
        )

        try:
            first = await fetcher.first_attempt(forward)
            if not fetcher.is_challenge(first):
                span.set_attribute("proxy.status_code", first.status_code)
                return buffered_response(first)
            span.set_attribute("proxy.challenge", True)
            upstream = await fetcher.retry(forward)
        except UpstreamUnreachableError as e:
            log_exception_with_details(logger, "[Fetch-Auth]", e)
            span.set_attribute("proxy.error", "upstream_unreachable")
            raise

        span.set_attribute("proxy.status_code", upstream.status_code)
        return await relay_response(upstream, forward)
