import logging
from dataclasses import dataclass, field
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import List, Optional

import httpx

from fetchproxy.forward.body import AcquiredBody
from fetchproxy.forward.errors import (
    InboundReadError,
    MissingTargetError,
    UpstreamUnreachableError,
)
from fetchproxy.forward.headers import merge_cookie_headers
from fetchproxy.utils.exception_logging import find_exception_in_exception_groups
from fetchproxy.vars import FORWARD_TIMEOUT, MAX_REDIRECTS

logger = logging.getLogger("uvicorn.error")


@dataclass
class ForwardRequest:
    url: str
    method: str
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: AcquiredBody = field(default_factory=AcquiredBody)
    follow_redirects: bool = True

    def __post_init__(self):
        if not self.url:
            raise MissingTargetError()


def _discarding_cookie_jar() -> CookieJar:
    # Cookies belong to the caller of each request, never to the shared client
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


def build_upstream_client(
    cookie_jar: Optional[CookieJar] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create the HTTP client used for upstream calls.

    Redirects are followed up to MAX_REDIRECTS. Without a cookie jar, cookies
    set by upstreams are dropped instead of leaking into later requests.
    """
    return httpx.AsyncClient(
        follow_redirects=True,
        max_redirects=MAX_REDIRECTS,
        timeout=httpx.Timeout(FORWARD_TIMEOUT),
        cookies=cookie_jar if cookie_jar is not None else _discarding_cookie_jar(),
        transport=transport,
    )


class UpstreamDispatcher:
    """Send forwarded requests upstream and hand back the still-open response."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    def build_request(self, forward: ForwardRequest) -> httpx.Request:
        headers = forward.body.adjust_headers(forward.headers.copy())
        return self.client.build_request(
            forward.method,
            forward.url,
            headers=headers,
            **forward.body.request_kwargs(),
        )

    async def _send_following_redirects(
        self, request: httpx.Request, forward: ForwardRequest, stream: bool
    ) -> httpx.Response:
        """
        Follow redirects hop by hop.

        httpx strips the Cookie header from every redirect; the forwarded
        cookie is put back for hops that stay on the same host.
        """
        cookie = forward.headers.get("cookie")
        history: List[httpx.Response] = []
        response = await self.client.send(request, stream=stream, follow_redirects=False)

        while forward.follow_redirects and response.next_request is not None:
            if len(history) >= self.client.max_redirects:
                await response.aclose()
                raise httpx.TooManyRedirects(
                    "Exceeded maximum allowed redirects.", request=response.request
                )
            next_request = response.next_request
            if cookie and next_request.url.host == response.request.url.host:
                next_request.headers["cookie"] = merge_cookie_headers(
                    cookie, next_request.headers.get("cookie")
                )
            await response.aclose()
            history.append(response)
            response = await self.client.send(
                next_request, stream=stream, follow_redirects=False
            )

        response.history = history
        return response

    async def send(self, forward: ForwardRequest, stream: bool = True) -> httpx.Response:
        """
        Issue the request. Every upstream status is returned as a response.

        Raises UpstreamUnreachableError when no response could be obtained and
        InboundReadError when the client body failed while being sent.
        """
        try:
            request = self.build_request(forward)
            response = await self._send_following_redirects(request, forward, stream)
        except InboundReadError:
            raise
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as e:
            read_error = find_exception_in_exception_groups(e, InboundReadError)
            if read_error is not None:
                raise read_error from e
            raise UpstreamUnreachableError(forward.url, forward.method, e) from e

        if response.history:
            logger.debug(
                f"[Dispatch] {forward.method} {forward.url} followed {len(response.history)} redirect(s) to {response.url}"
            )
        return response
