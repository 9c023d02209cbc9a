"""
Fetch variant that survives simple cookie challenges.

Some upstreams answer a first visit with an HTML page that sets a cookie and
reloads itself. The fetcher keeps one cookie jar for the whole process, so the
retry carries whatever the challenge set. Requests through this path are not
isolated from each other; sharing the jar is what makes the retry work.
"""

import asyncio
import dataclasses
import logging
from http.cookiejar import CookieJar
from typing import Optional

import httpx

from fetchproxy.forward.dispatcher import ForwardRequest, UpstreamDispatcher
from fetchproxy.forward.headers import merge_cookie_headers
from fetchproxy.vars import CHALLENGE_MARKER

logger = logging.getLogger("uvicorn.error")


class SharedCookieJar:
    """
    Process-wide cookie store for the challenge fetcher.

    The HTTP client reads and writes the underlying ``CookieJar`` on every
    request and redirect hop; each of those operations holds the jar's own
    lock. Reads that span several jar operations go through ``self.lock``.
    """

    def __init__(self):
        self.cookie_jar = CookieJar()
        self.lock = asyncio.Lock()

    async def cookie_header_for(self, url: str) -> Optional[str]:
        """The Cookie header value the jar holds for ``url``, if any."""
        request = httpx.Request("GET", url)
        async with self.lock:
            httpx.Cookies(self.cookie_jar).set_cookie_header(request)
        return request.headers.get("cookie")

    def __len__(self) -> int:
        return len(self.cookie_jar)


def looks_like_challenge(response: httpx.Response, marker: str = CHALLENGE_MARKER) -> bool:
    """An HTML page mentioning the marker is treated as a reload challenge."""
    content_type = response.headers.get("content-type", "")
    if "text/html" not in content_type:
        return False
    return marker.encode("utf-8") in response.content


class ChallengeFetcher:
    def __init__(
        self,
        dispatcher: UpstreamDispatcher,
        jar: SharedCookieJar,
        marker: str = CHALLENGE_MARKER,
    ):
        self.dispatcher = dispatcher
        self.jar = jar
        self.marker = marker

    async def _with_jar_cookies(self, forward: ForwardRequest) -> ForwardRequest:
        # The client only adds jar cookies when no Cookie header is present
        caller_cookie = forward.headers.get("cookie")
        if not caller_cookie:
            return forward
        try:
            jar_cookie = await self.jar.cookie_header_for(forward.url)
        except httpx.InvalidURL:
            # The dispatcher reports the bad target
            return forward
        merged = merge_cookie_headers(caller_cookie, jar_cookie)
        headers = forward.headers.copy()
        headers["cookie"] = merged
        return dataclasses.replace(forward, headers=headers)

    async def first_attempt(self, forward: ForwardRequest) -> httpx.Response:
        """Fetch the target with its body fully read and decoded."""
        return await self.dispatcher.send(
            await self._with_jar_cookies(forward), stream=False
        )

    def is_challenge(self, response: httpx.Response) -> bool:
        return looks_like_challenge(response, self.marker)

    async def retry(self, forward: ForwardRequest) -> httpx.Response:
        logger.info(
            f"[Fetch-Auth] Got reload challenge from {forward.url}, retrying with {len(self.jar)} cookie(s)"
        )
        return await self.dispatcher.send(
            await self._with_jar_cookies(forward), stream=True
        )
