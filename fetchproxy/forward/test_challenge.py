import gzip

import httpx
import pytest

from fetchproxy.forward.challenge import SharedCookieJar, looks_like_challenge

CHALLENGE_PAGE = b"<html><script>document.cookie='cf=1';location.reload()</script></html>"


def _challenge_then_content(request: httpx.Request) -> httpx.Response:
    if "cf=passed" in request.headers.get("cookie", ""):
        return httpx.Response(
            200, headers={"Content-Type": "text/plain"}, content=b"real content"
        )
    return httpx.Response(
        200,
        headers={"Content-Type": "text/html; charset=utf-8", "Set-Cookie": "cf=passed; Path=/"},
        content=CHALLENGE_PAGE,
    )


class TestLooksLikeChallenge:
    def test_html_with_marker(self):
        response = httpx.Response(
            200, headers={"Content-Type": "text/html"}, content=CHALLENGE_PAGE
        )

        assert looks_like_challenge(response)

    def test_html_without_marker(self):
        response = httpx.Response(
            200, headers={"Content-Type": "text/html"}, content=b"<html>hi</html>"
        )

        assert not looks_like_challenge(response)

    def test_marker_outside_html_is_ignored(self):
        response = httpx.Response(
            200, headers={"Content-Type": "application/json"}, content=b'{"reload": 1}'
        )

        assert not looks_like_challenge(response)

    def test_custom_marker(self):
        response = httpx.Response(
            200, headers={"Content-Type": "text/html"}, content=b"checking your browser"
        )

        assert looks_like_challenge(response, marker="checking your browser")


@pytest.mark.asyncio
async def test_shared_cookie_jar_builds_cookie_header_for_url():
    jar = SharedCookieJar()
    client = httpx.AsyncClient(
        cookies=jar.cookie_jar,
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, headers={"Set-Cookie": "sid=1; Path=/"})
        ),
    )

    await client.get("http://example.test/")

    assert len(jar) == 1
    assert await jar.cookie_header_for("http://example.test/page") == "sid=1"
    assert await jar.cookie_header_for("http://other.test/") is None
    await client.aclose()


def test_challenge_is_retried_with_cookies(proxy_client, upstream):
    upstream.handler = _challenge_then_content

    response = proxy_client.get("/fetch-auth", params={"url": "http://example.test/page"})

    assert response.status_code == 200
    assert response.content == b"real content"
    assert len(upstream.requests) == 2
    assert "cookie" not in upstream.requests[0].headers
    assert upstream.requests[1].headers["cookie"] == "cf=passed"


def test_cookies_are_shared_across_requests(proxy_client, upstream):
    upstream.handler = _challenge_then_content

    proxy_client.get("/fetch-auth", params={"url": "http://example.test/page"})
    response = proxy_client.get("/fetch-auth", params={"url": "http://example.test/other"})

    assert response.content == b"real content"
    # The second call already carries the cookie and needs no retry
    assert len(upstream.requests) == 3


def test_regular_page_is_returned_from_first_attempt(proxy_client, upstream):
    body = b"<html><body>plain page</body></html>"
    upstream.handler = lambda request: httpx.Response(
        404,
        headers={"Content-Type": "text/html", "Content-Encoding": "gzip", "X-Extra": "1"},
        content=gzip.compress(body),
    )

    response = proxy_client.get("/fetch-auth", params={"url": "http://example.test/"})

    assert len(upstream.requests) == 1
    assert response.status_code == 404
    assert response.content == body
    assert "content-encoding" not in response.headers
    assert response.headers["x-extra"] == "1"


def test_fetch_auth_forwards_method_and_body(proxy_client, upstream):
    proxy_client.post(
        "/fetch-auth",
        params={"url": "http://example.test/submit"},
        content=b"a=1",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert upstream.last.method == "POST"
    assert upstream.last.content == b"a=1"
    assert upstream.last.headers["host"] == "example.test"


def test_fetch_auth_requires_url(proxy_client, upstream):
    response = proxy_client.get("/fetch-auth")

    assert response.status_code == 400
    assert upstream.requests == []


def test_fetch_auth_unreachable_upstream(proxy_client, upstream):
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    upstream.handler = refuse

    response = proxy_client.get("/fetch-auth", params={"url": "http://example.test/"})

    assert response.status_code == 502
    assert response.text == "Error fetching target"


def test_challenge_cookies_join_the_callers_cookie(proxy_client, upstream):
    upstream.handler = _challenge_then_content

    response = proxy_client.get(
        "/fetch-auth",
        params={"url": "http://example.test/page"},
        headers={"Cookie": "session=browser"},
    )

    assert response.content == b"real content"
    assert upstream.requests[0].headers["cookie"] == "session=browser"
    assert upstream.requests[1].headers["cookie"] == "session=browser; cf=passed"
