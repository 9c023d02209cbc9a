import httpx
from starlette.datastructures import Headers

from fetchproxy.forward.headers import (
    HeaderOverrides,
    build_forward_headers,
    decode_cookie,
    merge_cookie_headers,
    parse_custom_headers,
)


class TestDecodeCookie:
    def test_decodes_encoded_cookie(self):
        assert decode_cookie("session%3Dabc%3B%20theme%3Ddark") == "session=abc; theme=dark"

    def test_plain_cookie_is_kept(self):
        assert decode_cookie("session=abc") == "session=abc"

    def test_decoded_text_without_cookie_shape_is_not_used(self):
        assert decode_cookie("hello%20world") == "hello%20world"

    def test_malformed_escape_returns_original(self):
        assert decode_cookie("a%3Db%E0%A4%A") == "a%3Db%E0%A4%A"
        assert decode_cookie("a=b%zz") == "a=b%zz"

    def test_invalid_utf8_returns_original(self):
        assert decode_cookie("a%3D%FF") == "a%3D%FF"

    def test_empty_values(self):
        assert decode_cookie("") == ""
        assert decode_cookie(None) is None


class TestParseCustomHeaders:
    def test_json_object(self):
        assert parse_custom_headers('{"X-Token": "t", "X-Num": 5, "X-Flag": true}') == {
            "X-Token": "t",
            "X-Num": "5",
            "X-Flag": "true",
        }

    def test_integral_numbers_lose_the_fraction(self):
        assert parse_custom_headers('{"X-Whole": 1.0, "X-Part": 1.5}') == {
            "X-Whole": "1",
            "X-Part": "1.5",
        }

    def test_null_values_are_skipped(self):
        assert parse_custom_headers('{"X-Gone": null, "X-Kept": "1"}') == {"X-Kept": "1"}

    def test_invalid_json_is_ignored(self):
        assert parse_custom_headers("{not json") is None

    def test_non_object_is_ignored(self):
        assert parse_custom_headers('["a", "b"]') is None
        assert parse_custom_headers('"text"') is None

    def test_missing(self):
        assert parse_custom_headers(None) is None
        assert parse_custom_headers("") is None


class TestHeaderOverridesFromQuery:
    def test_reads_all_parameters(self):
        overrides = HeaderOverrides.from_query(
            {
                "cookie": "a%3D1",
                "referer": "https://ref.test/",
                "headers": '{"X-A": "b"}',
            }
        )

        assert overrides == HeaderOverrides(
            cookie="a=1", referer="https://ref.test/", custom={"X-A": "b"}
        )

    def test_empty_query(self):
        assert HeaderOverrides.from_query({}) == HeaderOverrides()


class TestBuildForwardHeaders:
    def test_host_is_removed(self):
        headers = build_forward_headers({"host": "proxy.local", "accept": "*/*"})

        assert "host" not in headers
        assert headers["accept"] == "*/*"

    def test_range_is_kept(self):
        headers = build_forward_headers({"Host": "proxy.local", "Range": "bytes=0-99"})

        assert headers["range"] == "bytes=0-99"

    def test_inbound_headers_are_not_modified(self):
        inbound = {"host": "proxy.local", "referer": "https://old.test/"}

        build_forward_headers(inbound, HeaderOverrides(referer="https://new.test/"))

        assert inbound == {"host": "proxy.local", "referer": "https://old.test/"}

    def test_precedence_inbound_referer_cookie_custom(self):
        inbound = {
            "host": "proxy.local",
            "referer": "https://inbound.test/",
            "cookie": "inbound=1",
            "x-trace": "inbound",
        }
        overrides = HeaderOverrides(
            cookie="query=1",
            referer="https://query.test/",
            custom={"Cookie": "custom=1", "X-Trace": "custom"},
        )

        headers = build_forward_headers(inbound, overrides)

        assert headers["referer"] == "https://query.test/"
        assert headers["cookie"] == "custom=1"
        assert headers["x-trace"] == "custom"
        assert headers.get_list("cookie") == ["custom=1"]

    def test_custom_host_is_ignored(self):
        headers = build_forward_headers(
            {"host": "proxy.local"}, HeaderOverrides(custom={"Host": "evil.test"})
        )

        assert "host" not in headers

    def test_repeated_inbound_headers_survive(self):
        inbound = Headers(
            raw=[
                (b"host", b"proxy.local"),
                (b"x-multi", b"one"),
                (b"x-multi", b"two"),
            ]
        )

        headers = build_forward_headers(inbound)

        assert isinstance(headers, httpx.Headers)
        assert headers.get_list("x-multi") == ["one", "two"]
        assert "host" not in headers


class TestMergeCookieHeaders:
    def test_extra_pairs_are_appended(self):
        assert merge_cookie_headers("session=browser", "cf=passed") == "session=browser; cf=passed"

    def test_primary_wins_on_same_name(self):
        assert merge_cookie_headers("a=1; b=2", "b=3; c=4") == "a=1; b=2; c=4"

    def test_missing_sides(self):
        assert merge_cookie_headers(None, "cf=1") == "cf=1"
        assert merge_cookie_headers("a=1", None) == "a=1"
        assert merge_cookie_headers(None, None) is None

    def test_nothing_new(self):
        assert merge_cookie_headers("a=1;", "a=2") == "a=1;"
