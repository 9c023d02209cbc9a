"""
Outbound header reconciliation for forwarded requests.

Precedence, lowest to highest: inbound headers, referer override, cookie
override, custom headers. The inbound ``host`` header never reaches the
upstream.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import unquote

import httpx

logger = logging.getLogger("uvicorn.error")

_MALFORMED_ESCAPE = re.compile(r"%(?![0-9a-fA-F]{2})")


@dataclass(frozen=True)
class HeaderOverrides:
    """Header values supplied through the query string of the inbound request."""

    cookie: Optional[str] = None
    referer: Optional[str] = None
    custom: Optional[Dict[str, str]] = None

    @classmethod
    def from_query(cls, query: Mapping[str, str]) -> "HeaderOverrides":
        raw_cookie = query.get("cookie")
        return cls(
            cookie=decode_cookie(raw_cookie) if raw_cookie else None,
            referer=query.get("referer") or None,
            custom=parse_custom_headers(query.get("headers")),
        )


def decode_cookie(cookie: Optional[str]) -> Optional[str]:
    """
    Percent-decode a cookie string passed through the query string.

    The decoded form is only used when it still looks like a cookie
    (contains ``=`` or ``;``). Anything else, including input with broken
    escapes, is returned as given.
    """
    if not cookie:
        return cookie
    if _MALFORMED_ESCAPE.search(cookie):
        return cookie
    try:
        decoded = unquote(cookie, errors="strict")
    except UnicodeDecodeError:
        return cookie
    if "=" in decoded or ";" in decoded:
        return decoded
    return cookie


def _header_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    # JSON has a single number type; 1.0 and 1 are the same value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def parse_custom_headers(raw: Optional[str]) -> Optional[Dict[str, str]]:
    """Parse the JSON object given in the ``headers`` query parameter."""
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("[Headers] Ignoring custom headers that are not valid JSON")
        return None
    if not isinstance(parsed, dict):
        logger.warning("[Headers] Ignoring custom headers that are not a JSON object")
        return None
    return {
        str(name): _header_value(value)
        for name, value in parsed.items()
        if value is not None
    }


def build_forward_headers(
    inbound: Mapping[str, str],
    overrides: Optional[HeaderOverrides] = None,
) -> httpx.Headers:
    """Produce the outbound header set from the inbound headers and overrides."""
    if isinstance(inbound, httpx.Headers):
        headers = inbound.copy()
    elif hasattr(inbound, "raw"):
        # Starlette headers keep repeated fields in .raw
        headers = httpx.Headers(list(inbound.raw))
    else:
        headers = httpx.Headers(dict(inbound))

    # Range stays so the upstream can serve partial content for seeking
    range_header = headers.get("range")

    if "host" in headers:
        del headers["host"]
    if range_header:
        headers["range"] = range_header

    if overrides is None:
        return headers

    if overrides.referer:
        headers["referer"] = overrides.referer
    if overrides.cookie:
        headers["cookie"] = overrides.cookie
    if overrides.custom:
        for name, value in overrides.custom.items():
            if name.lower() == "host":
                logger.warning("[Headers] Ignoring custom host header")
                continue
            headers[name] = value

    return headers


def _cookie_names(cookie: str) -> List[str]:
    return [
        pair.split("=", 1)[0].strip()
        for pair in cookie.split(";")
        if pair.strip()
    ]


def merge_cookie_headers(primary: Optional[str], extra: Optional[str]) -> Optional[str]:
    """
    Append the pairs of ``extra`` to ``primary``.

    Pairs whose name already appears in ``primary`` are left out, so the
    caller's own values win.
    """
    if not extra:
        return primary
    if not primary:
        return extra
    taken = set(_cookie_names(primary))
    added = [
        pair.strip()
        for pair in extra.split(";")
        if pair.strip() and pair.split("=", 1)[0].strip() not in taken
    ]
    if not added:
        return primary
    return "; ".join([primary.strip().rstrip(";")] + added)
