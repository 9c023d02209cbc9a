import hmac
import logging
from typing import Optional

from fastapi import Header, Query, Request

from fetchproxy.utils import token_fingerprint

logger = logging.getLogger("uvicorn.error")


class UnauthorizedError(Exception):
    def __init__(self, reason: str = "Unauthorized: missing or invalid API key"):
        super().__init__(reason)
        self.reason = reason


class ApiKeyGate:
    """
    Checks the caller's API key against the secret configured at startup.

    Without a secret every request is let through.
    """

    def __init__(self, secret: Optional[str]):
        self._secret = secret or None
        if self._secret is None:
            logger.warning("[Auth] API_KEY is not set. Proxy is open to public!")
        else:
            logger.info("[Auth] API key protection enabled")

    @property
    def enabled(self) -> bool:
        return self._secret is not None

    def check(self, header_key: Optional[str], query_key: Optional[str]) -> None:
        if not self.enabled:
            return
        key = header_key or query_key
        if not key or not hmac.compare_digest(
            key.encode("utf-8"), self._secret.encode("utf-8")
        ):
            logger.warning(f"[Auth] Rejected API key ({token_fingerprint(key)})")
            raise UnauthorizedError()


async def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None),
    api_key: Optional[str] = Query(None),
) -> None:
    """Dependency guarding the proxy routes."""
    gate: ApiKeyGate = request.app.state.api_key_gate
    gate.check(x_api_key, api_key)
