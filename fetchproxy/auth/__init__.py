from .api_key import ApiKeyGate, UnauthorizedError, require_api_key

__all__ = [
    "ApiKeyGate",
    "UnauthorizedError",
    "require_api_key",
]
