from .errors import (
    InboundReadError,
    MissingTargetError,
    ProxyError,
    UpstreamUnreachableError,
)

__all__ = [
    "InboundReadError",
    "MissingTargetError",
    "ProxyError",
    "UpstreamUnreachableError",
]
