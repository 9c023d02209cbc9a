from typing import Optional

from fetchproxy.utils.exception_logging import format_exception_message


class ProxyError(Exception):
    """Base class for failures of the forwarding pipeline."""

    status_code = 500
    client_message = "Internal proxy error"


class MissingTargetError(ProxyError):
    status_code = 400
    client_message = "Missing 'url' parameter"

    def __init__(self):
        super().__init__("No target url given")


class InboundReadError(ProxyError):
    status_code = 400
    client_message = "Error reading request body"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class UpstreamUnreachableError(ProxyError):
    status_code = 502
    client_message = "Error fetching target"

    def __init__(self, url: str, method: str, cause: Optional[BaseException] = None):
        # cause may be an exception group from the transport's task group
        super().__init__(
            f"{method} {url} failed before a response arrived: {format_exception_message(cause)}"
        )
        self.url = url
        self.method = method
        self.cause = cause
