import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "fetch-proxy")

# Empty or unset means the protected routes are open to everyone
API_KEY = os.environ.get("API_KEY") or None

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "info").lower()

# Bodies above this size are streamed to the upstream instead of parsed
MAX_BUFFER_FOR_PARSING = 5 * 1024 * 1024

MAX_REDIRECTS = int(os.getenv("MAX_REDIRECTS", "5"))


def _parse_optional_seconds(raw: str):
    raw = (raw or "").strip()
    if not raw:
        return None
    return float(raw)


# Unset means the forwarding path never times out on its own
FORWARD_TIMEOUT = _parse_optional_seconds(os.getenv("FORWARD_TIMEOUT", ""))

RELAY_DECODED_CONTENT = (
    os.getenv("RELAY_DECODED_CONTENT", "false").lower() == "true"
)

CHALLENGE_MARKER = os.getenv("CHALLENGE_MARKER", "reload")

BROWSER_FETCH_TIMEOUT = float(os.getenv("BROWSER_FETCH_TIMEOUT", "30"))
BROWSER_USER_AGENT = os.getenv(
    "BROWSER_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/115.0.0.0 Safari/537.36",
)

# Chrome or Chromium binary for the renderer; empty lets Selenium find one
CHROME_BINARY = os.getenv("CHROME_BINARY", "")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
