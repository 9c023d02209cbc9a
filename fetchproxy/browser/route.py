import base64
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from opentelemetry import trace

from fetchproxy.auth import require_api_key
from fetchproxy.browser.renderer import SeleniumRenderer
from fetchproxy.utils.exception_logging import log_exception_with_details

router = APIRouter(dependencies=[Depends(require_api_key)])
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")


def get_renderer(request: Request) -> SeleniumRenderer:
    return request.app.state.renderer


@router.get("/browser-fetch")
async def browser_fetch(
    url: Optional[str] = Query(None, description="Page to render in the browser"),
    renderer: SeleniumRenderer = Depends(get_renderer),
):
    """Render a page in a real browser and return its cookies and base64 HTML."""
    if not url:
        return PlainTextResponse("Missing 'url' parameter", status_code=400)

    with tracer.start_as_current_span("browser_fetch") as span:
        span.set_attribute("browser.url", url)
        logger.info(f"[Browser] Rendering {url}")
        try:
            result = await renderer.fetch(url)
        except Exception as e:
            log_exception_with_details(logger, f"[Browser] Rendering {url} failed.", e)
            span.set_attribute("browser.error", type(e).__name__)
            return JSONResponse(
                {"error": "Failed to fetch page with browser emulation"},
                status_code=500,
            )

    return JSONResponse(
        {
            "cookies": result.cookies,
            "html": base64.b64encode(result.html.encode("utf-8")).decode("ascii"),
        }
    )
