from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from .browser.route import router as browser_router
from .forward.route import router as forward_router

router = APIRouter()


@router.get("/", response_class=PlainTextResponse)
async def root():
    return "Hello World"


router.include_router(forward_router)
router.include_router(browser_router)
