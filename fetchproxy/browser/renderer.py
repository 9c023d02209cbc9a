import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from selenium import webdriver
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.remote.webdriver import WebDriver
from selenium.webdriver.support.ui import WebDriverWait

from fetchproxy.vars import BROWSER_FETCH_TIMEOUT, BROWSER_USER_AGENT, CHROME_BINARY

logger = logging.getLogger("uvicorn.error")


@dataclass
class RenderResult:
    """Cookies and HTML of a page after the browser finished loading it."""

    html: str
    cookies: List[Dict[str, Any]] = field(default_factory=list)


def chrome_options(user_agent: str = BROWSER_USER_AGENT) -> Options:
    options = Options()
    options.add_argument("--headless=new")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-setuid-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument(f"--user-agent={user_agent}")
    if CHROME_BINARY:
        options.binary_location = CHROME_BINARY
    return options


def _document_complete(driver: WebDriver) -> bool:
    return driver.execute_script("return document.readyState") == "complete"


class SeleniumRenderer:
    """
    Renders a page in a fresh headless Chrome instance.

    Each fetch gets its own browser, which is quit before the fetch returns
    or raises, including when the timeout cuts the page load short.
    """

    def __init__(
        self,
        timeout: float = BROWSER_FETCH_TIMEOUT,
        user_agent: str = BROWSER_USER_AGENT,
        driver_factory: Optional[Callable[[], WebDriver]] = None,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self._driver_factory = driver_factory or self._launch_chrome

    def _launch_chrome(self) -> WebDriver:
        return webdriver.Chrome(options=chrome_options(self.user_agent))

    def _load(self, driver: WebDriver, url: str, budget: float) -> RenderResult:
        deadline = time.monotonic() + budget
        driver.set_page_load_timeout(budget)
        driver.get(url)
        remaining = max(deadline - time.monotonic(), 0.1)
        WebDriverWait(driver, remaining).until(_document_complete)
        return RenderResult(html=driver.page_source, cookies=driver.get_cookies())

    @staticmethod
    def _quit(driver: WebDriver) -> None:
        try:
            driver.quit()
        except Exception as e:
            logger.warning(f"[Browser] Failed to quit browser: {e}")

    async def fetch(self, url: str) -> RenderResult:
        """
        Render ``url`` in worker threads under one overall timeout.

        Raises asyncio.TimeoutError when the page is not ready in time. A load
        still running in its thread is aborted by quitting its browser.
        """
        started = time.monotonic()
        driver = await asyncio.to_thread(self._driver_factory)
        try:
            budget = max(self.timeout - (time.monotonic() - started), 0.1)
            return await asyncio.wait_for(
                asyncio.to_thread(self._load, driver, url, budget), budget
            )
        finally:
            await asyncio.to_thread(self._quit, driver)
