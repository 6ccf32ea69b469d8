"""
Browser lifecycle management - one Playwright browser per run

Creates the browser, context and page lazily on first use and tears all of
them down in close(). Console messages are collected for log counting.
"""
import asyncio
from typing import List, Optional

from loguru import logger
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from config import settings

SUPPORTED_BROWSERS = ("chromium", "firefox", "webkit")


class BrowserManager:
    """
    Per-run Playwright browser manager

    Never shared between runs: each run owns its browser, context and page.
    """

    def __init__(self, browser_name: Optional[str] = None, headless: Optional[bool] = None) -> None:
        name = (browser_name or settings.agent_browser or "chromium").lower()
        self.browser_name = name if name in SUPPORTED_BROWSERS else "chromium"
        self.headless = settings.browser_headless if headless is None else headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._lock = asyncio.Lock()
        self.console_logs: List[dict] = []

    @property
    def page(self) -> Optional[Page]:
        if self._page is not None and not self._page.is_closed():
            return self._page
        return None

    async def get_page(self) -> Page:
        """
        Get or create the run's page

        Returns:
            Page: Playwright page with console capture attached
        """
        async with self._lock:
            if self._page is not None and not self._page.is_closed():
                return self._page

            if self._browser is None or not self._browser.is_connected():
                logger.info(f"🌐 [BrowserManager] Launching {self.browser_name} (headless={self.headless})")
                self._playwright = await async_playwright().start()
                launcher = getattr(self._playwright, self.browser_name)
                launch_args = ["--no-sandbox", "--disable-dev-shm-usage"] if self.browser_name == "chromium" else None
                self._browser = await launcher.launch(headless=self.headless, args=launch_args)

            if self._context is None:
                self._context = await self._browser.new_context(viewport={"width": 1280, "height": 720})
                self._context.set_default_navigation_timeout(settings.navigation_timeout_ms)

            self._page = await self._context.new_page()
            self._page.on("console", self._on_console)
            return self._page

    def _on_console(self, message) -> None:
        self.console_logs.append({"level": message.type, "message": message.text})

    async def close(self) -> None:
        """Close page, context, browser and Playwright; errors are logged, not raised"""
        async with self._lock:
            for name, resource in (("page", self._page), ("context", self._context), ("browser", self._browser)):
                if resource is None:
                    continue
                try:
                    await resource.close()
                except Exception as e:
                    logger.warning(f"🌐 [BrowserManager] Failed to close {name}: {e}")
            self._page = None
            self._context = None
            self._browser = None
            if self._playwright:
                try:
                    await self._playwright.stop()
                except Exception as e:
                    logger.warning(f"🌐 [BrowserManager] Failed to stop Playwright: {e}")
                self._playwright = None
                logger.info("🌐 [BrowserManager] Browser closed")
