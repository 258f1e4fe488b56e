"""
Playwright target adapter

Drives the registration dialog of the target web application with
Playwright. One browser, context and page back one session.
"""

import logging
import re
import time
from typing import List, Optional

from playwright.async_api import (
    Browser, BrowserContext, Page, Playwright, Response, ViewportSize, async_playwright
)
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ...exceptions import (
    ActionFailedError, AdapterTimeoutError, ElementNotFoundError, NetworkError,
    SessionLostError, SessionOpenError
)
from ...models.item import SessionHandle
from .error_classifier import FailureSignal
from .target_adapter import Action, ActionKind, ActionResult, ControlHandle, TargetAdapter

BROWSER_ARGS = [
    '--disable-blink-features=AutomationControlled',
    '--no-first-run',
    '--no-default-browser-check',
    '--disable-dev-shm-usage',
    '--disable-extensions',
    '--disable-background-timer-throttling',
    '--disable-backgrounding-occluded-windows',
    '--disable-renderer-backgrounding',
    '--no-sandbox',
    '--disable-hang-monitor',
    '--disable-prompt-on-repost',
    '--disable-sync',
    '--metrics-recording-only',
    '--disable-background-networking',
]

BANNER_SELECTORS = [
    'simple-snack-bar',
    'mat-snack-bar-container',
    '[role="alert"]',
    '.alert',
    '.toast-message',
    '.mat-error',
]

OPTION_SELECTORS = 'mat-option, [role="option"]'

CLOSED_PATTERN = re.compile(r"(target|page|context|browser).*(closed|crashed)", re.IGNORECASE)


class PlaywrightAdapter(TargetAdapter):
    """Playwright adapter for the target web application"""

    def __init__(self, base_url: str, headless: bool = False, locate_timeout: float = 5.0,
                 navigation_timeout: float = 30.0, probe_timeout: float = 10.0):
        super().__init__()
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.base_url = base_url
        self.headless = headless
        self.locate_timeout = locate_timeout
        self.navigation_timeout = navigation_timeout
        self.probe_timeout = probe_timeout

        # Playwright browser management
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.browser_context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

        self._last_failed_status: Optional[int] = None

    def get_adapter_name(self) -> str:
        return "playwright"

    def is_available(self) -> bool:
        """Check if Playwright is available"""
        try:
            import playwright  # noqa: F401
            return True
        except ImportError:
            return False

    # Session lifecycle

    async def open_session(self) -> SessionHandle:
        try:
            if not self.playwright:
                self.playwright = await async_playwright().start()

            if not self.browser or not self.browser.is_connected():
                self.browser = await self.playwright.chromium.launch(
                    headless=self.headless,
                    args=BROWSER_ARGS,
                    timeout=60000
                )

            self.browser_context = await self.browser.new_context(
                viewport=ViewportSize({'width': 1280, 'height': 720})
            )
            # Media is never needed to fill a form
            await self.browser_context.route("**/*.{mp4,avi,mov,webm,mp3,wav,ogg}", lambda route: route.abort())

            self.page = await self.browser_context.new_page()
            self.page.on("response", self._on_response)
            await self.page.goto(self.base_url, wait_until='domcontentloaded',
                                 timeout=self.navigation_timeout * 1000)
        except PlaywrightError as e:
            await self._cleanup_browser()
            raise SessionOpenError(f"Failed to open session at {self.base_url}: {e}",
                                   adapter="playwright", details={"url": self.base_url})

        self._log(f"Browser session opened at {self.base_url}")
        return SessionHandle(native=self.page, opened_at=time.time())

    async def is_session_open(self, handle: SessionHandle) -> bool:
        page = handle.native if handle else None
        if page is None or page.is_closed():
            return False
        return self.browser is not None and self.browser.is_connected()

    async def close_session(self, handle: SessionHandle):
        if handle and handle.native is not None and handle.native is not self.page:
            try:
                await handle.native.close()
            except PlaywrightError as e:
                self.logger.debug(f"Page already gone: {e}")
        await self._cleanup_browser()

    async def _cleanup_browser(self):
        """Clean up Playwright browser resources"""
        try:
            if self.browser_context:
                await self.browser_context.close()
                self.browser_context = None
            self.page = None

            if self.browser:
                await self.browser.close()
                self.browser = None

            if self.playwright:
                await self.playwright.stop()
                self.playwright = None

            self._log("Browser resources cleaned up")
        except Exception as e:
            self.logger.warning(f"Error during browser cleanup: {e}")

    def _on_response(self, response: Response):
        if response.status >= 400 and response.request.resource_type in ("xhr", "fetch"):
            self._last_failed_status = response.status

    def _require_page(self) -> Page:
        if self.page is None or self.page.is_closed():
            raise SessionLostError(reason="page is closed")
        return self.page

    def _translate(self, error: PlaywrightError, operation: str, control_id: Optional[str] = None):
        """Map a Playwright error onto the engine's exception types"""
        message = str(error)
        if isinstance(error, PlaywrightTimeoutError):
            return AdapterTimeoutError(operation, self.locate_timeout, {"error": message})
        if CLOSED_PATTERN.search(message):
            return SessionLostError(reason=message)
        if "net::ERR_" in message:
            return NetworkError(message, url=self.page.url if self.page else None)
        return ActionFailedError(operation, control_id or "page", {"error": message})

    # Control primitives

    async def locate(self, strategy_spec: str) -> ControlHandle:
        page = self._require_page()
        try:
            await page.wait_for_selector(strategy_spec, state="visible", timeout=self.locate_timeout * 1000)
        except PlaywrightTimeoutError:
            raise ElementNotFoundError(strategy_spec, timeout=self.locate_timeout)
        except PlaywrightError as e:
            raise self._translate(e, "locate")
        return ControlHandle(strategy_spec, native=page.locator(strategy_spec).first)

    async def act(self, control: ControlHandle, action: Action) -> ActionResult:
        page = self._require_page()
        element = control.native
        try:
            if action.kind == ActionKind.CLICK:
                await element.click()
                return ActionResult()

            if action.kind == ActionKind.FILL:
                await element.fill(action.value or "")
                return ActionResult()

            is_native_select = await element.evaluate("el => el.tagName.toLowerCase() === 'select'")

            if action.kind == ActionKind.LIST_OPTIONS:
                if is_native_select:
                    texts = await element.locator("option").all_inner_texts()
                else:
                    await element.click()
                    await page.wait_for_selector(OPTION_SELECTORS, timeout=self.locate_timeout * 1000)
                    texts = await page.locator(OPTION_SELECTORS).all_inner_texts()
                    await page.keyboard.press("Escape")
                return ActionResult(options=tuple(t.strip() for t in texts if t.strip()))

            if action.kind == ActionKind.SELECT:
                if is_native_select:
                    await element.select_option(label=action.value)
                else:
                    await element.click()
                    option = page.locator(OPTION_SELECTORS).filter(has_text=action.value).first
                    await option.click(timeout=self.locate_timeout * 1000)
                return ActionResult(detail=action.value or "")

        except PlaywrightError as e:
            raise self._translate(e, action.kind.value, control.control_id)

        return ActionResult(ok=False, detail=f"Unsupported action: {action.kind}")

    async def observe_signal(self) -> FailureSignal:
        page = self._require_page()
        texts: List[str] = []
        try:
            for selector in BANNER_SELECTORS:
                for banner in await page.locator(selector).all():
                    if await banner.is_visible():
                        text = (await banner.inner_text()).strip()
                        if text and text not in texts:
                            texts.append(text)
        except PlaywrightError as e:
            raise self._translate(e, "observe")

        status, self._last_failed_status = self._last_failed_status, None
        return FailureSignal(banner_text=" ".join(texts), response_status=status)

    async def dismiss_banners(self):
        if self.page is None or self.page.is_closed():
            return
        for selector in ('simple-snack-bar button', 'mat-snack-bar-container button', '.alert .close'):
            for button in await self.page.locator(selector).all():
                if await button.is_visible():
                    await button.click()
        self._last_failed_status = None

    async def probe(self) -> bool:
        """Lightweight HTTP check of the base URL, independent of the page state"""
        if not self.playwright:
            self.playwright = await async_playwright().start()
        request = await self.playwright.request.new_context()
        try:
            response = await request.get(self.base_url, timeout=self.probe_timeout * 1000)
            return response.status < 500
        except PlaywrightError as e:
            self.logger.debug(f"Probe failed: {e}")
            return False
        finally:
            await request.dispose()
