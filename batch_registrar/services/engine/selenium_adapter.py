"""
Selenium target adapter

Same contract as the Playwright adapter, backed by undetected_chromedriver.
Selenium is synchronous, so every driver call runs in the default executor
to keep the event loop (and the arbiter's timers) responsive.
"""

import asyncio
import logging
import re
import time
from functools import partial
from typing import List, Optional, Tuple

from ...exceptions import (
    ActionFailedError, AdapterTimeoutError, ElementNotFoundError, NetworkError,
    SessionLostError, SessionOpenError
)
from ...models.item import SessionHandle
from .error_classifier import FailureSignal
from .target_adapter import Action, ActionKind, ActionResult, ControlHandle, TargetAdapter

# Import selenium dependencies
try:
    import undetected_chromedriver as uc
    from selenium.webdriver.common.by import By
    from selenium.webdriver.common.keys import Keys
    from selenium.webdriver.support.ui import Select, WebDriverWait
    from selenium.webdriver.support import expected_conditions as EC
    from selenium.common.exceptions import (
        InvalidSessionIdException, NoSuchWindowException, TimeoutException, WebDriverException
    )
    SELENIUM_AVAILABLE = True
except ImportError:
    SELENIUM_AVAILABLE = False
    uc = None

CHROME_ARGS = [
    '--disable-blink-features=AutomationControlled',
    '--no-first-run',
    '--no-default-browser-check',
    '--disable-dev-shm-usage',
    '--disable-extensions',
    '--disable-background-timer-throttling',
    '--disable-backgrounding-occluded-windows',
    '--disable-renderer-backgrounding',
    '--disable-hang-monitor',
    '--disable-prompt-on-repost',
    '--disable-sync',
    '--metrics-recording-only',
    '--disable-background-networking',
    '--window-size=1280,720'
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

HAS_TEXT = re.compile(r'^(?P<css>.*?):has-text\("(?P<text>.*)"\)$')

PROBE_SCRIPT = """
const done = arguments[arguments.length - 1];
fetch(arguments[0], {method: 'HEAD', cache: 'no-store'})
    .then(r => done(r.status))
    .catch(() => done(0));
"""


def split_strategy(strategy_spec: str) -> Tuple[str, str, Optional[str]]:
    """
    Translate a strategy spec into a Selenium locator

    Returns:
        (by, value, text) where text, when set, must be contained in the element
    """
    if strategy_spec.startswith("xpath=") or strategy_spec.startswith("//"):
        return By.XPATH, strategy_spec[6:] if strategy_spec.startswith("xpath=") else strategy_spec, None
    match = HAS_TEXT.match(strategy_spec)
    if match:
        return By.CSS_SELECTOR, match.group("css").strip() or "*", match.group("text")
    return By.CSS_SELECTOR, strategy_spec, None


class SeleniumAdapter(TargetAdapter):
    """Selenium/undetected_chromedriver adapter for the target web application"""

    def __init__(self, base_url: str, headless: bool = False, locate_timeout: float = 5.0,
                 navigation_timeout: float = 30.0):
        super().__init__()
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.base_url = base_url
        self.headless = headless
        self.locate_timeout = locate_timeout
        self.navigation_timeout = navigation_timeout
        self.selenium_driver: Optional[object] = None

        if not SELENIUM_AVAILABLE:
            raise SessionOpenError(
                "Selenium adapter requested but undetected_chromedriver is not available. "
                "Install it with: pip install undetected-chromedriver",
                adapter="selenium",
                details={"selenium_available": SELENIUM_AVAILABLE}
            )

    def get_adapter_name(self) -> str:
        return "selenium"

    def is_available(self) -> bool:
        """Check if Selenium/undetected_chromedriver is available"""
        return SELENIUM_AVAILABLE

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    # Session lifecycle

    async def open_session(self) -> SessionHandle:
        try:
            await self._run(self._initialize_selenium_driver)
        except WebDriverException as e:
            await self._run(self._cleanup_selenium_driver)
            raise SessionOpenError(f"Failed to open session at {self.base_url}: {e.msg}",
                                   adapter="selenium", details={"url": self.base_url})
        self._log(f"Chrome session opened at {self.base_url}")
        return SessionHandle(native=self.selenium_driver, opened_at=time.time())

    def _initialize_selenium_driver(self):
        """Initialize undetected_chromedriver instance and load the base URL"""
        if not self.selenium_driver:
            options = uc.ChromeOptions()
            for arg in CHROME_ARGS:
                options.add_argument(arg)

            self.selenium_driver = uc.Chrome(
                options=options,
                headless=self.headless,
                use_subprocess=True,
                suppress_welcome=True
            )
            self.selenium_driver.set_page_load_timeout(self.navigation_timeout)

        self.selenium_driver.get(self.base_url)

    async def is_session_open(self, handle: SessionHandle) -> bool:
        driver = handle.native if handle else None
        if driver is None or driver is not self.selenium_driver:
            return False
        try:
            await self._run(lambda: driver.current_window_handle)
            return True
        except WebDriverException:
            return False

    async def close_session(self, handle: SessionHandle):
        await self._run(self._cleanup_selenium_driver)

    def _cleanup_selenium_driver(self):
        """Clean up selenium driver resources"""
        try:
            if self.selenium_driver:
                self.selenium_driver.quit()
                self.selenium_driver = None
            self._log("Selenium driver resources cleaned up")
        except Exception as e:
            self.logger.warning(f"Selenium driver cleanup error: {e}")
            self.selenium_driver = None

    def _require_driver(self):
        if not self.selenium_driver:
            raise SessionLostError(reason="driver is not running")
        return self.selenium_driver

    def _translate(self, error: "WebDriverException", operation: str, control_id: Optional[str] = None):
        """Map a Selenium error onto the engine's exception types"""
        message = error.msg or str(error)
        if isinstance(error, TimeoutException):
            return AdapterTimeoutError(operation, self.locate_timeout, {"error": message})
        if isinstance(error, (NoSuchWindowException, InvalidSessionIdException)):
            return SessionLostError(reason=message)
        if "net::ERR_" in message:
            return NetworkError(message, url=self.base_url)
        return ActionFailedError(operation, control_id or "page", {"error": message})

    # Control primitives

    def _locate_sync(self, strategy_spec: str):
        driver = self._require_driver()
        by, value, text = split_strategy(strategy_spec)

        def visible_match(d):
            for element in d.find_elements(by, value):
                if element.is_displayed() and (text is None or text in element.text):
                    return element
            return False

        try:
            return WebDriverWait(driver, self.locate_timeout).until(visible_match)
        except TimeoutException:
            raise ElementNotFoundError(strategy_spec, timeout=self.locate_timeout)

    async def locate(self, strategy_spec: str) -> ControlHandle:
        try:
            element = await self._run(self._locate_sync, strategy_spec)
        except WebDriverException as e:
            raise self._translate(e, "locate")
        return ControlHandle(strategy_spec, native=element)

    def _list_options_sync(self, element) -> List[str]:
        if element.tag_name.lower() == "select":
            return [o.text.strip() for o in Select(element).options if o.text.strip()]

        driver = self._require_driver()
        element.click()
        WebDriverWait(driver, self.locate_timeout).until(
            EC.presence_of_element_located((By.CSS_SELECTOR, OPTION_SELECTORS))
        )
        texts = [o.text.strip() for o in driver.find_elements(By.CSS_SELECTOR, OPTION_SELECTORS) if o.text.strip()]
        element.send_keys(Keys.ESCAPE)
        return texts

    def _select_sync(self, element, value: str):
        if element.tag_name.lower() == "select":
            Select(element).select_by_visible_text(value)
            return

        driver = self._require_driver()
        element.click()
        WebDriverWait(driver, self.locate_timeout).until(
            EC.presence_of_element_located((By.CSS_SELECTOR, OPTION_SELECTORS))
        )
        for option in driver.find_elements(By.CSS_SELECTOR, OPTION_SELECTORS):
            if option.text.strip() == value:
                option.click()
                return
        raise ActionFailedError("select", value, {"reason": "option disappeared"})

    def _fill_sync(self, element, value: str):
        element.clear()
        element.send_keys(value)

    async def act(self, control: ControlHandle, action: Action) -> ActionResult:
        element = control.native
        try:
            if action.kind == ActionKind.CLICK:
                await self._run(element.click)
                return ActionResult()
            if action.kind == ActionKind.FILL:
                await self._run(self._fill_sync, element, action.value or "")
                return ActionResult()
            if action.kind == ActionKind.LIST_OPTIONS:
                options = await self._run(self._list_options_sync, element)
                return ActionResult(options=tuple(options))
            if action.kind == ActionKind.SELECT:
                await self._run(self._select_sync, element, action.value)
                return ActionResult(detail=action.value or "")
        except WebDriverException as e:
            raise self._translate(e, action.kind.value, control.control_id)

        return ActionResult(ok=False, detail=f"Unsupported action: {action.kind}")

    def _banner_texts_sync(self) -> List[str]:
        driver = self._require_driver()
        texts: List[str] = []
        for selector in BANNER_SELECTORS:
            for banner in driver.find_elements(By.CSS_SELECTOR, selector):
                if banner.is_displayed():
                    text = banner.text.strip()
                    if text and text not in texts:
                        texts.append(text)
        return texts

    async def observe_signal(self) -> FailureSignal:
        try:
            texts = await self._run(self._banner_texts_sync)
        except WebDriverException as e:
            raise self._translate(e, "observe")
        return FailureSignal(banner_text=" ".join(texts))

    def _dismiss_sync(self):
        driver = self.selenium_driver
        if not driver:
            return
        for selector in ('simple-snack-bar button', 'mat-snack-bar-container button', '.alert .close'):
            for button in driver.find_elements(By.CSS_SELECTOR, selector):
                if button.is_displayed():
                    button.click()

    async def dismiss_banners(self):
        await self._run(self._dismiss_sync)

    async def probe(self) -> bool:
        """HEAD request issued from the browser; without a driver the target is assumed reachable"""
        driver = self.selenium_driver
        if not driver:
            return True
        try:
            status = await self._run(driver.execute_async_script, PROBE_SCRIPT, self.base_url)
        except WebDriverException as e:
            self.logger.debug(f"Probe failed: {e}")
            return False
        return 0 < int(status or 0) < 500
