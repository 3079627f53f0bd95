"""
Playwright automation surface for the TradingView terminal.

Wraps one persistent Chromium context and its page behind the small
capability set the executor needs. Playwright errors never leave this
module: lost-browser errors become ConnectivityFault and element-wait
timeouts become ElementNotFound.
"""

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from playwright.sync_api import sync_playwright, BrowserContext, Page
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from tv_executor import config
from tv_executor.errors import ConnectivityFault, ElementNotFound, is_connectivity_error

logger = logging.getLogger('tv_executor.surface')

USER_AGENT = ('Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
              '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36')


class PlaywrightSurface:
    """
    Browser automation surface backed by a persistent Chromium profile.

    One profile directory per account profile, so cookies and local storage
    of the main and alt accounts never mix.
    """

    def __init__(self, profile_dir: Path, headless: bool = None,
                 element_timeout: float = config.ELEMENT_TIMEOUT,
                 navigation_timeout: float = config.NAVIGATION_TIMEOUT):
        self.profile_dir = Path(profile_dir)
        self.headless = config.HEADLESS_MODE if headless is None else headless
        self.element_timeout = element_timeout
        self.navigation_timeout = navigation_timeout

        self.playwright = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================
    def start(self) -> "PlaywrightSurface":
        """Launch the persistent context and settle on a single page."""
        self.profile_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Launching browser (headless={self.headless}, profile={self.profile_dir})...")

        self.playwright = sync_playwright().start()
        self.context = self.playwright.chromium.launch_persistent_context(
            user_data_dir=str(self.profile_dir),
            headless=self.headless,
            viewport={'width': 1920, 'height': 1080},
            user_agent=USER_AGENT,
            args=['--no-sandbox', '--disable-setuid-sandbox', '--window-size=1920,1080'],
        )
        self._close_extra_tabs()
        self.page = self.context.pages[0] if self.context.pages else self.context.new_page()
        self.page.set_default_timeout(self.element_timeout * 1000)
        self.page.set_default_navigation_timeout(self.navigation_timeout * 1000)

        logger.info("Browser started successfully")
        return self

    def _close_extra_tabs(self):
        pages = self.context.pages
        if len(pages) <= 1:
            return
        logger.info(f"Found {len(pages)} tabs open - closing extras")
        for page in pages[1:]:
            try:
                page.close()
            except PlaywrightError as e:
                logger.warning(f"Could not close tab: {e}")

    def close(self):
        """Tear down page, context and driver. Safe to call on a dead browser."""
        logger.info("Closing browser...")
        for resource, closer in ((self.context, 'close'), (self.playwright, 'stop')):
            if resource is None:
                continue
            try:
                getattr(resource, closer)()
            except PlaywrightError as e:
                logger.debug(f"Browser was already disconnected: {e}")
        self.page = None
        self.context = None
        self.playwright = None
        logger.info("Browser closed")

    @property
    def is_open(self) -> bool:
        return self.page is not None and not self.page.is_closed()

    @property
    def url(self) -> str:
        return self.page.url if self.page else ""

    def rebind(self, url_fragment: str) -> bool:
        """
        Re-attach to any live page of the same context whose URL contains
        url_fragment. Returns False when no page answers.
        """
        if self.context is None:
            return False
        try:
            pages = list(self.context.pages)
        except PlaywrightError as e:
            logger.warning(f"Browser context unreachable: {e}")
            return False

        for page in pages:
            try:
                if url_fragment not in page.url:
                    continue
                page.evaluate("() => true")
            except PlaywrightError:
                continue
            self.page = page
            logger.info(f"Rebound to live page: {page.url}")
            return True
        return False

    # =========================================================================
    # CAPABILITIES
    # =========================================================================
    @contextmanager
    def _translated(self, selector: str = None, timeout: float = None):
        try:
            yield
        except PlaywrightTimeoutError as e:
            if selector is not None:
                raise ElementNotFound(selector, timeout) from e
            raise
        except PlaywrightError as e:
            if is_connectivity_error(e):
                raise ConnectivityFault(str(e)) from e
            raise

    def navigate(self, url: str, timeout: float = None):
        timeout = timeout or self.navigation_timeout
        with self._translated():
            self.page.goto(url, wait_until="domcontentloaded", timeout=timeout * 1000)

    def locate(self, selector: str):
        with self._translated():
            return self.page.query_selector(selector)

    def click(self, selector: str, click_count: int = 1):
        with self._translated(selector, self.element_timeout):
            self.page.click(selector, click_count=click_count, timeout=self.element_timeout * 1000)

    def type(self, selector: str, text: str, delay_ms: int = 0):
        """Select whatever the input holds and type over it."""
        with self._translated(selector, self.element_timeout):
            self.page.click(selector, click_count=3, timeout=self.element_timeout * 1000)
            self.page.type(selector, text, delay=delay_ms, timeout=self.element_timeout * 1000)

    def read_text(self, selector: str) -> Optional[str]:
        with self._translated():
            element = self.page.query_selector(selector)
            if element is None:
                return None
            text = element.text_content()
            return text.strip() if text else None

    def input_value(self, selector: str) -> Optional[str]:
        with self._translated():
            element = self.page.query_selector(selector)
            if element is None:
                return None
            return element.input_value()

    def wait_for(self, selector: str, timeout: float = None):
        timeout = timeout or self.element_timeout
        with self._translated(selector, timeout):
            return self.page.wait_for_selector(selector, state='attached', timeout=timeout * 1000)

    def evaluate(self, script: str, arg: Any = None) -> Any:
        with self._translated():
            return self.page.evaluate(script, arg)

    def screenshot(self, path: str, full_page: bool = False):
        with self._translated():
            self.page.screenshot(path=path, full_page=full_page)

    def cookies(self, urls: List[str] = None) -> List[Dict]:
        with self._translated():
            return self.context.cookies(urls) if urls else self.context.cookies()

    def set_cookies(self, cookies: List[Dict]):
        with self._translated():
            self.context.add_cookies(cookies)

    def reload(self, timeout: float = None):
        timeout = timeout or self.navigation_timeout
        with self._translated():
            self.page.reload(wait_until="domcontentloaded", timeout=timeout * 1000)


def take_debug_screenshot(surface, name: str) -> str:
    """
    Take a screenshot into the log directory and return its path.
    Returns "" when the screenshot cannot be taken.
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    os.makedirs(config.LOG_DIR, exist_ok=True)
    filepath = os.path.join(config.LOG_DIR, f"{name}_{timestamp}.png")

    if surface is None:
        return ""
    try:
        surface.screenshot(filepath)
        logger.info(f"Screenshot saved: {filepath}")
        return filepath
    except Exception as e:
        logger.error(f"Screenshot failed: {e}")
        return ""
