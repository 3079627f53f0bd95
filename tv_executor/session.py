"""
TradingView session management.

Restores a persisted session (cookies + local storage) per account
profile, drives the interactive login when needed, waits for a human on
captcha, and connects the broker integration used for order routing.

Login and broker connection are allowed to end UNVERIFIED: the executor
keeps going so an operator can fix things in the visible browser, and
the state says so instead of pretending success.
"""

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from tv_executor import config
from tv_executor.config import BrokerProfile, Timings
from tv_executor.errors import ConnectivityFault, ElementNotFound, SessionError
from tv_executor.models import LinkState, SessionState
from tv_executor.probes import (
    BROKER_CONNECT_BUTTON, CHART_CONTAINER, LOCAL_STORAGE_DUMP_SCRIPT,
    LOCAL_STORAGE_RESTORE_SCRIPT, broker_card
)
from tv_executor.utils import poll_until, utc_now_iso

logger = logging.getLogger('tv_executor.session')

# Global lock for session file access
_session_file_lock = threading.RLock()

SESSION_COOKIE = 'sessionid'

EMAIL_BUTTON = 'button[name="Email"]'
EMAIL_BUTTON_FALLBACK = '.emailButton-nKAw8Hvt'
USERNAME_FIELD = '#id_username'
PASSWORD_FIELD = '#id_password'
SIGN_IN_BUTTON = '.submitButton-LQwxK8Bm'
CAPTCHA = '.recaptchaContainer-LQwxK8Bm, #g-recaptcha-response, iframe[title="reCAPTCHA"]'
USER_MENU = '[data-name="header-user-menu-button"], .tv-header__user-menu-button'

# Keys Playwright accepts when re-adding cookies
COOKIE_KEYS = ('name', 'value', 'url', 'domain', 'path', 'expires', 'httpOnly', 'secure', 'sameSite')


def session_file_for(account_profile: str) -> Path:
    return config.SESSIONS_DIR / f"tradingview-{account_profile}-session.json"


def has_live_session_cookie(cookies: List[Dict], now: float = None) -> bool:
    """
    Is there a non-empty sessionid cookie that has not expired?
    Cookies without an expiry (session cookies, expires <= 0) count as live.
    """
    now = time.time() if now is None else now
    for cookie in cookies or []:
        if cookie.get('name') != SESSION_COOKIE or not cookie.get('value'):
            continue
        expires = cookie.get('expires')
        if expires is None or expires <= 0 or expires > now:
            return True
        logger.info("Session cookie expired")
        return False
    return False


class SessionStore:
    """One JSON file per account profile: {cookies, localStorage, savedAt}"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[Dict]:
        """Stored session, or None when absent or unreadable."""
        with _session_file_lock:
            if not self.path.exists():
                return None
            try:
                with open(self.path, 'r') as f:
                    data = json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Could not read session file {self.path}: {e}")
                return None

        if not isinstance(data, dict) or not isinstance(data.get('cookies'), list):
            logger.warning(f"Ignoring malformed session file {self.path}")
            return None
        logger.info(f"Session file found (saved: {data.get('savedAt')})")
        return data

    def save(self, cookies: List[Dict], local_storage: Dict[str, str] = None) -> Dict:
        data = {
            'cookies': cookies,
            'localStorage': local_storage or {},
            'savedAt': utc_now_iso(),
        }
        with _session_file_lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = str(self.path) + '.tmp'
            try:
                with open(temp_file, 'w') as f:
                    json.dump(data, f, indent=2)
                os.replace(temp_file, self.path)
            except IOError:
                if os.path.exists(temp_file):
                    os.remove(temp_file)
                raise
        logger.info(f"Session saved to {self.path} (cookies + localStorage)")
        return data


class SessionManager:
    """Owns the login and broker link of one account profile"""

    def __init__(self, store: SessionStore, profile: BrokerProfile, timings: Timings = None,
                 email: str = None, password: str = None, chart_url: str = None,
                 account_profile: str = config.ACCOUNT_PROFILE):
        self.store = store
        self.profile = profile
        self.timings = timings or Timings()
        self.email = config.TRADINGVIEW_EMAIL if email is None else email
        self.password = config.TRADINGVIEW_PASSWORD if password is None else password
        self.chart_url = chart_url or config.TRADINGVIEW_CHART_URL
        self.state = SessionState(profile_id=account_profile)
        self._operator_continue = threading.Event()

    # =========================================================================
    # OPERATOR SIGNAL
    # =========================================================================
    def signal_operator_continue(self):
        """Stop waiting on a human-verification challenge"""
        logger.info("Operator signalled continue")
        self._operator_continue.set()

    # =========================================================================
    # ESTABLISH
    # =========================================================================
    def establish(self, surface) -> SessionState:
        """
        Log in (restoring the persisted session when possible), open the
        chart and connect the broker.

        Raises:
            SessionError: the login form could not be driven at all
        """
        self.state.reset()
        self.restore(surface)

        logger.info("Checking TradingView login status...")
        if has_live_session_cookie(surface.cookies([config.TRADINGVIEW_URL])):
            logger.info("Already logged in (sessionid cookie found)")
            self.state.login = LinkState.CONNECTED
        else:
            self.login(surface)

        self.navigate_to_chart(surface, self.chart_url)
        self.connect_broker(surface)
        logger.info(f"Session established: {self.state.summary()}")
        return self.state

    def restore(self, surface) -> bool:
        """Load the persisted cookies and local storage into the browser."""
        data = self.store.load()
        if not data:
            return False

        logger.info("Found existing session, restoring...")
        cookies = [{k: v for k, v in c.items() if k in COOKIE_KEYS} for c in data['cookies']]
        try:
            surface.set_cookies(cookies)
        except ConnectivityFault:
            raise
        except Exception as e:
            logger.warning(f"Could not restore cookies, continuing with fresh login: {e}")
            return False

        surface.navigate(config.TRADINGVIEW_URL)
        if data.get('localStorage'):
            surface.evaluate(LOCAL_STORAGE_RESTORE_SCRIPT, data['localStorage'])
            logger.info("Restored localStorage")
        return True

    def save(self, surface):
        """Persist cookies + local storage. A failed save only costs the next fast path."""
        try:
            cookies = surface.cookies()
            local_storage = surface.evaluate(LOCAL_STORAGE_DUMP_SCRIPT) or {}
            self.store.save(cookies, local_storage)
        except ConnectivityFault:
            raise
        except Exception as e:
            logger.warning(f"Could not save session: {e}")

    # =========================================================================
    # LOGIN
    # =========================================================================
    def login(self, surface):
        """
        Interactive login. A continue signal sent at any point during the
        attempt releases the captcha wait; signals from outside an attempt
        are discarded.
        """
        self._operator_continue.clear()
        try:
            self._login(surface)
        finally:
            self._operator_continue.clear()

    def _login(self, surface):
        logger.info("Session expired or not found, performing fresh login...")
        t = self.timings

        if '/accounts/signin' not in surface.url:
            surface.navigate(config.TRADINGVIEW_SIGNIN_URL)
            t.sleep(t.login_settle)

        try:
            surface.wait_for(EMAIL_BUTTON, timeout=t.element_timeout * 2)
            surface.click(EMAIL_BUTTON)
        except ElementNotFound:
            logger.info("Email button not found, trying alternative selector...")
            if surface.locate(EMAIL_BUTTON_FALLBACK):
                surface.click(EMAIL_BUTTON_FALLBACK)
        t.sleep(t.click_settle)

        try:
            logger.info("Entering credentials...")
            surface.wait_for(USERNAME_FIELD, timeout=t.element_timeout * 2)
            surface.type(USERNAME_FIELD, self.email, delay_ms=50)
            surface.wait_for(PASSWORD_FIELD, timeout=t.element_timeout * 2)
            surface.type(PASSWORD_FIELD, self.password, delay_ms=50)
            surface.wait_for(SIGN_IN_BUTTON, timeout=t.element_timeout)
            surface.click(SIGN_IN_BUTTON)
        except ElementNotFound as e:
            self.state.login = LinkState.FAILED
            raise SessionError(f"Login form could not be completed: {e}") from e

        t.sleep(t.login_settle)

        if surface.locate(CAPTCHA):
            self._wait_for_captcha(surface)
            self.state.login = (LinkState.CONNECTED if surface.locate(USER_MENU)
                                else LinkState.UNVERIFIED)
            self.save(surface)
            return

        try:
            surface.wait_for(USER_MENU, timeout=t.login_confirm_timeout)
            logger.info("Login successful!")
            self.state.login = LinkState.CONNECTED
            self.save(surface)
        except ElementNotFound:
            logger.warning("Could not verify login. Continuing UNVERIFIED...")
            self.state.login = LinkState.UNVERIFIED

    def _wait_for_captcha(self, surface):
        """Race the challenge clearing, the logged-in marker and the operator signal."""
        t = self.timings
        logger.warning(f"CAPTCHA DETECTED! Solve it in the browser "
                       f"(waiting up to {t.captcha_timeout:.0f}s, or signal continue)...")

        result = poll_until(
            lambda: (self._operator_continue.is_set()
                     or surface.locate(USER_MENU) is not None
                     or surface.locate(CAPTCHA) is None),
            interval=1.0,
            timeout=t.captcha_timeout,
            sleep=t.sleep,
            clock=t.clock,
        )
        if result.timed_out:
            logger.warning("Captcha wait timed out. Continuing anyway...")

        # The form may still need its submit click after the challenge
        if surface.locate(SIGN_IN_BUTTON):
            logger.info("Clicking Sign In button...")
            surface.click(SIGN_IN_BUTTON)
            t.sleep(t.login_settle)

    # =========================================================================
    # CHART / BROKER
    # =========================================================================
    def navigate_to_chart(self, surface, chart_url: str):
        logger.info(f"Navigating to chart: {chart_url}")
        surface.navigate(chart_url)
        self.timings.sleep(self.timings.page_settle)
        try:
            surface.wait_for(CHART_CONTAINER, timeout=self.timings.element_timeout * 6)
            logger.info("Chart loaded!")
        except ElementNotFound:
            logger.warning("Could not verify chart load. Continuing...")

    def connect_broker(self, surface):
        t = self.timings
        card = broker_card(self.profile)
        logger.info(f"Connecting to {self.profile.display_name} broker...")
        try:
            surface.wait_for(card, timeout=t.element_timeout * 2)
            surface.click(card)
            t.sleep(t.form_settle)
            surface.wait_for(BROKER_CONNECT_BUTTON, timeout=t.element_timeout)
            surface.click(BROKER_CONNECT_BUTTON)
            t.sleep(t.broker_settle)
            logger.info(f"{self.profile.display_name} broker connected!")
            self.state.broker = LinkState.CONNECTED
        except ElementNotFound:
            logger.warning(f"Could not connect {self.profile.display_name} broker automatically. "
                           f"Continuing UNVERIFIED, may need manual connection.")
            self.state.broker = LinkState.UNVERIFIED

    def reattach_broker(self, surface) -> bool:
        """
        Re-run the broker connect if the broker picker is showing again.

        Returns:
            True if a reconnect was attempted
        """
        t = self.timings
        card = broker_card(self.profile)
        if not surface.locate(card):
            return False

        logger.warning(f"{self.profile.display_name} broker disconnected. Reconnecting...")
        surface.click(card)
        t.sleep(t.form_settle)
        if surface.locate(BROKER_CONNECT_BUTTON):
            surface.click(BROKER_CONNECT_BUTTON)
            t.sleep(t.broker_settle)
            self.state.broker = LinkState.CONNECTED
            logger.info(f"{self.profile.display_name} broker reconnected!")
        else:
            self.state.broker = LinkState.UNVERIFIED
            logger.warning(f"Broker connect button missing, {self.profile.display_name} UNVERIFIED")
        return True
