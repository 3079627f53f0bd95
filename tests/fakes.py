"""
In-memory stand-ins for the browser surface and the clock.

FakeSurface keeps elements keyed by selector and answers in-page scripts
keyed by the script constant the code evaluates. Every mutating call is
recorded in `actions`, so tests can assert that nothing was clicked.
"""

from datetime import datetime

import pytz

from tv_executor.errors import ConnectivityFault, ElementNotFound
from tv_executor.models import SessionState, LinkState
from tv_executor import probes

CHART_URL = "https://www.tradingview.com/chart/abc123/"


class FakeClock:
    """Monotonic clock that only moves when something sleeps"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def __call__(self):
        return self.now


class FakeHandle:
    """Truthy stand-in for an element handle"""

    def __init__(self, selector):
        self.selector = selector


class FakeSurface:

    def __init__(self, elements=None, scripts=None, url=CHART_URL):
        self.elements = {selector: dict(attrs) for selector, attrs in (elements or {}).items()}
        self.scripts = dict(scripts or {})
        self.actions = []
        self.cookie_jar = []
        self.screenshots = []
        self.reloads = 0
        self.closed = False
        self.rebind_result = False
        self._url = url
        self._faults = {}
        self._hooks = {}

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------
    def fail_on(self, action, key, error=None, times=1):
        """Raise `error` (default: a detached-frame fault) on the next `times` calls."""
        error = error or ConnectivityFault("Frame was detached")
        self._faults.setdefault((action, key), []).extend([error] * times)

    def on(self, action, key, fn):
        """Run fn(surface) right after the action succeeds."""
        self._hooks.setdefault((action, key), []).append(fn)

    def clicks(self):
        return [key for action, key in self.actions if action == 'click']

    def form_interactions(self):
        return [(action, key) for action, key in self.actions if action in ('click', 'type')]

    def _fault(self, action, key):
        pending = self._faults.get((action, key))
        if pending:
            raise pending.pop(0)

    def _after(self, action, key):
        for fn in self._hooks.get((action, key), []):
            fn(self)

    def _element(self, selector, timeout=None):
        if selector not in self.elements:
            raise ElementNotFound(selector, timeout)
        return self.elements[selector]

    # ------------------------------------------------------------------
    # Surface capabilities
    # ------------------------------------------------------------------
    @property
    def is_open(self):
        return not self.closed

    @property
    def url(self):
        return self._url

    def rebind(self, url_fragment):
        return self.rebind_result

    def close(self):
        self.actions.append(('close', None))
        self.closed = True

    def navigate(self, url, timeout=None):
        self._fault('navigate', url)
        self.actions.append(('navigate', url))
        self._url = url
        self._after('navigate', url)

    def locate(self, selector):
        self._fault('locate', selector)
        return FakeHandle(selector) if selector in self.elements else None

    def click(self, selector, click_count=1):
        self._fault('click', selector)
        element = self._element(selector)
        self.actions.append(('click', selector))
        if 'checked' in element:
            element['checked'] = not element['checked']
        self._after('click', selector)

    def type(self, selector, text, delay_ms=0):
        self._fault('type', selector)
        element = self._element(selector)
        self.actions.append(('type', selector))
        element['value'] = text
        self._after('type', selector)

    def read_text(self, selector):
        element = self.elements.get(selector)
        return element.get('text') if element else None

    def input_value(self, selector):
        element = self.elements.get(selector)
        return element.get('value') if element else None

    def wait_for(self, selector, timeout=None):
        self._fault('wait_for', selector)
        self._element(selector, timeout)
        return FakeHandle(selector)

    def evaluate(self, script, arg=None):
        self._fault('evaluate', script)
        if script in self.scripts:
            value = self.scripts[script]
            return value(arg) if callable(value) else value
        if script == probes.CHECKED_SCRIPT:
            element = self.elements.get(arg)
            return element.get('checked') if element else None
        if script == probes.ELEMENT_STATE_SCRIPT:
            element = self.elements.get(arg)
            if element is None:
                return None
            return {'disabled': False, 'text': element.get('text'),
                    'ariaChecked': None, 'ariaSelected': None}
        return None

    def screenshot(self, path, full_page=False):
        self.screenshots.append(path)

    def cookies(self, urls=None):
        return list(self.cookie_jar)

    def set_cookies(self, cookies):
        self.cookie_jar.extend(cookies)

    def reload(self, timeout=None):
        self._fault('reload', None)
        self.actions.append(('reload', None))
        self.reloads += 1


class StubSessionManager:
    """Records establish() calls; every session comes up connected"""

    def __init__(self, profile_id='main'):
        self.state = SessionState(profile_id=profile_id)
        self.establish_calls = 0
        self.reattach_calls = 0
        self.continue_signals = 0

    def establish(self, surface):
        self.establish_calls += 1
        self.state.login = LinkState.CONNECTED
        self.state.broker = LinkState.CONNECTED
        return self.state

    def reattach_broker(self, surface):
        self.reattach_calls += 1
        return False

    def navigate_to_chart(self, surface, url):
        surface.navigate(url)

    def signal_operator_continue(self):
        self.continue_signals += 1


# =============================================================================
# TERMINAL BUILDERS
# =============================================================================
def ui_now() -> str:
    """Order-history timestamp for 'just now' as the terminal renders it"""
    return datetime.now(pytz.utc).strftime('%Y-%m-%d %H:%M:%S')


def order_form_elements(**overrides):
    elements = {
        probes.ORDER_FORM: {},
        probes.SIDE_BUY: {'text': 'Buy 3,250.50'},
        probes.SIDE_SELL: {'text': 'Sell 3,250.00'},
        probes.MARKET_TYPE: {'text': 'Market'},
        probes.QUANTITY_FIELD: {'value': ''},
        probes.MARGIN_FIELD: {'value': ''},
        probes.TAKE_PROFIT_CHECKBOX: {'checked': False},
        probes.TAKE_PROFIT_FIELD: {'value': ''},
        probes.STOP_LOSS_CHECKBOX: {'checked': False},
        probes.STOP_LOSS_FIELD: {'value': ''},
        probes.SUBMIT_BUTTON: {'text': 'Buy'},
        probes.POSITIONS_TAB: {},
        probes.HISTORY_TAB: {},
        probes.SUMMARY_TAB: {},
    }
    elements.update(overrides)
    return elements


def position_row(symbol='BYBIT:ETHUSDT.P', side='Buy', qty='1', price='3,250.50',
                 price_label='Avg Fill Price', pnl='0.00'):
    return {
        'rowId': symbol,
        'cells': {
            'Symbol': symbol,
            'Side': side,
            'Qty': qty,
            price_label: price,
            'Unrealized P&L': pnl,
        },
    }


def market_history_row(margin='325.05', placed_at=None, side='Buy'):
    return {'type': 'Market', 'margin': margin, 'placedAt': placed_at or ui_now(), 'side': side}


def fill_on_submit(surface, row=None, margin='325.05'):
    """After the submit click a position row and a Market history row appear."""
    row = row or position_row()

    def filled(s):
        s.scripts[probes.POSITION_ROWS_SCRIPT] = [row]
        s.scripts[probes.ORDER_HISTORY_SCRIPT] = [market_history_row(margin=margin)]

    surface.on('click', probes.SUBMIT_BUTTON, filled)
    return surface


def clean_terminal(**element_overrides):
    """Paper session with the order ticket open and no positions"""
    return FakeSurface(
        elements=order_form_elements(**element_overrides),
        scripts={
            probes.POSITION_ROWS_SCRIPT: [],
            probes.ORDER_HISTORY_SCRIPT: [],
        },
    )
