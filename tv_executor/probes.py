"""
Data probes against the TradingView terminal.

Every fact the executor needs (open positions, fill price, margin, balance,
rejections) is read here, either through a selector or a small in-page
script. Where the terminal renders the same fact differently across
broker variants, probes are listed in trust order and the first one that
returns a value wins; UI churn is fixed by editing the lists below.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from tv_executor.config import BrokerProfile
from tv_executor.models import Direction, OrderHistoryEntry, PositionSnapshot, RejectionEvent
from tv_executor.utils import parse_number, parse_price, symbol_matches

logger = logging.getLogger('tv_executor.probes')

# =============================================================================
# SELECTORS
# =============================================================================
SIDE_BUY = '[data-name="side-control-buy"]'
SIDE_SELL = '[data-name="side-control-sell"]'
ORDER_FORM = f'{SIDE_BUY}, {SIDE_SELL}'
TRADE_PANEL_BUTTON = '[data-qa-id="trade-panel-button"], .tradeButton-YZUjA1Rh button'
MARKET_TYPE = 'button#Market'
QUANTITY_FIELD = '#quantity-field'
MARGIN_FIELD = '#quantity-calculation-field'
TAKE_PROFIT_CHECKBOX = 'input[data-qa-id="order-ticket-profit-checkbox-bracket"]'
TAKE_PROFIT_FIELD = '#take-profit-price-field'
STOP_LOSS_CHECKBOX = 'input[data-qa-id="order-ticket-loss-checkbox-bracket"]'
STOP_LOSS_FIELD = '#stop-loss-price-field'
SUBMIT_BUTTON = 'button[data-name="place-and-modify-button"]'

POSITIONS_TAB = 'button#positions'
HISTORY_TAB = 'button#history'
SUMMARY_TAB = 'button#summary'
QTY_CELL = 'td[data-label="Qty"]'

RECOVERY_CONTROLS = ('.wrapperButton-yXyW_CNE button, button.button-Z0XMhbiI, '
                     'button[data-qa-id="close_paywall_button"]')
PROMOTION_CLOSE = ('.closeButton-AIyNn2YU, button.closeButton-AIyNn2YU, '
                   '.closeButtonWrapper-AIyNn2YU button')
BROKER_CONNECT_BUTTON = 'button[name="broker-login-submit-button"]'
CURRENT_PRICE = '.price-axis__price, .last-price, [data-name="current-price"]'
CHART_CONTAINER = '.chart-container, .chart-markup-table, [data-name="chart-container"]'

# Avg fill price, most specific broker variant first
AVG_PRICE_SELECTORS = (
    'td[data-label="Avg Price"] span',
    'td[data-label="Avg Price"]',
    'td[data-label="Avg Fill Price"] span',
    'td[data-label="Avg Fill Price"]',
    'td[data-label="Avg. Fill Price"] span',
    'td[data-label="Entry Price"] span',
    'td[data-label="Price"] span',
    '.positions-table span[class*="price"]',
)

# Cell labels that may hold the entry price when every selector missed
ROW_PRICE_KEYS = ('Avg Price', 'Avg Fill Price', 'Entry Price', 'Price', 'Avg. Fill')


def broker_card(profile: BrokerProfile) -> str:
    return f'[data-broker="{profile.broker_card}"]'


def side_selector(direction: Direction) -> str:
    return SIDE_BUY if direction is Direction.LONG else SIDE_SELL


# =============================================================================
# IN-PAGE SCRIPTS
# =============================================================================
POSITION_ROWS_SCRIPT = """() => {
    const container = document.querySelector('div[data-account-manager-page-id="positions"]');
    const root = container || document;
    return Array.from(root.querySelectorAll('tr.ka-tr.ka-row[data-row-id]')).map(row => {
        const cells = {};
        row.querySelectorAll('td[data-label]').forEach(cell => {
            cells[cell.getAttribute('data-label')] = (cell.textContent || '').trim();
        });
        return {rowId: row.getAttribute('data-row-id') || 'unknown', cells};
    });
}"""

FIRST_ROW_CELLS_SCRIPT = """() => {
    const row = document.querySelector('tr.ka-tr, tr[class*="position"]');
    if (!row) return {};
    const cells = {};
    row.querySelectorAll('td[data-label]').forEach(cell => {
        cells[cell.getAttribute('data-label')] = (cell.textContent || '').trim();
    });
    return cells;
}"""

ORDER_HISTORY_SCRIPT = """() => {
    return Array.from(document.querySelectorAll('tr.ka-tr.ka-row')).map(row => {
        const text = sel => {
            const el = row.querySelector(sel);
            return el ? (el.textContent || '').trim() : null;
        };
        return {
            type: text('td[data-label="Type"]'),
            margin: text('td[data-label="Margin"]'),
            placedAt: text('td[data-label="Time Placed"]') || text('td[data-label="Placing Time"]'),
            side: text('td[data-label="Side"]'),
        };
    });
}"""

REJECTION_SCRIPT = """() => {
    const toast = document.querySelector('.contentContainerWrapper-zMOxH_8U');
    if (!toast) return null;
    const header = toast.querySelector('.header-zMOxH_8U');
    const headerText = header ? (header.textContent || '').trim() : '';
    if (!headerText.toLowerCase().includes('rejected')) return null;
    const text = sel => {
        const el = toast.querySelector(sel);
        return el ? (el.textContent || '').trim() : '';
    };
    return {
        header: headerText,
        orderInfo: text('.orderInfo-MMDBBz2U'),
        reason: text('.content-MMDBBz2U') || 'Unknown rejection reason',
        symbol: text('.tag-text-rVj4hiuX'),
    };
}"""

BALANCE_SCRIPT = """(fieldName) => {
    const fields = Array.from(document.querySelectorAll('.accountSummaryField-tWnxJF90'));
    for (const field of fields) {
        const title = field.querySelector('.title-tWnxJF90');
        if (title && (title.textContent || '').trim() === fieldName) {
            const value = field.querySelector('.value-tWnxJF90');
            return {text: value ? value.textContent : '0', matched: fieldName};
        }
    }
    const first = document.querySelector('.accountSummaryField-tWnxJF90 .value-tWnxJF90');
    return {text: first ? first.textContent : '0', matched: first ? 'fallback' : null};
}"""

SIDE_PRICE_SCRIPT = """(selector) => {
    const button = document.querySelector(selector);
    const value = button ? button.querySelector('.value-OnZ1FRe5') : null;
    return value ? value.textContent : null;
}"""

PREVIEW_FEE_SCRIPT = """() => {
    for (const item of document.querySelectorAll('[class*="listItem-"]')) {
        const title = item.querySelector('[class*="listItemTitle-"]');
        if (title && (title.textContent || '').trim() === 'Fee') {
            const data = item.querySelector('[class*="listItemData-"]');
            return data ? (data.textContent || '').trim() : '0';
        }
    }
    return null;
}"""

CONFIRM_SEND_SCRIPT = """() => {
    const buttons = Array.from(document.querySelectorAll('button'));
    const exact = buttons.find(b => (b.textContent || '').trim() === 'Send Order');
    const target = exact || buttons.find(b => (b.textContent || '').includes('Send Order'));
    if (!target) return null;
    target.click();
    return (target.textContent || '').trim();
}"""

INITIAL_MARGIN_SCRIPT = """() => {
    const row = document.querySelector('tr[data-row-id="initialMargin"]');
    if (!row) return null;
    const amount = row.querySelector('td[data-label="Amount"] span span:first-child');
    return amount ? (amount.textContent || '').trim() : null;
}"""

DISCONNECT_SCRIPT = """() => {
    const body = document.body ? document.body.innerText : '';
    if (body.includes('Your session ended because your account was accessed from another browser')) {
        return 'ACCOUNT_ACCESSED';
    }
    const closed = document.querySelector('.title-qAW2FX1Z');
    if (closed && (closed.textContent || '').includes("We've closed this connection")) {
        return 'CONNECTION_CLOSED';
    }
    return null;
}"""

CHECKED_SCRIPT = """(selector) => {
    const el = document.querySelector(selector);
    return el ? !!el.checked : null;
}"""

ELEMENT_STATE_SCRIPT = """(selector) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    return {
        disabled: !!el.disabled,
        text: (el.innerText || '').trim(),
        ariaChecked: el.getAttribute('aria-checked'),
        ariaSelected: el.getAttribute('aria-selected'),
    };
}"""

LOCAL_STORAGE_DUMP_SCRIPT = """() => {
    const data = {};
    for (let i = 0; i < window.localStorage.length; i++) {
        const key = window.localStorage.key(i);
        if (key) data[key] = window.localStorage.getItem(key) || '';
    }
    return data;
}"""

LOCAL_STORAGE_RESTORE_SCRIPT = """(data) => {
    for (const [key, value] of Object.entries(data)) {
        window.localStorage.setItem(key, value);
    }
}"""


# =============================================================================
# PROBE CHAINS
# =============================================================================
@dataclass(frozen=True)
class Probe:
    """A named read of one fact; returns None when the UI does not show it"""
    name: str
    read: Callable[[object], Optional[str]]


def selector_probe(selector: str) -> Probe:
    return Probe(name=selector, read=lambda surface: surface.read_text(selector) or None)


def first_success(surface, probes: List[Probe]) -> Optional[Tuple[str, str]]:
    """Try probes in order; (probe name, value) of the first non-empty read"""
    for probe in probes:
        value = probe.read(surface)
        if value:
            return probe.name, value
    return None


def price_probes(profile: BrokerProfile) -> List[Probe]:
    """The average-price chain, with the profile's own column label tried first"""
    own = [s for s in AVG_PRICE_SELECTORS if f'"{profile.avg_price_label}"' in s]
    rest = [s for s in AVG_PRICE_SELECTORS if s not in own]
    return [selector_probe(s) for s in own + rest]


# =============================================================================
# POSITIONS
# =============================================================================
def read_open_positions(surface) -> List[PositionSnapshot]:
    rows = surface.evaluate(POSITION_ROWS_SCRIPT) or []
    return [PositionSnapshot.from_row(row) for row in rows]


def find_position(surface, symbol: Optional[str] = None) -> Optional[PositionSnapshot]:
    """First open position belonging to the instrument (any instrument when symbol is None)"""
    for position in read_open_positions(surface):
        if symbol_matches(position.symbol, symbol) or symbol_matches(position.row_id, symbol):
            return position
    return None


def price_from_cells(cells: Dict[str, str]) -> Tuple[float, Optional[str]]:
    """Scan a row's cell map for anything that looks like a price"""
    for key in ROW_PRICE_KEYS:
        price = parse_price(cells.get(key))
        if price > 0:
            return price, key
    return 0.0, None


def read_entry_price(surface, profile: BrokerProfile) -> Tuple[float, Optional[str]]:
    """
    Resolve the average fill price.

    Returns:
        (price, source) - price is 0 when nothing readable was found
    """
    hit = first_success(surface, price_probes(profile))
    if hit:
        source, text = hit
        price = parse_price(text)
        if price > 0:
            return price, source

    cells = surface.evaluate(FIRST_ROW_CELLS_SCRIPT) or {}
    price, key = price_from_cells(cells)
    if price > 0:
        return price, f"row:{key}"
    return 0.0, None


def read_filled_quantity(surface) -> Optional[float]:
    return parse_number(surface.read_text(QTY_CELL))


# =============================================================================
# ORDER HISTORY / ACCOUNT SUMMARY
# =============================================================================
def read_market_order(surface) -> Optional[OrderHistoryEntry]:
    """Most recent order-history row of type Market"""
    for row in surface.evaluate(ORDER_HISTORY_SCRIPT) or []:
        if (row.get('type') or '').strip() == 'Market':
            return OrderHistoryEntry(
                order_type='Market',
                margin=row.get('margin'),
                placed_at=row.get('placedAt'),
                side=row.get('side'),
            )
    return None


def read_initial_margin(surface) -> Optional[float]:
    return parse_number(surface.evaluate(INITIAL_MARGIN_SCRIPT))


def read_balance(surface, field_name: str) -> Tuple[Optional[float], Optional[str]]:
    """Balance/equity figure from the account summary strip, and which field matched"""
    raw = surface.evaluate(BALANCE_SCRIPT, field_name) or {}
    return parse_number(raw.get('text')), raw.get('matched')


def read_side_price(surface, direction: Direction) -> float:
    """Live price rendered on the buy/sell button"""
    return parse_price(surface.evaluate(SIDE_PRICE_SCRIPT, side_selector(direction)))


def read_current_price(surface) -> Optional[float]:
    price = parse_price(surface.read_text(CURRENT_PRICE))
    return price or None


# =============================================================================
# TOASTS / DIALOGS
# =============================================================================
def read_rejection(surface) -> Optional[RejectionEvent]:
    raw = surface.evaluate(REJECTION_SCRIPT)
    if not raw:
        return None
    return RejectionEvent(
        header=raw.get('header', ''),
        order_info=raw.get('orderInfo', ''),
        reason=raw.get('reason') or 'Unknown rejection reason',
        symbol=raw.get('symbol', ''),
    )


def read_preview_fee(surface) -> Optional[float]:
    return parse_number(surface.evaluate(PREVIEW_FEE_SCRIPT))


def confirm_send_order(surface) -> Optional[str]:
    """Click the preview's Send Order button; its text, or None when absent"""
    return surface.evaluate(CONFIRM_SEND_SCRIPT)


def detect_disconnect(surface) -> Optional[str]:
    return surface.evaluate(DISCONNECT_SCRIPT)


def is_checked(surface, selector: str) -> Optional[bool]:
    return surface.evaluate(CHECKED_SCRIPT, selector)


def element_state(surface, selector: str) -> Optional[Dict]:
    return surface.evaluate(ELEMENT_STATE_SCRIPT, selector)
