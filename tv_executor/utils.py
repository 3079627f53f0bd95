"""
Utility Functions for the TradingView Executor
"""

import re
import time
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional
from urllib.parse import quote

import pytz

from tv_executor import config

logger = logging.getLogger('tv_executor.utils')


def parse_number(text) -> Optional[float]:
    """
    Parse a number out of UI text.
    Examples: "3,456.78" -> 3456.78, "$1,000 USD" -> 1000.0, "-0.5" -> -0.5
    """
    if text is None:
        return None
    try:
        cleaned = str(text).replace(',', '').replace(' ', '').replace('−', '-')
        match = re.search(r'-?\d+(?:\.\d+)?', cleaned)
        if match:
            return float(match.group())
    except (ValueError, AttributeError):
        pass
    return None


def parse_price(text) -> float:
    """Parse a price cell; anything unreadable or non-positive is 0."""
    value = parse_number(text)
    if value is None or value <= 0:
        return 0.0
    return value


def utc_now() -> datetime:
    return datetime.now(pytz.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat().replace('+00:00', 'Z')


def parse_ui_timestamp(text: str, tz_name: str = None) -> Optional[datetime]:
    """
    Parse an order-history timestamp such as "2026-01-08 19:41:53" into an
    aware UTC datetime. The terminal renders these in ORDER_HISTORY_TIMEZONE.
    """
    if not text:
        return None
    tz = pytz.timezone(tz_name or config.ORDER_HISTORY_TIMEZONE)
    for fmt in ('%Y-%m-%d %H:%M:%S', '%Y-%m-%dT%H:%M:%S', '%Y-%m-%d %H:%M'):
        try:
            naive = datetime.strptime(text.strip(), fmt)
        except ValueError:
            continue
        return tz.localize(naive).astimezone(pytz.utc)
    return None


# =============================================================================
# CHART URLS
# =============================================================================
TV_SYMBOL_MAP = {
    "BTCUSDT": "MEXC:BTCUSDT.P",
    "ETHUSDT": "MEXC:ETHUSDT.P",
    "SOLUSDT": "MEXC:SOLUSDT.P",
    "XRPUSDT": "MEXC:XRPUSDT.P",
    "DOGEUSDT": "MEXC:DOGEUSDT.P",
}


def build_chart_url(base_url: str, symbol: str) -> str:
    """
    Build a chart URL for a symbol.

    TradingView uses EXCHANGE:SYMBOL. Replaces an existing symbol= parameter
    or appends one.
    """
    tv_symbol = TV_SYMBOL_MAP.get(symbol.upper(), f"MEXC:{symbol.upper()}.P")
    encoded = quote(tv_symbol, safe='')

    if 'symbol=' in base_url:
        return re.sub(r'symbol=[^&]+', f'symbol={encoded}', base_url)

    separator = '&' if '?' in base_url else '?'
    return f"{base_url}{separator}symbol={encoded}"


def symbol_matches(row_text: str, symbol: Optional[str]) -> bool:
    """
    Does a position row (e.g. "BYBIT:ETHUSDT.P") belong to the instrument?
    Without a requested symbol every row counts.
    """
    if not symbol:
        return True
    if not row_text:
        return False
    return symbol.upper() in row_text.upper()


# =============================================================================
# BOUNDED POLLING
# =============================================================================
@dataclass
class PollResult:
    value: Any
    timed_out: bool
    attempts: int


def poll_until(predicate: Callable[[], Any], interval: float, timeout: Optional[float] = None,
               max_attempts: Optional[int] = None,
               sleep: Callable[[float], None] = None,
               clock: Callable[[], float] = None) -> PollResult:
    """
    Call `predicate` until it returns something truthy, the timeout elapses
    or `max_attempts` calls were made.

    The predicate always runs at least once. Exceptions from the predicate
    propagate.

    Returns:
        PollResult with the last value, whether the window was exhausted,
        and how many calls were made
    """
    if timeout is None and max_attempts is None:
        raise ValueError("poll_until needs a timeout or max_attempts")

    sleep = sleep or time.sleep
    clock = clock or time.monotonic

    start = clock()
    attempts = 0

    while True:
        attempts += 1
        value = predicate()
        if value:
            return PollResult(value=value, timed_out=False, attempts=attempts)

        if max_attempts is not None and attempts >= max_attempts:
            break
        if timeout is not None and clock() - start >= timeout:
            break
        sleep(interval)

    return PollResult(value=value, timed_out=True, attempts=attempts)


# =============================================================================
# LOGGING
# =============================================================================
def setup_logging(log_level='INFO', log_file=None):
    """Configure logging for the executor"""
    log_dir = config.LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_file or str(log_dir / 'executor.log')

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )

    # Also create a trade-specific logger
    trade_logger = logging.getLogger('trades')
    if not trade_logger.handlers:
        trade_handler = logging.FileHandler(str(log_dir / 'trades.log'))
        trade_handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))
        trade_logger.addHandler(trade_handler)

    return logging.getLogger('tv_executor')


def log_trade(side, symbol, quantity, price, margin=0.0, note=''):
    """Log a completed placement to the trades log"""
    trade_logger = logging.getLogger('trades')
    trade_logger.info(f"{side} | {symbol} | {quantity} | ${price:,.2f} | margin ${margin:,.2f} | {note}")
