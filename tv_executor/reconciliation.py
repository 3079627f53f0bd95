"""
Fill Reconciliation Engine

After the submit click there is no typed response, only a UI that updates
when it feels like it. This module polls the terminal for a bounded window
and works out what happened:

    Rejected       - a rejection toast appeared (always wins, even over a
                     position row, which may be stale)
    Filled         - price/quantity/margin resolved from the positions view,
                     order history and account summary
    Indeterminate  - no entry price AND no recent Market order in history;
                     the page is reloaded to clear stuck UI state
"""

import logging
from datetime import datetime
from typing import Optional

from tv_executor.config import BrokerProfile, Timings
from tv_executor.execution_log import ExecutionLog
from tv_executor.models import Filled, Indeterminate, OrderHistoryEntry, Outcome, Rejected
from tv_executor.probes import (
    HISTORY_TAB, POSITIONS_TAB, SUMMARY_TAB, find_position, price_from_cells,
    read_entry_price, read_filled_quantity, read_initial_margin, read_market_order,
    read_rejection
)
from tv_executor.utils import parse_number, parse_ui_timestamp, poll_until

logger = logging.getLogger('tv_executor.reconciliation')


class FillReconciler:

    def __init__(self, surface, profile: BrokerProfile, timings: Timings, log: ExecutionLog):
        self.surface = surface
        self.profile = profile
        self.timings = timings
        self.log = log

    def _open_tab(self, selector: str, settle: float) -> bool:
        if not self.surface.locate(selector):
            self.log.warn(f"Could not find tab {selector}")
            return False
        self.surface.click(selector)
        self.timings.sleep(settle)
        return True

    def is_recent(self, entry: Optional[OrderHistoryEntry], submitted_at: datetime) -> bool:
        """Was this history entry placed within the recency window of our submit?"""
        if entry is None or not entry.placed_at:
            return False
        placed = parse_ui_timestamp(entry.placed_at)
        if placed is None:
            self.log.warn(f"Could not parse Market order time: \"{entry.placed_at}\"")
            return False
        age = abs((placed - submitted_at).total_seconds())
        self.log.dom(f"Market order age relative to submit: {age:.1f}s")
        return age <= self.timings.recency_window

    def await_outcome(self, symbol: Optional[str], submitted_at: datetime,
                      estimated_quantity: float = 0.0, estimated_margin: float = 0.0,
                      fee: float = 0.0, timeout: float = None,
                      poll_interval: float = None) -> Outcome:
        """
        Poll until the window closes or a rejection shows, then reconcile.

        The first position row seen with a readable price is frozen, so
        later ticks cannot change the reported fill.
        """
        t = self.timings
        timeout = t.fill_timeout if timeout is None else timeout
        poll_interval = t.poll_interval if poll_interval is None else poll_interval
        surface = self.surface
        snapshot = []

        self.log.section('confirmation')
        self.log.log(f"Waiting for order to fill ({timeout:.0f}s, watching for rejections)...")

        def tick():
            rejection = read_rejection(surface)
            if rejection:
                return rejection
            if not snapshot:
                position = find_position(surface, symbol)
                if position and price_from_cells(position.cells)[0] > 0:
                    snapshot.append(position)
                    self.log.dom(f"Position seen: {position.side} {position.qty} @ {position.avg_price}")
            return None

        polled = poll_until(tick, interval=poll_interval, timeout=timeout,
                            sleep=t.sleep, clock=t.clock)

        if not polled.timed_out:
            event = polled.value
            self.log.warn("ORDER REJECTION DETECTED!")
            self.log.log(f"[REJECTION] Header: {event.header}")
            self.log.log(f"[REJECTION] Order: {event.order_info}")
            self.log.log(f"[REJECTION] Reason: {event.reason}")
            self.log.log(f"[REJECTION] Symbol: {event.symbol}")
            return Rejected(event)

        self.log.section('result')
        self.log.log(f"Wait complete after {polled.attempts} polls, reading results...")
        self._open_tab(POSITIONS_TAB, t.tab_settle)

        # Entry price and quantity
        if snapshot:
            position = snapshot[0]
            entry_price, key = price_from_cells(position.cells)
            self.log.log(f"Average fill price from position row ({key}): ${entry_price}")
            quantity = parse_number(position.qty)
        else:
            entry_price, source = read_entry_price(surface, self.profile)
            if entry_price > 0:
                self.log.log(f"Average fill price via {source}: ${entry_price}")
            else:
                self.log.warn("FAILED to read avg fill price from ANY selector")
            quantity = read_filled_quantity(surface)

        if quantity is None:
            self.log.warn("Could not read actual qty from positions table, using estimate")
            quantity = estimated_quantity

        # Margin: order history first, account summary where history has none
        self._open_tab(HISTORY_TAB, t.history_settle)
        market_order = read_market_order(surface)
        self.log.dom(f"Market row found: {market_order is not None}")

        margin = parse_number(market_order.margin) if market_order and market_order.margin else None
        if margin is not None:
            self.log.log(f"Actual margin used: ${margin:,.2f}")
        elif self.profile.margin_from_summary:
            if self._open_tab(SUMMARY_TAB, t.tab_settle):
                margin = read_initial_margin(surface)
                if margin is not None:
                    self.log.log(f"Initial margin from Account Summary: ${margin:,.2f}")
                else:
                    self.log.warn("Could not read Initial margin from Account Summary")
        if margin is None:
            self.log.warn("Could not read actual margin, using estimate")
            margin = estimated_margin

        recent = self.is_recent(market_order, submitted_at)
        self._open_tab(POSITIONS_TAB, t.click_settle)

        if entry_price == 0 and not recent:
            self.log.error("ORDER EXECUTION FAILED: no position and no recent Market order")
            self.log.log(f"Refreshing page in {t.reload_grace:.0f}s to clear UI state...")
            t.sleep(t.reload_grace)
            surface.reload()
            t.sleep(t.reload_settle)
            self.log.log("Page refreshed")
            return Indeterminate()

        if entry_price == 0:
            self.log.warn("Entry price is 0 but a recent Market order was found; "
                          "reporting the fill with low confidence")

        return Filled(entry_price=entry_price, quantity=quantity, margin=margin,
                      fee=fee, low_confidence=entry_price == 0)
