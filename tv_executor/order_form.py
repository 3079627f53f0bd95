"""
Order Placement Protocol

Fills out and submits TradingView's order ticket one control at a time:

1. Guard: no open position on the instrument
2. Open the order ticket
3. Resolve the size (manual, or auto-size from balance)
4. Direction (buy/sell) - always the first control touched
5. Order type = Market
6. Quantity or margin
7. Take profit
8. Stop loss
9. Submit (+ preview confirmation on venues that show one)

Direction, order type and submit are critical: if their control is missing
the placement ends. Every other missing control is logged and skipped, and
reconciliation decides whether an order actually landed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from tv_executor.config import SIZING_CONTRACTS, SIZING_MARGIN, BrokerProfile, Timings
from tv_executor.errors import (
    ElementNotFound, ExecutorError, ExistingPositionError, FormInteractionWarning
)
from tv_executor.execution_log import ExecutionLog
from tv_executor.models import Direction, OrderRequest
from tv_executor.probes import (
    MARGIN_FIELD, MARKET_TYPE, ORDER_FORM, POSITIONS_TAB, QUANTITY_FIELD, STOP_LOSS_CHECKBOX,
    STOP_LOSS_FIELD, SUBMIT_BUTTON, TAKE_PROFIT_CHECKBOX, TAKE_PROFIT_FIELD, TRADE_PANEL_BUTTON,
    confirm_send_order, element_state, find_position, is_checked, read_balance,
    read_preview_fee, read_side_price, side_selector
)
from tv_executor.sizing import SizingPlan, plan_auto, plan_manual
from tv_executor.utils import parse_number, utc_now

logger = logging.getLogger('tv_executor.order_form')


def format_quantity(quantity: float) -> str:
    quantity = float(quantity)
    return str(int(quantity)) if quantity.is_integer() else str(quantity)


@dataclass
class FormEstimate:
    """What the form accepted, before any fill is observed"""
    plan: SizingPlan
    quantity: float
    margin: float
    take_profit_enabled: bool = False


@dataclass
class Submission:
    submitted_at: datetime
    fee: float = 0.0


class OrderForm:
    """Drives the order ticket for one placement attempt"""

    def __init__(self, surface, profile: BrokerProfile, timings: Timings, log: ExecutionLog):
        self.surface = surface
        self.profile = profile
        self.timings = timings
        self.log = log

    # =========================================================================
    # STEP WRAPPER
    # =========================================================================
    def _tolerant(self, name: str, fn: Callable, default=None):
        """Run a non-critical step; a missing control is logged, not fatal."""
        try:
            return fn()
        except (ElementNotFound, FormInteractionWarning) as e:
            self.log.warn(f"[{name}] skipped: {e}")
            return default

    def _settle(self, seconds: float):
        self.timings.sleep(seconds)

    # =========================================================================
    # GUARD / OPEN
    # =========================================================================
    def show_positions(self):
        if self.surface.locate(POSITIONS_TAB):
            self.surface.click(POSITIONS_TAB)
            self._settle(self.timings.tab_settle)

    def guard_no_position(self, symbol: Optional[str] = None):
        """
        Raises:
            ExistingPositionError: an open position exists on the instrument
        """
        self.log.section('position_check')
        self.log.log("Checking for existing open positions...")
        self.show_positions()

        position = find_position(self.surface, symbol)
        if position is None:
            self.log.success("No existing positions detected, proceeding with order")
            return

        self.log.warn("EXISTING POSITION DETECTED!")
        self.log.log(f"[POSITION] Row ID: {position.row_id}")
        self.log.log(f"[POSITION] {position.side} {position.qty} {position.symbol} "
                     f"@ {position.avg_price} (P&L: {position.pnl})")
        self.log.error("ORDER BLOCKED: Cannot place new order while position is open")
        raise ExistingPositionError(position)

    def ensure_open(self) -> bool:
        """Open the order ticket if it is not already showing."""
        self.log.section('order_form')
        if self.surface.locate(ORDER_FORM):
            self.log.log("Order form already visible")
            return True

        if self.surface.locate(TRADE_PANEL_BUTTON):
            self.surface.click(TRADE_PANEL_BUTTON)
            self._settle(self.timings.form_settle)
            self.log.log("Clicked Trade button")
        else:
            self.log.warn("Trade button not found")

        visible = self.surface.locate(ORDER_FORM) is not None
        self.log.dom(f"Order form visible after: {'YES' if visible else 'NO'}")
        return visible

    # =========================================================================
    # SIZING
    # =========================================================================
    def resolve_sizing(self, request: OrderRequest) -> SizingPlan:
        """Read-only: figure out what to type before touching any control."""
        if not request.is_auto_size:
            return plan_manual(request.quantity)

        field_name = self.profile.balance_field
        self.log.log(f"Auto-sizing position from {field_name}...")
        balance, matched = read_balance(self.surface, field_name)
        self.log.dom(f"{field_name} field matched: {matched}, parsed: {balance}")

        price = None
        if self.profile.sizing_mode == SIZING_CONTRACTS:
            price = read_side_price(self.surface, request.direction)
            self.log.dom(f"Price from side button: {price}")
            if not price:
                self.log.warn("Could not read price, defaulting to 1 contract")

        plan = plan_auto(self.profile, balance, price)
        if plan.mode == SIZING_MARGIN:
            if plan.capped:
                self.log.warn(f"Margin capped at ${self.profile.max_margin:,.2f}")
            if plan.margin <= 0:
                raise ExecutorError(f"Auto-size found no usable {field_name} (read {balance})")
            self.log.log(f"Using margin: ${plan.margin:,.2f}")
        else:
            if plan.quantity <= 0:
                raise ExecutorError(f"Auto-size: {field_name} {balance} is below one contract")
            self.log.log(f"Max whole contracts: {plan.quantity} (margin ${plan.margin:,.2f})")
        return plan

    # =========================================================================
    # CRITICAL CONTROLS
    # =========================================================================
    def select_direction(self, direction: Direction):
        selector = side_selector(direction)
        self.log.section('direction', direction.value)
        self.log.dom(f"Selector: {selector}")
        self.surface.wait_for(selector, timeout=self.timings.element_timeout)
        state = element_state(self.surface, selector) or {}
        self.log.dom(f"aria-checked before click: {state.get('ariaChecked')}")
        self.surface.click(selector)
        self._settle(self.timings.click_settle)
        self.log.success(f"{direction.ui_side.upper()} side selected")

    def select_market(self):
        self.log.section('order_type')
        self.surface.wait_for(MARKET_TYPE, timeout=self.timings.element_timeout)
        state = element_state(self.surface, MARKET_TYPE) or {}
        self.log.dom(f"aria-selected before: {state.get('ariaSelected')}")
        self.surface.click(MARKET_TYPE)
        self._settle(self.timings.click_settle)
        self.log.success("Market order type selected")

    # =========================================================================
    # NON-CRITICAL CONTROLS
    # =========================================================================
    def _type_and_read_back(self, selector: str, text: str, label: str) -> Optional[str]:
        if not self.surface.locate(selector):
            raise FormInteractionWarning(f"{label} input NOT found ({selector})")
        self.surface.type(selector, text, delay_ms=self.timings.type_delay_ms)
        self._settle(self.timings.select_settle)
        read_back = self.surface.input_value(selector)
        self.log.dom(f"{label} read-back value: \"{read_back}\"")
        return read_back

    def enter_quantity(self, quantity: float) -> float:
        self.log.section('quantity', f"{format_quantity(quantity)} contracts")
        read_back = self._type_and_read_back(QUANTITY_FIELD, format_quantity(quantity), "Quantity")
        self._settle(self.timings.click_settle)
        return parse_number(read_back) or quantity

    def enter_margin(self, margin: float) -> Optional[float]:
        """Type the margin figure; the terminal derives the quantity."""
        self.log.section('quantity', f"${margin:,.2f} margin")
        self._type_and_read_back(MARGIN_FIELD, f"{margin:.2f}", "Margin")
        self._settle(self.timings.click_settle)
        quantity = parse_number(self.surface.input_value(QUANTITY_FIELD))
        self.log.log(f"Auto-calculated quantity: {quantity} contracts")
        return quantity

    def _enable(self, checkbox: str, label: str):
        checked = is_checked(self.surface, checkbox)
        if checked is None:
            raise FormInteractionWarning(f"{label} checkbox NOT found")
        self.log.dom(f"{label} checkbox checked before: {checked}")
        if not checked:
            self.surface.click(checkbox)
            self._settle(self.timings.checkbox_settle)
        return True

    def set_take_profit(self, price: float) -> bool:
        self.log.section('take_profit', f"${price:,.2f}")
        enabled = self._tolerant('take_profit', lambda: self._enable(TAKE_PROFIT_CHECKBOX, "TP"),
                                 default=False)
        self._tolerant('take_profit', lambda: self._type_and_read_back(
            TAKE_PROFIT_FIELD, f"{price:.2f}", "TP"))
        self._settle(self.timings.checkbox_settle)
        self.log.success("Take profit set")
        return enabled

    def set_stop_loss(self, price: float, take_profit_enabled: bool):
        self.log.section('stop_loss', f"${price:,.2f}")
        if self.profile.stop_loss_linked_to_take_profit and take_profit_enabled:
            self.log.log("SL auto-enabled by TP checkbox, skipping SL checkbox click")
        else:
            self._tolerant('stop_loss', lambda: self._enable(STOP_LOSS_CHECKBOX, "SL"))
        self._tolerant('stop_loss', lambda: self._type_and_read_back(
            STOP_LOSS_FIELD, f"{price:.2f}", "SL"))
        self._settle(self.timings.checkbox_settle)
        self.log.success("Stop loss set")

    # =========================================================================
    # PROTOCOL
    # =========================================================================
    def fill(self, request: OrderRequest) -> FormEstimate:
        """Steps 2-8: everything up to (not including) the submit click."""
        self.ensure_open()
        plan = self.resolve_sizing(request)

        self.select_direction(request.direction)
        self.select_market()

        quantity = plan.quantity
        if plan.mode == SIZING_MARGIN:
            derived = self._tolerant('quantity', lambda: self.enter_margin(plan.margin))
            quantity = derived or 0.0
        else:
            quantity = self._tolerant('quantity', lambda: self.enter_quantity(plan.quantity),
                                      default=plan.quantity)

        tp_enabled = False
        if request.take_profit:
            tp_enabled = self.set_take_profit(request.take_profit)
        if request.stop_loss:
            self.set_stop_loss(request.stop_loss, tp_enabled)

        return FormEstimate(plan=plan, quantity=quantity, margin=plan.margin,
                            take_profit_enabled=tp_enabled)

    def submit(self, before_click: Callable[[], None] = None) -> Submission:
        """
        Click Place Order, then confirm the preview where the venue shows one.

        before_click runs immediately before the click; from then on the order
        may be routed.
        """
        t = self.timings
        self.log.section('place_order')
        self.surface.wait_for(SUBMIT_BUTTON, timeout=t.element_timeout)
        state = element_state(self.surface, SUBMIT_BUTTON) or {}
        self.log.dom(f"Place button text: \"{state.get('text')}\", disabled: {state.get('disabled')}")
        self._settle(t.form_settle)

        if before_click:
            before_click()
        self.surface.click(SUBMIT_BUTTON)
        submission = Submission(submitted_at=utc_now())
        self.log.success("Place Order button clicked")

        if self.profile.has_order_preview:
            self.log.section('confirmation')
            self._settle(t.preview_settle)
            fee = read_preview_fee(self.surface)
            if fee is None:
                self.log.warn("Could not find Fee in order preview")
            else:
                submission.fee = fee
                self.log.log(f"Fee from preview: ${fee}")

            clicked = confirm_send_order(self.surface)
            if clicked:
                self.log.success(f"Send Order clicked (button text: \"{clicked}\")")
            else:
                self.log.warn("Could not find Send Order button")
            self._settle(t.confirm_settle)

        self._settle(t.post_submit_settle)
        return submission
