"""
Execution Controller

Owns one browser session and runs the placement state machine:

    START -> ENSURE_CONNECTION -> GUARD_EXISTING_POSITION -> FILL_FORM
          -> SUBMIT -> AWAIT_OUTCOME -> SUCCESS | REJECTED | FAILED

A connectivity fault on the first attempt restarts the whole session and
re-runs the attempt once. If the submit click had already fired, the
retry only reconciles: the order may be routed and is never sent twice.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

from tv_executor import config
from tv_executor.config import BrokerProfile, Timings
from tv_executor.errors import (
    ExistingPositionError, ReconciliationIndeterminate, RejectionDetected, SessionError,
    is_connectivity_error
)
from tv_executor.execution_log import ExecutionLog
from tv_executor.health import HealthMonitor
from tv_executor.models import (
    ConnectionStatus, ExecutionDetails, ExecutionResult, Indeterminate, OrderRequest,
    PositionSnapshot, Rejected
)
from tv_executor.order_form import FormEstimate, OrderForm, Submission, format_quantity
from tv_executor.probes import find_position, read_current_price
from tv_executor.reconciliation import FillReconciler
from tv_executor.surface import take_debug_screenshot
from tv_executor.utils import build_chart_url, log_trade, utc_now, utc_now_iso

logger = logging.getLogger('tv_executor.controller')


class ExecutionStage(Enum):
    START = "start"
    ENSURE_CONNECTION = "ensure_connection"
    GUARD_EXISTING_POSITION = "guard_existing_position"
    FILL_FORM = "fill_form"
    SUBMIT = "submit"
    AWAIT_OUTCOME = "await_outcome"
    SUCCESS = "success"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class _Attempt:
    """Mutable progress of one logical placement, shared by its retry"""
    request: OrderRequest
    stage: ExecutionStage = ExecutionStage.START
    estimate: Optional[FormEstimate] = None
    submission: Optional[Submission] = None
    submitted_at: Optional[datetime] = None

    @property
    def submit_fired(self) -> bool:
        return self.submitted_at is not None


class ExecutionController:
    """
    Places market orders through one TradingView session.

    surface_factory returns a started automation surface; it is called on
    start and again on every restart. Placements are serialized by an
    internal lock.
    """

    def __init__(self, surface_factory: Callable[[], object], profile: BrokerProfile,
                 session_manager, health: HealthMonitor = None, timings: Timings = None,
                 chart_url: str = None, symbol: str = config.DEFAULT_SYMBOL,
                 screenshot_on_error: bool = config.SCREENSHOT_ON_ERROR):
        self.surface_factory = surface_factory
        self.profile = profile
        self.session_manager = session_manager
        self.timings = timings or Timings()
        self.health = health or HealthMonitor(session_manager, self.timings)
        self.chart_url = chart_url or config.TRADINGVIEW_CHART_URL
        self.home_symbol = symbol.upper()      # instrument the chart URL opens on
        self.symbol = self.home_symbol
        self.screenshot_on_error = screenshot_on_error

        self.surface = None
        self.restarts = 0
        self._ready = False
        self._lock = threading.RLock()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================
    def start(self):
        """Open the browser, establish the session and prime the order form."""
        with self._lock:
            logger.info("=" * 60)
            logger.info(f"STARTING EXECUTOR ({self.profile.display_name}, profile "
                        f"{self.session_manager.state.profile_id})")
            logger.info("=" * 60)

            self.surface = self.surface_factory()
            try:
                self.session_manager.establish(self.surface)
            except SessionError as e:
                logger.error(f"{e}. Continuing, manual login may be needed in the browser.")

            self.health.dismiss_promotion(self.surface)
            if self.symbol != self.home_symbol:
                logger.info(f"Restoring chart instrument {self.symbol}")
                self._load_chart(self.symbol)
            self._prime_order_form()
            self._ready = True
            logger.info(f"Executor ready: {self.session_manager.state.summary()}")

    def restart(self):
        with self._lock:
            self.restarts += 1
            logger.warning(f"Restarting browser session (restart #{self.restarts})...")
            self.close()
            self.start()

    def close(self):
        with self._lock:
            self._ready = False
            if self.surface is not None:
                self.surface.close()
            self.surface = None

    @property
    def is_ready(self) -> bool:
        return self._ready and self.surface is not None and self.surface.is_open

    def status(self) -> Dict:
        return {
            'ready': self._ready,
            'mode': self.profile.key,
            'symbol': self.symbol,
            'restarts': self.restarts,
            'session': self.session_manager.state.summary(),
        }

    def _prime_order_form(self):
        """Best effort: leave the order ticket open for the next placement."""
        OrderForm(self.surface, self.profile, self.timings, ExecutionLog()).ensure_open()

    # =========================================================================
    # CONNECTION
    # =========================================================================
    def ensure_connection(self, log: ExecutionLog):
        log.section('connection')
        status = self.health.check(self.surface)
        if status is ConnectionStatus.RESTART_NEEDED:
            log.warn("Automation surface unusable, restarting session...")
            self.restart()
        elif status is ConnectionStatus.RECOVERED:
            log.log("Recovered page reference")

        for kind in self.health.reconcile_interstitials(self.surface):
            log.warn(f"Cleared disconnect dialog: {kind}")
        if self.health.dismiss_promotion(self.surface):
            log.log("Dismissed promotion modal")
        log.success("Connection verified")

    # =========================================================================
    # PLACEMENT
    # =========================================================================
    def place_market_order(self, request: OrderRequest) -> ExecutionResult:
        with self._lock:
            log = ExecutionLog(clock=self.timings.clock)
            size = "AUTO" if request.is_auto_size else format_quantity(request.quantity)
            log.header(f"MARKET ORDER: {request.direction.value} {size} "
                       f"{request.symbol or self.symbol} (TP: {request.take_profit}, "
                       f"SL: {request.stop_loss})")
            result = self._run(_Attempt(request), log, is_retry=False)
            logger.info(f"Placement finished in {log.elapsed_seconds():.1f}s: "
                        f"{'SUCCESS' if result.success else result.error}")
            return result

    def _run(self, attempt: _Attempt, log: ExecutionLog, is_retry: bool) -> ExecutionResult:
        try:
            details = self._execute(attempt, log)
        except Exception as e:
            if is_connectivity_error(e) and not is_retry:
                log.section('error')
                log.warn(f"Connectivity lost during {attempt.stage.value}: {e}")
                log.log("Restarting session and retrying once...")
                try:
                    self.restart()
                except Exception as restart_error:
                    return self._fail(attempt, log, restart_error)
                return self._run(attempt, log, is_retry=True)
            return self._fail(attempt, log, e)

        return ExecutionResult(success=True, execution_logs=log.lines(), execution_details=details)

    def _execute(self, attempt: _Attempt, log: ExecutionLog) -> ExecutionDetails:
        request = attempt.request
        t = self.timings

        attempt.stage = ExecutionStage.ENSURE_CONNECTION
        self.ensure_connection(log)

        # The ticket always trades the charted instrument
        symbol = request.symbol or self.symbol
        if symbol != self.symbol:
            log.log(f"Switching chart from {self.symbol} to {symbol}")
            self._load_chart(symbol)
        form = OrderForm(self.surface, self.profile, t, log)

        if attempt.submit_fired:
            log.warn("Submit already fired before the fault; reconciling without re-submitting")
        else:
            attempt.stage = ExecutionStage.GUARD_EXISTING_POSITION
            form.guard_no_position(symbol)

            attempt.stage = ExecutionStage.FILL_FORM
            attempt.estimate = form.fill(request)

            attempt.stage = ExecutionStage.SUBMIT

            def mark_submitted():
                attempt.submitted_at = utc_now()

            attempt.submission = form.submit(before_click=mark_submitted)

        attempt.stage = ExecutionStage.AWAIT_OUTCOME
        estimate = attempt.estimate
        reconciler = FillReconciler(self.surface, self.profile, t, log)
        outcome = reconciler.await_outcome(
            symbol,
            attempt.submitted_at,
            estimated_quantity=estimate.quantity if estimate else 0.0,
            estimated_margin=estimate.margin if estimate else 0.0,
            fee=attempt.submission.fee if attempt.submission else 0.0,
        )

        if isinstance(outcome, Rejected):
            attempt.stage = ExecutionStage.REJECTED
            raise RejectionDetected(outcome.event)
        if isinstance(outcome, Indeterminate):
            raise ReconciliationIndeterminate()

        attempt.stage = ExecutionStage.SUCCESS
        details = ExecutionDetails(
            symbol=symbol,
            side=request.direction.value,
            entry_price=outcome.entry_price,
            quantity=outcome.quantity,
            margin_used=outcome.margin,
            timestamp=utc_now_iso(),
            fee=outcome.fee if self.profile.has_order_preview else None,
            take_profit=request.take_profit,
            stop_loss=request.stop_loss,
        )

        log.section('result')
        log.success(f"ORDER FILLED: {details.side} {format_quantity(details.quantity)} "
                    f"@ ${details.entry_price:,.2f} (margin ${details.margin_used:,.2f})")
        if outcome.low_confidence:
            log.warn("Entry price could not be read; verify the position manually")
        log_trade(details.side, details.symbol, details.quantity, details.entry_price,
                  details.margin_used, note=self.profile.key)
        return details

    def _fail(self, attempt: _Attempt, log: ExecutionLog, error: Exception) -> ExecutionResult:
        if attempt.stage is not ExecutionStage.REJECTED:
            attempt.stage = ExecutionStage.FAILED
        log.section('error')
        log.error(str(error))

        if self.screenshot_on_error and not isinstance(error, ExistingPositionError):
            path = take_debug_screenshot(self.surface, "order_error")
            if path:
                log.log(f"Screenshot saved: {path}")
        return ExecutionResult.failed(str(error), log.lines())

    # =========================================================================
    # INSTRUMENT VIEWS
    # =========================================================================
    def has_open_position(self, symbol: str = None) -> Optional[PositionSnapshot]:
        with self._lock:
            log = ExecutionLog()
            OrderForm(self.surface, self.profile, self.timings, log).show_positions()
            return find_position(self.surface, symbol)

    def navigate_to_symbol(self, symbol: str) -> str:
        """Load the chart for another instrument; returns the chart URL."""
        with self._lock:
            url = self._load_chart(symbol)
            self._prime_order_form()
            return url

    def _load_chart(self, symbol: str) -> str:
        url = build_chart_url(self.chart_url, symbol)
        self.session_manager.navigate_to_chart(self.surface, url)
        self.health.dismiss_promotion(self.surface)
        self.symbol = symbol.upper()
        return url

    def get_current_price(self) -> Optional[float]:
        with self._lock:
            return read_current_price(self.surface)

    def screenshot(self, name: str = "screenshot") -> str:
        with self._lock:
            return take_debug_screenshot(self.surface, name)
