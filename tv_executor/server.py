"""
TradingView Executor - FastAPI front end

Run with: tv-executor --serve   (or python -m tv_executor.main)

Endpoints:
    GET  /health              - Service + session state
    POST /trade               - Place a market order {symbol, direction, size, stopLoss?, takeProfit?}
    POST /execute-consensus   - Place a consensus trade setup (?size=MAX|<n>)
    GET  /screenshot          - Screenshot of the terminal
    POST /navigate            - Switch the chart to another symbol
    GET  /position            - Open position on the current chart, if any
    POST /operator/continue   - Stop waiting on a captcha
    GET  /balance             - Kraken Futures accounts
    GET  /positions           - Kraken Futures open positions
    POST /kraken/trade        - Kraken Futures order (+ optional SL/TP)
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, Union

import requests
from fastapi import FastAPI, Query
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from tv_executor import config
from tv_executor.controller import ExecutionController
from tv_executor.kraken_client import (
    KrakenAPIError, KrakenFuturesClient, map_symbol, max_order_size
)
from tv_executor.models import Direction, ExecutionResult, OrderRequest
from tv_executor.utils import utc_now_iso

logger = logging.getLogger('tv_executor.server')

NO_TRADE_VERDICTS = ('NO_TRADE', 'UNCERTAINTY')


# ============================================================================
# Request bodies
# ============================================================================
class TradeRequest(BaseModel):
    direction: Direction
    symbol: Optional[str] = None
    size: Optional[float] = None          # None or negative: auto-size from balance
    stopLoss: Optional[float] = None
    takeProfit: Optional[float] = None


class TradeSetup(BaseModel):
    direction: Direction
    entryPrice: Optional[float] = None
    stopLoss: Optional[float] = None
    takeProfit1: Optional[float] = None


class ConsensusRequest(BaseModel):
    symbol: Optional[str] = None
    verdict: Optional[str] = None
    tradeSetup: Optional[TradeSetup] = None
    confidence: Optional[float] = None


class NavigateRequest(BaseModel):
    symbol: str


class KrakenTradeRequest(BaseModel):
    symbol: str
    direction: Direction
    size: Union[float, str] = 0.01        # a number, or "MAX"
    orderType: str = 'mkt'
    limitPrice: Optional[float] = None
    stopLoss: Optional[float] = None
    takeProfit: Optional[float] = None


# ============================================================================
# Service
# ============================================================================
class ExecutorService:
    """
    Owns the one ExecutionController.

    Every browser call runs on a single worker thread, so placements are
    serialized and Playwright is only ever driven from one thread. The
    first call schedules controller.start(); later calls queue behind that
    same "ready" future instead of starting a second session.
    """

    def __init__(self, controller: ExecutionController, kraken: KrakenFuturesClient = None,
                 request_timeout: float = config.REQUEST_TIMEOUT_SECONDS):
        self.controller = controller
        self.kraken = kraken
        self.request_timeout = request_timeout
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix='executor')
        self._ready: Optional[Future] = None
        self._ready_lock = threading.Lock()

    def ensure_ready(self) -> Future:
        with self._ready_lock:
            failed = self._ready is not None and self._ready.done() and self._ready.exception()
            if self._ready is None or failed:
                if failed:
                    logger.warning(f"Previous start failed ({self._ready.exception()}), retrying start")
                self._ready = self._worker.submit(self.controller.start)
            return self._ready

    def call(self, fn: Callable, *args):
        """
        Run fn on the worker once the controller is started.

        Raises:
            concurrent.futures.TimeoutError: no answer within request_timeout
                (the worker still finishes the call)
        """
        ready = self.ensure_ready()

        def job():
            ready.result()
            return fn(*args)

        return self._worker.submit(job).result(timeout=self.request_timeout)

    def place(self, request: OrderRequest) -> ExecutionResult:
        return self.call(self.controller.place_market_order, request)

    def signal_operator_continue(self):
        self.controller.session_manager.signal_operator_continue()

    def shutdown(self):
        logger.info("Shutting down executor service...")
        self._worker.submit(self.controller.close)
        self._worker.shutdown(wait=True)


# ============================================================================
# Helpers
# ============================================================================
def _failure(status_code: int, error: str, **extra) -> JSONResponse:
    content = {'success': False, 'error': error, 'timestamp': utc_now_iso()}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def _placement_response(service: ExecutorService, request: OrderRequest, **extra):
    try:
        result = service.place(request)
    except FutureTimeoutError:
        logger.error(f"Placement exceeded {service.request_timeout:.0f}s")
        return _failure(504, f"Execution timed out after {service.request_timeout:.0f}s")
    except Exception as e:
        logger.error(f"Placement could not run: {e}")
        return _failure(500, str(e))

    body = result.to_dict()
    body.update(extra)
    body['timestamp'] = utc_now_iso()
    return body


def _kraken_error(e: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content={'error': True, 'message': str(e)})


def _kraken_not_configured() -> JSONResponse:
    return JSONResponse(status_code=503, content={
        'error': True,
        'message': "Kraken API credentials not configured (KRAKEN_DEMO_API_KEY / KRAKEN_DEMO_API_SECRET)",
    })


# ============================================================================
# App
# ============================================================================
def create_app(service: ExecutorService) -> FastAPI:
    app = FastAPI(
        title="TradingView Executor",
        description="Places market orders through the TradingView trading terminal",
        version="1.0.0",
    )
    controller = service.controller

    @app.get("/health")
    def health():
        return {
            'status': 'ok',
            'service': 'tradingview-executor',
            'environment': controller.profile.key,
            'executor': controller.status(),
            'timestamp': utc_now_iso(),
        }

    @app.post("/trade")
    def trade(body: TradeRequest):
        quantity = config.AUTO_SIZE_QUANTITY if body.size is None else body.size
        try:
            request = OrderRequest(direction=body.direction, quantity=quantity, symbol=body.symbol,
                                   stop_loss=body.stopLoss, take_profit=body.takeProfit)
        except ValueError as e:
            return _failure(400, str(e))

        logger.info(f"Trade request: {request}")
        return _placement_response(service, request)

    @app.post("/execute-consensus")
    def execute_consensus(body: ConsensusRequest, size: str = Query(default="MAX")):
        if not body.verdict or body.verdict in NO_TRADE_VERDICTS:
            return {
                'success': False,
                'message': f"No trade to execute (verdict: {body.verdict})",
                'timestamp': utc_now_iso(),
            }
        if body.tradeSetup is None:
            return _failure(400, "Missing tradeSetup in request")

        setup = body.tradeSetup
        if size.upper() == "MAX":
            quantity = config.AUTO_SIZE_QUANTITY
        else:
            try:
                quantity = float(size)
            except ValueError:
                return _failure(400, f"Invalid size: {size}")
            if quantity <= 0:
                return _failure(400, f"Invalid size: {size}")

        request = OrderRequest(direction=setup.direction, quantity=quantity, symbol=body.symbol,
                               stop_loss=setup.stopLoss, take_profit=setup.takeProfit1)
        logger.info(f"Consensus trade: verdict={body.verdict}, confidence={body.confidence}, "
                    f"entry={setup.entryPrice} (info only), {request}")
        consensus = {
            'verdict': body.verdict,
            'confidence': body.confidence,
            'entry': setup.entryPrice,
            'stopLoss': setup.stopLoss,
            'takeProfit': setup.takeProfit1,
        }
        return _placement_response(service, request, consensus=consensus)

    @app.get("/screenshot")
    def screenshot():
        try:
            path = service.call(controller.screenshot, "api_screenshot")
        except FutureTimeoutError:
            return _failure(504, "Screenshot timed out")
        except Exception as e:
            return _failure(500, str(e))
        if not path:
            return _failure(500, "Screenshot failed")
        return FileResponse(path, media_type="image/png")

    @app.post("/navigate")
    def navigate(body: NavigateRequest):
        try:
            url = service.call(controller.navigate_to_symbol, body.symbol)
        except FutureTimeoutError:
            return _failure(504, "Navigation timed out")
        except Exception as e:
            return _failure(500, str(e))
        return {'success': True, 'symbol': body.symbol.upper(), 'url': url, 'timestamp': utc_now_iso()}

    @app.get("/position")
    def position(symbol: Optional[str] = None):
        try:
            snapshot = service.call(controller.has_open_position, symbol)
        except FutureTimeoutError:
            return _failure(504, "Position check timed out")
        except Exception as e:
            return _failure(500, str(e))
        return {
            'hasPosition': snapshot is not None,
            'position': snapshot.to_dict() if snapshot else None,
            'timestamp': utc_now_iso(),
        }

    @app.post("/operator/continue")
    def operator_continue():
        service.signal_operator_continue()
        return {'success': True}

    # ------------------------------------------------------------------
    # Kraken Futures
    # ------------------------------------------------------------------
    @app.get("/balance")
    def balance():
        if service.kraken is None:
            return _kraken_not_configured()
        try:
            return service.kraken.get_accounts()
        except (KrakenAPIError, requests.RequestException) as e:
            logger.error(f"Error fetching balance: {e}")
            return _kraken_error(e)

    @app.get("/positions")
    def positions():
        if service.kraken is None:
            return _kraken_not_configured()
        try:
            return service.kraken.get_open_positions()
        except (KrakenAPIError, requests.RequestException) as e:
            logger.error(f"Error fetching positions: {e}")
            return _kraken_error(e)

    @app.post("/kraken/trade")
    def kraken_trade(body: KrakenTradeRequest):
        kraken = service.kraken
        if kraken is None:
            return _kraken_not_configured()
        try:
            symbol = map_symbol(body.symbol)
        except ValueError as e:
            return _failure(400, str(e))

        side = body.direction.ui_side
        try:
            if str(body.size).upper() == "MAX":
                price = kraken.current_price(symbol)
                if not price:
                    return _failure(500, "Could not fetch current price")
                size = max_order_size(kraken.available_balance(), price)
                logger.info(f"MAX size: {size} contracts (~${size * price:,.2f} notional)")
            else:
                size = float(body.size)
            if size < 0.001:
                return _failure(400, "Calculated size too small")

            if body.stopLoss or body.takeProfit:
                result = kraken.place_bracket(symbol, body.direction.value, size,
                                              stop_loss=body.stopLoss, take_profit=body.takeProfit)
                result.update({'symbol': symbol, 'side': side, 'size': size, 'timestamp': utc_now_iso()})
                return result

            order = kraken.send_order(symbol, side, size, body.orderType, limit_price=body.limitPrice)
        except (KrakenAPIError, requests.RequestException, ValueError) as e:
            logger.error(f"Error executing Kraken trade: {e}")
            return _failure(500, str(e))

        response = {
            'success': order.get('result') == 'success',
            'orderId': (order.get('sendStatus') or {}).get('order_id'),
            'symbol': symbol,
            'side': side,
            'size': size,
            'price': body.limitPrice,
            'timestamp': utc_now_iso(),
        }
        if not response['success']:
            response['error'] = order.get('error') or 'Order failed'
        return response

    return app
