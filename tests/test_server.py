import threading

import pytest
from fastapi.testclient import TestClient

from tv_executor import config
from tv_executor.models import (
    Direction, ExecutionDetails, ExecutionResult, PositionSnapshot, SessionState
)
from tv_executor.server import ExecutorService, create_app

from tests.fakes import CHART_URL, StubSessionManager


def filled_result(request):
    details = ExecutionDetails(symbol=request.symbol or "ETHUSDT", side=request.direction.value,
                               entry_price=3250.5, quantity=1, margin_used=325.05,
                               timestamp="2026-01-01T00:00:00Z", take_profit=request.take_profit,
                               stop_loss=request.stop_loss)
    return ExecutionResult(success=True, execution_logs=["filled"], execution_details=details)


class StubController:
    """Answers like ExecutionController without a browser"""

    def __init__(self, profile, fail_first_start=False):
        self.profile = profile
        self.session_manager = StubSessionManager()
        self.requests = []
        self.starts = 0
        self.fail_first_start = fail_first_start
        self.release = threading.Event()
        self.release.set()
        self.position = None

    def start(self):
        self.starts += 1
        if self.fail_first_start and self.starts == 1:
            raise RuntimeError("browser launch failed")

    def close(self):
        pass

    def status(self):
        return {'ready': True, 'mode': self.profile.key, 'symbol': 'ETHUSDT', 'restarts': 0,
                'session': SessionState(profile_id='main').summary()}

    def place_market_order(self, request):
        self.release.wait(5)
        self.requests.append(request)
        return filled_result(request)

    def navigate_to_symbol(self, symbol):
        return f"{CHART_URL}?symbol=MEXC%3A{symbol.upper()}.P"

    def has_open_position(self, symbol=None):
        return self.position

    def screenshot(self, name="screenshot"):
        return ""


class StubKraken:

    def __init__(self):
        self.orders = []

    def get_accounts(self):
        return {'result': 'success', 'accounts': {'flex': {'availableMargin': 10000}}}

    def get_open_positions(self):
        return {'result': 'success', 'openPositions': []}

    def current_price(self, symbol):
        return 2500.0

    def available_balance(self):
        return 10000.0

    def send_order(self, symbol, side, size, order_type='mkt', limit_price=None):
        self.orders.append((symbol, side, size, order_type))
        return {'result': 'success', 'sendStatus': {'order_id': 'ord-1'}}

    def place_bracket(self, symbol, direction, size, stop_loss=None, take_profit=None):
        self.orders.append((symbol, direction, size, stop_loss, take_profit))
        return {'success': True, 'orders': [{'type': 'main', 'result': {'result': 'success'}}]}


@pytest.fixture
def controller(paper_profile):
    return StubController(paper_profile)


@pytest.fixture
def make_client(controller):
    services = []

    def build(kraken=None, request_timeout=5.0, ctrl=None):
        service = ExecutorService(ctrl or controller, kraken=kraken, request_timeout=request_timeout)
        services.append(service)
        return TestClient(create_app(service))

    yield build
    controller.release.set()
    for service in services:
        service.shutdown()


# =============================================================================
# TRADINGVIEW
# =============================================================================
def test_health(make_client):
    body = make_client().get("/health").json()
    assert body['status'] == 'ok'
    assert body['service'] == 'tradingview-executor'
    assert body['environment'] == 'paper'
    assert body['executor']['ready'] is True


def test_trade(make_client, controller):
    response = make_client().post("/trade", json={
        'symbol': 'ETHUSDT', 'direction': 'LONG', 'size': 1, 'stopLoss': 3000, 'takeProfit': 3500,
    })

    assert response.status_code == 200
    body = response.json()
    assert body['success'] is True
    assert body['executionDetails']['entryPrice'] == 3250.5
    request = controller.requests[0]
    assert request.direction is Direction.LONG
    assert request.quantity == 1
    assert request.stop_loss == 3000


def test_trade_without_size_auto_sizes(make_client, controller):
    make_client().post("/trade", json={'direction': 'SHORT'})
    assert controller.requests[0].quantity == config.AUTO_SIZE_QUANTITY


def test_trade_zero_size_is_bad_request(make_client, controller):
    response = make_client().post("/trade", json={'direction': 'LONG', 'size': 0})
    assert response.status_code == 400
    assert controller.requests == []


def test_trade_timeout(make_client, controller):
    controller.release.clear()
    response = make_client(request_timeout=0.2).post("/trade", json={'direction': 'LONG', 'size': 1})

    assert response.status_code == 504
    assert response.json()['success'] is False


def test_failed_start_is_retried(make_client, paper_profile):
    ctrl = StubController(paper_profile, fail_first_start=True)
    client = make_client(ctrl=ctrl)

    first = client.post("/trade", json={'direction': 'LONG', 'size': 1})
    assert first.status_code == 500
    assert first.json()['error'] == "browser launch failed"

    second = client.post("/trade", json={'direction': 'LONG', 'size': 1})
    assert second.json()['success'] is True
    assert ctrl.starts == 2


@pytest.mark.parametrize("verdict", ['NO_TRADE', 'UNCERTAINTY', None])
def test_consensus_without_trade(make_client, controller, verdict):
    response = make_client().post("/execute-consensus", json={'symbol': 'ETHUSDT', 'verdict': verdict})

    assert response.status_code == 200
    assert response.json()['success'] is False
    assert "No trade to execute" in response.json()['message']
    assert controller.requests == []


def test_consensus_missing_setup(make_client):
    response = make_client().post("/execute-consensus", json={'verdict': 'LONG'})
    assert response.status_code == 400
    assert response.json()['error'] == "Missing tradeSetup in request"


def test_consensus_max_size(make_client, controller):
    response = make_client().post("/execute-consensus", json={
        'symbol': 'ETHUSDT', 'verdict': 'LONG', 'confidence': 0.8,
        'tradeSetup': {'direction': 'LONG', 'entryPrice': 3240, 'stopLoss': 3000, 'takeProfit1': 3500},
    })

    body = response.json()
    assert body['success'] is True
    assert body['consensus']['verdict'] == 'LONG'
    request = controller.requests[0]
    assert request.is_auto_size
    assert request.take_profit == 3500


def test_consensus_explicit_size(make_client, controller):
    make_client().post("/execute-consensus?size=2", json={
        'verdict': 'SHORT', 'tradeSetup': {'direction': 'SHORT'},
    })
    assert controller.requests[0].quantity == 2


def test_consensus_invalid_size(make_client):
    response = make_client().post("/execute-consensus?size=lots", json={
        'verdict': 'SHORT', 'tradeSetup': {'direction': 'SHORT'},
    })
    assert response.status_code == 400


def test_navigate_and_position(make_client, controller):
    client = make_client()
    body = client.post("/navigate", json={'symbol': 'solusdt'}).json()
    assert body['success'] is True
    assert body['symbol'] == 'SOLUSDT'
    assert body['url'].endswith("SOLUSDT.P")

    assert client.get("/position").json()['hasPosition'] is False
    controller.position = PositionSnapshot('r1', 'BYBIT:ETHUSDT.P', 'Buy', '1', '3,250.50', '0.00')
    body = client.get("/position").json()
    assert body['hasPosition'] is True
    assert body['position']['qty'] == '1'


def test_screenshot_failure(make_client):
    response = make_client().get("/screenshot")
    assert response.status_code == 500


def test_operator_continue(make_client, controller):
    assert make_client().post("/operator/continue").json() == {'success': True}
    assert controller.session_manager.continue_signals == 1


# =============================================================================
# KRAKEN
# =============================================================================
@pytest.mark.parametrize("method,path", [
    ('get', "/balance"),
    ('get', "/positions"),
    ('post', "/kraken/trade"),
])
def test_kraken_not_configured(make_client, method, path):
    client = make_client()
    if method == 'post':
        response = client.post(path, json={'symbol': 'ETHUSDT', 'direction': 'LONG'})
    else:
        response = client.get(path)
    assert response.status_code == 503
    assert response.json()['error'] is True


def test_kraken_balance(make_client):
    body = make_client(kraken=StubKraken()).get("/balance").json()
    assert body['accounts']['flex']['availableMargin'] == 10000


def test_kraken_market_order(make_client):
    kraken = StubKraken()
    body = make_client(kraken=kraken).post("/kraken/trade", json={
        'symbol': 'ETHUSDT', 'direction': 'SHORT', 'size': 0.5,
    }).json()

    assert body['success'] is True
    assert body['orderId'] == 'ord-1'
    assert kraken.orders == [('PF_ETHUSD', 'sell', 0.5, 'mkt')]


def test_kraken_max_size_with_bracket(make_client):
    kraken = StubKraken()
    body = make_client(kraken=kraken).post("/kraken/trade", json={
        'symbol': 'ETHUSDT', 'direction': 'LONG', 'size': 'MAX', 'stopLoss': 2400, 'takeProfit': 2700,
    }).json()

    assert body['success'] is True
    assert body['size'] == 3.6
    assert kraken.orders == [('PF_ETHUSD', 'LONG', 3.6, 2400, 2700)]


def test_kraken_unknown_symbol(make_client):
    response = make_client(kraken=StubKraken()).post("/kraken/trade", json={
        'symbol': 'FOOUSDT', 'direction': 'LONG',
    })
    assert response.status_code == 400


def test_kraken_size_too_small(make_client):
    response = make_client(kraken=StubKraken()).post("/kraken/trade", json={
        'symbol': 'ETHUSDT', 'direction': 'LONG', 'size': 0.0001,
    })
    assert response.status_code == 400
