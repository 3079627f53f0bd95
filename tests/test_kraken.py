import base64
import hashlib
import hmac

import pytest

from tv_executor import config
from tv_executor.kraken_client import (
    KrakenAPIError, KrakenFuturesClient, map_symbol, max_order_size
)

SECRET = base64.b64encode(b"kraken-test-secret").decode()


class FakeResponse:

    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.ok = status_code < 400
        self.text = str(payload)

    def json(self):
        return self.payload


class FakeSession:
    """Replays canned responses and records every call"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        self.calls.append(('GET', url, kwargs))
        return self.responses.pop(0)


def client(*responses):
    return KrakenFuturesClient("key-123", SECRET, session=FakeSession(*responses))


def expected_authent(post_data, nonce, path):
    digest = hashlib.sha256((post_data + nonce + path).encode()).digest()
    mac = hmac.new(base64.b64decode(SECRET), digest, hashlib.sha512).digest()
    return base64.b64encode(mac).decode()


# =============================================================================
# HELPERS
# =============================================================================
def test_map_symbol():
    assert map_symbol("ethusdt") == "PF_ETHUSD"
    assert map_symbol("BTCUSDT") == "PF_XBTUSD"
    with pytest.raises(ValueError) as excinfo:
        map_symbol("FOOUSDT")
    assert "Unknown symbol: FOOUSDT" in str(excinfo.value)


@pytest.mark.parametrize("available,price,size", [
    (10000, 2500, 3.6),
    (1000, 3250, 0.27),
    (0, 3250, 0.0),
    (1000, 0, 0.0),
    (-5, 3250, 0.0),
])
def test_max_order_size(available, price, size):
    assert max_order_size(available, price, fraction=0.9) == size


# =============================================================================
# SIGNING / TRANSPORT
# =============================================================================
def test_sign_matches_hmac():
    headers = client().sign("/api/v3/sendorder", "symbol=PF_ETHUSD", nonce="1700000000000")
    assert headers['APIKey'] == "key-123"
    assert headers['Nonce'] == "1700000000000"
    assert headers['Authent'] == expected_authent("symbol=PF_ETHUSD", "1700000000000",
                                                  "/api/v3/sendorder")


def test_post_sends_form_body():
    kraken = client(FakeResponse({'result': 'success', 'sendStatus': {'order_id': 'abc'}}))

    result = kraken.send_order("PF_ETHUSD", "buy", 0.5)

    method, url, kwargs = kraken.session.calls[0]
    assert method == 'POST'
    assert url == config.KRAKEN_DEMO_URL + "/api/v3/sendorder"
    assert kwargs['data'] == "orderType=mkt&symbol=PF_ETHUSD&side=buy&size=0.5"
    headers = kwargs['headers']
    assert headers['Content-Type'] == 'application/x-www-form-urlencoded'
    assert headers['Authent'] == expected_authent(kwargs['data'], headers['Nonce'], "/api/v3/sendorder")
    assert result['sendStatus']['order_id'] == 'abc'


def test_get_has_no_body():
    kraken = client(FakeResponse({'result': 'success', 'openPositions': []}))
    assert kraken.get_open_positions()['openPositions'] == []

    method, url, kwargs = kraken.session.calls[0]
    assert method == 'GET'
    assert url == config.KRAKEN_DEMO_URL + "/api/v3/openpositions"
    assert kwargs['data'] is None


def test_error_status_raises():
    kraken = client(FakeResponse({'result': 'error', 'error': 'authenticationError'}, 401))
    with pytest.raises(KrakenAPIError) as excinfo:
        kraken.get_accounts()
    assert excinfo.value.status_code == 401
    assert 'authenticationError' in str(excinfo.value)


def test_rejects_unknown_order_type_before_sending():
    kraken = client()
    with pytest.raises(ValueError):
        kraken.send_order("PF_ETHUSD", "buy", 1, order_type="market")
    assert kraken.session.calls == []


# =============================================================================
# ACCOUNT / MARKET DATA
# =============================================================================
def test_available_balance_prefers_flex():
    kraken = client(FakeResponse({'accounts': {
        'flex': {'availableMargin': 1234.5},
        'fi_xbtusd': {'balance': 99},
    }}))
    assert kraken.available_balance() == 1234.5


def test_available_balance_without_accounts():
    assert client(FakeResponse({'accounts': {}})).available_balance() == 0.0


def test_current_price_from_ticker():
    kraken = client(FakeResponse({'tickers': [{'symbol': 'PF_ETHUSD', 'markPrice': 3250.5}]}))

    assert kraken.current_price("PF_ETHUSD") == 3250.5
    method, url, kwargs = kraken.session.calls[0]
    assert url.endswith("/api/v3/tickers")
    assert kwargs['params'] == {'symbol': 'PF_ETHUSD'}


def test_current_price_missing():
    assert client(FakeResponse({'tickers': []})).current_price("PF_ETHUSD") is None


# =============================================================================
# BRACKET
# =============================================================================
def test_bracket_places_reduce_only_protection():
    ok = {'result': 'success', 'sendStatus': {'status': 'placed'}}
    kraken = client(FakeResponse(ok), FakeResponse(ok), FakeResponse(ok))

    result = kraken.place_bracket("PF_ETHUSD", "LONG", 1, stop_loss=3000, take_profit=3500)

    assert result['success']
    assert [o['type'] for o in result['orders']] == ['main', 'stopLoss', 'takeProfit']
    bodies = [kwargs['data'] for _, _, kwargs in kraken.session.calls]
    assert "side=buy" in bodies[0]
    assert "orderType=stp" in bodies[1]
    assert "side=sell" in bodies[1]
    assert "stopPrice=3000" in bodies[1]
    assert "reduceOnly=true" in bodies[1]
    assert "orderType=take_profit" in bodies[2]
    assert "triggerSignal=last" in bodies[2]


def test_bracket_stops_when_entry_fails():
    kraken = client(FakeResponse({'result': 'error', 'error': 'insufficientAvailableFunds'}))

    result = kraken.place_bracket("PF_ETHUSD", "SHORT", 1, stop_loss=3600, take_profit=3000)

    assert not result['success']
    assert result['error'] == 'insufficientAvailableFunds'
    assert len(kraken.session.calls) == 1


def test_failed_protective_order_is_recorded():
    ok = {'result': 'success'}
    kraken = client(FakeResponse(ok), FakeResponse({'error': 'boom'}, 500), FakeResponse(ok))

    result = kraken.place_bracket("PF_ETHUSD", "SHORT", 1, stop_loss=3600, take_profit=3000)

    assert result['success']
    stop = result['orders'][1]
    assert stop['type'] == 'stopLoss'
    assert 'Kraken API Error (500)' in stop['error']
    assert result['orders'][2]['result'] == ok
