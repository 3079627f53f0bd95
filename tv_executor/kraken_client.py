"""
Kraken Futures REST client (alternative execution backend).

Unlike the TradingView terminal this venue answers with structured JSON,
so orders are placed with plain request/response calls and no UI
inference.

Authentication (API v3):
    Authent = base64(HMAC-SHA512(base64decode(secret), SHA256(postData + nonce + endpointPath)))
sent as the APIKey / Authent / Nonce headers.
"""

import base64
import hashlib
import hmac
import logging
import math
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from tv_executor import config

logger = logging.getLogger('tv_executor.kraken')

SYMBOL_MAP = {
    "BTCUSDT": "PF_XBTUSD",
    "ETHUSDT": "PF_ETHUSD",
    "SOLUSDT": "PF_SOLUSD",
    "XRPUSDT": "PF_XRPUSD",
    "DOGEUSDT": "PF_DOGEUSD",
    "ADAUSDT": "PF_ADAUSD",
    "LINKUSDT": "PF_LINKUSD",
    "AVAXUSDT": "PF_AVAXUSD",
    "MATICUSDT": "PF_MATICUSD",
    "DOTUSDT": "PF_DOTUSD",
}

ORDER_TYPES = ('mkt', 'lmt', 'stp', 'take_profit', 'ioc', 'post')


def map_symbol(symbol: str) -> str:
    """Exchange-neutral symbol (ETHUSDT) -> Kraken perpetual (PF_ETHUSD)."""
    kraken_symbol = SYMBOL_MAP.get((symbol or '').upper())
    if not kraken_symbol:
        raise ValueError(f"Unknown symbol: {symbol}. Supported: {', '.join(SYMBOL_MAP)}")
    return kraken_symbol


def max_order_size(available: float, price: float, fraction: float = config.AUTO_SIZE_FRACTION) -> float:
    """
    Largest 1x-notional size the balance covers, rounded down to 0.01.
    Example: $10,000 available at $2,500 -> 3.6
    """
    if not available or available <= 0 or not price or price <= 0:
        return 0.0
    return math.floor(available * fraction / price * 100) / 100


class KrakenAPIError(Exception):
    """Non-2xx response from the Kraken Futures API"""

    def __init__(self, status_code: int, payload: Any):
        self.status_code = status_code
        self.payload = payload
        super().__init__(f"Kraken API Error ({status_code}): {payload}")


class KrakenFuturesClient:
    """Thin Kraken Futures client over requests.Session"""

    def __init__(self, api_key: str, api_secret: str, use_live: bool = False,
                 session: requests.Session = None, timeout: float = 20):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = config.KRAKEN_LIVE_URL if use_live else config.KRAKEN_DEMO_URL
        self.session = session or requests.Session()
        self.timeout = timeout

    # -------------------------
    # Signing
    # -------------------------
    def sign(self, endpoint_path: str, post_data: str = "", nonce: str = None) -> Dict[str, str]:
        """Authentication headers for one request."""
        nonce = nonce or str(int(time.time() * 1000))
        message = (post_data + nonce + endpoint_path).encode()
        sha256_hash = hashlib.sha256(message).digest()
        secret = base64.b64decode(self.api_secret)
        authent = base64.b64encode(hmac.new(secret, sha256_hash, hashlib.sha512).digest()).decode()
        return {'APIKey': self.api_key, 'Authent': authent, 'Nonce': nonce}

    def _request(self, method: str, endpoint: str, params: Dict[str, Any] = None) -> Dict:
        param_string = urlencode(params or {})
        headers = self.sign(endpoint, param_string)
        headers['Content-Type'] = 'application/x-www-form-urlencoded'

        url = f"{self.base_url}{endpoint}"
        if method == 'GET' and param_string:
            url = f"{url}?{param_string}"

        logger.info(f"{method} {endpoint}")
        response = self.session.request(
            method, url, headers=headers,
            data=param_string if method == 'POST' and param_string else None,
            timeout=self.timeout,
        )
        try:
            payload = response.json()
        except ValueError:
            payload = response.text
        if not response.ok:
            logger.error(f"Kraken API Error: {payload}")
            raise KrakenAPIError(response.status_code, payload)
        return payload

    def _public(self, endpoint: str, params: Dict[str, Any] = None) -> Dict:
        response = self.session.get(f"{self.base_url}{endpoint}", params=params, timeout=self.timeout)
        if not response.ok:
            raise KrakenAPIError(response.status_code, response.text)
        return response.json()

    # -------------------------
    # Account
    # -------------------------
    def get_accounts(self) -> Dict:
        return self._request('GET', '/api/v3/accounts')

    def get_open_positions(self) -> Dict:
        return self._request('GET', '/api/v3/openpositions')

    def available_balance(self) -> float:
        """Available margin of the flex (multi-collateral) account, or 0."""
        accounts = self.get_accounts().get('accounts') or {}
        account = accounts.get('flex') or accounts.get('fi_xbtusd') or accounts.get('fi_ethusd') or {}
        for key in ('availableMargin', 'available', 'balance'):
            if account.get(key):
                return float(account[key])
        return 0.0

    # -------------------------
    # Orders
    # -------------------------
    def send_order(self, symbol: str, side: str, size: float, order_type: str = 'mkt',
                   limit_price: float = None, stop_price: float = None,
                   trigger_signal: str = 'last', reduce_only: bool = None,
                   cli_ord_id: str = None) -> Dict:
        if order_type not in ORDER_TYPES:
            raise ValueError(f"Unsupported order type: {order_type}")
        if side not in ('buy', 'sell'):
            raise ValueError(f"Unsupported side: {side}")

        params: Dict[str, Any] = {
            'orderType': order_type,
            'symbol': symbol,
            'side': side,
            'size': size,
        }
        if limit_price is not None:
            params['limitPrice'] = limit_price
        if stop_price is not None:
            params['stopPrice'] = stop_price
            params['triggerSignal'] = trigger_signal
        if reduce_only is not None:
            params['reduceOnly'] = 'true' if reduce_only else 'false'
        if cli_ord_id:
            params['cliOrdId'] = cli_ord_id

        logger.info(f"Sending order: {params}")
        return self._request('POST', '/api/v3/sendorder', params)

    def cancel_order(self, order_id: str) -> Dict:
        return self._request('POST', '/api/v3/cancelorder', {'order_id': order_id})

    def get_instruments(self) -> Dict:
        return self._public('/api/v3/instruments')

    def get_ticker(self, symbol: str) -> Dict:
        return self._public('/api/v3/tickers', {'symbol': symbol})

    def current_price(self, symbol: str) -> Optional[float]:
        tickers = self.get_ticker(symbol).get('tickers') or []
        if not tickers:
            return None
        value = tickers[0].get('markPrice') or tickers[0].get('last')
        return float(value) if value else None

    def place_bracket(self, symbol: str, direction: str, size: float,
                      stop_loss: float = None, take_profit: float = None) -> Dict:
        """
        Market entry followed by reduce-only stop and take-profit orders.

        A failed protective order is recorded, not raised: the entry is
        already live at that point.

        Returns:
            {'success': bool, 'orders': [{'type': ..., 'result'|'error': ...}], 'error'?: str}
        """
        side = 'buy' if direction.upper() == 'LONG' else 'sell'
        opposite = 'sell' if side == 'buy' else 'buy'
        orders: List[Dict] = []

        logger.info(f"Placing MARKET {side.upper()} {size} {symbol}...")
        entry = self.send_order(symbol, side, size, 'mkt')
        orders.append({'type': 'main', 'result': entry})
        if entry.get('result') != 'success':
            return {'success': False, 'error': entry.get('error') or 'Main order failed', 'orders': orders}

        protective = (('stopLoss', 'stp', stop_loss), ('takeProfit', 'take_profit', take_profit))
        for label, order_type, price in protective:
            if not price:
                continue
            logger.info(f"Placing {label} at ${price}...")
            try:
                result = self.send_order(symbol, opposite, size, order_type,
                                         stop_price=price, reduce_only=True)
                orders.append({'type': label, 'result': result})
            except (KrakenAPIError, requests.RequestException) as e:
                logger.error(f"{label} failed: {e}")
                orders.append({'type': label, 'error': str(e)})

        return {'success': True, 'orders': orders}


def client_from_env() -> Optional[KrakenFuturesClient]:
    """Client from KRAKEN_DEMO_API_KEY / KRAKEN_DEMO_API_SECRET, or None if unset."""
    if not config.KRAKEN_API_KEY or not config.KRAKEN_API_SECRET:
        return None
    return KrakenFuturesClient(config.KRAKEN_API_KEY, config.KRAKEN_API_SECRET,
                               use_live=config.KRAKEN_USE_LIVE)
