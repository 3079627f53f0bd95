"""
TradingView Executor Configuration

SECURITY NOTE: Credentials should be set via environment variables:
    export TRADINGVIEW_EMAIL="you@example.com"
    export TRADINGVIEW_PASSWORD="your_password"
    export TRADINGVIEW_CHART_URL="https://www.tradingview.com/chart/XXXX/"

Optional:
    export EXECUTOR_MODE="paper"        # paper | prod
    export EXECUTOR_PROFILE="main"      # main | alt
    export KRAKEN_DEMO_API_KEY=...
    export KRAKEN_DEMO_API_SECRET=...
"""

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


# =============================================================================
# PATHS
# =============================================================================
BASE_DIR = Path(__file__).resolve().parent.parent
PROFILES_DIR = BASE_DIR / ".chrome-profiles"
SESSIONS_DIR = BASE_DIR / "sessions"
LOG_DIR = BASE_DIR / "logs"

# =============================================================================
# TRADINGVIEW CREDENTIALS (from environment variables)
# =============================================================================
TRADINGVIEW_URL = "https://www.tradingview.com"
TRADINGVIEW_SIGNIN_URL = "https://www.tradingview.com/accounts/signin/"
TRADINGVIEW_DOMAIN = "tradingview.com"

TRADINGVIEW_EMAIL = os.environ.get("TRADINGVIEW_EMAIL", "")
TRADINGVIEW_PASSWORD = os.environ.get("TRADINGVIEW_PASSWORD", "")
TRADINGVIEW_CHART_URL = os.environ.get("TRADINGVIEW_CHART_URL", "https://www.tradingview.com/chart/")
DEFAULT_SYMBOL = os.environ.get("EXECUTOR_SYMBOL", "ETHUSDT").upper()


def validate_credentials():
    """Validate that credentials are configured properly."""
    missing = [
        name for name, value in (
            ("TRADINGVIEW_EMAIL", TRADINGVIEW_EMAIL),
            ("TRADINGVIEW_PASSWORD", TRADINGVIEW_PASSWORD),
        ) if not value
    ]
    if missing:
        raise ValueError(
            "TradingView credentials not configured. Set environment variables:\n" +
            "\n".join(f"  export {name}=..." for name in missing)
        )
    return True


# =============================================================================
# ACCOUNT PROFILE / BACKEND VARIANT
# =============================================================================
# Each profile gets its own browser user-data dir and session file, so
# switching accounts never needs a logout.
ACCOUNT_PROFILE = os.environ.get("EXECUTOR_PROFILE", "main").lower()
EXECUTOR_MODE = os.environ.get("EXECUTOR_MODE", "paper").lower()

HEADLESS_MODE = _env_flag("HEADLESS", False)   # Visible by default for manual intervention
SCREENSHOT_ON_ERROR = True

# Sentinel quantity: "size the order from the account balance"
AUTO_SIZE_QUANTITY = -1

# =============================================================================
# SIZING POLICY
# =============================================================================
AUTO_SIZE_FRACTION = 0.90        # Use 90% of balance/equity
PAPER_MAX_MARGIN = {
    'main': 1000.0,              # Cap paper margin at $1,000
    'alt': None,                 # Alt profile trades uncapped
}

# Coinbase contract parameters for whole-contract sizing
COINBASE_CONTRACT_SIZE = 0.1     # ETH per contract
COINBASE_LEVERAGE = 10

# =============================================================================
# TIMEOUTS (seconds)
# =============================================================================
ELEMENT_TIMEOUT = 5
LOGIN_CONFIRM_TIMEOUT = 15
CAPTCHA_WAIT_TIMEOUT = 60
NAVIGATION_TIMEOUT = 60
FILL_TIMEOUT = 10                # Fill-confirmation polling window
FILL_POLL_INTERVAL = 2
RECENCY_WINDOW = 60              # Order-history entry still counts as "this order"
ORDER_HISTORY_TIMEZONE = os.environ.get("ORDER_HISTORY_TIMEZONE", "UTC")   # Zone the history table renders in
RELOAD_GRACE = 10                # Wait before reloading a stuck UI

# =============================================================================
# HTTP SERVER
# =============================================================================
EXECUTOR_PORT = int(os.environ.get("EXECUTOR_PORT", "3001"))
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "180"))

# =============================================================================
# ALTERNATIVE BACKEND (Kraken Futures)
# =============================================================================
KRAKEN_API_KEY = os.environ.get("KRAKEN_DEMO_API_KEY", "")
KRAKEN_API_SECRET = os.environ.get("KRAKEN_DEMO_API_SECRET", "")
KRAKEN_USE_LIVE = _env_flag("KRAKEN_USE_LIVE", False)
KRAKEN_DEMO_URL = "https://demo-futures.kraken.com/derivatives"
KRAKEN_LIVE_URL = "https://futures.kraken.com/derivatives"


# =============================================================================
# SETTLE DELAYS / WAITS
# =============================================================================
@dataclass
class Timings:
    """
    Every wait the workflow performs against the live terminal.

    Settle delays are empirical grace periods after a UI mutation, not
    algorithmic requirements. `sleep` and `clock` are injectable so the
    polling windows can run on a fake clock.
    """
    click_settle: float = 0.5
    checkbox_settle: float = 0.3
    select_settle: float = 0.1
    tab_settle: float = 1.0
    history_settle: float = 1.5
    form_settle: float = 1.0
    preview_settle: float = 0.5
    confirm_settle: float = 1.0
    post_submit_settle: float = 1.0
    interstitial_settle: float = 2.5
    interstitial_idle: float = 1.0
    broker_settle: float = 2.0
    login_settle: float = 3.0
    page_settle: float = 3.0
    type_delay_ms: int = 100
    element_timeout: float = ELEMENT_TIMEOUT
    login_confirm_timeout: float = LOGIN_CONFIRM_TIMEOUT
    captcha_timeout: float = CAPTCHA_WAIT_TIMEOUT
    fill_timeout: float = FILL_TIMEOUT
    poll_interval: float = FILL_POLL_INTERVAL
    recency_window: float = RECENCY_WINDOW
    reload_grace: float = RELOAD_GRACE
    reload_settle: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @classmethod
    def instant(cls, **overrides) -> "Timings":
        """All settle delays zeroed; windows keep their length on whatever clock is passed."""
        values = {
            name: 0 for name in (
                'click_settle', 'checkbox_settle', 'select_settle', 'tab_settle',
                'history_settle', 'form_settle', 'preview_settle', 'confirm_settle',
                'post_submit_settle', 'interstitial_settle', 'interstitial_idle',
                'broker_settle', 'login_settle', 'page_settle', 'type_delay_ms',
                'reload_settle',
                'reload_grace',
            )
        }
        values.update(overrides)
        return cls(**values)


# =============================================================================
# BROKER PROFILES
# =============================================================================
SIZING_MARGIN = "margin"        # Enter a margin figure, the UI derives quantity
SIZING_CONTRACTS = "contracts"  # Compute whole contracts ourselves


@dataclass(frozen=True)
class BrokerProfile:
    """Everything that differs between the paper and the live brokerage integration."""
    key: str
    broker_card: str
    display_name: str
    balance_field: str
    avg_price_label: str
    sizing_mode: str
    has_order_preview: bool = False
    stop_loss_linked_to_take_profit: bool = False
    margin_from_summary: bool = False
    contract_size: float = COINBASE_CONTRACT_SIZE
    leverage: float = COINBASE_LEVERAGE
    max_margin: Optional[float] = None


def broker_profiles(account_profile: str = ACCOUNT_PROFILE) -> Dict[str, BrokerProfile]:
    """Known backend variants for the given account profile."""
    return {
        'paper': BrokerProfile(
            key='paper',
            broker_card='Paper',
            display_name='Paper Trading',
            balance_field='Equity',
            avg_price_label='Avg Fill Price',
            sizing_mode=SIZING_MARGIN,
            max_margin=PAPER_MAX_MARGIN.get(account_profile, PAPER_MAX_MARGIN['main']),
        ),
        'prod': BrokerProfile(
            key='prod',
            broker_card='COINBASE',
            display_name='Coinbase Advanced',
            balance_field='Balance',
            avg_price_label='Avg Price',
            sizing_mode=SIZING_CONTRACTS,
            has_order_preview=True,
            stop_loss_linked_to_take_profit=True,
            margin_from_summary=True,
        ),
    }


def get_broker_profile(mode: str = EXECUTOR_MODE, account_profile: str = ACCOUNT_PROFILE) -> BrokerProfile:
    profiles = broker_profiles(account_profile)
    if mode not in profiles:
        raise ValueError(f"Unknown EXECUTOR_MODE '{mode}'. Options: {', '.join(profiles)}")
    return profiles[mode]
