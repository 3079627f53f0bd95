"""
Data model for order execution: requests, session state, outcomes and results.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union

from tv_executor.config import AUTO_SIZE_QUANTITY


# =============================================================================
# REQUEST
# =============================================================================
class Direction(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def ui_side(self) -> str:
        """The terminal's buy/sell convention"""
        return "buy" if self is Direction.LONG else "sell"


@dataclass
class OrderRequest:
    """
    A market order to place.

    quantity is a positive contract count, or any negative value (conventionally
    AUTO_SIZE_QUANTITY) meaning "size from the account balance". stop_loss and
    take_profit are absolute prices and independent of each other.
    """
    direction: Direction
    quantity: float
    symbol: Optional[str] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.direction, Direction):
            self.direction = Direction(str(self.direction).upper())
        if self.quantity == 0:
            raise ValueError("quantity must be positive, or negative to auto-size")
        if self.symbol:
            self.symbol = self.symbol.upper()

    @property
    def is_auto_size(self) -> bool:
        return self.quantity < 0

    @classmethod
    def auto_sized(cls, direction: Direction, **kwargs) -> "OrderRequest":
        return cls(direction=direction, quantity=AUTO_SIZE_QUANTITY, **kwargs)


# =============================================================================
# SESSION / CONNECTION
# =============================================================================
class LinkState(Enum):
    """Confirmation state of the login or the broker link"""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    UNVERIFIED = "unverified"   # Could not be confirmed, continuing optimistically
    FAILED = "failed"

    @property
    def usable(self) -> bool:
        return self in (LinkState.CONNECTED, LinkState.UNVERIFIED)


@dataclass
class SessionState:
    profile_id: str
    login: LinkState = LinkState.DISCONNECTED
    broker: LinkState = LinkState.DISCONNECTED

    @property
    def logged_in(self) -> bool:
        return self.login.usable

    @property
    def broker_connected(self) -> bool:
        return self.broker.usable

    def reset(self):
        self.login = LinkState.DISCONNECTED
        self.broker = LinkState.DISCONNECTED

    def summary(self) -> Dict:
        return {
            'profile': self.profile_id,
            'loggedIn': self.logged_in,
            'brokerConnected': self.broker_connected,
            'login': self.login.value,
            'broker': self.broker.value,
        }


class ConnectionStatus(Enum):
    VALID = "valid"
    RECOVERED = "recovered"
    RESTART_NEEDED = "restart_needed"


# =============================================================================
# UI READINGS
# =============================================================================
@dataclass(frozen=True)
class PositionSnapshot:
    """One row of the positions table, cell texts as rendered"""
    row_id: str
    symbol: str
    side: str
    qty: str
    avg_price: str
    pnl: str
    cells: Dict[str, str] = field(default_factory=dict, compare=False)

    @classmethod
    def from_row(cls, row: Dict) -> "PositionSnapshot":
        cells = dict(row.get('cells') or {})
        avg_price = (cells.get('Avg Fill Price') or cells.get('Avg Price') or
                     cells.get('Entry Price') or 'unknown')
        return cls(
            row_id=row.get('rowId') or 'unknown',
            symbol=cells.get('Symbol') or 'unknown',
            side=cells.get('Side') or 'unknown',
            qty=cells.get('Qty') or 'unknown',
            avg_price=avg_price,
            pnl=cells.get('Unrealized P&L') or 'unknown',
            cells=cells,
        )

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'side': self.side,
            'qty': self.qty,
            'avgPrice': self.avg_price,
            'pnl': self.pnl,
        }


@dataclass(frozen=True)
class OrderHistoryEntry:
    order_type: str
    margin: Optional[str] = None
    placed_at: Optional[str] = None
    side: Optional[str] = None


@dataclass(frozen=True)
class RejectionEvent:
    header: str
    order_info: str
    reason: str
    symbol: str

    @property
    def message(self) -> str:
        return f"{self.header} - {self.order_info}: {self.reason}"


# =============================================================================
# OUTCOMES
# =============================================================================
@dataclass(frozen=True)
class Filled:
    entry_price: float
    quantity: float
    margin: float
    fee: float = 0.0
    low_confidence: bool = False   # Routed per order history, but no price was readable


@dataclass(frozen=True)
class Rejected:
    event: RejectionEvent

    @property
    def reason(self) -> str:
        return self.event.reason


@dataclass(frozen=True)
class Indeterminate:
    reason: str = "no entry price and no recent market order"


Outcome = Union[Filled, Rejected, Indeterminate]


# =============================================================================
# RESULT
# =============================================================================
@dataclass(frozen=True)
class ExecutionDetails:
    """Reconciled truth about a filled order"""
    symbol: str
    side: str
    entry_price: float
    quantity: float
    margin_used: float
    timestamp: str
    fee: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'side': self.side,
            'entryPrice': self.entry_price,
            'quantity': self.quantity,
            'marginUsed': self.margin_used,
            'fee': self.fee,
            'takeProfit': self.take_profit,
            'stopLoss': self.stop_loss,
            'timestamp': self.timestamp,
        }


@dataclass
class ExecutionResult:
    success: bool
    execution_logs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    execution_details: Optional[ExecutionDetails] = None

    def __post_init__(self):
        if self.success != (self.execution_details is not None):
            raise ValueError("execution_details must be present exactly when success is True")

    @classmethod
    def failed(cls, error: str, logs: List[str]) -> "ExecutionResult":
        return cls(success=False, error=error, execution_logs=logs)

    def to_dict(self) -> Dict:
        data = {'success': self.success, 'executionLogs': self.execution_logs}
        if self.error is not None:
            data['error'] = self.error
        if self.execution_details is not None:
            data['executionDetails'] = self.execution_details.to_dict()
        return data
