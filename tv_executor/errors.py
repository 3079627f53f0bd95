"""
Error taxonomy for order execution.

Only ConnectivityFault is retried (once, after a full restart). Everything
else ends the attempt and is reported in the ExecutionResult.
"""

from typing import Optional


CONNECTIVITY_ERROR_PATTERNS = (
    'detached Frame',
    'Frame was detached',
    'Protocol error',
    'Target closed',
    'Target page, context or browser has been closed',
    'Session closed',
    'Browser has been closed',
    'Connection closed',
)


def is_connectivity_error(error) -> bool:
    """Does this exception (or message) mean the automation surface is gone?"""
    if isinstance(error, ConnectivityFault):
        return True
    message = str(error)
    return any(pattern in message for pattern in CONNECTIVITY_ERROR_PATTERNS)


class ExecutorError(Exception):
    """Base class for every executor failure"""


class ConnectivityFault(ExecutorError):
    """The automation surface is unreachable or detached"""


class SessionError(ExecutorError):
    """Login or broker connection could not be driven"""


class ElementNotFound(ExecutorError):
    """A control did not appear within its element wait"""

    def __init__(self, selector: str, timeout: Optional[float] = None):
        self.selector = selector
        self.timeout = timeout
        if timeout is not None:
            super().__init__(f"Element not found within {timeout}s: {selector}")
        else:
            super().__init__(f"Element not found: {selector}")


class FormInteractionWarning(ExecutorError):
    """A non-critical form control was missing; the placement continues"""


class ExistingPositionError(ExecutorError):
    """An open position blocks a new order"""

    def __init__(self, position):
        self.position = position
        super().__init__(
            f"Existing position detected: {position.side} {position.qty} @ {position.avg_price} "
            f"(P&L: {position.pnl}). Close the existing position before placing a new order."
        )


class RejectionDetected(ExecutorError):
    """The venue rejected the order"""

    def __init__(self, event):
        self.event = event
        super().__init__(f"Order rejected: {event.message}")


class ReconciliationIndeterminate(ExecutorError):
    """No entry price and no recent market order after submission"""

    def __init__(self, message: str = None):
        super().__init__(message or (
            "Order failed: No position created (entry price = 0) and no recent Market order "
            "in Order History. The order button was clicked but no order was placed."
        ))
