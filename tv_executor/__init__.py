"""
TradingView Executor

Market-order execution against the TradingView trading terminal, driven
through a Playwright browser session.
"""

__version__ = "1.0.0"
