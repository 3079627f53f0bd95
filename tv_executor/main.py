#!/usr/bin/env python3
"""
TradingView Executor

Places market orders through the TradingView trading terminal (paper
trading or Coinbase Advanced) and exposes them over HTTP.

Usage:
    tv-executor                       # Start the HTTP server (normal operation)
    tv-executor --test                # Start the browser, log in, report session state
    tv-executor --place LONG --qty 1 --tp 3500 --sl 3000
    tv-executor --place SHORT --qty -1   # Auto-size from balance
    tv-executor --headed              # Force a visible browser

Press ENTER in the terminal to continue after solving a captcha.
"""

import argparse
import json
import logging
import sys
import threading
from datetime import datetime

from tv_executor import config
from tv_executor.config import Timings
from tv_executor.controller import ExecutionController
from tv_executor.models import OrderRequest
from tv_executor.session import SessionManager, SessionStore, session_file_for
from tv_executor.surface import PlaywrightSurface
from tv_executor.utils import setup_logging

logger = logging.getLogger('tv_executor')


def print_banner():
    """Print startup banner."""
    banner = f"""
    ╔═══════════════════════════════════════════════════════════════╗
    ║               TRADINGVIEW EXECUTOR                            ║
    ╠═══════════════════════════════════════════════════════════════╣
      Mode:    {config.EXECUTOR_MODE}
      Profile: {config.ACCOUNT_PROFILE}
      Symbol:  {config.DEFAULT_SYMBOL}
    ╚═══════════════════════════════════════════════════════════════╝
    """
    print(banner)


def build_controller(headless: bool = None) -> ExecutionController:
    """Wire the controller for the configured mode and account profile."""
    profile = config.get_broker_profile(config.EXECUTOR_MODE, config.ACCOUNT_PROFILE)
    timings = Timings()
    store = SessionStore(session_file_for(config.ACCOUNT_PROFILE))
    session_manager = SessionManager(store, profile, timings, account_profile=config.ACCOUNT_PROFILE)
    profile_dir = config.PROFILES_DIR / config.ACCOUNT_PROFILE

    def surface_factory():
        return PlaywrightSurface(profile_dir, headless=headless).start()

    return ExecutionController(surface_factory, profile, session_manager, timings=timings)


def watch_stdin_for_continue(controller: ExecutionController):
    """ENTER on the console releases a captcha wait."""
    if not sys.stdin or not sys.stdin.isatty():
        return

    def watch():
        for _ in sys.stdin:
            controller.session_manager.signal_operator_continue()

    threading.Thread(target=watch, name='operator-stdin', daemon=True).start()


# =============================================================================
# MODES
# =============================================================================
def serve_mode(controller: ExecutionController):
    """Run the HTTP server until interrupted."""
    import uvicorn
    from tv_executor.kraken_client import client_from_env
    from tv_executor.server import ExecutorService, create_app

    kraken = client_from_env()
    if kraken is None:
        logger.info("Kraken credentials not set, /balance /positions /kraken/trade disabled")

    service = ExecutorService(controller, kraken=kraken)
    service.ensure_ready()
    app = create_app(service)
    try:
        uvicorn.run(app, host="0.0.0.0", port=config.EXECUTOR_PORT)
    finally:
        service.shutdown()


def test_mode(controller: ExecutionController) -> int:
    """Log in and report what the executor can see."""
    print("\n--- Testing TradingView Session ---")
    try:
        controller.start()
        state = controller.session_manager.state
        print(f"{'✓' if state.logged_in else '✗'} Login: {state.login.value}")
        print(f"{'✓' if state.broker_connected else '✗'} Broker ({controller.profile.display_name}): "
              f"{state.broker.value}")

        price = controller.get_current_price()
        print(f"✓ Current price: ${price:,.2f}" if price else "✗ Could not read current price")

        position = controller.has_open_position()
        print(f"✓ Open position: {position.to_dict() if position else 'None'}")
    finally:
        controller.close()

    print("\n--- Test Complete ---")
    return 0 if controller.session_manager.state.logged_in else 1


def place_mode(controller: ExecutionController, args) -> int:
    """One placement, result printed as JSON."""
    request = OrderRequest(direction=args.place, quantity=args.qty, symbol=args.symbol,
                           stop_loss=args.sl, take_profit=args.tp)
    try:
        controller.start()
        result = controller.place_market_order(request)
    finally:
        controller.close()

    print("\n".join(result.execution_logs))
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


# =============================================================================
# ENTRY POINT
# =============================================================================
def main():
    parser = argparse.ArgumentParser(
        description='TradingView Executor',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    tv-executor                                   Start the HTTP server
    tv-executor --test                            Verify login and broker connection
    tv-executor --place LONG --qty 1 --tp 3500 --sl 3000
        """
    )

    parser.add_argument('--serve', action='store_true',
                        help='Run the HTTP server (default)')
    parser.add_argument('--test', action='store_true',
                        help='Test mode - verify login and broker connection')
    parser.add_argument('--place', choices=['LONG', 'SHORT'], type=str.upper,
                        help='Place one market order and exit')
    parser.add_argument('--qty', type=float, default=config.AUTO_SIZE_QUANTITY,
                        help='Contracts for --place (negative: auto-size, default)')
    parser.add_argument('--sl', type=float, help='Stop-loss price for --place')
    parser.add_argument('--tp', type=float, help='Take-profit price for --place')
    parser.add_argument('--symbol', default=None,
                        help=f'Instrument to trade, the chart switches to it (default: {config.DEFAULT_SYMBOL})')
    parser.add_argument('--headed', action='store_true',
                        help='Force a visible browser')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: INFO)')

    args = parser.parse_args()

    setup_logging(args.log_level)
    print_banner()

    mode = "TEST" if args.test else f"PLACE {args.place}" if args.place else "SERVE"
    logger.info("=" * 60)
    logger.info("TRADINGVIEW EXECUTOR")
    logger.info(f"Started: {datetime.now()}")
    logger.info(f"Mode: {mode}")
    logger.info("=" * 60)

    try:
        config.validate_credentials()
    except ValueError as e:
        logger.warning(f"{e}\nContinuing: a saved session or a manual login may still work.")

    controller = build_controller(headless=False if args.headed else None)
    watch_stdin_for_continue(controller)

    try:
        if args.test:
            sys.exit(test_mode(controller))
        elif args.place:
            sys.exit(place_mode(controller, args))
        else:
            serve_mode(controller)

    except KeyboardInterrupt:
        logger.info("Executor stopped by user")
        print("\nExecutor stopped.")

    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        import traceback
        logger.critical(traceback.format_exc())
        sys.exit(1)


if __name__ == "__main__":
    main()
