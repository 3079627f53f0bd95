"""
Connection health for the automation surface.

check() is a cheap liveness probe with a three-tier answer: the page is
fine, a live page was re-bound, or the browser must be relaunched.
reconcile_interstitials() clears disconnect dialogs the terminal puts
over the chart and re-attaches the broker if it dropped.
"""

import logging
from typing import List

from tv_executor import config
from tv_executor.config import Timings
from tv_executor.errors import ConnectivityFault, ElementNotFound
from tv_executor.models import ConnectionStatus
from tv_executor.probes import PROMOTION_CLOSE, RECOVERY_CONTROLS, detect_disconnect
from tv_executor.utils import poll_until

logger = logging.getLogger('tv_executor.health')

MAX_INTERSTITIAL_ATTEMPTS = 3


class HealthMonitor:

    def __init__(self, session_manager, timings: Timings = None,
                 site_fragment: str = config.TRADINGVIEW_DOMAIN):
        self.session_manager = session_manager
        self.timings = timings or Timings()
        self.site_fragment = site_fragment

    def check(self, surface) -> ConnectionStatus:
        """
        Liveness probe.

        Returns:
            VALID if the page answers, RECOVERED if another live page of the
            same browser was re-bound, RESTART_NEEDED otherwise
        """
        if surface is None or not surface.is_open:
            return ConnectionStatus.RESTART_NEEDED

        try:
            surface.evaluate("() => true")
            return ConnectionStatus.VALID
        except ConnectivityFault as e:
            logger.warning(f"Connection stale ({e}). Attempting recovery...")
        except Exception as e:
            # Only lost-browser errors count against the connection
            logger.warning(f"Liveness probe error treated as healthy: {e}")
            return ConnectionStatus.VALID

        if surface.rebind(self.site_fragment):
            logger.info("Recovered page reference from browser")
            return ConnectionStatus.RECOVERED

        logger.error("Could not recover page reference. Full browser restart needed.")
        return ConnectionStatus.RESTART_NEEDED

    def reconcile_interstitials(self, surface) -> List[str]:
        """
        Clear disconnect dialogs (up to 3 rounds), then make sure the broker
        is still attached.

        Returns:
            The dialog kinds that were seen, in order
        """
        t = self.timings
        seen = []

        def dialog_cleared() -> bool:
            kind = detect_disconnect(surface)
            if not kind:
                return True
            seen.append(kind)
            logger.warning(f"Disconnect detected ({kind}). Attempt {len(seen)}/{MAX_INTERSTITIAL_ATTEMPTS} to reconnect...")
            if surface.locate(RECOVERY_CONTROLS):
                logger.info("Clicking reconnect/refresh button...")
                surface.click(RECOVERY_CONTROLS)
                t.sleep(t.interstitial_settle)
            else:
                logger.info("No connect button found yet, waiting...")
                t.sleep(t.interstitial_idle)
            return False

        result = poll_until(dialog_cleared, interval=0, max_attempts=MAX_INTERSTITIAL_ATTEMPTS,
                            sleep=t.sleep, clock=t.clock)
        if seen and not result.timed_out:
            logger.info("Connection verified/restored")

        self.session_manager.reattach_broker(surface)
        return seen

    def dismiss_promotion(self, surface) -> bool:
        """Close a promotional modal covering the chart, if one is showing."""
        if not surface.locate(PROMOTION_CLOSE):
            return False
        logger.info("Promotion modal detected, dismissing...")
        try:
            surface.click(PROMOTION_CLOSE)
        except ElementNotFound:
            logger.debug("Promotion modal closed by itself")
            return False
        self.timings.sleep(self.timings.click_settle)
        return True
