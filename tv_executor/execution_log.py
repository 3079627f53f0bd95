"""
Per-placement execution trace.

The remote terminal gives no structured telemetry, so every placement
carries its own timestamped, section-tagged trace that is returned with
the result. Each line is also sent to the 'tv_executor.execution' logger.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

logger = logging.getLogger('tv_executor.execution')

SECTIONS = (
    'connection',
    'position_check',
    'order_form',
    'direction',
    'order_type',
    'quantity',
    'take_profit',
    'stop_loss',
    'place_order',
    'confirmation',
    'result',
    'error',
)


class ExecutionLog:
    """Collects trace lines for one logical placement (a retry continues the same trace)"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._started = clock()
        self._lines: List[str] = []
        self.section_name: Optional[str] = None

    def _append(self, level: int, marker: str, message: str):
        stamp = datetime.now(timezone.utc).strftime('%H:%M:%S.%f')[:-3]
        tag = self.section_name.upper() if self.section_name else 'GENERAL'
        line = f"[{stamp}] [{tag}] {marker}{message}"
        self._lines.append(line)
        logger.log(level, f"[{tag}] {marker}{message}")

    def header(self, title: str):
        self._append(logging.INFO, '', "=" * 60)
        self._append(logging.INFO, '', title)
        self._append(logging.INFO, '', "=" * 60)

    def section(self, name: str, detail: str = None):
        if name not in SECTIONS:
            raise ValueError(f"Unknown log section: {name}")
        self.section_name = name
        title = f"--- {name.upper().replace('_', ' ')}"
        if detail:
            title += f" ({detail})"
        self._append(logging.INFO, '', title + " ---")

    def log(self, message: str):
        self._append(logging.INFO, '', message)

    def dom(self, message: str):
        self._append(logging.DEBUG, '[DOM] ', message)

    def success(self, message: str):
        self._append(logging.INFO, 'OK: ', message)

    def warn(self, message: str):
        self._append(logging.WARNING, 'WARNING: ', message)

    def error(self, message: str):
        self._append(logging.ERROR, 'ERROR: ', message)

    def lines(self) -> List[str]:
        return list(self._lines)

    def elapsed_seconds(self) -> float:
        return self._clock() - self._started
