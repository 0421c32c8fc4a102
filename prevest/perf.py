"""Stage timing for estimation runs.

Usage:
    from prevest.perf import StageTimer

    timer = StageTimer(enabled=True)
    with timer.track("bootstrap"):
        fit_bootstrap(...)
    print(timer.report())

When disabled, track() is a no-op.
"""

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict


logger = logging.getLogger(__name__)


class StageTimer:
    """Wall-clock time per named stage."""

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self._totals: Dict[str, float] = defaultdict(float)
        self._calls: Dict[str, int] = defaultdict(int)

    @contextmanager
    def track(self, stage: str):
        if not self.enabled:
            yield
            return
        t0 = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - t0
            self._totals[stage] += elapsed
            self._calls[stage] += 1
            logger.debug("Stage %s took %.3fs", stage, elapsed)

    @property
    def total(self) -> float:
        return sum(self._totals.values())

    def summary(self) -> dict:
        """Per-stage seconds and share, suitable for JSON."""
        total = self.total
        out = {
            name: {
                'total_s': round(secs, 4),
                'calls': self._calls[name],
                'pct': round(secs / total * 100, 1) if total > 0 else 0.0,
            }
            for name, secs in sorted(self._totals.items(), key=lambda x: -x[1])
        }
        out['_total_s'] = round(total, 4)
        return out

    def report(self, title: str = "Stage timing") -> str:
        lines = [
            f"{title}",
            f"{'Stage':<20} {'Total (s)':>10} {'Calls':>6} {'%':>6}",
        ]
        for name, row in self.summary().items():
            if name == '_total_s':
                continue
            lines.append(f"{name:<20} {row['total_s']:>10.4f} {row['calls']:>6} {row['pct']:>5.1f}%")
        lines.append(f"{'TOTAL':<20} {self.total:>10.4f}")
        return '\n'.join(lines)

    def reset(self) -> None:
        self._totals.clear()
        self._calls.clear()
