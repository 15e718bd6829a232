"""
Auto-Charge Scheduler Module

Runs scheduled savings contributions on a fixed tick in a single daemon
worker thread. Ticks never overlap: a tick that finds the previous scan still
in flight is skipped.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import threading

from .savings import SavingsManager, AutoChargeOutcome
from .logging_config import get_logger, log_action, correlation_context

logger = get_logger("banka.scheduler")


@dataclass
class AutoChargeReport:
    """Goal ids by outcome for one scan"""
    charged: List[str] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    ran: bool = True

    @property
    def total(self) -> int:
        return len(self.charged) + len(self.completed) + len(self.skipped) + len(self.failed)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AutoChargeScheduler:
    """
    Periodic scan of due savings goals
    """

    def __init__(
        self,
        savings: SavingsManager,
        tick_seconds: float = 60,
        clock: Callable[[], datetime] = _utc_now
    ):
        self.savings = savings
        self.tick_seconds = tick_seconds
        self.clock = clock
        self._scan_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_run: Optional[datetime] = None
        self._last_report: Optional[AutoChargeReport] = None
        self._skipped_ticks = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker thread"""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="auto-charge-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Auto-charge scheduler started (tick {self.tick_seconds}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the worker to stop and wait for the current scan"""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Auto-charge scheduler stopped")

    def run_once(self, now: Optional[datetime] = None) -> AutoChargeReport:
        """
        Scan due goals and charge each one

        Returns a report with ran=False when a scan is already in flight.
        """
        if not self._scan_lock.acquire(blocking=False):
            self._skipped_ticks += 1
            logger.warning("Auto-charge scan still running; tick skipped")
            return AutoChargeReport(ran=False)

        try:
            now = now or self.clock()
            report = AutoChargeReport()
            for goal in self.savings.due_goals(now):
                try:
                    with correlation_context(f"auto-charge:{goal.id}"):
                        outcome = self.savings.auto_charge(goal.id, now)
                except Exception as e:
                    logger.error(f"Auto-charge failed for goal {goal.id}: {e}", exc_info=True)
                    report.failed.append(goal.id)
                    continue

                if outcome == AutoChargeOutcome.CHARGED:
                    report.charged.append(goal.id)
                elif outcome == AutoChargeOutcome.COMPLETED:
                    report.completed.append(goal.id)
                else:
                    report.skipped.append(goal.id)

            self._last_run = now
            self._last_report = report
            if report.total:
                log_action(logger, "info", f"Auto-charge scan processed {report.total} goals",
                           action="auto_charge_scan",
                           extra={"charged": len(report.charged), "completed": len(report.completed),
                                  "skipped": len(report.skipped), "failed": len(report.failed)})
            return report
        finally:
            self._scan_lock.release()

    def status(self) -> Dict[str, Any]:
        """Scheduler state for health endpoints"""
        report = self._last_report
        return {
            "running": self.is_running,
            "tick_seconds": self.tick_seconds,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "skipped_ticks": self._skipped_ticks,
            "last_report": {
                "charged": len(report.charged),
                "completed": len(report.completed),
                "skipped": len(report.skipped),
                "failed": len(report.failed),
            } if report else None,
        }

    def _loop(self) -> None:
        """Worker loop: one scan per tick until stopped"""
        while not self._stop_event.wait(self.tick_seconds):
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in auto-charge loop: {e}", exc_info=True)
