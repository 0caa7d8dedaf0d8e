from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Optional

from docket.config_manager import ConfigManager
from docket.models import SyncReport, utc_now
from docket.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 300
MIN_INTERVAL_SECONDS = 30


class SyncScheduler:
    """Runs sync passes on a background thread: once at startup, then on the configured interval or on demand."""

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager, run_at_startup: bool = True) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.run_at_startup = run_at_startup
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._last_report: Optional[SyncReport] = None
        self._last_finished_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="docket-sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Sync scheduler started")

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            logger.info("Sync scheduler stopped")

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def last_run(self) -> dict[str, Any] | None:
        report = self._last_report
        if report is None:
            return None
        return {
            "trigger": report.trigger,
            "status": report.status,
            "changes_applied": report.changes_applied,
            "errors": len(report.errors),
            "finished_at": self._last_finished_at.isoformat() if self._last_finished_at else None,
        }

    def _interval_seconds(self) -> int:
        try:
            return max(MIN_INTERVAL_SECONDS, int(self.config_manager.load().sync.interval_seconds))
        except Exception:
            logger.exception("Could not read sync interval, using %ss", DEFAULT_INTERVAL_SECONDS)
            return DEFAULT_INTERVAL_SECONDS

    def _run(self, trigger: str) -> None:
        report = self.sync_engine.sync_all(trigger=trigger)
        self._last_report = report
        self._last_finished_at = utc_now()
        if isinstance(report, SyncReport) and report.status != "success":
            logger.warning("Scheduled %s sync ended %s with %d error(s)", trigger, report.status, len(report.errors))

    def _loop(self) -> None:
        if self.run_at_startup:
            self._run("startup")

        while not self._stop_event.is_set():
            interval = self._interval_seconds()
            logger.debug("Next scheduled sync in %ss", interval)
            manual = self._manual_trigger_event.wait(timeout=interval)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self._run("manual" if manual else "scheduled")
