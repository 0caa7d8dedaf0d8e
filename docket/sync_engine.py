from __future__ import annotations

import logging
import threading
import traceback
from time import monotonic
from typing import Any, Callable

from docket.caldav_client import CalDAVService
from docket.config_manager import ConfigManager
from docket.errors import NotFoundError, SyncError
from docket.event_sync import EventIngestor
from docket.models import (
    AccountConfig,
    Deadline,
    EventCalendarAccount,
    RepairResult,
    SyncConfig,
    SyncReport,
    TaskListAccount,
)
from docket.repair import OrphanRepairer
from docket.state_store import StateStore
from docket.task_sync import TaskSynchronizer

logger = logging.getLogger(__name__)

ServiceFactory = Callable[..., Any]


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        service_factory: ServiceFactory = CalDAVService,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.service_factory = service_factory
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _account_lock(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def _transport(self, account: AccountConfig, sync_config: SyncConfig) -> Any:
        return self.service_factory(account, timeout_seconds=sync_config.request_timeout_seconds)

    def sync_all(self, trigger: str = "manual") -> SyncReport:
        return self._run(trigger, account_id=None)

    def sync_account(self, account_id: str, trigger: str = "manual") -> SyncReport:
        account = self.config_manager.load().get_account(account_id)
        if account is None:
            raise NotFoundError(f"Unknown account: {account_id}")
        return self._run(trigger, account_id=account_id)

    def _run(self, trigger: str, account_id: str | None) -> SyncReport:
        started = monotonic()
        report = SyncReport(trigger=trigger)
        run_id: int | None = None
        try:
            config = self.config_manager.load()
            if account_id is None:
                accounts = config.enabled_accounts()
            else:
                account = config.get_account(account_id)
                accounts = [account] if account is not None else []
            run_id = self.state_store.start_sync_run(trigger=trigger)
            for account in accounts:
                self._sync_isolated(account, config.sync, report, run_id)
        except Exception as exc:
            logger.exception("Sync pass failed")
            report.errors.append(f"{type(exc).__name__}: {exc}")
            self._safe_audit(
                run_id,
                account_id="system",
                uid="sync",
                action="run_error",
                details={"trigger": trigger, "error": str(exc), "traceback": traceback.format_exc(limit=5)},
            )
        report.duration_ms = int((monotonic() - started) * 1000)
        self._finish_run(report, run_id)
        logger.info(
            "Sync %s finished: status=%s changes=%d conflicts=%d errors=%d in %dms",
            trigger,
            report.status,
            report.changes_applied,
            report.conflicts,
            len(report.errors),
            report.duration_ms,
        )
        return report

    def _sync_isolated(
        self,
        account: AccountConfig,
        sync_config: SyncConfig,
        report: SyncReport,
        run_id: int | None,
    ) -> None:
        account_id = account.account_id
        lock = self._account_lock(account_id)
        if not lock.acquire(blocking=False):
            message = f"{account_id}: sync already in progress, skipped"
            logger.warning(message)
            report.errors.append(message)
            return
        account_report = SyncReport(trigger=report.trigger)
        try:
            deadline = Deadline(account_id, sync_config.account_timeout_seconds)
            transport = self._transport(account, sync_config)
            if isinstance(account, EventCalendarAccount):
                EventIngestor(
                    self.state_store,
                    transport,
                    past_days=sync_config.event_window_past_days,
                    future_days=sync_config.event_window_future_days,
                    run_id=run_id,
                ).sync(account, account_report, deadline)
            else:
                TaskSynchronizer(self.state_store, transport, run_id=run_id).sync(account, account_report, deadline)
            account_report.accounts_synced = 1
        except Exception as exc:
            logger.exception("Sync of account %s failed", account_id)
            account_report.errors.append(f"{account_id}: {type(exc).__name__}: {exc}")
            self._safe_audit(
                run_id,
                account_id=account_id,
                uid="account",
                action="account_error",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
        finally:
            lock.release()
        report.merge(account_report)

    def repair(self, account_id: str) -> RepairResult:
        config = self.config_manager.load()
        account = config.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Unknown account: {account_id}")
        if not isinstance(account, TaskListAccount):
            raise SyncError(f"Account {account_id} is not a task list")
        lock = self._account_lock(account_id)
        if not lock.acquire(blocking=False):
            raise SyncError(f"{account_id}: sync already in progress")
        try:
            transport = self._transport(account, config.sync)
            return OrphanRepairer(self.state_store, transport).repair(account)
        finally:
            lock.release()

    def _finish_run(self, report: SyncReport, run_id: int | None) -> None:
        if run_id is None:
            return
        message = "; ".join(report.errors) if report.errors else f"{report.accounts_synced} account(s) synced"
        try:
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=report.status,
                message=message,
                duration_ms=report.duration_ms,
                changes_applied=report.changes_applied,
                conflicts=report.conflicts,
            )
        except Exception:
            logger.exception("Could not record sync run %s", run_id)

    def _safe_audit(self, run_id: int | None, **kwargs: Any) -> None:
        try:
            self.state_store.record_audit_event(run_id=run_id, **kwargs)
        except Exception:
            logger.exception("Could not record audit event")
