"""
Metering Runtime — process-owned driver for the periodic metering jobs.

The runtime holds the session factory, remote client factory and clock the
jobs need. ``run_*`` methods execute exactly one cycle synchronously and are
what Celery tasks and tests call. ``start()`` adds optional embedded timer
threads for deployments without Celery beat; the FastAPI lifespan owns that
instance and stops it on shutdown.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from app.db import SessionLocal
from app.metrics import LAST_SNAPSHOT_RUN, observe_job
from app.services.outline_client import get_outline_client
from app.services.snapshot_service import ClientFactory, Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Job:
    name: str
    interval_seconds: float
    run: Callable[[], dict]


class MeteringRuntime:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        client_factory: ClientFactory = get_outline_client,
        clock: Clock = utcnow,
        notifier=None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.clock = clock
        self.notifier = notifier
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Single cycles
    # ------------------------------------------------------------------

    def run_snapshot_cycle(self) -> dict:
        from app.services.snapshot_service import SnapshotService

        def _cycle(db) -> dict:
            result = SnapshotService(db, client_factory=self.client_factory, clock=self.clock).collect_all()
            db.commit()
            LAST_SNAPSHOT_RUN.set(self.clock().timestamp())
            return result.as_dict()

        return self._timed("run_snapshot_cycle", _cycle)

    def run_quota_reconciliation_cycle(self) -> dict:
        from app.services.quota_reset_service import QuotaResetService

        def _cycle(db) -> dict:
            result = QuotaResetService(db, client_factory=self.client_factory, clock=self.clock).reconcile_all()
            db.commit()
            return result.as_dict()

        return self._timed("run_quota_reconciliation_cycle", _cycle)

    def run_usage_alert_cycle(self) -> dict:
        from app.services.usage_alert_service import UsageAlertService

        def _cycle(db) -> dict:
            result = UsageAlertService(db, notifier=self.notifier, clock=self.clock).check_all()
            db.commit()
            return result.as_dict()

        return self._timed("check_usage_alerts", _cycle)

    def _timed(self, task_name: str, cycle: Callable) -> dict:
        start = time.monotonic()
        status = "success"
        try:
            with self.session_factory() as db:
                return cycle(db)
        except Exception:
            status = "error"
            raise
        finally:
            observe_job(task_name, status, time.monotonic() - start)

    # ------------------------------------------------------------------
    # Embedded timer loop
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def jobs(self) -> list[_Job]:
        from app.config import settings

        return [
            _Job("snapshot", settings.snapshot_interval_seconds, self.run_snapshot_cycle),
            _Job("quota_reset", settings.quota_reset_interval_seconds, self.run_quota_reconciliation_cycle),
            _Job("usage_alerts", settings.usage_alert_interval_seconds, self.run_usage_alert_cycle),
        ]

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                logger.debug("Metering runtime already running")
                return
            self._stop.clear()
            self._threads = [
                threading.Thread(target=self._loop, args=(job,), name=f"metering-{job.name}", daemon=True)
                for job in self.jobs()
            ]
            for thread in self._threads:
                thread.start()
        logger.info("Metering runtime started with %d jobs", len(self._threads))

    def stop(self, timeout: float = 10.0) -> None:
        with self._lock:
            self._stop.set()
            for thread in self._threads:
                thread.join(timeout=timeout)
            self._threads = []
        logger.info("Metering runtime stopped")

    def _loop(self, job: _Job) -> None:
        # Run immediately, then once per interval until stopped.
        while not self._stop.is_set():
            try:
                job.run()
            except Exception:
                logger.exception("Metering job %s failed", job.name)
            if self._stop.wait(job.interval_seconds):
                break
