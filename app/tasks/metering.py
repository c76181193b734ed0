"""
Metering Tasks — Celery entry points for the snapshot, quota-reset and alert cycles.

Each task runs one cycle through a fresh MeteringRuntime; the runtime opens
and commits its own session and records the job duration.
"""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


def _runtime():
    from app.services.scheduler import MeteringRuntime

    return MeteringRuntime()


@shared_task
def run_snapshot_cycle() -> dict:
    """Record a usage snapshot for every meterable key."""
    logger.info("Running usage snapshot cycle")
    result = _runtime().run_snapshot_cycle()
    if result.get("failed"):
        logger.warning("Snapshot cycle finished with %d failed keys", result["failed"])
    return result


@shared_task
def run_quota_reconciliation_cycle() -> dict:
    """Apply data-limit resets whose interval has elapsed."""
    logger.info("Running quota reconciliation cycle")
    return _runtime().run_quota_reconciliation_cycle()


@shared_task
def check_usage_alerts() -> dict:
    logger.info("Checking usage alerts")
    return _runtime().run_usage_alert_cycle()
