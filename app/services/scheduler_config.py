"""Celery configuration and beat schedule for the metering jobs."""

from __future__ import annotations

from app.config import settings


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "task_serializer": "json",
        "result_serializer": "json",
        "accept_content": ["json"],
        "timezone": "UTC",
        "enable_utc": True,
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
        "result_expires": 3600,
    }


def build_beat_schedule() -> dict:
    return {
        "metering-snapshot-cycle": {
            "task": "app.tasks.metering.run_snapshot_cycle",
            "schedule": float(settings.snapshot_interval_seconds),
        },
        "metering-quota-reconciliation": {
            "task": "app.tasks.metering.run_quota_reconciliation_cycle",
            "schedule": float(settings.quota_reset_interval_seconds),
        },
        "metering-usage-alerts": {
            "task": "app.tasks.metering.check_usage_alerts",
            "schedule": float(settings.usage_alert_interval_seconds),
        },
    }
