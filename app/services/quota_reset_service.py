"""
Quota Reset Service — apply recurring data-limit resets.

A reset re-bases the ledger offset on a freshly fetched remote counter, so
displayed usage drops to zero, then raises the remote enforcement ceiling to
``remote cumulative + data limit``. The remote server has no notion of a
reset; it only enforces an absolute byte ceiling.

The local reset is the source of truth. A failed limit push is logged and
left for the next cycle; it never rolls the ledger back.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.config import settings as platform_settings
from app.metrics import LIMIT_PUSH_FAILURES, QUOTA_RESETS, SERVER_FETCH_FAILURES
from app.models.access_key import (
    UNMETERED_STATUSES,
    AccessKey,
    DataLimitResetStrategy,
    KeyStatus,
)
from app.models.dynamic_access_key import DynamicAccessKey
from app.models.server import Server
from app.services.outline_client import get_outline_client
from app.services.snapshot_service import ClientFactory, Clock, fetch_server_metrics, utcnow
from app.services.usage_ledger import MeterableKey, is_reset_due, remote_limit_after_reset, unchanged_since_read

logger = logging.getLogger(__name__)


@dataclass
class QuotaResetRunResult:
    checked: int = 0
    due: int = 0
    reset: int = 0
    limit_pushes: int = 0
    limit_push_failures: int = 0
    failed_servers: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


class QuotaResetService:
    def __init__(
        self,
        db: Session,
        client_factory: ClientFactory = get_outline_client,
        clock: Clock = utcnow,
        max_workers: int | None = None,
    ):
        self.db = db
        self.client_factory = client_factory
        self.clock = clock
        self.max_workers = max_workers or platform_settings.metering_max_workers

    def reconcile_all(self) -> QuotaResetRunResult:
        """Reset every key whose interval has elapsed. Safe to call repeatedly."""
        now = self.clock()
        result = QuotaResetRunResult()

        access_keys = self._resettable(AccessKey)
        dynamic_keys = self._resettable(DynamicAccessKey)
        result.checked = len(access_keys) + len(dynamic_keys)

        due_access = [k for k in access_keys if is_reset_due(k.data_limit_reset_strategy, k.last_data_limit_reset, now)]
        due_dynamic = [k for k in dynamic_keys if is_reset_due(k.data_limit_reset_strategy, k.last_data_limit_reset, now)]
        result.due = len(due_access) + len(due_dynamic)
        if not result.due:
            return result

        server_ids = {k.server_id for k in due_access}
        for dak in due_dynamic:
            server_ids.update(ak.server_id for ak in dak.access_keys)
        servers = {
            s.server_id: s
            for s in self.db.scalars(
                select(Server).where(Server.server_id.in_(server_ids)).where(Server.is_active.is_(True))
            )
        }

        # Counters are always fetched fresh here, never reused from snapshots.
        outcomes = fetch_server_metrics(list(servers.values()), self.client_factory, self.max_workers)
        fetched: dict[UUID, dict[str, int]] = {}
        for server_id, outcome in outcomes.items():
            server = servers[server_id]
            if isinstance(outcome, Exception):
                result.failed_servers += 1
                result.errors.append(f"{server.name}: {str(outcome)[:500]}")
                SERVER_FETCH_FAILURES.labels(job="quota_reset").inc()
                logger.warning("Quota reset skipped for server %s: %s", server.name, outcome)
            else:
                fetched[server_id] = outcome

        for key in due_access:
            metrics = fetched.get(key.server_id)
            if metrics is None:
                continue
            if key.outline_key_id not in metrics:
                logger.debug("Remote key %s missing from metrics; treating counter as 0", key.outline_key_id)
            remote = metrics.get(key.outline_key_id, 0)
            if not self._apply_reset(key, remote, now, result):
                continue
            if key.data_limit_bytes:
                self._push_limit(servers[key.server_id], key, remote, result)

        for dak in due_dynamic:
            attached = [ak for ak in dak.access_keys if ak.server_id in servers]
            if any(ak.server_id not in fetched for ak in attached):
                result.errors.append(f"dynamic key {dak.id}: attached server unreachable")
                continue
            total = sum(fetched[ak.server_id].get(ak.outline_key_id, 0) for ak in attached)
            self._apply_reset(dak, total, now, result)

        self.db.flush()
        logger.info(
            "Quota reconciliation: %d due, %d reset, %d limit pushes failed, %d servers unreachable",
            result.due,
            result.reset,
            result.limit_push_failures,
            result.failed_servers,
        )
        return result

    def _apply_reset(
        self,
        key: MeterableKey,
        remote_cumulative: int,
        now: datetime,
        result: QuotaResetRunResult,
    ) -> bool:
        """Conditional write: only applies if nobody reset the key since it was read."""
        stmt = update(type(key)).where(*unchanged_since_read(key))
        values = {
            "usage_offset": int(remote_cumulative),
            "used_bytes": 0,
            "last_data_limit_reset": now,
        }
        if key.status == KeyStatus.depleted:
            values["status"] = KeyStatus.active
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            with self.db.begin_nested():
                applied = self.db.execute(stmt).rowcount == 1
        except SQLAlchemyError:
            result.errors.append(f"{key.key_type.value} {key.id}: reset could not be written")
            logger.warning("Failed to write reset for %s %s", key.key_type.value, key.id, exc_info=True)
            return False

        self.db.expire(key)
        if not applied:
            logger.info("Reset for %s %s already applied elsewhere; skipping", key.key_type.value, key.id)
            return False

        result.reset += 1
        QUOTA_RESETS.labels(key_type=key.key_type.value, strategy=key.data_limit_reset_strategy.value).inc()
        logger.info(
            "Reset data limit for %s %s (%s): offset=%d",
            key.key_type.value,
            key.id,
            key.data_limit_reset_strategy.value,
            remote_cumulative,
        )
        return True

    def _push_limit(
        self,
        server: Server,
        key: AccessKey,
        remote_cumulative: int,
        result: QuotaResetRunResult,
    ) -> None:
        ceiling = remote_limit_after_reset(remote_cumulative, key.data_limit_bytes)
        try:
            self.client_factory(server).set_access_key_data_limit(key.outline_key_id, ceiling)
        except Exception as e:
            result.limit_push_failures += 1
            result.errors.append(f"{server.name}: limit push for key {key.id} failed: {e}")
            LIMIT_PUSH_FAILURES.inc()
            logger.warning(
                "Limit push failed for key %s on %s; key stays unenforced until the next cycle: %s",
                key.id,
                server.name,
                e,
            )
            return
        result.limit_pushes += 1
        logger.info(
            "Remote limit for key %s set to %d (%d + %d)",
            key.id,
            ceiling,
            remote_cumulative,
            key.data_limit_bytes,
        )

    def _resettable(self, model):
        stmt = (
            select(model)
            .where(model.data_limit_reset_strategy != DataLimitResetStrategy.never)
            .where(model.status.not_in(UNMETERED_STATUSES))
        )
        if model is AccessKey:
            stmt = stmt.join(Server, Server.server_id == AccessKey.server_id).where(Server.is_active.is_(True))
        else:
            stmt = stmt.options(selectinload(DynamicAccessKey.access_keys))
        return list(self.db.scalars(stmt).all())
