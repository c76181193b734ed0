"""
Snapshot Service — pull remote transfer counters and record usage snapshots.

One metrics fetch per server per cycle. Fetches for different servers run
concurrently on a small thread pool; every database write happens on the
calling thread, one SAVEPOINT per key so a failed key never leaves its
snapshot and its ledger row out of step.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.config import settings as platform_settings
from app.metrics import (
    REMOTE_FETCH_LATENCY,
    SERVER_FETCH_FAILURES,
    SNAPSHOT_KEY_FAILURES,
    SNAPSHOTS_WRITTEN,
)
from app.models.access_key import UNMETERED_STATUSES, AccessKey, KeyStatus, KeyType
from app.models.dynamic_access_key import DynamicAccessKey
from app.models.server import Server
from app.models.traffic_log import TrafficLog
from app.models.usage_snapshot import UsageSnapshot
from app.services.outline_client import OutlineApiError, RemoteCounterClient, get_outline_client
from app.services.usage_ledger import LedgerReading, MeterableKey, is_depleted, read_counter, unchanged_since_read

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Server], RemoteCounterClient]
Clock = Callable[[], datetime]

_DEPLETABLE_STATUSES = (KeyStatus.active, KeyStatus.pending)


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ServerRunStats:
    server_id: str
    server_name: str
    fetched: bool = False
    keys_recorded: int = 0
    keys_failed: int = 0
    error: str | None = None


@dataclass
class SnapshotRunResult:
    success: int = 0
    failed: int = 0
    dynamic_recorded: int = 0
    errors: list[str] = field(default_factory=list)
    servers: list[ServerRunStats] = field(default_factory=list)

    @property
    def servers_failed(self) -> int:
        return sum(1 for s in self.servers if not s.fetched)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["servers_failed"] = self.servers_failed
        return data


def fetch_server_metrics(
    servers: list[Server],
    client_factory: ClientFactory,
    max_workers: int,
    timeout: float | None = None,
) -> dict[UUID, dict[str, int] | Exception]:
    """Fetch counters for each server concurrently; failures are returned, not raised.

    httpx applies its timeout per phase (connect, read, ...), so a server that
    trickles its response can outlive it. Each fetch is therefore also held to
    a wall-clock deadline here; a fetch that misses it is reported as failed
    and its worker thread is abandoned rather than joined.
    """
    if not servers:
        return {}
    timeout = platform_settings.outline_timeout_seconds if timeout is None else timeout

    def _fetch(server: Server) -> dict[str, int]:
        start = time.monotonic()
        try:
            metrics = client_factory(server).get_metrics()
        except Exception:
            REMOTE_FETCH_LATENCY.labels(outcome="error").observe(time.monotonic() - start)
            raise
        REMOTE_FETCH_LATENCY.labels(outcome="ok").observe(time.monotonic() - start)
        return metrics

    outcomes: dict[UUID, dict[str, int] | Exception] = {}
    workers = max(1, min(max_workers, len(servers)))
    # Servers beyond the pool size queue behind earlier ones.
    deadline = time.monotonic() + timeout * math.ceil(len(servers) / workers)
    pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="outline-fetch")
    try:
        futures = {server.server_id: (server, pool.submit(_fetch, server)) for server in servers}
        for server_id, (server, future) in futures.items():
            try:
                outcomes[server_id] = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FuturesTimeoutError:
                future.cancel()
                outcomes[server_id] = OutlineApiError(f"metrics fetch from {server.name} exceeded {timeout:g}s")
            except Exception as e:
                outcomes[server_id] = e
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
    return outcomes


class SnapshotService:
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

    def collect_all(self) -> SnapshotRunResult:
        """Record one snapshot per meterable key across all active servers."""
        now = self.clock()
        result = SnapshotRunResult()

        access_keys = self._meterable_access_keys()
        dynamic_keys = self._meterable_dynamic_keys()

        server_ids = {k.server_id for k in access_keys}
        for dak in dynamic_keys:
            server_ids.update(ak.server_id for ak in dak.access_keys)
        servers = self._active_servers(server_ids)

        keys_by_server: dict[UUID, list[AccessKey]] = {}
        for key in access_keys:
            keys_by_server.setdefault(key.server_id, []).append(key)

        outcomes = fetch_server_metrics(servers, self.client_factory, self.max_workers)
        fetched: dict[UUID, dict[str, int]] = {}

        for server in servers:
            stats = ServerRunStats(server_id=str(server.server_id), server_name=server.name)
            result.servers.append(stats)
            keys = keys_by_server.get(server.server_id, [])
            outcome = outcomes.get(server.server_id)

            if isinstance(outcome, Exception) or outcome is None:
                stats.error = str(outcome)[:500]
                stats.keys_failed = len(keys)
                result.failed += len(keys)
                result.errors.append(f"{server.name}: {stats.error}")
                SERVER_FETCH_FAILURES.labels(job="snapshot").inc()
                logger.warning("Snapshot fetch failed for server %s: %s", server.name, stats.error)
                continue

            stats.fetched = True
            fetched[server.server_id] = outcome
            for key in keys:
                remote = outcome.get(key.outline_key_id, 0)
                if self._record(key, remote, now, server_id=server.server_id) is None:
                    stats.keys_failed += 1
                    result.failed += 1
                    result.errors.append(f"{server.name}: key {key.id} could not be recorded")
                else:
                    stats.keys_recorded += 1
                    result.success += 1

        self._collect_dynamic(dynamic_keys, {s.server_id for s in servers}, fetched, now, result)

        self.db.flush()
        logger.info(
            "Snapshot cycle: %d keys recorded, %d failed, %d/%d servers unreachable",
            result.success,
            result.failed,
            result.servers_failed,
            len(result.servers),
        )
        return result

    def _collect_dynamic(
        self,
        dynamic_keys: list[DynamicAccessKey],
        active_server_ids: set[UUID],
        fetched: dict[UUID, dict[str, int]],
        now: datetime,
        result: SnapshotRunResult,
    ) -> None:
        for dak in dynamic_keys:
            attached = [ak for ak in dak.access_keys if ak.server_id in active_server_ids]
            missing = {ak.server_id for ak in attached if ak.server_id not in fetched}
            if missing:
                result.failed += 1
                result.errors.append(f"dynamic key {dak.id}: {len(missing)} server(s) unreachable")
                continue
            total = sum(fetched[ak.server_id].get(ak.outline_key_id, 0) for ak in attached)
            if self._record(dak, total, now, server_id=None) is None:
                result.failed += 1
                result.errors.append(f"dynamic key {dak.id} could not be recorded")
            else:
                result.success += 1
                result.dynamic_recorded += 1

    def _record(
        self,
        key: MeterableKey,
        remote_cumulative: int,
        now: datetime,
        server_id: UUID | None,
    ) -> LedgerReading | None:
        reading = read_counter(key, remote_cumulative)
        if reading.regressed:
            logger.info(
                "Remote counter for %s %s fell behind the ledger; clamping delta to 0",
                key.key_type.value,
                key.id,
            )
        values = {"used_bytes": reading.used_bytes}
        if key.status in _DEPLETABLE_STATUSES and is_depleted(reading.used_bytes, key.data_limit_bytes):
            values["status"] = KeyStatus.depleted
        # A reset committed since the key was loaded moves the offset; the
        # reading above is then stale and must not land on the new offset.
        stmt = (
            update(type(key))
            .where(*unchanged_since_read(key))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        key_type, key_id = key.key_type, key.id
        try:
            with self.db.begin_nested():
                applied = self.db.execute(stmt).rowcount == 1
                if applied:
                    self.db.add(
                        UsageSnapshot(
                            key_id=key_id,
                            key_type=key_type,
                            server_id=server_id,
                            used_bytes=reading.used_bytes,
                            delta_bytes=reading.delta_bytes,
                            created_at=now,
                        )
                    )
                    if key_type == KeyType.access_key:
                        self.db.add(
                            TrafficLog(
                                access_key_id=key_id,
                                bytes_used=reading.used_bytes,
                                delta_bytes=reading.delta_bytes,
                                recorded_at=now,
                            )
                        )
                    self.db.flush()
        except SQLAlchemyError:
            SNAPSHOT_KEY_FAILURES.labels(key_type=key_type.value).inc()
            logger.warning("Failed to record snapshot for %s %s", key_type.value, key_id, exc_info=True)
            self.db.expire(key)
            return None

        self.db.expire(key)
        if not applied:
            SNAPSHOT_KEY_FAILURES.labels(key_type=key_type.value).inc()
            logger.info("Ledger for %s %s was reset during the cycle; reading discarded", key_type.value, key_id)
            return None
        if values.get("status") == KeyStatus.depleted:
            logger.info("Key %s reached its data limit; marking depleted", key_id)
        SNAPSHOTS_WRITTEN.labels(key_type=key_type.value).inc()
        return reading

    def _meterable_access_keys(self) -> list[AccessKey]:
        stmt = (
            select(AccessKey)
            .join(Server, Server.server_id == AccessKey.server_id)
            .where(Server.is_active.is_(True))
            .where(AccessKey.status.not_in(UNMETERED_STATUSES))
        )
        return list(self.db.scalars(stmt).all())

    def _meterable_dynamic_keys(self) -> list[DynamicAccessKey]:
        stmt = (
            select(DynamicAccessKey)
            .where(DynamicAccessKey.status.not_in(UNMETERED_STATUSES))
            .options(selectinload(DynamicAccessKey.access_keys))
        )
        return list(self.db.scalars(stmt).all())

    def _active_servers(self, server_ids: set[UUID]) -> list[Server]:
        if not server_ids:
            return []
        stmt = (
            select(Server)
            .where(Server.server_id.in_(server_ids))
            .where(Server.is_active.is_(True))
            .order_by(Server.name)
        )
        return list(self.db.scalars(stmt).all())
