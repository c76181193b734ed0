import asyncio
import sys
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from types import ModuleType

import fastapi.dependencies.utils as fastapi_deps_utils
import fastapi.routing as fastapi_routing
import httpx
import pytest
import starlette.concurrency as starlette_concurrency
import starlette.routing as starlette_routing
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


async def _patched_run_in_threadpool(func, *args, **kwargs):
    """Run inline in tests to avoid cross-thread sqlite/session deadlocks."""
    return func(*args, **kwargs)


starlette_concurrency.run_in_threadpool = _patched_run_in_threadpool
starlette_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_deps_utils.run_in_threadpool = _patched_run_in_threadpool


class SyncASGIClient:
    def __init__(self, app):
        self._app = app

    async def _request(self, method: str, url: str, **kwargs):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self._app, raise_app_exceptions=False),
            base_url="http://testserver",
        ) as client:
            return await client.request(method, url, **kwargs)

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def close(self) -> None:
        return None


# Create a test engine BEFORE any app imports
_test_engine = create_engine(
    "sqlite+pysqlite:///file:metering_test?mode=memory&cache=shared",
    connect_args={"check_same_thread": False, "uri": True},
)


# Create a mock for the app.db module that uses our test engine
class TestBase(DeclarativeBase):
    __test__ = False


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


# Create a mock db module
mock_db_module = ModuleType("app.db")
mock_db_module.Base = TestBase  # type: ignore[attr-defined]
mock_db_module.SessionLocal = _TestSessionLocal  # type: ignore[attr-defined]
mock_db_module.get_engine = lambda: _test_engine  # type: ignore[attr-defined]

# Also mock app.config to prevent .env loading
mock_config_module = ModuleType("app.config")


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    celery_broker_url = "memory://"
    celery_result_backend = "cache+memory://"
    log_level = "INFO"
    log_json = False
    testing = True
    embedded_scheduler = False
    snapshot_interval_seconds = 3600
    quota_reset_interval_seconds = 300
    usage_alert_interval_seconds = 300
    outline_timeout_seconds = 5.0
    metering_max_workers = 4
    anomaly_baseline_floor_bytes = 1024 * 1024
    anomaly_result_limit = 20
    forecast_window_days = 7
    notification_cooldown_hours = 24
    expiry_warning_days = 3
    telegram_bot_token = None
    telegram_admin_chat_ids: tuple[str, ...] = ()


mock_config_module.settings = MockSettings()  # type: ignore[attr-defined]
mock_config_module.Settings = MockSettings  # type: ignore[attr-defined]

# Insert mocks before any app imports
sys.modules["app.config"] = mock_config_module
sys.modules["app.db"] = mock_db_module

# Now import the models - they'll use our mocked db module
from app.models.access_key import AccessKey, DataLimitResetStrategy, KeyStatus  # noqa: E402
from app.models.dynamic_access_key import DynamicAccessKey  # noqa: E402
from app.models.notification_log import NotificationLog  # noqa: E402
from app.models.server import Server  # noqa: E402
from app.models.traffic_log import TrafficLog  # noqa: E402
from app.models.usage_snapshot import UsageSnapshot  # noqa: E402

# Create all tables
TestBase.metadata.create_all(_test_engine)

# Re-export Base for compatibility
Base = TestBase

# Children first, so foreign keys never block the wipe.
_CLEANUP_ORDER = (NotificationLog, TrafficLog, UsageSnapshot, AccessKey, DynamicAccessKey, Server)


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture(autouse=True)
def _clean_tables(engine):
    """The in-memory database is shared across tests; start each one empty."""
    yield
    with engine.begin() as conn:
        for model in _CLEANUP_ORDER:
            conn.execute(model.__table__.delete())


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing."""
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def session_factory(engine):
    """Independent sessions, as the metering runtime opens them in production."""
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def make_server(db, name: str = "sg-1", is_active: bool = True, **kwargs) -> Server:
    server = Server(
        name=name,
        api_url=f"https://{name}.example.net:8443/secret",
        country_code=kwargs.pop("country_code", "SG"),
        is_active=is_active,
        **kwargs,
    )
    db.add(server)
    db.flush()
    return server


def make_access_key(db, server: Server, outline_key_id: str = "1", **kwargs) -> AccessKey:
    key = AccessKey(
        server_id=server.server_id,
        outline_key_id=outline_key_id,
        name=kwargs.pop("name", f"key-{outline_key_id}"),
        used_bytes=kwargs.pop("used_bytes", 0),
        usage_offset=kwargs.pop("usage_offset", 0),
        status=kwargs.pop("status", KeyStatus.active),
        data_limit_reset_strategy=kwargs.pop("data_limit_reset_strategy", DataLimitResetStrategy.never),
        **kwargs,
    )
    db.add(key)
    db.flush()
    return key


def make_dynamic_key(db, name: str = "dyn", **kwargs) -> DynamicAccessKey:
    dak = DynamicAccessKey(
        name=name,
        used_bytes=kwargs.pop("used_bytes", 0),
        usage_offset=kwargs.pop("usage_offset", 0),
        status=kwargs.pop("status", KeyStatus.active),
        data_limit_reset_strategy=kwargs.pop("data_limit_reset_strategy", DataLimitResetStrategy.never),
        **kwargs,
    )
    db.add(dak)
    db.flush()
    return dak


def make_snapshot(db, key, used_bytes: int, delta_bytes: int, created_at: datetime) -> UsageSnapshot:
    snap = UsageSnapshot(
        key_id=key.id,
        key_type=key.key_type,
        used_bytes=used_bytes,
        delta_bytes=delta_bytes,
        created_at=created_at,
    )
    db.add(snap)
    db.flush()
    return snap


class FakeOutlineClient:
    """In-memory stand-in for OutlineClient keyed by server name."""

    def __init__(self, metrics: dict[str, int] | None = None, error: Exception | None = None):
        self.metrics = dict(metrics or {})
        self.error = error
        self.limit_error: Exception | None = None
        self.limits: dict[str, int] = {}
        self.metrics_calls = 0

    def get_metrics(self) -> dict[str, int]:
        self.metrics_calls += 1
        if self.error is not None:
            raise self.error
        return dict(self.metrics)

    def set_access_key_data_limit(self, remote_key_id: str, limit_bytes: int) -> None:
        if self.limit_error is not None:
            raise self.limit_error
        self.limits[remote_key_id] = limit_bytes


@pytest.fixture()
def fake_clients():
    """Map of server name -> FakeOutlineClient plus a factory for services."""
    clients: dict[str, FakeOutlineClient] = {}

    def factory(server: Server) -> FakeOutlineClient:
        return clients.setdefault(server.name, FakeOutlineClient())

    factory.clients = clients  # type: ignore[attr-defined]
    return factory


@pytest.fixture()
def fixed_now():
    return datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session):
    """Create a test client with database dependency override."""
    from app.api.deps import get_db as deps_get_db
    from app.main import app

    def override_get_db():
        return db_session

    app.dependency_overrides[deps_get_db] = override_get_db

    @asynccontextmanager
    async def _test_lifespan(_app):
        yield

    original_lifespan = app.router.lifespan_context
    app.router.lifespan_context = _test_lifespan
    test_client = SyncASGIClient(app)
    try:
        yield test_client
    finally:
        test_client.close()
        app.router.lifespan_context = original_lifespan
        app.dependency_overrides.clear()
