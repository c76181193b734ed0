from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import settings


class Base(DeclarativeBase):
    pass


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not configured")
    return create_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
    )


class _LazySessionFactory:
    """Binds the sessionmaker on first use so importing models never opens a pool."""

    def __init__(self) -> None:
        self._factory: sessionmaker | None = None

    def __call__(self, **kwargs):
        if self._factory is None:
            self._factory = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)
        return self._factory(**kwargs)


SessionLocal = _LazySessionFactory()
