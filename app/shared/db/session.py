import time

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.shared.core.config import get_settings

logger = structlog.get_logger()
settings = get_settings()

is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# SQLite (local runs, tests) gets no pool; Postgres keeps a sized pool
engine_args = {"pool_pre_ping": True}
if settings.TESTING or is_sqlite:
    engine_args["poolclass"] = NullPool
else:
    engine_args["pool_size"] = settings.DB_POOL_SIZE
    engine_args["max_overflow"] = settings.DB_MAX_OVERFLOW
    engine_args["pool_recycle"] = 300
if is_sqlite:
    engine_args["connect_args"] = {"check_same_thread": False}

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DB_ECHO, **engine_args)


@event.listens_for(engine.sync_engine, "before_cursor_execute")
def before_cursor_execute(conn, _cursor, _statement, _parameters, _context, _executemany):
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


@event.listens_for(engine.sync_engine, "after_cursor_execute")
def after_cursor_execute(conn, _cursor, statement, _parameters, _context, _executemany):
    """Log slow queries. Row locks on subscriptions show up here under contention."""
    total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
    if total > settings.DB_SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            for_update="FOR UPDATE" in statement,
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
        )


# expire_on_commit=False: services read snapshots after commit without lazy loads
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db():
    """FastAPI dependency: one session per request, rolled back if the request fails."""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
