from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from hyperfleet_controller.config import get_settings


Base = declarative_base()

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=30000;",
)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _build_engine():
    url = get_settings().database_url
    connect_args = {"check_same_thread": False} if _is_sqlite(url) else {}
    db_engine = create_engine(url, connect_args=connect_args, future=True)
    if _is_sqlite(url):
        # foreign_keys and busy_timeout are per-connection in sqlite.
        @event.listens_for(db_engine, "connect")
        def _apply_pragmas(dbapi_conn, _record) -> None:
            cursor = dbapi_conn.cursor()
            for pragma in SQLITE_PRAGMAS:
                cursor.execute(pragma)
            cursor.close()

    return db_engine


engine = _build_engine()
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def init_db() -> None:
    # Model modules register their tables on Base at import time.
    import hyperfleet_controller.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope():
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
