"""
Database engine + session factory.

Always initializes — defaults to SQLite for local dev, Postgres in production.
get_session() always returns a real session; session_scope() wraps one unit
of work (commit on success, rollback on error).
"""
import threading
from contextlib import contextmanager, nullcontext

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from app.config import DATABASE_URL


class Base(DeclarativeBase):
    pass


# Railway injects postgres:// but SQLAlchemy 2.x requires postgresql://
url = DATABASE_URL.replace('postgres://', 'postgresql://', 1)

# SQLite needs different engine kwargs than Postgres
if url.startswith('sqlite'):
    engine = create_engine(url, connect_args={'check_same_thread': False, 'timeout': 30})
else:
    engine = create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=10)

SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

# SQLite allows a single writer; stage workers share one process lock.
_write_lock = threading.RLock() if url.startswith('sqlite') else None


def get_session():
    """Return a new DB session."""
    return SessionLocal()


@contextmanager
def session_scope():
    """Transactional scope around a series of operations."""
    with (_write_lock if _write_lock is not None else nullcontext()):
        session = get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
