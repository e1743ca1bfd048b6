# coinvest/database.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Generator, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError

from coinvest.core.config import settings
from coinvest.errors import CoinvestError, ConcurrencyConflict, StoreUnavailable
from coinvest.models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

_engine = None
_SessionLocal = None
_database_url: str | None = None


def _normalize_url(url: str) -> str:
    # Railway/Heroku hand out postgres://; SQLAlchemy expects postgresql://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def configure(url: str | None = None) -> None:
    """Point the module at another database (drops the current engine)."""
    global _engine, _SessionLocal, _database_url
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
    _database_url = _normalize_url(url) if url else None


def get_engine():
    global _engine, _SessionLocal
    if _engine is None:
        url = _database_url or _normalize_url(settings.DATABASE_URL)
        if not url:
            raise RuntimeError("DATABASE_URL is not set")
        if url.startswith("sqlite"):
            kwargs = {
                "connect_args": {"check_same_thread": False, "timeout": settings.DB_POOL_TIMEOUT},
            }
        else:
            kwargs = {"pool_timeout": settings.DB_POOL_TIMEOUT}
        _engine = create_engine(url, pool_pre_ping=True, future=True, **kwargs)
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine, future=True)
    return _engine


def get_sessionmaker():
    if _SessionLocal is None:
        get_engine()
    return _SessionLocal


@contextmanager
def db_session() -> Generator[Session, None, None]:
    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db() -> Generator[Session, None, None]:
    with db_session() as db:
        yield db


@contextmanager
def store_guard(db: Session | None = None) -> Generator[None, None, None]:
    """Translate driver/connection failures into StoreUnavailable."""
    try:
        yield
    except CoinvestError:
        raise
    except SQLAlchemyError as e:
        if db is not None:
            _safe_rollback(db)
        logger.exception("Record store call failed")
        raise StoreUnavailable(f"record store unavailable: {e.__class__.__name__}") from e


def _safe_rollback(db: Session) -> None:
    try:
        db.rollback()
    except SQLAlchemyError:
        logger.warning("Rollback failed after store error", exc_info=True)


def run_atomic(db: Session, op: Callable[[], T], *, label: str = "operation") -> T:
    """Run ``op`` and commit it as one transaction.

    Optimistic version conflicts and unique-key races are retried with fresh
    reads. Any other failure rolls back everything ``op`` staged.
    """
    attempts = max(1, settings.CONFLICT_RETRIES)
    for attempt in range(1, attempts + 1):
        try:
            # reads inside op must see rows committed since the caller last looked
            db.expire_all()
            result = op()
            db.commit()
            return result
        except (StaleDataError, IntegrityError) as e:
            _safe_rollback(db)
            logger.info("%s: write conflict (%s), attempt %d/%d", label, e.__class__.__name__, attempt, attempts)
        except CoinvestError:
            _safe_rollback(db)
            raise
        except SQLAlchemyError as e:
            _safe_rollback(db)
            logger.exception("%s: record store call failed", label)
            raise StoreUnavailable(f"record store unavailable: {e.__class__.__name__}") from e

    raise ConcurrencyConflict(f"{label}: gave up after {attempts} conflicting attempts")


def check_connection() -> None:
    with get_engine().connect() as conn:
        conn.execute(text("SELECT 1"))


def init_db() -> None:
    engine = get_engine()
    Base.metadata.create_all(bind=engine, checkfirst=True)
