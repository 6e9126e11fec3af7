import logging
import time
from typing import Callable, TypeVar
from sqlalchemy import create_engine, BigInteger, String
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column, Mapped, sessionmaker
from .config import DB_MAX_RETRIES, DB_RETRY_BASE_DELAY_S
from ..observability.metrics import index_retries_total

log = logging.getLogger("db")
T = TypeVar("T")

SERIALIZATION_FAILURE = "40001"
_RETRY_MESSAGES = ("restart transaction", "database is locked")
_MAX_BACKOFF_S = 2.0


class Base(DeclarativeBase): pass

class ImageRecord(Base):
    __tablename__="images"
    name: Mapped[str] = mapped_column(String, primary_key=True)
    section: Mapped[str] = mapped_column(String, default="")
    prefix: Mapped[str] = mapped_column(String, default="")
    size: Mapped[int] = mapped_column(BigInteger, default=0)
    # unsigned 32-bit, so BIGINT rather than INTEGER
    fingerprint: Mapped[int] = mapped_column(BigInteger, index=True)


def make_session_factory(url: str, **kwargs) -> sessionmaker:
    engine = create_engine(url, echo=False, future=True, pool_pre_ping=True, **kwargs)
    return sessionmaker(bind=engine, expire_on_commit=False)


def is_retryable(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    # psycopg exposes sqlstate, psycopg2 pgcode
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == SERIALIZATION_FAILURE:
        return True
    msg = str(orig if orig is not None else exc).lower()
    return any(m in msg for m in _RETRY_MESSAGES)


def run_transaction(
    session_factory: Callable[[], Session],
    body: Callable[[Session], T],
    operation: str = "tx",
    max_retries: int = DB_MAX_RETRIES,
    base_delay: float = DB_RETRY_BASE_DELAY_S,
) -> T:
    """
    Run ``body`` inside a transaction and commit it, re-running the whole body
    in a fresh session when the database reports a serialization conflict.
    Non-retryable errors, and the last retryable one, propagate unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        with session_factory() as s:
            try:
                result = body(s)
                s.commit()
                return result
            except DBAPIError as e:
                s.rollback()
                if not is_retryable(e) or attempt >= max(1, max_retries):
                    raise
                index_retries_total.labels(operation=operation).inc()
                log.debug("retrying %s after conflict attempt=%d error=%s", operation, attempt, e.orig)
        time.sleep(min(_MAX_BACKOFF_S, base_delay * 2 ** (attempt - 1)))
