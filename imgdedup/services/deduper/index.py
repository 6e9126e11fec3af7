from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import func
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..common.config import DB_MAX_RETRIES
from ..common.db import Base, ImageRecord, is_retryable, run_transaction
from .errors import IndexUnavailable, TransientIndexConflict

log = logging.getLogger("deduper-index")

_DUPLICATE_TABLE = "42P07"
_POSTGRES_DIALECTS = {"postgresql", "cockroachdb"}


@dataclass(frozen=True)
class ObjectRecord:
    name: str
    section: str
    prefix: str
    size: int
    fingerprint: int

    @classmethod
    def from_descriptor(cls, d) -> "ObjectRecord":
        return cls(
            name=d.name,
            section=section_of(d.name),
            prefix=posixpath.dirname(d.name) or ".",
            size=int(d.size),
            fingerprint=int(d.fingerprint),
        )


def section_of(name: str) -> str:
    return name.split("/")[0]


def _already_exists(exc: SQLAlchemyError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == _DUPLICATE_TABLE or "already exists" in str(exc).lower()


def _insert_ignore(dialect: str, values: dict):
    if dialect in _POSTGRES_DIALECTS:
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        return None
    return insert(ImageRecord.__table__).values(**values).on_conflict_do_nothing(index_elements=["name"])


class FingerprintIndex:
    """
    Durable table of every object seen, keyed by name.

    Each call runs in its own retrying transaction, so a count followed by an
    insert is two transactions and not atomic as a pair.
    """

    def __init__(self, session_factory: Callable[[], Session], max_retries: int = DB_MAX_RETRIES):
        self.session_factory = session_factory
        self.max_retries = max_retries

    def _run(self, operation: str, body):
        try:
            return run_transaction(self.session_factory, body, operation=operation, max_retries=self.max_retries)
        except DBAPIError as e:
            if is_retryable(e):
                raise TransientIndexConflict(f"{operation}: {e.orig}") from e
            raise IndexUnavailable(f"{operation}: {e}") from e
        except SQLAlchemyError as e:
            raise IndexUnavailable(f"{operation}: {e}") from e

    def ensure_schema(self) -> None:
        log.info("creating image table")

        def body(s: Session):
            Base.metadata.create_all(bind=s.connection(), tables=[ImageRecord.__table__])

        try:
            self._run("ensure_schema", body)
        except IndexUnavailable as e:
            # a concurrent instance can win the CREATE between check and create
            if e.__cause__ is None or not _already_exists(e.__cause__):
                raise
        log.info("image table created")

    def count_by_fingerprint(self, fingerprint: int) -> int:
        def body(s: Session) -> int:
            return s.query(func.count(ImageRecord.name)).filter(ImageRecord.fingerprint == fingerprint).scalar() or 0

        return int(self._run("count", body))

    def insert(self, record: ObjectRecord) -> bool:
        """Insert ``record`` unless its name is already present. Returns True if a row was written."""
        values = {
            "name": record.name,
            "section": record.section,
            "prefix": record.prefix,
            "size": record.size,
            "fingerprint": record.fingerprint,
        }

        def body(s: Session) -> bool:
            stmt = _insert_ignore(s.get_bind().dialect.name, values)
            if stmt is not None:
                return s.execute(stmt).rowcount > 0
            if s.get(ImageRecord, record.name) is not None:
                return False
            s.add(ImageRecord(**values))
            s.flush()
            return True

        return bool(self._run("insert", body))
