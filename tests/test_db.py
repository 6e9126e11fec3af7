"""Tests for the retrying transaction wrapper."""

from __future__ import annotations

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from imgdedup.services.common import db as db_module
from imgdedup.services.common.db import is_retryable, run_transaction


class _PgOrig(Exception):
    """Synthetic driver error carrying a SQLSTATE."""

    def __init__(self, message: str, sqlstate: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate


def _conflict() -> OperationalError:
    return OperationalError("UPDATE images", {}, _PgOrig("restart transaction: TransactionRetryWithProtoRefreshError", "40001"))


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr(db_module.time, "sleep", lambda _s: None)


def test_is_retryable_recognises_serialization_failures() -> None:
    assert is_retryable(_conflict())
    assert is_retryable(OperationalError("SELECT 1", {}, _PgOrig("database is locked")))
    assert not is_retryable(OperationalError("SELECT 1", {}, _PgOrig("connection refused", "08006")))


def test_run_transaction_reruns_body_on_conflict(session_factory) -> None:
    calls = []

    def body(s):
        calls.append(1)
        if len(calls) < 3:
            raise _conflict()
        return s.execute(text("SELECT 42")).scalar()

    assert run_transaction(session_factory, body, max_retries=5) == 42
    assert len(calls) == 3


def test_run_transaction_gives_up_after_max_retries(session_factory) -> None:
    calls = []

    def body(_s):
        calls.append(1)
        raise _conflict()

    with pytest.raises(OperationalError):
        run_transaction(session_factory, body, max_retries=4)
    assert len(calls) == 4


def test_run_transaction_does_not_retry_other_errors(session_factory) -> None:
    calls = []

    def body(_s):
        calls.append(1)
        raise IntegrityError("INSERT", {}, _PgOrig("not null violation", "23502"))

    with pytest.raises(IntegrityError):
        run_transaction(session_factory, body, max_retries=5)
    assert calls == [1]


def test_run_transaction_commits_body_changes(session_factory) -> None:
    run_transaction(session_factory, lambda s: s.execute(text("CREATE TABLE t (x INTEGER)")))
    run_transaction(session_factory, lambda s: s.execute(text("INSERT INTO t VALUES (7)")))

    assert run_transaction(session_factory, lambda s: s.execute(text("SELECT x FROM t")).scalar()) == 7
