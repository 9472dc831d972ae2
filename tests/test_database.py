"""Tests for the MongoDB transaction wrapper, run against a fake client instead of the conftest stand-in."""

from contextlib import contextmanager

import pytest
from pymongo.errors import OperationFailure

import database
from errors import ConflictError, TransactionAbortError

# bound at import, before the autouse fixture swaps in the stand-in
real_transaction = database.transaction


class FakeSession:
    def __init__(self, fail_on_commit=False):
        self.fail_on_commit = fail_on_commit
        self.committed = False
        self.ended = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.ended = True
        return False

    @contextmanager
    def start_transaction(self):
        yield
        if self.fail_on_commit:
            raise OperationFailure("WriteConflict", code=112)
        self.committed = True


class FakeClient:
    def __init__(self, session):
        self.session = session

    def start_session(self):
        return self.session


@pytest.fixture
def fake_session(monkeypatch):
    def factory(fail_on_commit=False):
        session = FakeSession(fail_on_commit)
        monkeypatch.setattr(database, "client", FakeClient(session))
        return session

    return factory


class TestTransaction:
    def test_commits_on_clean_exit(self, fake_session):
        session = fake_session()
        with real_transaction() as active:
            assert active is session
        assert session.committed
        assert session.ended

    def test_commit_failure_becomes_retryable_abort(self, fake_session):
        session = fake_session(fail_on_commit=True)
        with pytest.raises(TransactionAbortError, match="please retry") as exc_info:
            with real_transaction():
                pass
        assert isinstance(exc_info.value.__cause__, OperationFailure)
        assert exc_info.value.status_code == 503
        assert session.ended

    def test_database_error_inside_the_block(self, fake_session):
        fake_session()
        with pytest.raises(TransactionAbortError):
            with real_transaction():
                raise OperationFailure("Transaction was aborted", code=251)

    def test_business_errors_pass_through(self, fake_session):
        session = fake_session()
        with pytest.raises(ConflictError, match="Insufficient stock"):
            with real_transaction():
                raise ConflictError("Insufficient stock for Widget")
        assert not session.committed
