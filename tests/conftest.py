"""Shared fixtures: a throwaway database and a clock tests can move by hand."""

from datetime import datetime, timedelta, timezone

import pytest

from gblist.storage.engine import Storage

BUCKET = "test"


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(db_path):
    s = Storage.open(db_path, ttl=timedelta(minutes=10))
    yield s
    s.close()


@pytest.fixture
def clocked_storage(db_path, clock):
    s = Storage.open(db_path, ttl=timedelta(minutes=10), clock=clock)
    yield s
    s.close()
