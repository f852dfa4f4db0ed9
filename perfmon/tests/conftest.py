from datetime import datetime, timedelta

import pandas as pd
import pytest

from perfmon.core.database import make_engine, make_session_factory
from perfmon.models import Base


T0 = datetime(2026, 1, 5, 12, 0, 0)
BOOT = datetime(2026, 1, 1, 8, 0, 0)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSource:
    """Stands in for SqlServerClient: frames are keyed by query text."""

    def __init__(self, clock, server_start_time=BOOT):
        self.clock = clock
        self.server_start_time = server_start_time
        self.frames = {}
        self.failures = {}
        self.calls = []
        self.closed = False
        self.server_info = {
            'server_name': 'SQL01',
            'instance_name': 'DEFAULT',
            'sql_version': '16.0.4135.4 - RTM',
            'edition': 'Developer Edition (64-bit)',
            'physical_memory_mb': 32768,
            'cpu_count': 8,
            'environment_type': 'OnPrem',
        }

    def set_frame(self, query, rows):
        self.frames[query] = pd.DataFrame(rows, dtype=object)

    def fetch_server_clock(self):
        return self.clock(), self.server_start_time

    def fetch_frame(self, query, params=(), source='sqlserver'):
        self.calls.append((query, tuple(params)))
        if query in self.failures:
            raise self.failures[query]
        return self.frames.get(query, pd.DataFrame()).copy()

    def fetch_server_info(self):
        if 'server_info' in self.failures:
            raise self.failures['server_info']
        return dict(self.server_info, sqlserver_start_time=self.server_start_time)

    def close(self):
        self.closed = True


@pytest.fixture
def store(tmp_path):
    # a file store, so separate sessions see each other's commits
    engine = make_engine(f"sqlite:///{tmp_path / 'perfmon.db'}", lock_timeout_ms=5000)
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source(clock):
    return FakeSource(clock)
