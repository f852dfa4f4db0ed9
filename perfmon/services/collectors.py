"""Collector adapters.

An adapter reads one DMV from the monitored server, stores the result as a
new generation of its snapshot table and, for counter tables, asks the delta
engine to fill in the deltas before the transaction commits.
"""
import logging
import time
from datetime import timedelta

import numpy as np
import pandas as pd
from sqlalchemy import inspect, insert, select, func
from sqlalchemy.exc import SQLAlchemyError

from ..clients import queries
from ..core.clock import utcnow, elapsed_ms
from ..core.database import SessionLocal, TransactionScope
from ..core.errors import CollectorRuntimeError, DeltaComputationError, TableMissing
from ..models import (
    CollectionSchedule, CriticalIssue, WaitStats, QueryStats, ProcedureStats, PerfmonStats, FileIoStats,
    MemoryClerksStats, MemoryGrantStats, LatchStats, SpinlockStats, MemoryStats,
)
from .collection_log import CollectionLogWriter, SUCCESS, ERROR, TABLE_MISSING, TABLE_CREATED
from .delta_engine import DeltaEngine
from .issue_analyzer import IssueAnalyzer

DEFAULT_FREQUENCY_MINUTES = 15


def python_value(value):
    """Plain Python value for a DataFrame cell, None for missing."""
    if isinstance(value, np.datetime64):
        value = pd.Timestamp(value)
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and np.isnan(value):
        return None
    return value


class Collector:
    name = None
    model = None
    family = None
    query = None
    # collectors reading "executed since" windows from the plan cache
    uses_cutoff = False
    # counters the DMV reports as NULL for some entities; stored as 0
    zero_if_null = ()
    BACKLOG_MINUTES = 60

    def __init__(self, source, session_factory=None, delta_engine=None, collection_log=None, clock=utcnow):
        self.source = source
        self.session_factory = session_factory or SessionLocal
        self.clock = clock
        self.collection_log = collection_log or CollectionLogWriter(self.session_factory, clock)
        self.delta_engine = delta_engine or DeltaEngine(self.session_factory, self.collection_log, clock)
        self._table_checked = False

    @property
    def table(self):
        return self.model.__table__

    def run(self, debug=False):
        started = time.monotonic()
        self.ensure_table()

        try:
            with TransactionScope(None, self.session_factory) as scope:
                rows = self.collect(scope.session, debug)
                self.collection_log.record(
                    self.name, SUCCESS,
                    rows_collected=rows,
                    duration_ms=elapsed_ms(started, time.monotonic()),
                    session=scope.session,
                )
        except Exception as e:
            duration = elapsed_ms(started, time.monotonic())
            if isinstance(e, DeltaComputationError) and not e.logged:
                self.collection_log.record(
                    f"calculate_deltas_{e.table_name}", ERROR, duration_ms=e.duration_ms, error_message=e.reason
                )
                e.logged = True
            self.collection_log.record(self.name, ERROR, duration_ms=duration, error_message=str(e))
            error = CollectorRuntimeError(self.name, str(e))
            error.logged = True
            raise error from e

        self.after_commit()
        if debug:
            logging.info(f"{self.name}: collected {rows} rows in {elapsed_ms(started, time.monotonic())} ms")
        return rows

    def collect(self, session, debug=False) -> int:
        collection_time, server_start_time = self.source.fetch_server_clock()
        params = (self.cutoff(session, collection_time),) if self.uses_cutoff else ()
        frame = self.source.fetch_frame(self.query, params, source=self.name)
        rows = self.insert_generation(session, frame, collection_time, server_start_time)
        if self.family and rows:
            self.delta_engine.compute_deltas(self.family, session=session, debug=debug)
        return rows

    def after_commit(self):
        pass

    def ensure_table(self):
        if self._table_checked:
            return
        with TransactionScope(None, self.session_factory) as scope:
            bind = scope.session.get_bind()
            exists = inspect(bind).has_table(self.table.name)
        if not exists:
            self.collection_log.record(self.name, TABLE_MISSING, error_message=f"Table {self.table.name} missing")
            try:
                self.table.create(bind, checkfirst=True)
            except SQLAlchemyError as e:
                error = TableMissing(self.table.name)
                self.collection_log.record(self.name, ERROR, error_message=f"{error}: {e}")
                error.logged = True
                raise error from e
            self.collection_log.record(self.name, TABLE_CREATED, error_message=f"Created table {self.table.name}")
        self._table_checked = True

    def frequency_minutes(self, session) -> int:
        frequency = session.execute(
            select(CollectionSchedule.frequency_minutes).where(CollectionSchedule.collector_name == self.name)
        ).scalar()
        return frequency or DEFAULT_FREQUENCY_MINUTES

    def cutoff(self, session, now):
        """Lower bound on last_execution_time for this run's plan cache read."""
        latest = session.execute(select(func.max(self.table.c.collection_time))).scalar()
        if latest is not None:
            return latest
        if not self.collection_log.has_entries(session, self.name):
            # first run ever: pick up a wider backlog
            return now - timedelta(minutes=self.BACKLOG_MINUTES)
        return now - timedelta(minutes=self.frequency_minutes(session))

    def insert_generation(self, session, frame, collection_time, server_start_time) -> int:
        if frame is None or frame.empty:
            return 0
        columns = [c for c in frame.columns if c in self.table.c and c not in ('collection_id', 'collection_time')]
        records = []
        for row in frame[columns].itertuples(index=False, name=None):
            record = {c: python_value(v) for c, v in zip(columns, row)}
            record['collection_time'] = python_value(collection_time)
            record['server_start_time'] = python_value(server_start_time)
            for c in self.zero_if_null:
                if record.get(c) is None:
                    record[c] = 0
            records.append(record)
        session.execute(insert(self.table), records)
        return len(records)


class WaitStatsCollector(Collector):
    name = 'wait_stats_collector'
    model = WaitStats
    family = 'wait_stats'
    query = queries.GET_WAIT_STATS


class QueryStatsCollector(Collector):
    name = 'query_stats_collector'
    model = QueryStats
    family = 'query_stats'
    query = queries.GET_QUERY_STATS
    uses_cutoff = True


class ProcedureStatsCollector(Collector):
    name = 'procedure_stats_collector'
    model = ProcedureStats
    family = 'procedure_stats'
    query = queries.GET_PROCEDURE_STATS
    uses_cutoff = True


class PerfmonStatsCollector(Collector):
    name = 'perfmon_stats_collector'
    model = PerfmonStats
    family = 'perfmon_stats'
    query = queries.GET_PERFMON_STATS


class FileIoStatsCollector(Collector):
    name = 'file_io_stats_collector'
    model = FileIoStats
    family = 'file_io_stats'
    query = queries.GET_FILE_IO_STATS


class MemoryClerksStatsCollector(Collector):
    name = 'memory_clerks_stats_collector'
    model = MemoryClerksStats
    family = 'memory_clerks_stats'
    query = queries.GET_MEMORY_CLERKS_STATS


class MemoryGrantStatsCollector(Collector):
    name = 'memory_grant_stats_collector'
    model = MemoryGrantStats
    family = 'memory_grant_stats'
    query = queries.GET_MEMORY_GRANT_STATS
    # NULL on the small-query semaphore
    zero_if_null = ('timeout_error_count', 'forced_grant_count')


class LatchStatsCollector(Collector):
    name = 'latch_stats_collector'
    model = LatchStats
    family = 'latch_stats'
    query = queries.GET_LATCH_STATS


class SpinlockStatsCollector(Collector):
    name = 'spinlock_stats_collector'
    model = SpinlockStats
    family = 'spinlock_stats'
    query = queries.GET_SPINLOCK_STATS


class MemoryStatsCollector(Collector):
    name = 'memory_stats_collector'
    model = MemoryStats
    query = queries.GET_MEMORY_STATS


class ConfigurationIssuesAnalyzer(Collector):
    """Runs the issue rules against stored snapshots; never touches the monitored server."""
    name = 'configuration_issues_analyzer'
    model = CriticalIssue

    def __init__(self, source=None, session_factory=None, delta_engine=None, collection_log=None, clock=utcnow,
                 analyzer=None, notifier=None):
        super().__init__(source, session_factory, delta_engine, collection_log, clock)
        self.analyzer = analyzer or IssueAnalyzer(clock)
        self.notifier = notifier
        self._pending = []

    def collect(self, session, debug=False) -> int:
        issues = self.analyzer.analyze(session, self.clock())
        self._pending = issues
        return len(issues)

    def after_commit(self):
        issues, self._pending = self._pending, []
        if issues and self.notifier is not None:
            self.notifier.notify_issues(issues)


COLLECTOR_TYPES = {
    cls.name: cls for cls in (
        WaitStatsCollector,
        QueryStatsCollector,
        ProcedureStatsCollector,
        PerfmonStatsCollector,
        FileIoStatsCollector,
        MemoryClerksStatsCollector,
        MemoryGrantStatsCollector,
        LatchStatsCollector,
        SpinlockStatsCollector,
        MemoryStatsCollector,
        ConfigurationIssuesAnalyzer,
    )
}


def build_collectors(source, session_factory=None, collection_log=None, clock=utcnow, notifier=None):
    """One adapter instance per registered collector, sharing a log writer and delta engine."""
    session_factory = session_factory or SessionLocal
    collection_log = collection_log or CollectionLogWriter(session_factory, clock)
    delta_engine = DeltaEngine(session_factory, collection_log, clock)
    collectors = {}
    for name, cls in COLLECTOR_TYPES.items():
        if cls is ConfigurationIssuesAnalyzer:
            collectors[name] = cls(source, session_factory, delta_engine, collection_log, clock, notifier=notifier)
        else:
            collectors[name] = cls(source, session_factory, delta_engine, collection_log, clock)
    return collectors
