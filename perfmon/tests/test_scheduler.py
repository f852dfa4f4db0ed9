from datetime import timedelta
from unittest import mock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from perfmon.clients import queries
from perfmon.core.errors import CollectorRuntimeError, SchedulerFatalError
from perfmon.models import CollectionLog, CollectionSchedule, ServerInfoHistory, WaitStats
from perfmon.services.collection_log import CollectionLogWriter
from perfmon.services.collectors import WaitStatsCollector
from perfmon.services.schedule import ScheduleRegistry
from perfmon.services.scheduler import Scheduler
from .conftest import T0


class StubCollector:
    def __init__(self, name, calls, log=None, fail=False):
        self.name = name
        self.calls = calls
        self.log = log
        self.fail = fail

    def run(self, debug=False):
        self.calls.append(self.name)
        if self.fail:
            raise RuntimeError(f"{self.name} exploded")
        if self.log is not None:
            self.log.record(self.name, 'SUCCESS', rows_collected=3)


def add_schedule(store, name, frequency=5, next_run_time=None, enabled=True):
    session = store()
    session.add(CollectionSchedule(
        collector_name=name, frequency_minutes=frequency, next_run_time=next_run_time, enabled=enabled,
    ))
    session.commit()
    session.close()


def schedule_row(store, name):
    session = store()
    row = session.execute(
        select(CollectionSchedule).where(CollectionSchedule.collector_name == name)
    ).scalar_one()
    session.close()
    return row


def log_rows(store, name=None):
    session = store()
    stmt = select(CollectionLog).order_by(CollectionLog.log_id)
    if name:
        stmt = stmt.where(CollectionLog.collector_name == name)
    rows = session.execute(stmt).scalars().all()
    session.close()
    return rows


def make_scheduler(store, clock, source, collectors):
    return Scheduler(source, collectors, store, clock, CollectionLogWriter(store, clock))


def test_end_to_end_collector_x(store, clock, source):
    log = CollectionLogWriter(store, clock)
    calls = []
    add_schedule(store, 'collector_X', frequency=5, next_run_time=T0 - timedelta(minutes=1))
    scheduler = make_scheduler(store, clock, source, {'collector_X': StubCollector('collector_X', calls, log)})

    assert scheduler.run_due_collectors() == (1, 0)

    assert calls == ['collector_X']
    row = schedule_row(store, 'collector_X')
    assert row.last_run_time == T0
    assert row.next_run_time == T0 + timedelta(minutes=5)
    rows = log_rows(store, 'collector_X')
    assert [(r.collection_status, r.rows_collected) for r in rows] == [('SUCCESS', 3)]


def test_end_to_end_collector_x_failure(store, clock, source):
    calls = []
    add_schedule(store, 'collector_X', frequency=5, next_run_time=T0 - timedelta(minutes=1))
    scheduler = make_scheduler(store, clock, source, {'collector_X': StubCollector('collector_X', calls, fail=True)})

    assert scheduler.run_due_collectors() == (0, 1)
    rows = log_rows(store, 'collector_X')
    assert [r.collection_status for r in rows] == ['ERROR']
    assert 'collector_X exploded' in rows[0].error_message
    assert schedule_row(store, 'collector_X').next_run_time == T0 + timedelta(minutes=5)


def test_failing_collector_does_not_stop_others(store, clock, source):
    log = CollectionLogWriter(store, clock)
    calls = []
    for offset, name in enumerate(('first', 'second', 'third')):
        add_schedule(store, name, frequency=5, next_run_time=T0 - timedelta(minutes=10 - offset))
    collectors = {
        'first': StubCollector('first', calls, log),
        'second': StubCollector('second', calls, log, fail=True),
        'third': StubCollector('third', calls, log),
    }
    scheduler = make_scheduler(store, clock, source, collectors)

    assert scheduler.run_due_collectors() == (2, 1)
    assert calls == ['first', 'second', 'third']
    for name in ('first', 'second', 'third'):
        row = schedule_row(store, name)
        assert row.last_run_time == T0
        assert row.next_run_time == T0 + timedelta(minutes=5)
    assert [r.collection_status for r in log_rows(store, 'second')] == ['ERROR']

    summary = log_rows(store, 'scheduled_master_collector')[-1]
    assert summary.collection_status == 'PARTIAL'
    assert summary.rows_collected == 2
    assert summary.error_message == 'Completed with 1 collector errors'


def test_failing_collector_advances_by_frequency_each_pass(store, clock, source):
    calls = []
    add_schedule(store, 'flaky', frequency=5, next_run_time=T0)
    scheduler = make_scheduler(store, clock, source, {'flaky': StubCollector('flaky', calls, fail=True)})

    scheduler.run_due_collectors()
    clock.advance(minutes=4)
    scheduler.run_due_collectors()
    assert calls == ['flaky']

    clock.advance(minutes=1)
    attempt = clock()
    scheduler.run_due_collectors()
    assert calls == ['flaky', 'flaky']
    assert schedule_row(store, 'flaky').next_run_time == attempt + timedelta(minutes=5)


def test_due_order_nulls_first_then_next_run_time(store, clock, source):
    calls = []
    add_schedule(store, 'late', next_run_time=T0 - timedelta(minutes=1))
    add_schedule(store, 'never_scheduled', next_run_time=None)
    add_schedule(store, 'early', next_run_time=T0 - timedelta(minutes=30))
    add_schedule(store, 'future', next_run_time=T0 + timedelta(minutes=30))
    collectors = {n: StubCollector(n, calls) for n in ('late', 'never_scheduled', 'early', 'future')}

    make_scheduler(store, clock, source, collectors).run_due_collectors()
    assert calls == ['never_scheduled', 'early', 'late']


def test_force_run_all_skips_disabled(store, clock, source):
    calls = []
    add_schedule(store, 'future', next_run_time=T0 + timedelta(hours=1))
    add_schedule(store, 'off', next_run_time=T0 - timedelta(hours=1), enabled=False)
    collectors = {n: StubCollector(n, calls) for n in ('future', 'off')}

    assert make_scheduler(store, clock, source, collectors).run_due_collectors(force_run_all=True) == (1, 0)
    assert calls == ['future']


def test_unregistered_collector_is_an_error(store, clock, source):
    add_schedule(store, 'ghost', next_run_time=T0)
    assert make_scheduler(store, clock, source, {}).run_due_collectors() == (0, 1)
    assert 'Unknown collector: ghost' in log_rows(store, 'ghost')[0].error_message


def test_adapter_failure_logged_once(store, clock, source):
    add_schedule(store, 'wait_stats_collector', next_run_time=T0)
    source.failures[queries.GET_WAIT_STATS] = CollectorRuntimeError('wait_stats_collector', 'timeout')
    collectors = {'wait_stats_collector': WaitStatsCollector(source, store, clock=clock)}

    assert make_scheduler(store, clock, source, collectors).run_due_collectors() == (0, 1)
    errors = [r for r in log_rows(store, 'wait_stats_collector') if r.collection_status == 'ERROR']
    assert len(errors) == 1


def test_real_adapter_through_scheduler(store, clock, source):
    registry = ScheduleRegistry(store, clock)
    registry.seed_defaults(['wait_stats_collector'])
    source.set_frame(queries.GET_WAIT_STATS, [
        {'wait_type': 'WRITELOG', 'waiting_tasks_count': 1, 'wait_time_ms': 10, 'max_wait_time_ms': 10,
         'signal_wait_time_ms': 0},
    ])
    collectors = {'wait_stats_collector': WaitStatsCollector(source, store, clock=clock)}
    scheduler = make_scheduler(store, clock, source, collectors)

    clock.advance(minutes=1)
    assert scheduler.run_due_collectors() == (1, 0)
    session = store()
    assert len(session.execute(select(WaitStats)).scalars().all()) == 1
    session.close()
    assert log_rows(store, 'scheduled_master_collector')[-1].collection_status == 'SUCCESS'


def test_server_info_recorded_once_per_epoch(store, clock, source):
    scheduler = make_scheduler(store, clock, source, {})
    scheduler.run_due_collectors()
    clock.advance(minutes=1)
    scheduler.run_due_collectors()

    session = store()
    assert len(session.execute(select(ServerInfoHistory)).scalars().all()) == 1
    session.close()

    source.server_start_time = clock() - timedelta(seconds=30)
    clock.advance(minutes=1)
    scheduler.run_due_collectors()
    session = store()
    starts = session.execute(
        select(ServerInfoHistory.sqlserver_start_time).order_by(ServerInfoHistory.collection_id)
    ).scalars().all()
    session.close()
    assert starts[-1] == source.server_start_time
    assert len(starts) == 2


def test_server_info_failure_does_not_stop_cycle(store, clock, source):
    calls = []
    add_schedule(store, 'a', next_run_time=T0)
    source.failures['server_info'] = CollectorRuntimeError('server_info_collector', 'connection reset')

    assert make_scheduler(store, clock, source, {'a': StubCollector('a', calls)}).run_due_collectors() == (1, 0)
    assert calls == ['a']
    assert log_rows(store, 'server_info_collector')[0].collection_status == 'ERROR'


def test_registry_failure_is_fatal(store, clock, source):
    registry = mock.Mock()
    registry.due_collectors.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
    scheduler = Scheduler(source, {}, store, clock, CollectionLogWriter(store, clock), registry=registry)

    with pytest.raises(SchedulerFatalError) as exc:
        scheduler.run_due_collectors()
    assert exc.value.logged
    rows = log_rows(store, 'scheduled_master_collector')
    assert rows[-1].collection_status == 'ERROR'


def test_summary_write_failure_is_fatal(store, clock, source):
    class SummaryFails(CollectionLogWriter):
        def record(self, collector_name, status, **kwargs):
            if collector_name == 'scheduled_master_collector' and status != 'ERROR':
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
            return super().record(collector_name, status, **kwargs)

    calls = []
    add_schedule(store, 'a', next_run_time=T0)
    scheduler = Scheduler(source, {'a': StubCollector('a', calls)}, store, clock, SummaryFails(store, clock))

    with pytest.raises(SchedulerFatalError) as exc:
        scheduler.run_due_collectors()
    assert calls == ['a']
    assert exc.value.logged
    assert 'Failed to record scheduler cycle' in log_rows(store, 'scheduled_master_collector')[-1].error_message
