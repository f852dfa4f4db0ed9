from unittest.mock import Mock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from perfmon import main as cli
from perfmon.clients import queries
from perfmon.core.clock import utcnow
from perfmon.core.errors import CollectorRuntimeError
from perfmon.models import CollectionSchedule
from perfmon.services.collection_log import CollectionLogWriter
from perfmon.services.provisioning import provision


@pytest.fixture
def app(store, clock, source):
    """Patch the entry point onto the SQLite store and the fake server."""
    scheduler = cli.build_scheduler(source=source, session_factory=store, clock=clock)

    def provision_store(bind, session_factory, collector_names=None):
        registry = provision(store.kw['bind'], session_factory, collector_names, clock)
        # staggered first runs are a few seconds out
        clock.advance(minutes=1)
        return registry

    with patch('perfmon.main.wait_for_db', return_value=True), \
            patch('perfmon.main.build_scheduler', return_value=scheduler), \
            patch('perfmon.main.provision', side_effect=provision_store) as mock_provision:
        yield scheduler, mock_provision


def frequencies(store):
    session = store()
    rows = session.execute(select(CollectionSchedule.collector_name, CollectionSchedule.frequency_minutes)).all()
    session.close()
    return dict(rows)


def test_run_cycle_with_given_scheduler(store, clock, source):
    scheduler = cli.build_scheduler(source=source, session_factory=store, clock=clock)
    scheduler.registry = provision(store.kw['bind'], store, scheduler.collectors.keys(), clock)

    collectors_run, errors = cli.run_cycle(force_run_all=True, scheduler=scheduler)

    assert errors == 0
    assert collectors_run == len(scheduler.collectors)


def test_once_runs_due_collectors(app, source):
    scheduler, mock_provision = app
    assert cli.main(['--once']) == 0
    mock_provision.assert_called_once()
    assert source.closed


def test_once_reports_collector_errors(app, source):
    source.failures[queries.GET_WAIT_STATS] = CollectorRuntimeError('wait_stats_collector', 'login timeout')
    assert cli.main(['--once']) == 2
    assert source.closed


def test_profile_changes_stored_frequencies(app, store):
    assert cli.main(['--profile', 'consulting', '--health']) == 0
    stored = frequencies(store)
    assert stored['wait_stats_collector'] == 5
    assert stored['memory_grant_stats_collector'] == 5


def test_health_prints_report(app, store, capsys):
    CollectionLogWriter(store).record('wait_stats_collector', 'SUCCESS', rows_collected=4, collection_time=utcnow())

    assert cli.main(['--health']) == 0
    out = capsys.readouterr().out
    assert 'wait_stats_collector' in out
    assert 'HEALTHY' in out


def test_health_with_empty_log(app, capsys):
    assert cli.main(['--health']) == 0
    assert 'No collection activity' in capsys.readouterr().out


def test_fatal_scheduler_error_exits_1(app, source):
    scheduler, mock_provision = app
    registry = Mock()
    registry.due_collectors.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
    mock_provision.side_effect = None
    mock_provision.return_value = registry

    assert cli.main(['--once']) == 1
    assert source.closed


def test_unreachable_store_exits_1():
    with patch('perfmon.main.wait_for_db', return_value=False), \
            patch('perfmon.main.build_scheduler') as mock_build:
        assert cli.main(['--once']) == 1
    mock_build.assert_not_called()
