from datetime import timedelta

from sqlalchemy import select

from perfmon.models import MemoryGrantStats, MemoryClerksStats, CriticalIssue
from perfmon.services.issue_analyzer import IssueAnalyzer, TOKENPERM_WARNING_KB
from .conftest import T0, BOOT


def add_grant(session, when, available=500.0, granted=100.0, waiters=0, timeouts=None, forced=None):
    session.add(MemoryGrantStats(
        collection_time=when, server_start_time=BOOT, resource_semaphore_id=0, pool_id=2,
        available_memory_mb=available, granted_memory_mb=granted, waiter_count=waiters,
        timeout_error_count=0, forced_grant_count=0,
        timeout_error_count_delta=timeouts, forced_grant_count_delta=forced,
    ))
    session.flush()


def add_clerk(session, when, pages_kb, node=0):
    session.add(MemoryClerksStats(
        collection_time=when, server_start_time=BOOT, clerk_type='USERSTORE_TOKENPERM', memory_node_id=node,
        pages_kb=pages_kb, virtual_memory_reserved_kb=0, virtual_memory_committed_kb=0,
        awe_allocated_kb=0, shared_memory_reserved_kb=0, shared_memory_committed_kb=0,
    ))
    session.flush()


def test_quiet_server_raises_nothing(store):
    session = store()
    add_grant(session, T0 - timedelta(minutes=1), timeouts=0, forced=0)
    assert IssueAnalyzer().analyze(session, T0) == []
    session.close()


def test_memory_grant_rules(store):
    session = store()
    add_grant(session, T0 - timedelta(minutes=2), available=40.0, granted=900.0, waiters=14, timeouts=3, forced=2)
    issues = IssueAnalyzer().analyze(session, T0)
    session.commit()

    by_severity = sorted((i.severity, i.message.split(':')[0]) for i in issues)
    assert by_severity == [
        ('CRITICAL', 'CRITICAL'),
        ('WARNING', 'High number of queries waiting for memory grants'),
        ('WARNING', 'Low available memory for query grants'),
        ('WARNING', 'Queries forced to run with reduced memory grants'),
    ]
    assert all(i.problem_area == 'Memory Grant Pressure' for i in issues)
    assert all(i.log_date == T0 for i in issues)
    session.close()


def test_old_samples_are_ignored(store):
    session = store()
    add_grant(session, T0 - timedelta(minutes=20), waiters=50)
    assert IssueAnalyzer().analyze(session, T0) == []
    session.close()


def test_issues_are_deduplicated_within_a_day(store):
    session = store()
    add_grant(session, T0 - timedelta(minutes=1), waiters=20)
    analyzer = IssueAnalyzer()
    assert len(analyzer.analyze(session, T0)) == 1
    session.commit()

    add_grant(session, T0 + timedelta(minutes=1), waiters=25)
    assert analyzer.analyze(session, T0 + timedelta(minutes=2)) == []

    add_grant(session, T0 + timedelta(days=1, minutes=1), waiters=25)
    assert len(analyzer.analyze(session, T0 + timedelta(days=1, minutes=2))) == 1
    session.commit()

    assert len(session.execute(select(CriticalIssue)).scalars().all()) == 2
    session.close()


def test_tokenperm_growth_uses_latest_sample(store):
    session = store()
    half = TOKENPERM_WARNING_KB // 2
    add_clerk(session, T0 - timedelta(minutes=3), TOKENPERM_WARNING_KB * 3)
    add_clerk(session, T0 - timedelta(minutes=1), half, node=0)
    add_clerk(session, T0 - timedelta(minutes=1), half - 1, node=1)
    assert IssueAnalyzer().analyze(session, T0) == []

    add_clerk(session, T0, half, node=0)
    add_clerk(session, T0, half, node=1)
    issues = IssueAnalyzer().analyze(session, T0)
    assert len(issues) == 1
    assert issues[0].problem_area == 'Memory Clerk Growth'
    assert 'TokenAndPermUserStore' in issues[0].message
    session.close()
