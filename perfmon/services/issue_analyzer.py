import logging
from datetime import timedelta

import numpy as np
import pandas as pd
from sqlalchemy import select

from ..core.clock import utcnow
from ..models import CriticalIssue, MemoryGrantStats, MemoryClerksStats


WINDOW_MINUTES = 5
DEDUP_DAYS = 1

LOW_AVAILABLE_MEMORY_MB = 100
HIGH_WAITER_COUNT = 10
TOKENPERM_WARNING_KB = 1024 * 1024

MEMORY_GRANT_AREA = 'Memory Grant Pressure'
MEMORY_CLERK_AREA = 'Memory Clerk Growth'

GRANT_QUERY = (
    "SELECT collection_time, pool_id, available_memory_mb, granted_memory_mb, waiter_count, "
    "timeout_error_count_delta, forced_grant_count_delta FROM memory_grant_stats "
    "ORDER BY collection_time DESC;"
)
CLERK_QUERY = (
    "SELECT collection_time, clerk_type, memory_node_id, pages_kb FROM memory_clerks_stats "
    "WHERE clerk_type = 'USERSTORE_TOKENPERM' ORDER BY collection_time DESC;"
)


def frame_from(session, stmt) -> pd.DataFrame:
    result = session.execute(stmt)
    return pd.DataFrame(result.fetchall(), columns=list(result.keys()))


class IssueAnalyzer:
    """Turns recent snapshot rows into critical_issues entries.

    Each rule fires at most once per problem area and message prefix within
    ``DEDUP_DAYS``; repeated detections in that window are dropped.
    """

    def __init__(self, clock=utcnow):
        self.clock = clock

    def analyze(self, session, now=None):
        now = now or self.clock()
        since = now - timedelta(minutes=WINDOW_MINUTES)

        candidates = self.memory_grant_issues(session, since) + self.memory_clerk_issues(session, since)

        issues = []
        for issue in candidates:
            if self.already_logged(session, issue, now):
                logging.debug(f"Skipping duplicate issue: {issue.problem_area} / {issue.message[:60]}")
                continue
            issue.log_date = now
            session.add(issue)
            issues.append(issue)
        if issues:
            session.flush()
            logging.info(f"Logged {len(issues)} new critical issues")
        return issues

    def already_logged(self, session, issue, now) -> bool:
        prefix = issue.message.split(':')[0]
        found = session.execute(
            select(CriticalIssue.issue_id)
            .where(CriticalIssue.problem_area == issue.problem_area)
            .where(CriticalIssue.message.like(f"{prefix}%"))
            .where(CriticalIssue.log_date >= now - timedelta(days=DEDUP_DAYS))
            .limit(1)
        ).first()
        return found is not None

    def memory_grant_issues(self, session, since):
        df = frame_from(session, select(
            MemoryGrantStats.collection_time,
            MemoryGrantStats.available_memory_mb,
            MemoryGrantStats.granted_memory_mb,
            MemoryGrantStats.waiter_count,
            MemoryGrantStats.timeout_error_count_delta,
            MemoryGrantStats.forced_grant_count_delta,
        ).where(MemoryGrantStats.collection_time >= since))
        if df.empty:
            return []

        numeric = df.drop(columns=['collection_time']).apply(pd.to_numeric, errors='coerce').fillna(0)
        issues = []

        low_memory = numeric[(numeric['available_memory_mb'] < LOW_AVAILABLE_MEMORY_MB) & (numeric['granted_memory_mb'] > 0)]
        if not low_memory.empty:
            available = float(low_memory['available_memory_mb'].min())
            issues.append(self._issue(
                'WARNING', MEMORY_GRANT_AREA, 'memory_grant_stats_collector',
                f"Low available memory for query grants: {available:.0f} MB available while "
                f"{float(low_memory['granted_memory_mb'].max()):.0f} MB is granted",
                available, LOW_AVAILABLE_MEMORY_MB, GRANT_QUERY,
            ))

        waiters = int(numeric['waiter_count'].max())
        if waiters > HIGH_WAITER_COUNT:
            issues.append(self._issue(
                'WARNING', MEMORY_GRANT_AREA, 'memory_grant_stats_collector',
                f"High number of queries waiting for memory grants: {waiters} waiters",
                waiters, HIGH_WAITER_COUNT, GRANT_QUERY,
            ))

        timeouts = int(np.sum(numeric['timeout_error_count_delta'].to_numpy()))
        if timeouts > 0:
            issues.append(self._issue(
                'CRITICAL', MEMORY_GRANT_AREA, 'memory_grant_stats_collector',
                f"CRITICAL: Queries timing out waiting for memory grants: {timeouts} timeouts "
                f"in the last {WINDOW_MINUTES} minutes",
                timeouts, 0, GRANT_QUERY,
            ))

        forced = int(np.sum(numeric['forced_grant_count_delta'].to_numpy()))
        if forced > 0:
            issues.append(self._issue(
                'WARNING', MEMORY_GRANT_AREA, 'memory_grant_stats_collector',
                f"Queries forced to run with reduced memory grants: {forced} forced grants "
                f"in the last {WINDOW_MINUTES} minutes",
                forced, 0, GRANT_QUERY,
            ))
        return issues

    def memory_clerk_issues(self, session, since):
        df = frame_from(session, select(
            MemoryClerksStats.collection_time,
            MemoryClerksStats.pages_kb,
        ).where(MemoryClerksStats.clerk_type == 'USERSTORE_TOKENPERM')
         .where(MemoryClerksStats.collection_time >= since))
        if df.empty:
            return []

        # latest sample only, summed over memory nodes
        latest = df[df['collection_time'] == df['collection_time'].max()]
        pages_kb = int(pd.to_numeric(latest['pages_kb'], errors='coerce').fillna(0).sum())
        if pages_kb < TOKENPERM_WARNING_KB:
            return []

        size_gb = pages_kb / 1024.0 / 1024.0
        return [self._issue(
            'WARNING', MEMORY_CLERK_AREA, 'memory_clerks_stats_collector',
            f"TokenAndPermUserStore cache is large: {size_gb:.2f} GB. "
            f"Large security caches slow down permission checks; consider trace flag 4618 or periodic cleanup",
            round(size_gb, 2), 1, CLERK_QUERY,
        )]

    def _issue(self, severity, area, source, message, value, limit, investigate_query):
        return CriticalIssue(
            severity=severity,
            problem_area=area,
            source_collector=source,
            message=message,
            investigate_query=investigate_query,
            threshold_value=value,
            threshold_limit=limit,
        )
