from datetime import timedelta

import numpy as np
import pandas as pd
from sqlalchemy import select

from ..core.clock import utcnow
from ..core.config import settings
from ..core.database import SessionLocal, TransactionScope
from ..models.collection import CollectionLog, INFORMATIONAL_STATUSES

RECENT_RUNS = 20
FAILING_CONSECUTIVE = 5
WARNING_CONSECUTIVE = 3
FAILING_RATE = 50.0
WARNING_RATE = 10.0

HEALTH_COLUMNS = [
    'collector_name', 'health_status', 'total_runs', 'failed_runs', 'failure_rate_percent',
    'consecutive_failures', 'last_success_time', 'hours_since_success', 'last_error',
]


def consecutive_failures(statuses) -> int:
    """Failures at the head of a newest-first status sequence."""
    count = 0
    for status in statuses:
        if status != 'ERROR':
            break
        count += 1
    return count


def collection_health(session=None, now=None, session_factory=None,
                      window_days=None, stale_hours=None) -> pd.DataFrame:
    """Per-collector health over the recent collection log, worst first."""
    now = now or utcnow()
    window_days = window_days or settings.HEALTH_WINDOW_DAYS
    stale_hours = stale_hours or settings.HEALTH_STALE_HOURS

    with TransactionScope(session, session_factory or SessionLocal) as scope:
        result = scope.session.execute(
            select(
                CollectionLog.collector_name,
                CollectionLog.collection_time,
                CollectionLog.collection_status,
                CollectionLog.error_message,
                CollectionLog.log_id,
            )
            .where(CollectionLog.collection_time >= now - timedelta(days=window_days))
            .where(CollectionLog.collection_status.not_in(INFORMATIONAL_STATUSES))
        )
        log = pd.DataFrame(result.fetchall(), columns=list(result.keys()))

    if log.empty:
        return pd.DataFrame(columns=HEALTH_COLUMNS)

    log = log.sort_values(['collector_name', 'collection_time', 'log_id'], ascending=[True, False, False])
    rows = []
    for name, runs in log.groupby('collector_name', sort=True):
        statuses = runs['collection_status'].tolist()
        failed = statuses.count('ERROR')
        successes = runs[runs['collection_status'] == 'SUCCESS']
        last_success = successes['collection_time'].max() if not successes.empty else None
        errors = runs[runs['collection_status'] == 'ERROR']
        rows.append({
            'collector_name': name,
            'total_runs': len(statuses),
            'failed_runs': failed,
            'failure_rate_percent': round(100.0 * failed / len(statuses), 1),
            'consecutive_failures': consecutive_failures(statuses),
            'recent_all_failed': len(statuses[:RECENT_RUNS]) > 0 and all(s == 'ERROR' for s in statuses[:RECENT_RUNS]),
            'last_success_time': last_success,
            'hours_since_success': (
                (now - pd.Timestamp(last_success).to_pydatetime()).total_seconds() / 3600.0
                if last_success is not None else np.nan
            ),
            'last_error': errors['error_message'].iloc[0] if not errors.empty else None,
        })

    health = pd.DataFrame(rows)
    never_run = health['last_success_time'].isna()
    # every FAILING test runs before any WARNING test, so a collector with
    # 3-4 consecutive failures and a failure rate over 50% reports FAILING
    conditions = [
        never_run,
        health['hours_since_success'] > stale_hours,
        health['recent_all_failed']
        | (health['consecutive_failures'] >= FAILING_CONSECUTIVE)
        | (health['failure_rate_percent'] > FAILING_RATE),
        (health['consecutive_failures'] >= WARNING_CONSECUTIVE)
        | (health['failure_rate_percent'] > WARNING_RATE),
    ]
    health['health_status'] = np.select(conditions, ['NEVER_RUN', 'STALE', 'FAILING', 'WARNING'], default='HEALTHY')

    order = {'NEVER_RUN': 0, 'FAILING': 1, 'STALE': 2, 'WARNING': 3, 'HEALTHY': 4}
    health['_rank'] = health['health_status'].map(order)
    health = health.sort_values(['_rank', 'collector_name']).reset_index(drop=True)
    return health[HEALTH_COLUMNS]
