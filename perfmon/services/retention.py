import logging
import time
from datetime import timedelta

from sqlalchemy import select, delete

from ..core.clock import utcnow, elapsed_ms
from ..core.config import settings
from ..core.database import SessionLocal, TransactionScope
from ..models import CollectionLog, ServerInfoHistory, CriticalIssue, BlockingDeadlockStats
from .collection_log import CollectionLogWriter, SUCCESS, ERROR
from .collectors import COLLECTOR_TYPES
from .schedule import ScheduleRegistry

RETENTION_COLLECTOR = 'data_retention'

# tables without an owning collector, pruned with the default retention
# (blocking_deadlock_stats is fed by the blocked-process and deadlock parsers)
HOUSEKEEPING_TABLES = (
    (CollectionLog.__table__, CollectionLog.collection_time, CollectionLog.log_id),
    (ServerInfoHistory.__table__, ServerInfoHistory.collection_time, ServerInfoHistory.collection_id),
    (CriticalIssue.__table__, CriticalIssue.log_date, CriticalIssue.issue_id),
    (BlockingDeadlockStats.__table__, BlockingDeadlockStats.collection_time, BlockingDeadlockStats.collection_id),
)


def purge_table(session, table, time_column, id_column, cutoff, batch_size) -> int:
    """Delete rows older than ``cutoff`` in batches of ``batch_size`` ids."""
    deleted = 0
    while True:
        ids = session.execute(
            select(id_column).where(time_column < cutoff).order_by(id_column).limit(batch_size)
        ).scalars().all()
        if not ids:
            return deleted
        session.execute(delete(table).where(id_column.in_(ids)))
        session.commit()
        deleted += len(ids)


def purge_expired(now=None, session_factory=None, clock=utcnow, collection_log=None,
                  default_days=None, batch_size=None) -> int:
    """Drop snapshot and housekeeping rows past their retention window.

    Snapshot tables follow their collector's ``retention_days`` from the
    Schedule Registry; everything else uses the default.
    """
    now = now or clock()
    session_factory = session_factory or SessionLocal
    collection_log = collection_log or CollectionLogWriter(session_factory, clock)
    default_days = default_days or settings.DEFAULT_RETENTION_DAYS
    batch_size = batch_size or settings.RETENTION_BATCH_SIZE
    started = time.monotonic()

    retention = ScheduleRegistry(session_factory, clock, collection_log).retention_days()
    targets = []
    for name, cls in COLLECTOR_TYPES.items():
        if cls.model is CriticalIssue:
            continue
        t = cls.model.__table__
        targets.append((t, t.c.collection_time, t.c.collection_id, retention.get(name) or default_days))
    for table, time_column, id_column in HOUSEKEEPING_TABLES:
        targets.append((table, time_column, id_column, default_days))

    total = 0
    try:
        with TransactionScope(None, session_factory) as scope:
            for table, time_column, id_column, days in targets:
                removed = purge_table(scope.session, table, time_column, id_column,
                                      now - timedelta(days=days), batch_size)
                if removed:
                    logging.info(f"Purged {removed} rows from {table.name} (older than {days} days)")
                total += removed
    except Exception as e:
        collection_log.record(RETENTION_COLLECTOR, ERROR,
                              duration_ms=elapsed_ms(started, time.monotonic()), error_message=str(e))
        raise

    collection_log.record(RETENTION_COLLECTOR, SUCCESS, rows_collected=total,
                          duration_ms=elapsed_ms(started, time.monotonic()))
    return total
