import logging
from sqlalchemy import select, exists
from ..core.clock import utcnow
from ..core.database import SessionLocal, TransactionScope
from ..models import CollectionLog


SUCCESS = 'SUCCESS'
ERROR = 'ERROR'
TABLE_MISSING = 'TABLE_MISSING'
TABLE_CREATED = 'TABLE_CREATED'
CONFIG_CHANGE = 'CONFIG_CHANGE'
SKIPPED = 'SKIPPED'
PARTIAL = 'PARTIAL'

MAX_ERROR_MESSAGE = 4000


class CollectionLogWriter:
    """Append-only access to the collection log.

    Rows are never updated. Passing ``session`` writes inside the caller's
    transaction, otherwise the row is committed on its own, which is what
    failure paths rely on after their own transaction was rolled back.
    """

    def __init__(self, session_factory=None, clock=utcnow):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock

    def record(self, collector_name, status, rows_collected=0, duration_ms=0, error_message=None,
               session=None, collection_time=None):
        if error_message is not None:
            error_message = str(error_message)[:MAX_ERROR_MESSAGE]
        entry = CollectionLog(
            collection_time=collection_time or self.clock(),
            collector_name=collector_name,
            collection_status=status,
            rows_collected=int(rows_collected or 0),
            duration_ms=int(duration_ms or 0),
            error_message=error_message,
        )
        with TransactionScope(session, self.session_factory) as scope:
            scope.session.add(entry)
        if status == ERROR:
            logging.error(f"[{collector_name}] {status}: {error_message}")
        else:
            logging.debug(f"[{collector_name}] {status} rows={rows_collected} duration={duration_ms}ms")
        return entry

    def has_entries(self, session, collector_name) -> bool:
        return session.execute(
            select(exists().where(CollectionLog.collector_name == collector_name))
        ).scalar()

    def recent(self, session, collector_name=None, limit=50):
        stmt = select(CollectionLog).order_by(CollectionLog.collection_time.desc(), CollectionLog.log_id.desc())
        if collector_name:
            stmt = stmt.where(CollectionLog.collector_name == collector_name)
        return list(session.execute(stmt.limit(limit)).scalars())
