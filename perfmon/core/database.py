from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from .config import settings


def make_engine(url, lock_timeout_ms=None, echo=False):
    """Create an engine whose connections give up on lock waits after ``lock_timeout_ms``."""
    lock_timeout_ms = settings.LOCK_TIMEOUT_MS if lock_timeout_ms is None else lock_timeout_ms

    if url.startswith('sqlite'):
        # sqlite has no lock timeout, only a busy timeout in seconds
        return create_engine(url, echo=echo, connect_args={'timeout': max(1, lock_timeout_ms // 1000)})

    connect_args = {}
    if url.startswith('postgresql'):
        connect_args['options'] = f"-c lock_timeout={int(lock_timeout_ms)}"

    engine = create_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=5,
        pool_timeout=30,
        pool_pre_ping=True,
        connect_args=connect_args,
    )

    if engine.dialect.name == 'mssql':
        @event.listens_for(engine, 'connect')
        def _set_lock_timeout(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute(f"SET LOCK_TIMEOUT {int(lock_timeout_ms)};")
            cursor.close()

    return engine


def make_session_factory(bind):
    # rows handed to receivers after commit must stay readable
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = make_session_factory(engine)


class TransactionScope:
    """Owned-transaction guard.

    Given a caller's session the scope only borrows it: nothing is committed or
    rolled back here and errors propagate to the owner. Without a session the
    scope opens one from ``session_factory``, commits on clean exit, rolls back
    on error and always closes it.
    """

    def __init__(self, session=None, session_factory=None):
        self.owned = session is None
        self.session = session
        self._session_factory = session_factory or SessionLocal

    def __enter__(self):
        if self.owned:
            self.session = self._session_factory()
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self.owned:
            return False
        try:
            if exc_type is None:
                self.session.commit()
            else:
                self.session.rollback()
        finally:
            self.session.close()
        return False
