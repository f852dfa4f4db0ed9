"""Delta calculation for cumulative DMV counters.

Each metric family registers a strategy describing its entity key, its
counters and how resets and first observations are treated. The engine pairs
the newest unprocessed row of every entity with the row it should be compared
against and writes the deltas back in one batch.
"""
import enum
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy import select, update, func, and_, or_, bindparam

from ..core.clock import utcnow, elapsed_ms
from ..core.database import SessionLocal, TransactionScope
from ..core.errors import UnknownMetricFamily, DeltaComputationError
from ..models import (
    DeltaClaim, WaitStats, QueryStats, ProcedureStats, PerfmonStats, FileIoStats, MemoryClerksStats,
    BlockingDeadlockStats, LatchStats, SpinlockStats, MemoryGrantStats,
)
from .collection_log import CollectionLogWriter, SUCCESS, ERROR


class ResetDetection(enum.Enum):
    # current.server_start_time >= previous.collection_time means the server restarted
    SERVER_START = 'server_start'
    # no epoch marker; only a decreasing value signals a reset
    VALUE_DECREASE = 'value_decrease'


class FirstSample(enum.Enum):
    # no previous row: leave the deltas NULL
    EXCLUDE = 'exclude'
    # no previous row: delta is the raw value
    BOOTSTRAP = 'bootstrap'


@dataclass(frozen=True)
class MetricFamily:
    name: str
    model: type
    entity_key: Tuple[str, ...]
    counters: Tuple[str, ...]
    reset_detection: ResetDetection = ResetDetection.SERVER_START
    first_sample: FirstSample = FirstSample.EXCLUDE
    # (start, end) columns giving the interval of a bootstrapped first sample
    lifetime_interval: Optional[Tuple[str, str]] = None

    @property
    def table(self):
        return self.model.__table__

    @property
    def marker_column(self) -> str:
        return delta_column(self.counters[0])

    @property
    def value_columns(self):
        columns = ['collection_id', 'collection_time', 'server_start_time']
        columns.extend(self.entity_key)
        columns.extend(self.counters)
        if self.lifetime_interval:
            columns.extend(self.lifetime_interval)
        return list(dict.fromkeys(columns))


def delta_column(counter: str) -> str:
    return f"{counter}_delta"


_EXECUTION_COUNTERS = (
    'execution_count', 'total_worker_time', 'total_elapsed_time',
    'total_logical_reads', 'total_physical_reads', 'total_logical_writes',
)

METRIC_FAMILIES = {
    family.name: family for family in (
        MetricFamily(
            name='wait_stats',
            model=WaitStats,
            entity_key=('wait_type',),
            counters=('waiting_tasks_count', 'wait_time_ms', 'signal_wait_time_ms'),
        ),
        MetricFamily(
            name='query_stats',
            model=QueryStats,
            entity_key=('sql_handle', 'statement_start_offset', 'statement_end_offset', 'plan_handle'),
            counters=_EXECUTION_COUNTERS,
            first_sample=FirstSample.BOOTSTRAP,
            lifetime_interval=('creation_time', 'last_execution_time'),
        ),
        MetricFamily(
            name='procedure_stats',
            model=ProcedureStats,
            entity_key=('database_name', 'object_id', 'plan_handle'),
            counters=_EXECUTION_COUNTERS,
        ),
        MetricFamily(
            name='perfmon_stats',
            model=PerfmonStats,
            entity_key=('object_name', 'counter_name', 'instance_name'),
            counters=('cntr_value',),
        ),
        MetricFamily(
            name='file_io_stats',
            model=FileIoStats,
            entity_key=('database_id', 'file_id'),
            counters=(
                'num_of_reads', 'num_of_bytes_read', 'io_stall_read_ms',
                'num_of_writes', 'num_of_bytes_written', 'io_stall_write_ms',
                'io_stall_ms', 'io_stall_queued_read_ms', 'io_stall_queued_write_ms', 'sample_ms',
            ),
        ),
        MetricFamily(
            name='memory_clerks_stats',
            model=MemoryClerksStats,
            entity_key=('clerk_type', 'memory_node_id'),
            counters=(
                'pages_kb', 'virtual_memory_reserved_kb', 'virtual_memory_committed_kb',
                'awe_allocated_kb', 'shared_memory_reserved_kb', 'shared_memory_committed_kb',
            ),
            reset_detection=ResetDetection.VALUE_DECREASE,
        ),
        MetricFamily(
            name='blocking_deadlock_stats',
            model=BlockingDeadlockStats,
            entity_key=('database_name',),
            counters=(
                'blocking_event_count', 'total_blocking_duration_ms', 'max_blocking_duration_ms',
                'deadlock_count', 'total_deadlock_wait_time_ms', 'victim_count',
            ),
            reset_detection=ResetDetection.VALUE_DECREASE,
        ),
        # latch and spinlock rows carry the epoch in their key, so a restart
        # starts a new entity instead of being compared across epochs
        MetricFamily(
            name='latch_stats',
            model=LatchStats,
            entity_key=('server_start_time', 'latch_class'),
            counters=('waiting_requests_count', 'wait_time_ms', 'max_wait_time_ms'),
            reset_detection=ResetDetection.VALUE_DECREASE,
        ),
        MetricFamily(
            name='spinlock_stats',
            model=SpinlockStats,
            entity_key=('server_start_time', 'spinlock_name'),
            counters=('collisions', 'spins', 'sleep_time', 'backoffs'),
            reset_detection=ResetDetection.VALUE_DECREASE,
        ),
        MetricFamily(
            name='memory_grant_stats',
            model=MemoryGrantStats,
            entity_key=('resource_semaphore_id', 'pool_id'),
            counters=('timeout_error_count', 'forced_grant_count'),
        ),
    )
}


def resolve_family(table_name) -> MetricFamily:
    family = METRIC_FAMILIES.get(table_name)
    if family is None:
        raise UnknownMetricFamily(table_name)
    return family


def server_restarted(server_start_time, previous_collection_time) -> bool:
    if server_start_time is None or previous_collection_time is None:
        return False
    return server_start_time >= previous_collection_time


def counter_delta(current, previous, restarted=False):
    """Delta of one cumulative counter between two samples; never negative."""
    if current is None:
        return None
    if restarted or previous is None:
        return current
    if current >= previous:
        return current - previous
    # wrapped, or the entity was evicted and re-created
    return current


def seconds_between(earlier, later):
    if earlier is None or later is None:
        return None
    return int((later - earlier).total_seconds())


def compute_row_deltas(family: MetricFamily, pair: dict) -> Optional[dict]:
    """Deltas for one (current, previous) pair, or None when the row is skipped.

    ``pair`` holds ``current_<column>`` and ``previous_<column>`` values; the
    previous side is all None for an entity's first observation.
    """
    has_previous = pair.get('previous_collection_id') is not None

    if not has_previous:
        if family.first_sample is FirstSample.EXCLUDE:
            return None
        values = {delta_column(c): counter_delta(pair[f'current_{c}'], None) for c in family.counters}
        interval = None
        if family.lifetime_interval:
            start, end = family.lifetime_interval
            interval = seconds_between(pair.get(f'current_{start}'), pair.get(f'current_{end}'))
        values['sample_interval_seconds'] = interval
        return values

    restarted = (
        family.reset_detection is ResetDetection.SERVER_START
        and server_restarted(pair.get('current_server_start_time'), pair['previous_collection_time'])
    )
    values = {
        delta_column(c): counter_delta(pair[f'current_{c}'], pair[f'previous_{c}'], restarted)
        for c in family.counters
    }
    values['sample_interval_seconds'] = seconds_between(
        pair['previous_collection_time'], pair['current_collection_time']
    )
    return values


class DeltaEngine:
    def __init__(self, session_factory=None, collection_log=None, clock=utcnow):
        self.session_factory = session_factory or SessionLocal
        self.collection_log = collection_log or CollectionLogWriter(self.session_factory, clock)
        self.clock = clock

    def compute_deltas(self, table_name, session=None, debug=False) -> int:
        """Fill the NULL delta columns of ``table_name``'s newest generation.

        Runs inside ``session``'s transaction when one is given (the caller
        commits or rolls back), otherwise in a transaction of its own. Any
        failure aborts the whole batch and raises DeltaComputationError.
        """
        family = resolve_family(table_name)
        log_name = f"calculate_deltas_{family.name}"
        started = time.monotonic()

        try:
            with TransactionScope(session, self.session_factory) as scope:
                rows_updated = self._apply(scope.session, family)
                self.collection_log.record(
                    log_name, SUCCESS,
                    rows_collected=rows_updated,
                    duration_ms=elapsed_ms(started, time.monotonic()),
                    session=scope.session,
                )
        except Exception as e:
            duration = elapsed_ms(started, time.monotonic())
            error = DeltaComputationError(family.name, str(e), duration)
            if session is None:
                # our own transaction is already rolled back, the log row can stand alone
                self.collection_log.record(log_name, ERROR, duration_ms=duration, error_message=str(e))
                error.logged = True
            raise error from e

        if debug:
            logging.info(f"Updated {rows_updated} rows with delta calculations for {family.name}")
        return rows_updated

    def _claim(self, session, family):
        claim = session.execute(
            select(DeltaClaim).where(DeltaClaim.family == family.name).with_for_update()
        ).scalar_one_or_none()
        if claim is None:
            claim = DeltaClaim(family=family.name)
            session.add(claim)
            session.flush()
        return claim

    def pair_statement(self, family):
        t = family.table
        keys = list(family.entity_key)
        marker = t.c[family.marker_column]
        columns = family.value_columns

        current = (
            select(
                *[t.c[c] for c in columns],
                func.row_number().over(
                    partition_by=[t.c[k] for k in keys],
                    order_by=(t.c.collection_time.desc(), t.c.collection_id.desc()),
                ).label('rn'),
            )
            .where(marker.is_(None))
            .subquery('current_collection')
        )

        first_seen = t.alias('first_seen')
        first_ids = select(func.min(first_seen.c.collection_id)).group_by(*[first_seen.c[k] for k in keys])
        previous = (
            select(*[t.c[c] for c in columns])
            .where(or_(marker.is_not(None), t.c.collection_id.in_(first_ids)))
            .subquery('previous_collection')
        )

        join_on = and_(
            *[current.c[k] == previous.c[k] for k in keys],
            previous.c.collection_time < current.c.collection_time,
        )
        paired = (
            select(
                *[current.c[c].label(f'current_{c}') for c in columns],
                *[previous.c[c].label(f'previous_{c}') for c in columns],
                func.row_number().over(
                    partition_by=current.c.collection_id,
                    order_by=(previous.c.collection_time.desc(), previous.c.collection_id.desc()),
                ).label('previous_rn'),
            )
            .select_from(current.outerjoin(previous, join_on))
            .where(current.c.rn == 1)
            .subquery('paired')
        )
        return select(paired).where(paired.c.previous_rn == 1)

    def _apply(self, session, family) -> int:
        claim = self._claim(session, family)

        pairs = session.execute(self.pair_statement(family)).mappings().all()
        updates = []
        for pair in pairs:
            values = compute_row_deltas(family, pair)
            if values is None:
                continue
            params = {f'b_{column}': value for column, value in values.items()}
            params['b_collection_id'] = pair['current_collection_id']
            updates.append(params)

        rows_updated = 0
        if updates:
            t = family.table
            assignments = {delta_column(c): bindparam(f'b_{delta_column(c)}') for c in family.counters}
            assignments['sample_interval_seconds'] = bindparam('b_sample_interval_seconds')
            stmt = (
                update(t)
                .where(t.c.collection_id == bindparam('b_collection_id'))
                .where(t.c[family.marker_column].is_(None))
                .values(assignments)
            )
            result = session.connection().execute(stmt, updates)
            rows_updated = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(updates)

        claim.last_run_time = self.clock()
        claim.last_rows_updated = rows_updated
        session.flush()
        return rows_updated
