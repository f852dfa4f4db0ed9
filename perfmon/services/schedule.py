"""Schedule Registry: per-collector cadence, enablement and retention."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import pandas as pd
from sqlalchemy import select, update, case

from ..core.clock import utcnow
from ..core.database import SessionLocal, TransactionScope
from ..core.errors import UnknownCollector
from ..models import CollectionSchedule
from .collection_log import CollectionLogWriter, CONFIG_CHANGE


# collector_name: (frequency_minutes, max_duration_minutes, retention_days, description)
DEFAULT_SCHEDULE = {
    'wait_stats_collector': (1, 2, 30, 'Wait statistics - high frequency for trending'),
    'query_stats_collector': (2, 5, 30, 'Plan cache queries - recent activity focused'),
    'memory_stats_collector': (1, 2, 30, 'Memory pressure monitoring'),
    'procedure_stats_collector': (2, 10, 30, 'Procedure/trigger/function statistics'),
    'file_io_stats_collector': (1, 2, 30, 'File I/O statistics from dm_io_virtual_file_stats'),
    'memory_grant_stats_collector': (1, 2, 30, 'Memory grant semaphore pressure monitoring'),
    'memory_clerks_stats_collector': (5, 3, 30, 'Memory clerk allocation tracking'),
    'perfmon_stats_collector': (5, 2, 30, 'Performance counter statistics from dm_os_performance_counters'),
    'configuration_issues_analyzer': (1, 2, 30, 'Analyze recent snapshots for memory grant and memory clerk issues'),
    'latch_stats_collector': (1, 3, 30, 'Latch contention statistics - internal synchronization object waits'),
    'spinlock_stats_collector': (1, 3, 30, 'Spinlock contention statistics - lightweight synchronization primitive collisions'),
}

# profile name: ({collector_name: frequency_minutes}, collectors to disable)
PROFILES = {
    'realtime': ({
        'wait_stats_collector': 1,
        'query_stats_collector': 1,
        'procedure_stats_collector': 2,
        'memory_stats_collector': 2,
        'perfmon_stats_collector': 2,
        'file_io_stats_collector': 5,
        'memory_grant_stats_collector': 2,
        'memory_clerks_stats_collector': 2,
        'latch_stats_collector': 2,
        'spinlock_stats_collector': 2,
    }, ()),
    'consulting': ({
        'wait_stats_collector': 5,
        'query_stats_collector': 5,
        'procedure_stats_collector': 5,
        'perfmon_stats_collector': 5,
        'memory_stats_collector': 5,
        'file_io_stats_collector': 5,
        'memory_grant_stats_collector': 5,
        'memory_clerks_stats_collector': 5,
        'latch_stats_collector': 5,
        'spinlock_stats_collector': 5,
    }, ()),
    'baseline': ({
        'wait_stats_collector': 5,
        'query_stats_collector': 5,
        'procedure_stats_collector': 5,
        'memory_stats_collector': 5,
    }, ('query_snapshots_collector',)),
}


@dataclass(frozen=True)
class ScheduleEntry:
    """Immutable view of a due collector, detached from any session."""
    schedule_id: int
    collector_name: str
    frequency_minutes: int
    next_run_time: Optional[datetime]
    max_duration_minutes: int


class ScheduleRegistry:
    def __init__(self, session_factory=None, clock=utcnow, collection_log=None):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock
        self.collection_log = collection_log or CollectionLogWriter(self.session_factory, clock)

    def seed_defaults(self, collector_names=None, session=None) -> int:
        """Insert missing default rows; existing rows keep their tuning."""
        names = list(collector_names) if collector_names is not None else list(DEFAULT_SCHEDULE)
        now = self.clock()
        added = 0
        with TransactionScope(session, self.session_factory) as scope:
            existing = set(scope.session.execute(select(CollectionSchedule.collector_name)).scalars())
            for name in names:
                if name in existing:
                    continue
                frequency, max_duration, retention, description = DEFAULT_SCHEDULE.get(
                    name, (15, 5, 30, None)
                )
                scope.session.add(CollectionSchedule(
                    collector_name=name,
                    enabled=True,
                    frequency_minutes=frequency,
                    max_duration_minutes=max_duration,
                    retention_days=retention,
                    description=description,
                    created_date=now,
                    modified_date=now,
                ))
                added += 1
            scope.session.flush()
            # stagger first runs so collectors do not all fire on the same tick
            rows = scope.session.execute(
                select(CollectionSchedule).where(CollectionSchedule.next_run_time.is_(None))
                .where(CollectionSchedule.enabled)
                .where(CollectionSchedule.last_run_time.is_(None))
            ).scalars()
            for row in rows:
                row.next_run_time = now + timedelta(seconds=row.schedule_id * 2)
        if added:
            logging.info(f"Seeded {added} collection schedule rows")
        return added

    def due_collectors(self, now=None, force_run_all=False, session=None):
        now = now or self.clock()
        stmt = select(CollectionSchedule).where(CollectionSchedule.enabled)
        if not force_run_all:
            stmt = stmt.where(
                (CollectionSchedule.next_run_time <= now) | CollectionSchedule.next_run_time.is_(None)
            )
        stmt = stmt.order_by(
            case((CollectionSchedule.next_run_time.is_(None), 0), else_=1),
            CollectionSchedule.next_run_time,
            CollectionSchedule.schedule_id,
        )
        with TransactionScope(session, self.session_factory) as scope:
            return [
                ScheduleEntry(
                    schedule_id=row.schedule_id,
                    collector_name=row.collector_name,
                    frequency_minutes=row.frequency_minutes,
                    next_run_time=row.next_run_time,
                    max_duration_minutes=row.max_duration_minutes,
                )
                for row in scope.session.execute(stmt).scalars()
            ]

    def advance(self, entry: ScheduleEntry, attempt_start, session=None):
        with TransactionScope(session, self.session_factory) as scope:
            scope.session.execute(
                update(CollectionSchedule)
                .where(CollectionSchedule.schedule_id == entry.schedule_id)
                .values(
                    last_run_time=attempt_start,
                    next_run_time=attempt_start + timedelta(minutes=entry.frequency_minutes),
                )
            )

    def retention_days(self, session=None):
        with TransactionScope(session, self.session_factory) as scope:
            rows = scope.session.execute(
                select(CollectionSchedule.collector_name, CollectionSchedule.retention_days)
            ).all()
        return {name: days for name, days in rows}

    def update_collector_frequency(self, collector_name, frequency_minutes, enabled=None,
                                   max_duration_minutes=None, session=None):
        if frequency_minutes is None or int(frequency_minutes) < 1:
            raise ValueError(f"frequency_minutes must be a positive integer, got {frequency_minutes}")
        now = self.clock()
        with TransactionScope(session, self.session_factory) as scope:
            row = self._get(scope.session, collector_name)
            row.frequency_minutes = int(frequency_minutes)
            if enabled is not None:
                row.enabled = bool(enabled)
            if max_duration_minutes is not None:
                row.max_duration_minutes = int(max_duration_minutes)
            row.modified_date = now
            if row.enabled:
                row.next_run_time = now
            self.collection_log.record(
                collector_name, CONFIG_CHANGE,
                error_message=f"Frequency set to {row.frequency_minutes} minutes",
                session=scope.session,
            )
        logging.info(f"Updated {collector_name} frequency to {frequency_minutes} minutes")

    def set_collector_enabled(self, collector_name, enabled, session=None):
        now = self.clock()
        with TransactionScope(session, self.session_factory) as scope:
            row = self._get(scope.session, collector_name)
            row.enabled = bool(enabled)
            row.modified_date = now
            row.next_run_time = now if enabled else None
            self.collection_log.record(
                collector_name, CONFIG_CHANGE,
                error_message='Collector enabled' if enabled else 'Collector disabled',
                session=scope.session,
            )
        logging.info(f"{collector_name} collector {'enabled' if enabled else 'disabled'}")

    def apply_profile(self, profile_name, session=None) -> int:
        """Apply a named frequency profile to the collectors present in the registry."""
        if profile_name not in PROFILES:
            raise ValueError(f"Unknown schedule profile: {profile_name}. Choose from {', '.join(PROFILES)}")
        frequencies, disabled = PROFILES[profile_name]
        changed = 0
        with TransactionScope(session, self.session_factory) as scope:
            known = set(scope.session.execute(select(CollectionSchedule.collector_name)).scalars())
            for name, minutes in frequencies.items():
                if name in known:
                    self.update_collector_frequency(name, minutes, enabled=True, session=scope.session)
                    changed += 1
            for name in disabled:
                if name in known:
                    self.set_collector_enabled(name, False, session=scope.session)
                    changed += 1
        logging.info(f"{profile_name} profile applied to {changed} collectors")
        return changed

    def show_collection_schedule(self, now=None, session=None) -> pd.DataFrame:
        now = now or self.clock()
        with TransactionScope(session, self.session_factory) as scope:
            result = scope.session.execute(
                select(
                    CollectionSchedule.collector_name,
                    CollectionSchedule.enabled,
                    CollectionSchedule.frequency_minutes,
                    CollectionSchedule.last_run_time,
                    CollectionSchedule.next_run_time,
                    CollectionSchedule.max_duration_minutes,
                    CollectionSchedule.retention_days,
                    CollectionSchedule.description,
                ).order_by(CollectionSchedule.collector_name)
            )
            df = pd.DataFrame(result.fetchall(), columns=list(result.keys()))
        if df.empty:
            df['minutes_until_next_run'] = pd.Series(dtype='float64')
            return df
        next_run = pd.to_datetime(df['next_run_time'])
        df['minutes_until_next_run'] = ((next_run - pd.Timestamp(now)).dt.total_seconds() // 60)
        return df

    def _get(self, session, collector_name):
        row = session.execute(
            select(CollectionSchedule).where(CollectionSchedule.collector_name == collector_name)
        ).scalar_one_or_none()
        if row is None:
            raise UnknownCollector(collector_name)
        return row
