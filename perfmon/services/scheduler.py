import logging
import time
from datetime import timedelta

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError

from ..core.clock import utcnow, elapsed_ms
from ..core.database import SessionLocal, TransactionScope
from ..core.errors import UnknownCollector, SchedulerFatalError
from ..models import ServerInfoHistory
from .collection_log import CollectionLogWriter, SUCCESS, ERROR, PARTIAL
from .schedule import ScheduleRegistry

MASTER_COLLECTOR = 'scheduled_master_collector'
SERVER_INFO_COLLECTOR = 'server_info_collector'


class Scheduler:
    """Runs every due collector once per tick and keeps the registry moving.

    A failing collector is logged and counted, never allowed to stop the
    others; its schedule still advances so it cannot be retried in a tight
    loop. Only losing access to the Schedule Registry ends the cycle.
    """

    def __init__(self, source, collectors, session_factory=None, clock=utcnow, collection_log=None, registry=None):
        self.source = source
        self.collectors = collectors
        self.session_factory = session_factory or SessionLocal
        self.clock = clock
        self.collection_log = collection_log or CollectionLogWriter(self.session_factory, clock)
        self.registry = registry or ScheduleRegistry(self.session_factory, clock, self.collection_log)

    def run_due_collectors(self, force_run_all=False, debug=False):
        cycle_started = time.monotonic()
        try:
            due = self.registry.due_collectors(self.clock(), force_run_all)
        except SQLAlchemyError as e:
            raise self._fatal(f"Failed to read collection schedule: {e}", cycle_started) from e

        if debug:
            logging.info(f"{len(due)} collectors due{' (forced)' if force_run_all else ''}")

        self.record_server_info_if_restarted(debug)

        collectors_run = 0
        errors = 0
        for entry in due:
            attempt_start = self.clock()
            started = time.monotonic()
            try:
                collector = self.collectors.get(entry.collector_name)
                if collector is None:
                    raise UnknownCollector(entry.collector_name)
                collector.run(debug=debug)
                collectors_run += 1
            except Exception as e:
                errors += 1
                if not getattr(e, 'logged', False):
                    self.collection_log.record(
                        entry.collector_name, ERROR,
                        duration_ms=elapsed_ms(started, time.monotonic()),
                        error_message=str(e),
                    )
                else:
                    logging.warning(f"{entry.collector_name} failed: {e}")

            try:
                self.registry.advance(entry, attempt_start)
            except SQLAlchemyError as e:
                raise self._fatal(f"Failed to update schedule for {entry.collector_name}: {e}", cycle_started) from e

            if debug:
                next_run = attempt_start + timedelta(minutes=entry.frequency_minutes)
                logging.info(f"{entry.collector_name} next run at {next_run:%Y-%m-%d %H:%M:%S}")

        status = SUCCESS if errors == 0 else PARTIAL
        try:
            self.collection_log.record(
                MASTER_COLLECTOR, status,
                rows_collected=collectors_run,
                duration_ms=elapsed_ms(cycle_started, time.monotonic()),
                error_message=None if errors == 0 else f"Completed with {errors} collector errors",
            )
        except SQLAlchemyError as e:
            raise self._fatal(f"Failed to record scheduler cycle: {e}", cycle_started) from e
        logging.info(f"Scheduler cycle: {collectors_run} collectors run, {errors} errors")
        return collectors_run, errors

    def record_server_info_if_restarted(self, debug=False) -> bool:
        """Append server_info_history once per uptime epoch."""
        started = time.monotonic()
        try:
            info = self.source.fetch_server_info()
            with TransactionScope(None, self.session_factory) as scope:
                last_start = scope.session.execute(
                    select(func.max(ServerInfoHistory.sqlserver_start_time))
                ).scalar()
                start_time = info['sqlserver_start_time']
                if last_start is not None and start_time <= last_start:
                    return False
                scope.session.add(ServerInfoHistory(
                    collection_time=self.clock(),
                    sqlserver_start_time=start_time,
                    server_name=info['server_name'],
                    instance_name=info.get('instance_name'),
                    sql_version=info['sql_version'],
                    edition=info['edition'],
                    physical_memory_mb=int(info['physical_memory_mb']),
                    cpu_count=int(info['cpu_count']),
                    environment_type=info['environment_type'],
                ))
                self.collection_log.record(
                    SERVER_INFO_COLLECTOR, SUCCESS, rows_collected=1,
                    duration_ms=elapsed_ms(started, time.monotonic()), session=scope.session,
                )
        except Exception as e:
            if not getattr(e, 'logged', False):
                self.collection_log.record(
                    SERVER_INFO_COLLECTOR, ERROR,
                    duration_ms=elapsed_ms(started, time.monotonic()), error_message=str(e),
                )
            return False

        if debug:
            logging.info(f"Recorded server info for epoch starting {start_time}")
        return True

    def _fatal(self, message, cycle_started):
        error = SchedulerFatalError(message)
        try:
            self.collection_log.record(
                MASTER_COLLECTOR, ERROR,
                duration_ms=elapsed_ms(cycle_started, time.monotonic()), error_message=message,
            )
            error.logged = True
        except SQLAlchemyError as log_error:
            logging.error(f"Could not write scheduler failure to collection log: {log_error}")
        logging.error(message)
        return error
