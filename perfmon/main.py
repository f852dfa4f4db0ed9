import argparse
import logging
import sys
import time
from datetime import timedelta

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .clients.sqlserver import SqlServerClient
from .core.clock import utcnow
from .core.config import settings
from .core.database import SessionLocal, engine
from .core.errors import SchedulerFatalError
from .receivers import AlertManager
from .services.collection_health import collection_health
from .services.collection_log import CollectionLogWriter
from .services.collectors import build_collectors
from .services.provisioning import provision
from .services.retention import purge_expired
from .services.scheduler import Scheduler


def wait_for_db(timeout=60):
    start_time = time.time()
    while time.time() - start_time < timeout:
        try:
            session = SessionLocal()
            try:
                session.execute(text("SELECT 1"))
            finally:
                session.close()
            return True
        except SQLAlchemyError as e:
            logging.warning(f"Store not reachable yet: {e}")
            time.sleep(2)
    return False


def build_scheduler(source=None, session_factory=None, clock=utcnow, notifier=None):
    session_factory = session_factory or SessionLocal
    source = source or SqlServerClient.from_settings(settings)
    collection_log = CollectionLogWriter(session_factory, clock)
    collectors = build_collectors(source, session_factory, collection_log, clock, notifier=notifier)
    return Scheduler(source, collectors, session_factory, clock, collection_log)


def run_cycle(force_run_all=False, debug=False, scheduler=None):
    """One scheduler tick; returns (collectors_run, errors)."""
    scheduler = scheduler or build_scheduler(notifier=AlertManager())
    return scheduler.run_due_collectors(force_run_all=force_run_all, debug=debug)


def run_forever(scheduler, debug=False, clock=utcnow):
    next_purge = clock()
    while True:
        cycle_start = time.time()
        scheduler.run_due_collectors(debug=debug)

        if clock() >= next_purge:
            try:
                purge_expired(session_factory=scheduler.session_factory, clock=clock)
            except SQLAlchemyError as e:
                logging.error(f"Retention run failed: {e}")
            next_purge = clock() + timedelta(hours=settings.RETENTION_INTERVAL_HOURS)

        elapsed = time.time() - cycle_start
        time.sleep(max(0.0, settings.TICK_SECONDS - elapsed))


def print_health(session_factory=None):
    health = collection_health(session_factory=session_factory)
    if health.empty:
        print("No collection activity recorded in the health window.")
        return
    print(health.to_string(index=False))


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='perfmon', description='SQL Server performance collection scheduler')
    parser.add_argument('--once', action='store_true', help='run a single scheduler tick and exit')
    parser.add_argument('--force-run-all', action='store_true', help='run every enabled collector regardless of schedule')
    parser.add_argument('--debug', action='store_true', help='verbose progress logging')
    parser.add_argument('--purge', action='store_true', help='apply data retention and exit')
    parser.add_argument('--health', action='store_true', help='print the collection health report and exit')
    parser.add_argument('--profile', choices=['realtime', 'consulting', 'baseline'],
                        help='apply a schedule profile before running')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')

    if not wait_for_db():
        logging.error(f"Store at {engine.url.render_as_string(hide_password=True)} is not reachable")
        return 1

    scheduler = build_scheduler(notifier=AlertManager())
    registry = provision(engine, scheduler.session_factory, collector_names=scheduler.collectors.keys())
    scheduler.registry = registry

    if args.profile:
        registry.apply_profile(args.profile)
    if args.health:
        print_health(scheduler.session_factory)
        return 0
    if args.purge:
        purge_expired(session_factory=scheduler.session_factory, clock=scheduler.clock)
        return 0

    try:
        if args.once or args.force_run_all:
            collectors_run, errors = scheduler.run_due_collectors(force_run_all=args.force_run_all, debug=args.debug)
            return 0 if errors == 0 else 2
        run_forever(scheduler, debug=args.debug)
    except SchedulerFatalError as e:
        logging.error(f"Scheduler stopped: {e}")
        return 1
    except KeyboardInterrupt:
        logging.info("Interrupted, shutting down")
    finally:
        scheduler.source.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
