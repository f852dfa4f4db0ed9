import logging
from sqlalchemy import select

from ..core.clock import utcnow
from ..core.database import engine as default_engine, SessionLocal, TransactionScope
from ..models import Base, DeltaClaim
from .delta_engine import METRIC_FAMILIES
from .schedule import ScheduleRegistry


def provision(bind=None, session_factory=None, collector_names=None, clock=utcnow):
    """Create every store table, seed the schedule and the per-family delta claims.

    Safe to run on every start: existing tables, schedule rows and claims are
    left untouched.
    """
    bind = bind if bind is not None else default_engine
    session_factory = session_factory or SessionLocal

    Base.metadata.create_all(bind=bind)

    registry = ScheduleRegistry(session_factory, clock)
    seeded = registry.seed_defaults(collector_names)

    with TransactionScope(None, session_factory) as scope:
        existing = set(scope.session.execute(select(DeltaClaim.family)).scalars())
        for family in METRIC_FAMILIES:
            if family not in existing:
                scope.session.add(DeltaClaim(family=family))

    logging.info(f"Store provisioned ({len(Base.metadata.tables)} tables, {seeded} new schedule rows)")
    return registry
