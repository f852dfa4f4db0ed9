from sqlalchemy import Column, Integer, BigInteger, String, Boolean, DateTime, Text, Numeric, Index, CheckConstraint
from .base import Base, BigIntPK
from ..core.clock import utcnow


COLLECTION_STATUSES = ('SUCCESS', 'ERROR', 'TABLE_MISSING', 'TABLE_CREATED', 'CONFIG_CHANGE', 'SKIPPED', 'PARTIAL')

# Statuses that describe housekeeping rather than a collection attempt
INFORMATIONAL_STATUSES = ('CONFIG_CHANGE', 'TABLE_MISSING', 'TABLE_CREATED', 'SKIPPED')


class CollectionLog(Base):
    __tablename__ = 'collection_log'
    log_id = Column(BigIntPK, primary_key=True, autoincrement=True)
    collection_time = Column(DateTime, nullable=False, default=utcnow)
    collector_name = Column(String(100), nullable=False)
    collection_status = Column(String(20), nullable=False)
    rows_collected = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=False, default=0)
    error_message = Column(String(4000), nullable=True)

    __table_args__ = (
        Index('collection_log_time_collector', 'collection_time', 'collector_name'),
        Index('collection_log_status', 'collection_status'),
    )


class CollectionSchedule(Base):
    __tablename__ = 'collection_schedule'
    schedule_id = Column(Integer, primary_key=True, autoincrement=True)
    collector_name = Column(String(128), nullable=False, unique=True)
    enabled = Column(Boolean, nullable=False, default=True)
    frequency_minutes = Column(Integer, nullable=False, default=15)
    last_run_time = Column(DateTime, nullable=True)
    next_run_time = Column(DateTime, nullable=True)
    max_duration_minutes = Column(Integer, nullable=False, default=5)
    retention_days = Column(Integer, nullable=False, default=30)
    description = Column(String(500), nullable=True)
    created_date = Column(DateTime, nullable=False, default=utcnow)
    modified_date = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('collection_schedule_next_run', 'next_run_time', 'enabled'),
    )


class ServerInfoHistory(Base):
    __tablename__ = 'server_info_history'
    collection_id = Column(BigIntPK, primary_key=True, autoincrement=True)
    collection_time = Column(DateTime, nullable=False, default=utcnow)
    sqlserver_start_time = Column(DateTime, nullable=False, index=True)
    server_name = Column(String(128), nullable=False)
    instance_name = Column(String(128), nullable=True)
    sql_version = Column(String(256), nullable=False)
    edition = Column(String(128), nullable=False)
    physical_memory_mb = Column(BigInteger, nullable=False)
    cpu_count = Column(Integer, nullable=False)
    environment_type = Column(String(50), nullable=False)


class CriticalIssue(Base):
    __tablename__ = 'critical_issues'
    issue_id = Column(BigIntPK, primary_key=True, autoincrement=True)
    log_date = Column(DateTime, nullable=False, default=utcnow, index=True)
    severity = Column(String(20), nullable=False)
    problem_area = Column(String(100), nullable=False)
    source_collector = Column(String(128), nullable=False)
    affected_database = Column(String(128), nullable=True)
    message = Column(Text, nullable=False)
    investigate_query = Column(Text, nullable=True)
    threshold_value = Column(Numeric(38, 2), nullable=True)
    threshold_limit = Column(Numeric(38, 2), nullable=True)

    __table_args__ = (
        CheckConstraint("severity IN ('CRITICAL', 'WARNING', 'INFO')", name='ck_critical_issues_severity'),
    )


class DeltaClaim(Base):
    """One row per metric family, row-locked while its deltas are being written."""
    __tablename__ = 'delta_claims'
    family = Column(String(128), primary_key=True)
    last_run_time = Column(DateTime, nullable=True)
    last_rows_updated = Column(Integer, nullable=True)
