"""Snapshot Store tables.

Every table keeps the raw cumulative values exactly as the DMV reported them.
The ``*_delta`` columns stay NULL until the delta engine fills them in.
"""
from sqlalchemy import Column, Integer, BigInteger, SmallInteger, String, DateTime, Text, Float, Index
from .base import Base, BigIntPK


class SnapshotMixin:
    collection_id = Column(BigIntPK, primary_key=True, autoincrement=True)
    collection_time = Column(DateTime, nullable=False, index=True)
    server_start_time = Column(DateTime, nullable=True)
    sample_interval_seconds = Column(Integer, nullable=True)


class WaitStats(SnapshotMixin, Base):
    __tablename__ = 'wait_stats'
    wait_type = Column(String(60), nullable=False)
    waiting_tasks_count = Column(BigInteger, nullable=False)
    wait_time_ms = Column(BigInteger, nullable=False)
    max_wait_time_ms = Column(BigInteger, nullable=True)
    signal_wait_time_ms = Column(BigInteger, nullable=False)
    waiting_tasks_count_delta = Column(BigInteger, nullable=True)
    wait_time_ms_delta = Column(BigInteger, nullable=True)
    signal_wait_time_ms_delta = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index('wait_stats_type_time', 'wait_type', 'collection_time'),
    )


class QueryStats(SnapshotMixin, Base):
    __tablename__ = 'query_stats'
    database_name = Column(String(128), nullable=True)
    sql_handle = Column(String(130), nullable=False)
    statement_start_offset = Column(Integer, nullable=False)
    statement_end_offset = Column(Integer, nullable=False)
    plan_generation_num = Column(BigInteger, nullable=True)
    plan_handle = Column(String(130), nullable=False)
    creation_time = Column(DateTime, nullable=True)
    last_execution_time = Column(DateTime, nullable=True)
    query_hash = Column(String(18), nullable=True)
    query_plan_hash = Column(String(18), nullable=True)
    execution_count = Column(BigInteger, nullable=False)
    total_worker_time = Column(BigInteger, nullable=False)
    total_elapsed_time = Column(BigInteger, nullable=False)
    total_logical_reads = Column(BigInteger, nullable=False)
    total_physical_reads = Column(BigInteger, nullable=False)
    total_logical_writes = Column(BigInteger, nullable=False)
    total_rows = Column(BigInteger, nullable=True)
    total_spills = Column(BigInteger, nullable=True)
    query_text = Column(Text, nullable=True)
    execution_count_delta = Column(BigInteger, nullable=True)
    total_worker_time_delta = Column(BigInteger, nullable=True)
    total_elapsed_time_delta = Column(BigInteger, nullable=True)
    total_logical_reads_delta = Column(BigInteger, nullable=True)
    total_physical_reads_delta = Column(BigInteger, nullable=True)
    total_logical_writes_delta = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index('query_stats_statement', 'sql_handle', 'statement_start_offset', 'statement_end_offset',
              'plan_handle', 'collection_time'),
    )


class ProcedureStats(SnapshotMixin, Base):
    __tablename__ = 'procedure_stats'
    database_name = Column(String(128), nullable=False)
    object_id = Column(Integer, nullable=False)
    object_name = Column(String(256), nullable=True)
    object_type = Column(String(60), nullable=True)
    plan_handle = Column(String(130), nullable=False)
    cached_time = Column(DateTime, nullable=True)
    last_execution_time = Column(DateTime, nullable=True)
    execution_count = Column(BigInteger, nullable=False)
    total_worker_time = Column(BigInteger, nullable=False)
    total_elapsed_time = Column(BigInteger, nullable=False)
    total_logical_reads = Column(BigInteger, nullable=False)
    total_physical_reads = Column(BigInteger, nullable=False)
    total_logical_writes = Column(BigInteger, nullable=False)
    execution_count_delta = Column(BigInteger, nullable=True)
    total_worker_time_delta = Column(BigInteger, nullable=True)
    total_elapsed_time_delta = Column(BigInteger, nullable=True)
    total_logical_reads_delta = Column(BigInteger, nullable=True)
    total_physical_reads_delta = Column(BigInteger, nullable=True)
    total_logical_writes_delta = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index('procedure_stats_object', 'database_name', 'object_id', 'plan_handle', 'collection_time'),
    )


class PerfmonStats(SnapshotMixin, Base):
    __tablename__ = 'perfmon_stats'
    object_name = Column(String(128), nullable=False)
    counter_name = Column(String(128), nullable=False)
    instance_name = Column(String(128), nullable=False, default='')
    cntr_type = Column(BigInteger, nullable=True)
    cntr_value = Column(BigInteger, nullable=False)
    cntr_value_delta = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index('perfmon_stats_counter', 'object_name', 'counter_name', 'instance_name', 'collection_time'),
    )


class FileIoStats(SnapshotMixin, Base):
    __tablename__ = 'file_io_stats'
    database_id = Column(Integer, nullable=False)
    database_name = Column(String(128), nullable=True)
    file_id = Column(Integer, nullable=False)
    file_name = Column(String(128), nullable=True)
    file_type_desc = Column(String(60), nullable=True)
    physical_name = Column(String(260), nullable=True)
    size_on_disk_bytes = Column(BigInteger, nullable=True)
    num_of_reads = Column(BigInteger, nullable=False)
    num_of_bytes_read = Column(BigInteger, nullable=False)
    io_stall_read_ms = Column(BigInteger, nullable=False)
    num_of_writes = Column(BigInteger, nullable=False)
    num_of_bytes_written = Column(BigInteger, nullable=False)
    io_stall_write_ms = Column(BigInteger, nullable=False)
    io_stall_ms = Column(BigInteger, nullable=False)
    io_stall_queued_read_ms = Column(BigInteger, nullable=False, default=0)
    io_stall_queued_write_ms = Column(BigInteger, nullable=False, default=0)
    sample_ms = Column(BigInteger, nullable=False)
    num_of_reads_delta = Column(BigInteger, nullable=True)
    num_of_bytes_read_delta = Column(BigInteger, nullable=True)
    io_stall_read_ms_delta = Column(BigInteger, nullable=True)
    num_of_writes_delta = Column(BigInteger, nullable=True)
    num_of_bytes_written_delta = Column(BigInteger, nullable=True)
    io_stall_write_ms_delta = Column(BigInteger, nullable=True)
    io_stall_ms_delta = Column(BigInteger, nullable=True)
    io_stall_queued_read_ms_delta = Column(BigInteger, nullable=True)
    io_stall_queued_write_ms_delta = Column(BigInteger, nullable=True)
    sample_ms_delta = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index('file_io_stats_file', 'database_id', 'file_id', 'collection_time'),
    )


class MemoryClerksStats(SnapshotMixin, Base):
    __tablename__ = 'memory_clerks_stats'
    clerk_type = Column(String(60), nullable=False)
    memory_node_id = Column(SmallInteger, nullable=False)
    clerk_name = Column(String(256), nullable=True)
    pages_kb = Column(BigInteger, nullable=False)
    virtual_memory_reserved_kb = Column(BigInteger, nullable=False)
    virtual_memory_committed_kb = Column(BigInteger, nullable=False)
    awe_allocated_kb = Column(BigInteger, nullable=False)
    shared_memory_reserved_kb = Column(BigInteger, nullable=False)
    shared_memory_committed_kb = Column(BigInteger, nullable=False)
    pages_kb_delta = Column(BigInteger, nullable=True)
    virtual_memory_reserved_kb_delta = Column(BigInteger, nullable=True)
    virtual_memory_committed_kb_delta = Column(BigInteger, nullable=True)
    awe_allocated_kb_delta = Column(BigInteger, nullable=True)
    shared_memory_reserved_kb_delta = Column(BigInteger, nullable=True)
    shared_memory_committed_kb_delta = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index('memory_clerks_stats_clerk', 'clerk_type', 'memory_node_id', 'collection_time'),
    )


class BlockingDeadlockStats(SnapshotMixin, Base):
    __tablename__ = 'blocking_deadlock_stats'
    database_name = Column(String(128), nullable=False)
    blocking_event_count = Column(BigInteger, nullable=False, default=0)
    total_blocking_duration_ms = Column(BigInteger, nullable=False, default=0)
    max_blocking_duration_ms = Column(BigInteger, nullable=False, default=0)
    deadlock_count = Column(BigInteger, nullable=False, default=0)
    total_deadlock_wait_time_ms = Column(BigInteger, nullable=False, default=0)
    victim_count = Column(BigInteger, nullable=False, default=0)
    blocking_event_count_delta = Column(BigInteger, nullable=True)
    total_blocking_duration_ms_delta = Column(BigInteger, nullable=True)
    max_blocking_duration_ms_delta = Column(BigInteger, nullable=True)
    deadlock_count_delta = Column(BigInteger, nullable=True)
    total_deadlock_wait_time_ms_delta = Column(BigInteger, nullable=True)
    victim_count_delta = Column(BigInteger, nullable=True)


class LatchStats(SnapshotMixin, Base):
    __tablename__ = 'latch_stats'
    latch_class = Column(String(60), nullable=False)
    waiting_requests_count = Column(BigInteger, nullable=False)
    wait_time_ms = Column(BigInteger, nullable=False)
    max_wait_time_ms = Column(BigInteger, nullable=False)
    waiting_requests_count_delta = Column(BigInteger, nullable=True)
    wait_time_ms_delta = Column(BigInteger, nullable=True)
    max_wait_time_ms_delta = Column(BigInteger, nullable=True)


class SpinlockStats(SnapshotMixin, Base):
    __tablename__ = 'spinlock_stats'
    spinlock_name = Column(String(256), nullable=False)
    collisions = Column(BigInteger, nullable=False)
    spins = Column(BigInteger, nullable=False)
    spins_per_collision = Column(Float, nullable=True)
    sleep_time = Column(BigInteger, nullable=False)
    backoffs = Column(BigInteger, nullable=False)
    collisions_delta = Column(BigInteger, nullable=True)
    spins_delta = Column(BigInteger, nullable=True)
    sleep_time_delta = Column(BigInteger, nullable=True)
    backoffs_delta = Column(BigInteger, nullable=True)


class MemoryGrantStats(SnapshotMixin, Base):
    __tablename__ = 'memory_grant_stats'
    resource_semaphore_id = Column(SmallInteger, nullable=False)
    pool_id = Column(Integer, nullable=False)
    target_memory_mb = Column(Float, nullable=True)
    max_target_memory_mb = Column(Float, nullable=True)
    total_memory_mb = Column(Float, nullable=True)
    available_memory_mb = Column(Float, nullable=True)
    granted_memory_mb = Column(Float, nullable=True)
    used_memory_mb = Column(Float, nullable=True)
    grantee_count = Column(Integer, nullable=True)
    waiter_count = Column(Integer, nullable=True)
    timeout_error_count = Column(BigInteger, nullable=False, default=0)
    forced_grant_count = Column(BigInteger, nullable=False, default=0)
    timeout_error_count_delta = Column(BigInteger, nullable=True)
    forced_grant_count_delta = Column(BigInteger, nullable=True)


class MemoryStats(SnapshotMixin, Base):
    """Point-in-time process memory; gauges only, no delta columns."""
    __tablename__ = 'memory_stats'
    physical_memory_in_use_kb = Column(BigInteger, nullable=True)
    large_page_allocations_kb = Column(BigInteger, nullable=True)
    locked_page_allocations_kb = Column(BigInteger, nullable=True)
    page_fault_count = Column(BigInteger, nullable=True)
    memory_utilization_percentage = Column(Integer, nullable=True)
    process_physical_memory_low = Column(Integer, nullable=True)
    process_virtual_memory_low = Column(Integer, nullable=True)
