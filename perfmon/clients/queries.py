# queries.py
#
# Every query returns raw cumulative values with column names matching the
# snapshot tables. Deltas, rates and averages are derived later.

# Server clock and uptime epoch, read together so they share one clock
GET_SERVER_CLOCK = """
SELECT
    collection_time = SYSDATETIME(),
    server_start_time = osi.sqlserver_start_time
FROM sys.dm_os_sys_info AS osi;
"""

GET_SERVER_INFO = """
SELECT
    sqlserver_start_time = osi.sqlserver_start_time,
    server_name = CONVERT(nvarchar(128), @@SERVERNAME),
    instance_name = ISNULL(CONVERT(nvarchar(128), SERVERPROPERTY('InstanceName')), N'DEFAULT'),
    sql_version =
        CONVERT(nvarchar(128), SERVERPROPERTY('ProductVersion')) + N' - ' +
        CONVERT(nvarchar(128), SERVERPROPERTY('ProductLevel')),
    edition = CONVERT(nvarchar(128), SERVERPROPERTY('Edition')),
    physical_memory_mb = osi.physical_memory_kb / 1024,
    cpu_count = osi.cpu_count,
    environment_type =
        CASE
            WHEN SERVERPROPERTY('EngineEdition') = 5 THEN N'AzureDB'
            WHEN SERVERPROPERTY('EngineEdition') = 8 THEN N'AzureMI'
            WHEN @@VERSION LIKE '%EC2%' THEN N'AWSRDS'
            ELSE N'OnPrem'
        END
FROM sys.dm_os_sys_info AS osi;
"""

# Wait Stats (System wide)
# Filtering out benign waits is important to avoid noise
GET_WAIT_STATS = """
SELECT
    wait_type,
    waiting_tasks_count,
    wait_time_ms,
    max_wait_time_ms,
    signal_wait_time_ms
FROM sys.dm_os_wait_stats
WHERE wait_time_ms > 0
AND wait_type NOT IN (
    N'BROKER_EVENTHANDLER', N'BROKER_RECEIVE_WAITFOR', N'BROKER_TASK_STOP',
    N'BROKER_TO_FLUSH', N'BROKER_TRANSMITTER', N'CHECKPOINT_QUEUE',
    N'CHKPT', N'CLR_AUTO_EVENT', N'CLR_MANUAL_EVENT', N'CLR_SEMAPHORE',
    N'DBMIRROR_DBM_EVENT', N'DBMIRROR_EVENTS_QUEUE', N'DBMIRROR_WORKER_QUEUE',
    N'DBMIRRORING_CMD', N'DIRTY_PAGE_POLL', N'DISPATCHER_QUEUE_SEMAPHORE',
    N'EXECSYNC', N'FSAGENT', N'FT_IFTS_SCHEDULER_IDLE_WAIT', N'FT_IFTSHC_MUTEX',
    N'HADR_CLUSAPI_CALL', N'HADR_FILESTREAM_IOMGR_IOCOMPLETION', N'HADR_LOGCAPTURE_WAIT',
    N'HADR_NOTIFICATION_DEQUEUE', N'HADR_TIMER_TASK', N'HADR_WORK_QUEUE',
    N'KSOURCE_WAKEUP', N'LAZYWRITER_SLEEP', N'LOGMGR_QUEUE',
    N'MEMORY_ALLOCATION_EXT', N'ONDEMAND_TASK_QUEUE',
    N'PREEMPTIVE_XE_GETTARGETSTATE', N'PWAIT_ALL_COMPONENTS_INITIALIZED',
    N'PWAIT_DIRECTLOGCONSUMER_GETNEXT', N'QDS_PERSIST_TASK_MAIN_LOOP_SLEEP',
    N'QDS_ASYNC_QUEUE', N'QDS_CLEANUP_STALE_QUERIES_TASK_MAIN_LOOP_SLEEP',
    N'QDS_SHUTDOWN_QUEUE', N'REDO_THREAD_PENDING_WORK', N'REQUEST_FOR_DEADLOCK_SEARCH',
    N'RESOURCE_QUEUE', N'SERVER_IDLE_CHECK', N'SLEEP_BPOOL_FLUSH', N'SLEEP_DBSTARTUP',
    N'SLEEP_DCOMSTARTUP', N'SLEEP_MASTERDBREADY', N'SLEEP_MASTERMDREADY',
    N'SLEEP_MASTERUPGRADED', N'SLEEP_MSDBSTARTUP', N'SLEEP_SYSTEMTASK', N'SLEEP_TASK',
    N'SLEEP_TEMPDBSTARTUP', N'SNI_HTTP_ACCEPT', N'SP_SERVER_DIAGNOSTICS_SLEEP',
    N'SQLTRACE_BUFFER_FLUSH', N'SQLTRACE_INCREMENTAL_FLUSH_SLEEP',
    N'SQLTRACE_WAIT_ENTRIES', N'WAIT_FOR_RESULTS', N'WAITFOR', N'WAITFOR_TASKSHUTDOWN',
    N'WAIT_XTP_RECOVERY', N'WAIT_XTP_HOST_WAIT', N'WAIT_XTP_OFFLINE_CKPT_NEW_LOG',
    N'WAIT_XTP_CKPT_CLOSE', N'XE_DISPATCHER_JOIN', N'XE_DISPATCHER_WAIT', N'XE_TIMER_EVENT'
);
"""

# Plan cache statements executed since the cutoff (qmark parameter)
GET_QUERY_STATS = """
SELECT
    database_name = DB_NAME(CONVERT(integer, pa.value)),
    sql_handle = CONVERT(varchar(130), qs.sql_handle, 1),
    statement_start_offset = qs.statement_start_offset,
    statement_end_offset = qs.statement_end_offset,
    plan_generation_num = qs.plan_generation_num,
    plan_handle = CONVERT(varchar(130), qs.plan_handle, 1),
    creation_time = qs.creation_time,
    last_execution_time = qs.last_execution_time,
    query_hash = CONVERT(varchar(18), qs.query_hash, 1),
    query_plan_hash = CONVERT(varchar(18), qs.query_plan_hash, 1),
    execution_count = qs.execution_count,
    total_worker_time = qs.total_worker_time,
    total_elapsed_time = qs.total_elapsed_time,
    total_logical_reads = qs.total_logical_reads,
    total_physical_reads = qs.total_physical_reads,
    total_logical_writes = qs.total_logical_writes,
    total_rows = qs.total_rows,
    total_spills = qs.total_spills,
    query_text =
        SUBSTRING(
            st.text,
            (qs.statement_start_offset / 2) + 1,
            ((CASE qs.statement_end_offset
                WHEN -1 THEN DATALENGTH(st.text)
                ELSE qs.statement_end_offset
            END - qs.statement_start_offset) / 2) + 1
        )
FROM sys.dm_exec_query_stats AS qs
OUTER APPLY sys.dm_exec_sql_text(qs.sql_handle) AS st
OUTER APPLY (
    SELECT value
    FROM sys.dm_exec_plan_attributes(qs.plan_handle)
    WHERE attribute = N'dbid'
) AS pa
WHERE qs.last_execution_time >= ?
AND CONVERT(integer, pa.value) NOT IN (1, 3, 4, 32761, 32767)
OPTION (RECOMPILE);
"""

GET_PROCEDURE_STATS = """
SELECT
    database_name = DB_NAME(ps.database_id),
    object_id = ps.object_id,
    object_name = OBJECT_SCHEMA_NAME(ps.object_id, ps.database_id) + N'.' + OBJECT_NAME(ps.object_id, ps.database_id),
    object_type = ps.type_desc,
    plan_handle = CONVERT(varchar(130), ps.plan_handle, 1),
    cached_time = ps.cached_time,
    last_execution_time = ps.last_execution_time,
    execution_count = ps.execution_count,
    total_worker_time = ps.total_worker_time,
    total_elapsed_time = ps.total_elapsed_time,
    total_logical_reads = ps.total_logical_reads,
    total_physical_reads = ps.total_physical_reads,
    total_logical_writes = ps.total_logical_writes
FROM sys.dm_exec_procedure_stats AS ps
WHERE ps.last_execution_time >= ?
AND ps.database_id NOT IN (1, 3, 4, 32761, 32767)
OPTION (RECOMPILE);
"""

# Cumulative counters only (per-second and bulk-count types)
GET_PERFMON_STATS = """
SELECT
    object_name = RTRIM(pc.object_name),
    counter_name = RTRIM(pc.counter_name),
    instance_name = RTRIM(pc.instance_name),
    cntr_type = pc.cntr_type,
    cntr_value = pc.cntr_value
FROM sys.dm_os_performance_counters AS pc
WHERE pc.cntr_type IN (272696576, 272696320)
AND pc.cntr_value > 0;
"""

# I/O Stats (Latency and Throughput per database file)
GET_FILE_IO_STATS = """
SELECT
    database_id = vfs.database_id,
    database_name = ISNULL(DB_NAME(vfs.database_id), N'UNKNOWN'),
    file_id = vfs.file_id,
    file_name = ISNULL(mf.name, N'UNKNOWN'),
    file_type_desc = ISNULL(mf.type_desc, N'UNKNOWN'),
    physical_name = mf.physical_name,
    size_on_disk_bytes = vfs.size_on_disk_bytes,
    num_of_reads = vfs.num_of_reads,
    num_of_bytes_read = vfs.num_of_bytes_read,
    io_stall_read_ms = vfs.io_stall_read_ms,
    num_of_writes = vfs.num_of_writes,
    num_of_bytes_written = vfs.num_of_bytes_written,
    io_stall_write_ms = vfs.io_stall_write_ms,
    io_stall_ms = vfs.io_stall,
    io_stall_queued_read_ms = vfs.io_stall_queued_read_ms,
    io_stall_queued_write_ms = vfs.io_stall_queued_write_ms,
    sample_ms = vfs.sample_ms
FROM sys.dm_io_virtual_file_stats(NULL, NULL) AS vfs
LEFT JOIN sys.master_files AS mf
  ON mf.database_id = vfs.database_id
  AND mf.file_id = vfs.file_id
WHERE (vfs.num_of_reads > 0 OR vfs.num_of_writes > 0)
AND vfs.database_id NOT IN (1, 3, 4)
AND vfs.database_id < 32761;
"""

GET_MEMORY_CLERKS_STATS = """
SELECT
    clerk_type = mc.type,
    memory_node_id = mc.memory_node_id,
    clerk_name = MAX(mc.name),
    pages_kb = SUM(mc.pages_kb),
    virtual_memory_reserved_kb = SUM(mc.virtual_memory_reserved_kb),
    virtual_memory_committed_kb = SUM(mc.virtual_memory_committed_kb),
    awe_allocated_kb = SUM(mc.awe_allocated_kb),
    shared_memory_reserved_kb = SUM(mc.shared_memory_reserved_kb),
    shared_memory_committed_kb = SUM(mc.shared_memory_committed_kb)
FROM sys.dm_os_memory_clerks AS mc
GROUP BY
    mc.type,
    mc.memory_node_id
HAVING SUM(mc.pages_kb) > 0;
"""

GET_MEMORY_GRANT_STATS = """
SELECT
    resource_semaphore_id = rs.resource_semaphore_id,
    pool_id = rs.pool_id,
    target_memory_mb = rs.target_memory_kb / 1024.0,
    max_target_memory_mb = rs.max_target_memory_kb / 1024.0,
    total_memory_mb = rs.total_memory_kb / 1024.0,
    available_memory_mb = rs.available_memory_kb / 1024.0,
    granted_memory_mb = rs.granted_memory_kb / 1024.0,
    used_memory_mb = rs.used_memory_kb / 1024.0,
    grantee_count = rs.grantee_count,
    waiter_count = rs.waiter_count,
    timeout_error_count = ISNULL(rs.timeout_error_count, 0),
    forced_grant_count = ISNULL(rs.forced_grant_count, 0)
FROM sys.dm_exec_query_resource_semaphores AS rs;
"""

GET_LATCH_STATS = """
SELECT
    latch_class = ls.latch_class,
    waiting_requests_count = ls.waiting_requests_count,
    wait_time_ms = ls.wait_time_ms,
    max_wait_time_ms = ls.max_wait_time_ms
FROM sys.dm_os_latch_stats AS ls
WHERE ls.waiting_requests_count > 0;
"""

GET_SPINLOCK_STATS = """
SELECT
    spinlock_name = ss.name,
    collisions = ss.collisions,
    spins = ss.spins,
    spins_per_collision = ss.spins_per_collision,
    sleep_time = ss.sleep_time,
    backoffs = ss.backoffs
FROM sys.dm_os_spinlock_stats AS ss
WHERE ss.collisions > 0;
"""

# Memory Usage
GET_MEMORY_STATS = """
SELECT
    physical_memory_in_use_kb,
    large_page_allocations_kb,
    locked_page_allocations_kb,
    page_fault_count,
    memory_utilization_percentage,
    process_physical_memory_low = CONVERT(integer, process_physical_memory_low),
    process_virtual_memory_low = CONVERT(integer, process_virtual_memory_low)
FROM sys.dm_os_process_memory;
"""
