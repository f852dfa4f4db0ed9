class PerfmonError(Exception):
    """Base class for every error raised by the collection framework.

    ``logged`` is set once the failure has been written to the collection log,
    so outer layers do not record the same failure twice.
    """
    logged = False


class TableMissing(PerfmonError):
    def __init__(self, table_name):
        super().__init__(f"Table {table_name} still missing after provisioning")
        self.table_name = table_name


class UnknownMetricFamily(PerfmonError):
    def __init__(self, table_name):
        super().__init__(f"Unknown table name for delta calculation: {table_name}")
        self.table_name = table_name


class UnknownCollector(PerfmonError):
    def __init__(self, collector_name):
        super().__init__(f"Unknown collector: {collector_name}")
        self.collector_name = collector_name


class CollectorRuntimeError(PerfmonError):
    def __init__(self, collector_name, message):
        super().__init__(f"Error in {collector_name}: {message}")
        self.collector_name = collector_name


class DeltaComputationError(PerfmonError):
    def __init__(self, table_name, message, duration_ms=0):
        super().__init__(f"Error calculating deltas for {table_name}: {message}")
        self.table_name = table_name
        self.reason = message
        self.duration_ms = duration_ms


class SchedulerFatalError(PerfmonError):
    pass
