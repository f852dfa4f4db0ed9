import logging
import pyodbc
import pandas as pd
from ..core.config import settings
from ..core.errors import CollectorRuntimeError
from . import queries


class SqlServerClient:
    """Read-only access to the monitored instance's DMVs.

    One connection is kept open and reused between ticks; any driver error
    drops it so the next call reconnects.
    """

    def __init__(self, server, username='', password='', database='master',
                 driver='{ODBC Driver 18 for SQL Server}', encrypt='yes', trust_server_certificate='yes',
                 lock_timeout_ms=30000, query_timeout=120, login_timeout=10):
        self.server = server
        self.database = database
        self.lock_timeout_ms = int(lock_timeout_ms)
        self.query_timeout = int(query_timeout)
        self.login_timeout = int(login_timeout)

        parts = [
            f"DRIVER={driver}",
            f"SERVER={server}",
            f"DATABASE={database}",
            f"Encrypt={encrypt}",
            f"TrustServerCertificate={trust_server_certificate}",
            "APP=perfmon",
        ]
        if username:
            parts.append(f"UID={username}")
            parts.append(f"PWD={password}")
        else:
            parts.append("Trusted_Connection=yes")
        self.connection_string = ';'.join(parts) + ';'
        self._conn = None
        logging.info(f"SQL Server client initialized for {server}/{database}")

    @classmethod
    def from_settings(cls, cfg=settings):
        return cls(
            server=cfg.SQLSERVER_SERVER,
            username=cfg.SQLSERVER_USERNAME,
            password=cfg.SQLSERVER_PASSWORD,
            database=cfg.SQLSERVER_DATABASE,
            driver=cfg.SQLSERVER_DRIVER,
            encrypt=cfg.SQLSERVER_ENCRYPT,
            trust_server_certificate=cfg.SQLSERVER_TRUST_SERVER_CERTIFICATE,
            lock_timeout_ms=cfg.LOCK_TIMEOUT_MS,
            query_timeout=cfg.SQLSERVER_QUERY_TIMEOUT,
            login_timeout=cfg.SQLSERVER_LOGIN_TIMEOUT,
        )

    def connect(self):
        if self._conn is not None:
            return self._conn
        conn = pyodbc.connect(self.connection_string, timeout=self.login_timeout, autocommit=True)
        conn.timeout = self.query_timeout
        cursor = conn.cursor()
        cursor.execute(f"SET LOCK_TIMEOUT {self.lock_timeout_ms};")
        cursor.close()
        self._conn = conn
        return conn

    def close(self):
        if self._conn is None:
            return
        try:
            self._conn.close()
        except pyodbc.Error as e:
            logging.warning(f"Error closing SQL Server connection: {e}")
        finally:
            self._conn = None

    def fetch_frame(self, query, params=(), source='sqlserver'):
        """Run ``query`` and return its rows as an object-dtype DataFrame.

        Object dtype keeps bigint counters as exact Python ints instead of
        letting pandas coerce them to float64.
        """
        try:
            cursor = self.connect().cursor()
            try:
                cursor.execute(query, *params)
                columns = [col[0] for col in cursor.description]
                rows = [tuple(row) for row in cursor.fetchall()]
            finally:
                cursor.close()
        except pyodbc.Error as e:
            self.close()
            raise CollectorRuntimeError(source, str(e)) from e
        return pd.DataFrame(rows, columns=columns, dtype=object)

    def fetch_server_clock(self):
        """(collection_time, server_start_time) as seen by the monitored server."""
        df = self.fetch_frame(queries.GET_SERVER_CLOCK, source='server_clock')
        if df.empty:
            raise CollectorRuntimeError('server_clock', 'sys.dm_os_sys_info returned no rows')
        row = df.iloc[0]
        return row['collection_time'], row['server_start_time']

    def fetch_server_info(self) -> dict:
        df = self.fetch_frame(queries.GET_SERVER_INFO, source='server_info_collector')
        if df.empty:
            raise CollectorRuntimeError('server_info_collector', 'sys.dm_os_sys_info returned no rows')
        return df.iloc[0].to_dict()
