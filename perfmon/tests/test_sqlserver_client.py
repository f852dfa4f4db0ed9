import unittest
from datetime import datetime
from unittest.mock import MagicMock, patch

import pyodbc

from perfmon.clients import queries
from perfmon.clients.sqlserver import SqlServerClient
from perfmon.core.errors import CollectorRuntimeError


def fake_connection(description, rows):
    cursor = MagicMock()
    cursor.description = description
    cursor.fetchall.return_value = rows
    conn = MagicMock()
    conn.cursor.return_value = cursor
    return conn, cursor


class TestSqlServerClient(unittest.TestCase):
    def make_client(self, **kwargs):
        return SqlServerClient('sql01.corp', username='perfmon', password='secret', lock_timeout_ms=30000, **kwargs)

    def test_connection_string(self):
        client = self.make_client()
        self.assertIn('SERVER=sql01.corp;', client.connection_string)
        self.assertIn('UID=perfmon;', client.connection_string)
        self.assertIn('Encrypt=yes;', client.connection_string)

        trusted = SqlServerClient('sql01.corp')
        self.assertIn('Trusted_Connection=yes', trusted.connection_string)
        self.assertNotIn('UID=', trusted.connection_string)

    @patch('perfmon.clients.sqlserver.pyodbc.connect')
    def test_connect_sets_lock_and_query_timeouts(self, mock_connect):
        conn, cursor = fake_connection([], [])
        mock_connect.return_value = conn
        client = self.make_client(query_timeout=45)

        self.assertIs(client.connect(), conn)
        self.assertIs(client.connect(), conn)
        mock_connect.assert_called_once()
        self.assertEqual(conn.timeout, 45)
        cursor.execute.assert_any_call("SET LOCK_TIMEOUT 30000;")

    @patch('perfmon.clients.sqlserver.pyodbc.connect')
    def test_fetch_frame_keeps_bigints_exact(self, mock_connect):
        big = 2 ** 62 + 7
        conn, cursor = fake_connection(
            [('wait_type',), ('wait_time_ms',)],
            [('CXPACKET', big), ('WRITELOG', 3)],
        )
        mock_connect.return_value = conn
        df = self.make_client().fetch_frame(queries.GET_WAIT_STATS)

        self.assertEqual(list(df.columns), ['wait_type', 'wait_time_ms'])
        self.assertEqual(df.loc[0, 'wait_time_ms'], big)
        self.assertIs(type(df.loc[0, 'wait_time_ms']), int)

    @patch('perfmon.clients.sqlserver.pyodbc.connect')
    def test_fetch_frame_passes_parameters(self, mock_connect):
        conn, cursor = fake_connection([('x',)], [])
        mock_connect.return_value = conn
        cutoff = datetime(2026, 1, 5, 11, 0)
        self.make_client().fetch_frame(queries.GET_QUERY_STATS, (cutoff,))
        cursor.execute.assert_called_with(queries.GET_QUERY_STATS, cutoff)

    @patch('perfmon.clients.sqlserver.pyodbc.connect')
    def test_driver_error_resets_connection(self, mock_connect):
        conn, cursor = fake_connection([], [])
        mock_connect.return_value = conn
        client = self.make_client()
        client.connect()
        cursor.execute.side_effect = pyodbc.OperationalError('08S01', 'Communication link failure')

        with self.assertRaises(CollectorRuntimeError) as ctx:
            client.fetch_frame(queries.GET_WAIT_STATS, source='wait_stats_collector')
        self.assertIn('wait_stats_collector', str(ctx.exception))
        conn.close.assert_called_once()
        self.assertIsNone(client._conn)

    @patch('perfmon.clients.sqlserver.pyodbc.connect')
    def test_fetch_server_clock(self, mock_connect):
        now = datetime(2026, 1, 5, 12, 0)
        boot = datetime(2026, 1, 1, 8, 0)
        conn, _ = fake_connection([('collection_time',), ('server_start_time',)], [(now, boot)])
        mock_connect.return_value = conn
        self.assertEqual(self.make_client().fetch_server_clock(), (now, boot))

    @patch('perfmon.clients.sqlserver.pyodbc.connect')
    def test_fetch_server_info_empty(self, mock_connect):
        conn, _ = fake_connection([('sqlserver_start_time',)], [])
        mock_connect.return_value = conn
        with self.assertRaises(CollectorRuntimeError):
            self.make_client().fetch_server_info()


if __name__ == '__main__':
    unittest.main()
