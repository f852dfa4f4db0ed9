from unittest.mock import MagicMock, patch

import requests

from perfmon.models import CriticalIssue
from perfmon.receivers import AlertManager
from perfmon.receivers.email import EmailReceiver
from perfmon.receivers.telegram import TelegramReceiver


class Settings:
    SQLSERVER_SERVER = 'sql01.corp'
    TELEGRAM_ENABLED = True
    TELEGRAM_BOT_TOKEN = 'token'
    TELEGRAM_CHAT_ID = '42'
    EMAIL_ENABLED = False


def issue(severity='CRITICAL', message='CRITICAL: Queries timing out waiting for memory grants: 3 timeouts'):
    return CriticalIssue(
        severity=severity, problem_area='Memory Grant Pressure', source_collector='memory_grant_stats_collector',
        message=message, investigate_query='SELECT 1;',
    )


def test_manager_builds_enabled_receivers():
    manager = AlertManager(Settings)
    assert [type(r) for r in manager.receivers] == [TelegramReceiver]


def test_notify_issues_isolates_receiver_failures():
    broken = MagicMock()
    broken.send.side_effect = RuntimeError("smtp down")
    working = MagicMock()
    working.send.return_value = True
    manager = AlertManager(Settings, receivers=[broken, working])

    assert manager.notify_issues([issue(), issue('WARNING', 'Queries forced to run: 2')]) == 2
    assert working.send.call_count == 2
    subject, description, metadata = working.send.call_args_list[0].args
    assert subject == 'Memory Grant Pressure'
    assert metadata['severity'] == 'CRITICAL'
    assert metadata['server'] == 'sql01.corp'


def test_no_receivers_delivers_nothing():
    assert AlertManager(Settings, receivers=[]).notify_issues([issue()]) == 0


@patch('perfmon.receivers.telegram.requests.post')
def test_telegram_send(mock_post):
    mock_post.return_value.raise_for_status.return_value = None
    receiver = TelegramReceiver('token', '42')
    assert receiver.send('Memory Grant Pressure', 'a < b', {'severity': 'WARNING', 'server': 'sql01'})
    payload = mock_post.call_args.kwargs['json']
    assert payload['chat_id'] == '42'
    assert 'a &lt; b' in payload['text']


@patch('perfmon.receivers.telegram.requests.post')
def test_telegram_http_error(mock_post):
    mock_post.side_effect = requests.ConnectionError("unreachable")
    assert not TelegramReceiver('token', '42').send('s', 'd', {})


def test_telegram_missing_configuration():
    assert not TelegramReceiver('', '').send('s', 'd', {})


def test_email_message_body():
    receiver = EmailReceiver('smtp.local', 587, '', '', 'perfmon@corp', ['dba@corp'])
    msg = receiver.build_message('Memory Clerk Growth', 'TokenAndPermUserStore cache is large',
                                 {'severity': 'WARNING', 'server': 'sql01', 'investigate_query': 'SELECT 2;'})
    assert msg['Subject'] == '[SQL Perfmon WARNING] Memory Clerk Growth'
    body = msg.get_payload()[0].get_payload()
    assert 'TokenAndPermUserStore' in body
    assert 'SELECT 2;' in body


def test_email_without_recipients_is_skipped():
    assert not EmailReceiver('smtp.local', 587, '', '', 'perfmon@corp', []).send('s', 'd', {})
