import smtplib

import pytest

from backend.notifier import EmailNotifier, NotificationError


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.calls = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append('starttls')

    def login(self, user, password):
        self.calls.append(('login', user))

    def sendmail(self, from_addr, to_addrs, message):
        self.calls.append(('sendmail', from_addr, to_addrs, message))


class RefusingSMTP(FakeSMTP):
    def sendmail(self, from_addr, to_addrs, message):
        raise smtplib.SMTPRecipientsRefused({to_addrs[0]: (550, b'No such user')})


@pytest.fixture(autouse=True)
def reset_fake():
    FakeSMTP.instances = []


def test_send_requires_host_and_sender():
    with pytest.raises(NotificationError):
        EmailNotifier(host=None, from_addr='cal@example.com').send('a@example.com', 'Hi', 'Body')
    with pytest.raises(NotificationError):
        EmailNotifier(host='smtp.example.com').send('a@example.com', 'Hi', 'Body')


def test_send_requires_recipient():
    notifier = EmailNotifier(host='smtp.example.com', from_addr='cal@example.com')
    with pytest.raises(NotificationError):
        notifier.send('', 'Hi', 'Body')


def test_send_uses_smtp(monkeypatch):
    monkeypatch.setattr(smtplib, 'SMTP', FakeSMTP)
    notifier = EmailNotifier(host='smtp.example.com', port=2525, user='cal', password='pw',
                             from_addr='cal@example.com')

    assert notifier.send('ana@example.com', 'Reminder: Standup', 'Plain', html_body='<p>Html</p>') is True

    server = FakeSMTP.instances[0]
    assert (server.host, server.port) == ('smtp.example.com', 2525)
    assert server.calls[0] == 'starttls'
    assert server.calls[1] == ('login', 'cal')
    _, from_addr, to_addrs, message = server.calls[2]
    assert from_addr == 'cal@example.com'
    assert to_addrs == ['ana@example.com']
    assert 'Subject: Reminder: Standup' in message
    assert 'multipart/alternative' in message


def test_smtp_errors_become_notification_errors(monkeypatch):
    monkeypatch.setattr(smtplib, 'SMTP', RefusingSMTP)
    notifier = EmailNotifier(host='smtp.example.com', from_addr='cal@example.com', use_tls=False)

    with pytest.raises(NotificationError):
        notifier.send('ghost@example.com', 'Hi', 'Body')


def test_from_env(monkeypatch):
    monkeypatch.setenv('SMTP_HOST', 'mail.example.com')
    monkeypatch.setenv('SMTP_PORT', '465')
    monkeypatch.setenv('SMTP_USER', 'robot@example.com')
    monkeypatch.delenv('SMTP_FROM', raising=False)
    monkeypatch.setenv('SMTP_STARTTLS', '0')

    notifier = EmailNotifier.from_env()

    assert notifier.host == 'mail.example.com'
    assert notifier.port == 465
    assert notifier.from_addr == 'robot@example.com'
    assert notifier.use_tls is False
