import threading

import pytest

from gatehouse.service.email import EmailService, send_notification_safely


async def test_notification_runs_off_the_event_loop_thread():
    seen = []

    def send(to_email):
        seen.append((to_email, threading.get_ident()))
        return True

    assert await send_notification_safely(send, "alice@example.com") is True
    assert seen[0][0] == "alice@example.com"
    assert seen[0][1] != threading.get_ident()


async def test_notification_failure_does_not_reach_caller():
    def send(to_email):
        raise ConnectionRefusedError("smtp down")

    assert await send_notification_safely(send, "alice@example.com") is False


async def test_undelivered_notification_reports_false():
    assert await send_notification_safely(lambda: False) is False


def test_unconfigured_service_logs_instead_of_sending():
    email = EmailService()
    assert email.is_configured is False
    assert email.send_password_changed("alice@example.com") is True


@pytest.mark.parametrize("address", ["alice@example.com", "no-at-sign"])
def test_redacted_addresses_hide_local_part(address):
    redacted = EmailService._redact_email(address)
    assert "alice@" not in redacted
