"""
Tests for notifications and the email service.

Notifications never fail, or hold up, the workflow that triggered them.
"""

import asyncio
import smtplib
import threading
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from teamledger.config import EmailSettings
from teamledger.models import AuditEventType, ChangeRequestStatus, NotificationKind, TransactionUpdate
from teamledger.services.email import EmailDeliveryError, EmailService, OutgoingEmail


class TestDispatcher:
    """Failures in delivery are swallowed, logged and audited."""

    def test_request_succeeds_when_email_fails(self, app, run, users, make_transaction, mailer, audit_storage):
        """A change request is stored even if no reviewer can be emailed."""
        txn = make_transaction(users["owner"])
        mailer.fail = True

        request = run(app.change_requests.request_delete(users["member"].id, txn.id))

        assert run(app.change_requests.get_change_request(users["owner"].id, request.id)).is_pending
        failures = [e for e in audit_storage.events if e.event_type == AuditEventType.NOTIFICATION_FAILED]
        assert sorted(e.details["recipient"] for e in failures) == sorted([
            users["owner"].email,
            users["admin"].email,
        ])
        assert all(e.details["notification"] == "change_requested" for e in failures)

    def test_resolution_succeeds_when_email_fails(self, app, run, users, make_transaction, mailer):
        """Confirming still applies the change during an email outage."""
        txn = make_transaction(users["owner"])
        request = run(app.change_requests.request_edit(
            users["member"].id, txn.id, TransactionUpdate(amount=Decimal("99.00")),
        ))
        mailer.fail = True

        run(app.change_requests.resolve(users["admin"].id, request.id, ChangeRequestStatus.CONFIRMED))

        assert run(app.transactions.get_transaction(users["owner"].id, txn.id)).amount == Decimal("99.00")

    def test_failure_audit_carries_team(self, app, run, users, team, mailer, audit_storage):
        """Failed notifications are traceable to their team."""
        mailer.fail = True

        run(app.teams.invite_member(users["owner"].id, team.id, users["outsider"].email))

        failure = audit_storage.events[-1]
        assert failure.event_type == AuditEventType.NOTIFICATION_FAILED
        assert failure.team_id == team.id
        assert "relay unavailable" in failure.error_message

    def test_invitation_names_inviter(self, app, run, users, team, mailer):
        """The invitation says who invited you."""
        run(app.teams.invite_member(users["admin"].id, team.id, users["outsider"].email))

        assert users["admin"].full_name in mailer.sent[0].text

    def test_workflow_does_not_wait_for_delivery(self, app, run, users, team, mailer):
        """The flow returns while the relay is still holding the message."""
        async def scenario():
            mailer.hold = asyncio.Event()
            invitation = await app.teams.invite_member(users["owner"].id, team.id, users["outsider"].email)
            held = list(mailer.sent)
            mailer.hold.set()
            await app.notifier.drain()
            return invitation, held

        invitation, held = run(scenario())

        assert invitation.is_pending
        assert held == []
        assert mailer.subjects() == ['Invitation to join "Studio"']

    def test_inbox_mirrors_email(self, app, run, storage, users, team, make_transaction):
        """Reviewers get an inbox entry alongside each email."""
        txn = make_transaction(users["owner"])
        run(app.change_requests.request_delete(users["member"].id, txn.id))

        inbox = run(storage.list_notifications(users["admin"].id))
        assert inbox[0].kind == NotificationKind.CHANGE_REQUESTED
        assert inbox[0].team_id == team.id
        assert inbox[0].is_read is False
        requester_kinds = {n.kind for n in run(storage.list_notifications(users["member"].id))}
        assert NotificationKind.CHANGE_REQUESTED not in requester_kinds

    def test_reset_code_stays_out_of_inbox(self, app, run, storage, users, mailer):
        """The reset code is a credential; only the email carries it."""
        run(app.accounts.request_password_reset(users["member"].email))

        assert mailer.subjects()[-1] == "Reset your TeamLedger password"
        kinds = [n.kind for n in run(storage.list_notifications(users["member"].id))]
        assert kinds == [NotificationKind.WELCOME]


class TestEmailService:
    """Tests for the SMTP adapter."""

    def test_disabled_service_skips(self, run):
        """With SMTP disabled nothing is sent and no error is raised."""
        service = EmailService(EmailSettings(enabled=False))

        result = run(service.send(OutgoingEmail(to="a@example.com", subject="Hi", text="Hello")))

        assert result is None
        assert service.verify_connection() is False

    def test_enabled_service_sends(self, run):
        """Messages are handed to smtplib with our headers."""
        service = EmailService(EmailSettings(enabled=True, host="smtp.test", use_tls=False))
        connection = MagicMock()

        with patch("teamledger.services.email.smtp_service.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = connection
            message_id = run(service.send(OutgoingEmail(to="a@example.com", subject="Hi", text="Hello")))

        smtp.assert_called_once_with("smtp.test", 587, timeout=10.0)
        sent = connection.send_message.call_args.args[0]
        assert sent["To"] == "a@example.com"
        assert sent["Subject"] == "Hi"
        assert message_id == sent["Message-ID"]

    def test_refusal_becomes_delivery_error(self, run):
        """SMTP refusals surface as EmailDeliveryError."""
        service = EmailService(EmailSettings(enabled=True, host="smtp.test", use_tls=False))
        connection = MagicMock()
        connection.send_message.side_effect = smtplib.SMTPRecipientsRefused({"a@example.com": (550, b"no")})

        with patch("teamledger.services.email.smtp_service.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = connection
            with pytest.raises(EmailDeliveryError):
                run(service.send(OutgoingEmail(to="a@example.com", subject="Hi", text="Hello")))

    def test_delivery_runs_off_the_event_loop(self, run):
        """The blocking SMTP conversation happens in a worker thread."""
        service = EmailService(EmailSettings(enabled=True, host="smtp.test", use_tls=False))
        threads = []

        with patch.object(service, "_deliver", side_effect=lambda message: threads.append(threading.current_thread())):
            run(service.send(OutgoingEmail(to="a@example.com", subject="Hi", text="Hello")))

        assert len(threads) == 1
        assert threads[0] is not threading.main_thread()
