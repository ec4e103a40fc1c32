"""
Notification Dispatcher

Decides who hears about what, records it in the recipient's inbox,
composes the email and hands it to the EmailService.

CRITICAL: Notifications are fire-and-forget. Each one runs as a
background task on the running event loop, so the workflow that
triggered it returns without waiting for SMTP. A failure is logged and
audited (NOTIFICATION_FAILED) but never raised; the workflow has already
committed.

Call drain() before the event loop goes away to let queued
notifications finish.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from teamledger.audit import AuditLogger
from teamledger.models.audit import AuditEventBuilder
from teamledger.models.ledger import (
    ChangeRequest,
    Invitation,
    InvitationStatus,
    Notification,
    NotificationKind,
    PublicUser,
    Role,
    Team,
    Transaction,
    User,
)
from teamledger.services.email import EmailService, OutgoingEmail, templates
from teamledger.services.storage import LedgerStorageInterface


logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Sends workflow notifications by email and into user inboxes."""

    def __init__(
        self,
        email_service: EmailService,
        storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._email = email_service
        self._storage = storage
        self._audit = audit_logger or AuditLogger()
        self._pending: set[asyncio.Task] = set()

    async def _user(self, user_id: UUID) -> Optional[PublicUser]:
        user = await self._storage.get_user(user_id)
        return user.public() if user else None

    async def _reviewers(self, team_id: UUID, exclude: Optional[UUID] = None) -> list[PublicUser]:
        """OWNER and ADMIN members of a team."""
        reviewers = []
        for membership in await self._storage.list_memberships(team_id):
            if membership.role not in (Role.OWNER, Role.ADMIN) or membership.user_id == exclude:
                continue
            user = await self._user(membership.user_id)
            if user:
                reviewers.append(user)
        return reviewers

    async def _record(
        self,
        kind: NotificationKind,
        recipient: PublicUser,
        email: OutgoingEmail,
        team_id: Optional[UUID],
    ) -> None:
        try:
            await self._storage.insert_notification(Notification(
                user_id=recipient.id,
                kind=kind,
                title=email.subject,
                body=email.text,
                team_id=team_id,
            ))
        except Exception as e:
            logger.warning(
                "notification_inbox_failed",
                kind=kind.value,
                user_id=str(recipient.id),
                error=str(e),
            )

    async def _deliver(
        self,
        notification: str,
        email: OutgoingEmail,
        team_id: Optional[UUID] = None,
    ) -> bool:
        try:
            await self._email.send(email)
            return True
        except Exception as e:
            logger.warning(
                "notification_failed",
                notification=notification,
                recipient=email.to,
                error=str(e),
            )
            await self._audit.log(AuditEventBuilder.notification_failed(
                notification=notification,
                recipient=email.to,
                error_message=str(e),
                team_id=team_id,
            ))
            return False

    async def _run(
        self,
        notification: str,
        kind: Optional[NotificationKind],
        team_id: Optional[UUID],
        compose,
    ) -> int:
        """
        Resolve recipients, fill inboxes and send. Returns the number of
        emails delivered.

        `compose` is a coroutine function returning (recipient, email)
        pairs. A recipient of None (or a kind of None) skips the inbox.
        """
        try:
            messages = await compose()
        except Exception as e:
            logger.warning("notification_compose_failed", notification=notification, error=str(e))
            await self._audit.log(AuditEventBuilder.notification_failed(
                notification=notification,
                recipient="",
                error_message=str(e),
                team_id=team_id,
            ))
            return 0

        delivered = 0
        for recipient, email in messages:
            if kind is not None and recipient is not None:
                await self._record(kind, recipient, email, team_id)
            if await self._deliver(notification, email, team_id):
                delivered += 1
        return delivered

    def _schedule(
        self,
        notification: str,
        kind: Optional[NotificationKind],
        team_id: Optional[UUID],
        compose,
    ) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._run(notification, kind, team_id, compose)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait until every scheduled notification has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    async def welcome(self, user: User) -> asyncio.Task:
        async def compose():
            public = user.public()
            return [(public, templates.welcome(public))]
        return self._schedule("welcome", NotificationKind.WELCOME, None, compose)

    async def member_invited(self, team: Team, invitation: Invitation) -> asyncio.Task:
        """Send the invitation token to the invited address."""
        async def compose():
            inviter = await self._user(invitation.invited_by)
            if inviter is None:
                return []
            invitee = await self._storage.get_user_by_email(invitation.email)
            recipient = invitee.public() if invitee else None
            return [(recipient, templates.team_invitation(invitation, team, inviter, recipient))]
        return self._schedule("member_invited", NotificationKind.INVITATION, team.id, compose)

    async def invitation_answered(self, team: Team, invitation: Invitation) -> asyncio.Task:
        """Tell the inviter whether the invitee accepted or declined."""
        async def compose():
            inviter = await self._user(invitation.invited_by)
            invitee = await self._user(invitation.responded_by) if invitation.responded_by else None
            if inviter is None or invitee is None:
                return []
            accepted = invitation.status == InvitationStatus.ACCEPTED
            return [(inviter, templates.invitation_answered(inviter, invitee, team, accepted))]
        return self._schedule(
            "invitation_answered", NotificationKind.INVITATION_ANSWERED, team.id, compose,
        )

    async def change_requested(
        self,
        team: Team,
        request: ChangeRequest,
        transaction: Transaction,
    ) -> asyncio.Task:
        """Tell every OWNER/ADMIN except the requester."""
        async def compose():
            requester = await self._user(request.requester_id)
            if requester is None:
                return []
            return [
                (reviewer, templates.change_request_created(reviewer, requester, team, request, transaction))
                for reviewer in await self._reviewers(team.id, exclude=request.requester_id)
            ]
        return self._schedule("change_requested", NotificationKind.CHANGE_REQUESTED, team.id, compose)

    async def change_resolved(self, team: Team, request: ChangeRequest) -> asyncio.Task:
        """Tell the requester how their request ended (confirmed, rejected or superseded)."""
        async def compose():
            requester = await self._user(request.requester_id)
            if requester is None:
                return []
            resolver = await self._user(request.resolved_by) if request.resolved_by else None
            return [(requester, templates.change_request_resolved(requester, resolver, team, request))]
        return self._schedule("change_resolved", NotificationKind.CHANGE_RESOLVED, team.id, compose)

    async def transaction_changed_by_other(
        self,
        team: Team,
        transaction: Transaction,
        actor_id: UUID,
        deleted: bool,
    ) -> Optional[asyncio.Task]:
        if transaction.created_by == actor_id:
            return None

        async def compose():
            creator = await self._user(transaction.created_by)
            actor = await self._user(actor_id)
            if creator is None or actor is None:
                return []
            return [(creator, templates.transaction_changed_by_other(creator, actor, team, transaction, deleted))]
        return self._schedule("transaction_changed", NotificationKind.TRANSACTION_CHANGED, team.id, compose)

    async def budget_alert(self, team: Team, spent: Decimal, usage_percent: Decimal) -> asyncio.Task:
        async def compose():
            return [
                (recipient, templates.budget_alert(recipient, team, spent, usage_percent))
                for recipient in await self._reviewers(team.id)
            ]
        return self._schedule("budget_alert", NotificationKind.BUDGET_ALERT, team.id, compose)

    async def password_reset(self, user: User, token: str, expires_at: datetime) -> asyncio.Task:
        """Email a reset link. Never copied to the inbox: the token is a credential."""
        async def compose():
            return [(None, templates.password_reset(user.public(), token, expires_at))]
        return self._schedule("password_reset", None, None, compose)
