"""
Shared fixtures.

Flows run against the in-memory store with a recording email sender, so
no test touches a database server, SMTP relay or Google Sheets.
"""

import asyncio
from decimal import Decimal

import pytest

from teamledger.models import (
    RegistrationRequest,
    Role,
    TeamCreate,
    TransactionDraft,
    TransactionType,
)
from teamledger.orchestrator import build_components
from teamledger.services.email import EmailDeliveryError
from teamledger.services.storage import InMemoryAuditStorage, InMemoryLedgerStorage


def run_async(coro):
    """
    Drive a flow coroutine to completion.

    Notifications the flow scheduled are allowed to finish before the
    loop closes, so tests can assert on sent mail and inbox entries.
    """
    async def settle():
        try:
            return await coro
        finally:
            current = asyncio.current_task()
            while True:
                pending = asyncio.all_tasks() - {current}
                if not pending:
                    break
                await asyncio.gather(*pending, return_exceptions=True)

    return asyncio.run(settle())


class RecordingEmailService:
    """Stands in for EmailService; keeps every message instead of sending it."""

    def __init__(self):
        self.sent = []
        self.fail = False
        self.hold = None

    async def send(self, email):
        if self.hold is not None:
            await self.hold.wait()
        if self.fail:
            raise EmailDeliveryError(f"relay unavailable for {email.to}")
        self.sent.append(email)
        return f"<{len(self.sent)}@teamledger.test>"

    def to(self, address: str) -> list:
        return [e for e in self.sent if e.to == address]

    def subjects(self) -> list[str]:
        return [e.subject for e in self.sent]


class YieldingLedgerStorage(InMemoryLedgerStorage):
    """
    In-memory store that gives up the event loop before every read.

    A networked store suspends the caller on each query; this lets
    concurrent flows interleave between their checks and their writes
    the same way.
    """

    async def get_user(self, user_id):
        await asyncio.sleep(0)
        return await super().get_user(user_id)

    async def get_team(self, team_id):
        await asyncio.sleep(0)
        return await super().get_team(team_id)

    async def get_membership(self, team_id, user_id):
        await asyncio.sleep(0)
        return await super().get_membership(team_id, user_id)

    async def get_transaction(self, transaction_id):
        await asyncio.sleep(0)
        return await super().get_transaction(transaction_id)

    async def get_change_request(self, request_id):
        await asyncio.sleep(0)
        return await super().get_change_request(request_id)

    async def find_pending_by_transaction(self, transaction_id):
        await asyncio.sleep(0)
        return await super().find_pending_by_transaction(transaction_id)

    async def get_invitation_by_token(self, token):
        await asyncio.sleep(0)
        return await super().get_invitation_by_token(token)


@pytest.fixture
def run():
    return run_async


@pytest.fixture
def mailer():
    return RecordingEmailService()


@pytest.fixture
def storage():
    return YieldingLedgerStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def app(storage, mailer, audit_storage):
    return build_components(storage, email_service=mailer, audit_storage=audit_storage)


@pytest.fixture
def users(app):
    """Four registered users: owner, admin, member and an outsider."""
    people = {
        "owner": ("Olivia", "Owner"),
        "admin": ("Adam", "Admin"),
        "member": ("Mia", "Member"),
        "outsider": ("Oscar", "Outsider"),
    }
    return {
        key: run_async(app.accounts.register(RegistrationRequest(
            email=f"{key}@example.com",
            password="correct-horse",
            first_name=first,
            last_name=last,
        )))
        for key, (first, last) in people.items()
    }


@pytest.fixture
def join(app):
    """Invite a user into a team and have them accept."""
    def join_team(inviter, team, user, role: Role = Role.MEMBER):
        invitation = run_async(app.teams.invite_member(inviter.id, team.id, user.email, role))
        return run_async(app.teams.respond_to_invitation(user.id, invitation.token, accept=True))
    return join_team


@pytest.fixture
def team(app, users, mailer, join):
    """A team owned by `owner`, with `admin` as ADMIN and `member` as MEMBER."""
    team = run_async(app.teams.create_team(
        users["owner"].id,
        TeamCreate(name="Studio", currency="USD", budget=Decimal("1000.00")),
    ))
    join(users["owner"], team, users["admin"], Role.ADMIN)
    join(users["owner"], team, users["member"])
    mailer.sent.clear()
    return team


@pytest.fixture
def make_transaction(app, team):
    """Record a transaction in `team` as the given user."""
    def make(
        actor,
        amount: str = "25.00",
        type: TransactionType = TransactionType.EXPENSE,
        category: str = "Food",
        description: str = "Team lunch",
    ):
        return run_async(app.transactions.add_transaction(actor.id, TransactionDraft(
            team_id=team.id,
            amount=Decimal(amount),
            type=type,
            category_name=category,
            description=description,
        )))
    return make
