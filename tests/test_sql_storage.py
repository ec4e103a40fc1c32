"""
Tests for the SQLAlchemy ledger store, against in-memory SQLite.

The flows are exercised end to end on this backend too, so both stores
honour the same contract.
"""

import asyncio
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import delete, event
from sqlalchemy.dialects import postgresql

from teamledger.errors import ConflictError
from teamledger.flows import SUPERSEDED_BY_DELETE, SUPERSEDED_BY_REMOVAL
from teamledger.models import (
    ChangeRequest,
    ChangeRequestKind,
    ChangeRequestStatus,
    Invitation,
    InvitationStatus,
    Membership,
    NotificationKind,
    PasswordReset,
    RegistrationRequest,
    Role,
    TeamCreate,
    TransactionDraft,
    TransactionType,
    TransactionUpdate,
    User,
)
from teamledger.orchestrator import build_components
from teamledger.services.storage import (
    DuplicateError,
    MissingRecordError,
    SqlLedgerStorage,
    StaleStateError,
    StorageError,
    create_ledger_engine,
)
from teamledger.services.storage.sql import TransactionRow


@pytest.fixture
def engine():
    return create_ledger_engine("sqlite://")


@pytest.fixture
def sql_storage(engine):
    storage = SqlLedgerStorage(engine)
    storage.create_schema()
    return storage


@pytest.fixture
def sql_app(sql_storage, mailer, audit_storage):
    return build_components(sql_storage, email_service=mailer, audit_storage=audit_storage)


def seed_ledger(sql_app, run) -> dict:
    """Owner, member, a team and one owner-recorded transaction."""
    def register(name):
        return run(sql_app.accounts.register(RegistrationRequest(
            email=f"{name}@example.com",
            password="correct-horse",
            first_name=name.title(),
            last_name="Tester",
        )))

    owner = register("owner")
    member = register("member")
    team = run(sql_app.teams.create_team(owner.id, TeamCreate(name="Studio", budget=Decimal("500.00"))))
    invitation = run(sql_app.teams.invite_member(owner.id, team.id, member.email))
    run(sql_app.teams.respond_to_invitation(member.id, invitation.token, accept=True))
    txn = run(sql_app.transactions.add_transaction(owner.id, TransactionDraft(
        team_id=team.id,
        amount=Decimal("25.00"),
        type=TransactionType.EXPENSE,
        category_name="Food",
        description="Team lunch",
    )))
    return {"owner": owner, "member": member, "team": team, "txn": txn}


@pytest.fixture
def ledger(sql_app, run):
    return seed_ledger(sql_app, run)


def pending_delete(ledger) -> ChangeRequest:
    return ChangeRequest(
        team_id=ledger["team"].id,
        transaction_id=ledger["txn"].id,
        requester_id=ledger["member"].id,
        kind=ChangeRequestKind.DELETE,
    )


class TestSchema:
    """Round trips through the tables."""

    def test_team_round_trip(self, run, sql_storage, ledger):
        """Money, categories and flags survive storage."""
        team = run(sql_storage.get_team(ledger["team"].id))

        assert team.budget == Decimal("500.00")
        assert team.currency == "USD"
        assert team.find_category("food").icon == "🍽️"
        assert team.allow_member_view_report is False

    def test_single_membership_on_create(self, run, sql_storage, sql_app, ledger):
        """Creating a team writes exactly one OWNER membership."""
        team = run(sql_app.teams.create_team(ledger["member"].id, TeamCreate(name="Side project")))

        memberships = run(sql_storage.list_memberships(team.id))
        assert [(m.user_id, m.role) for m in memberships] == [(ledger["member"].id, Role.OWNER)]

    def test_duplicate_email(self, run, sql_storage, ledger):
        """The users.email unique constraint maps to DuplicateError."""
        with pytest.raises(DuplicateError):
            run(sql_storage.create_user(User(
                email="OWNER@example.com",
                password_hash="x",
                first_name="Copy",
                last_name="Cat",
            )))

    def test_second_owner_refused(self, run, sql_storage, ledger):
        """The partial unique index allows one owner per team."""
        with pytest.raises(DuplicateError):
            run(sql_storage.add_membership(Membership(
                team_id=ledger["team"].id,
                user_id=uuid4(),
                role=Role.OWNER,
            )))

    def test_membership_needs_team(self, run, sql_storage, ledger):
        """Memberships of unknown teams are refused."""
        with pytest.raises(MissingRecordError):
            run(sql_storage.add_membership(Membership(
                team_id=uuid4(),
                user_id=ledger["member"].id,
                role=Role.MEMBER,
            )))

    def test_search_by_name(self, run, sql_storage, ledger):
        """Name search is a case-insensitive substring match."""
        found = run(sql_storage.list_teams_for_user(ledger["owner"].id, name_contains="STU"))
        missing = run(sql_storage.list_teams_for_user(ledger["owner"].id, name_contains="zzz"))

        assert [t.id for t in found] == [ledger["team"].id]
        assert missing == []


class TestChangeRequestStore:
    """The invariants the database enforces."""

    def test_one_pending_per_transaction(self, run, sql_storage, ledger):
        """A second PENDING insert violates the partial unique index."""
        run(sql_storage.insert_change_request(pending_delete(ledger)))

        with pytest.raises(DuplicateError):
            run(sql_storage.insert_change_request(pending_delete(ledger)))

    def test_resolved_request_frees_the_slot(self, run, sql_storage, ledger):
        """Only PENDING rows count towards the unique index."""
        first = run(sql_storage.insert_change_request(pending_delete(ledger)))
        run(sql_storage.resolve_change_request(
            first.id, ChangeRequestStatus.REJECTED, resolved_by=ledger["owner"].id,
        ))

        second = run(sql_storage.insert_change_request(pending_delete(ledger)))
        assert run(sql_storage.find_pending_by_transaction(ledger["txn"].id)).id == second.id

    def test_compare_and_swap(self, run, sql_storage, ledger):
        """The second resolution finds the request no longer PENDING."""
        request = run(sql_storage.insert_change_request(pending_delete(ledger)))
        run(sql_storage.resolve_change_request(
            request.id, ChangeRequestStatus.REJECTED, resolved_by=ledger["owner"].id, note="No",
        ))

        with pytest.raises(StaleStateError):
            run(sql_storage.resolve_change_request(
                request.id, ChangeRequestStatus.CONFIRMED, resolved_by=ledger["owner"].id,
            ))

        stored = run(sql_storage.get_change_request(request.id))
        assert stored.status == ChangeRequestStatus.REJECTED
        assert stored.resolution_note == "No"
        assert run(sql_storage.get_transaction(ledger["txn"].id)) is not None

    def test_missing_transaction_rolls_back(self, run, engine, sql_storage, ledger):
        """Confirming against a vanished transaction leaves the request PENDING."""
        request = run(sql_storage.insert_change_request(pending_delete(ledger)))
        with engine.begin() as connection:
            connection.execute(delete(TransactionRow).where(TransactionRow.id == ledger["txn"].id))

        with pytest.raises(StaleStateError):
            run(sql_storage.resolve_change_request(
                request.id, ChangeRequestStatus.CONFIRMED, resolved_by=ledger["owner"].id,
            ))

        assert run(sql_storage.get_change_request(request.id)).is_pending

    def test_unknown_request(self, run, sql_storage, ledger):
        """Resolving a request that never existed is MissingRecordError."""
        with pytest.raises(MissingRecordError):
            run(sql_storage.resolve_change_request(
                uuid4(), ChangeRequestStatus.CONFIRMED, resolved_by=ledger["owner"].id,
            ))

    def test_direct_delete_supersedes(self, run, sql_storage, ledger):
        """The pending request is rejected in the same unit of work, and kept."""
        request = run(sql_storage.insert_change_request(pending_delete(ledger)))

        superseded = run(sql_storage.delete_transaction(
            ledger["txn"].id, ledger["owner"].id, SUPERSEDED_BY_DELETE,
        ))

        assert superseded.id == request.id
        assert superseded.status == ChangeRequestStatus.REJECTED
        stored = run(sql_storage.get_change_request(request.id))
        assert stored.resolution_note == SUPERSEDED_BY_DELETE
        assert run(sql_storage.get_transaction(ledger["txn"].id)) is None

    def test_delete_team_cascades(self, run, sql_storage, ledger):
        """Team deletion removes everything the team owns."""
        request = run(sql_storage.insert_change_request(pending_delete(ledger)))

        assert run(sql_storage.delete_team(ledger["team"].id)) is True

        assert run(sql_storage.get_change_request(request.id)) is None
        assert run(sql_storage.get_transaction(ledger["txn"].id)) is None
        assert run(sql_storage.list_memberships(ledger["team"].id)) == []
        assert run(sql_storage.delete_team(ledger["team"].id)) is False


class TestFlowsOnSql:
    """The workflow against the SQL backend."""

    def test_edit_request_round_trip(self, run, sql_app, ledger):
        """Confirmed edits overwrite the proposed field and keep the rest."""
        request = run(sql_app.change_requests.request_edit(
            ledger["member"].id,
            ledger["txn"].id,
            TransactionUpdate(amount=Decimal("40.00")),
        ))

        resolved = run(sql_app.change_requests.resolve(
            ledger["owner"].id, request.id, ChangeRequestStatus.CONFIRMED,
        ))

        assert resolved.status == ChangeRequestStatus.CONFIRMED
        txn = run(sql_app.transactions.get_transaction(ledger["member"].id, ledger["txn"].id))
        assert txn.amount == Decimal("40.00")
        assert txn.description == "Team lunch"
        assert txn.category_name == "Food"

    def test_second_request_conflicts(self, run, sql_app, ledger):
        """The unique index surfaces as ConflictError through the flow."""
        run(sql_app.change_requests.request_delete(ledger["member"].id, ledger["txn"].id))

        with pytest.raises(ConflictError):
            run(sql_app.change_requests.request_edit(
                ledger["member"].id,
                ledger["txn"].id,
                TransactionUpdate(amount=Decimal("40.00")),
            ))

    def test_pagination(self, run, sql_app, ledger):
        """Pages come back newest first with correct totals."""
        for amount in ("1.00", "2.00", "3.00"):
            run(sql_app.transactions.add_transaction(ledger["member"].id, TransactionDraft(
                team_id=ledger["team"].id,
                amount=Decimal(amount),
                type=TransactionType.INCOME,
                category_name="Sales",
            )))

        page = run(sql_app.transactions.list_transactions(
            ledger["member"].id, ledger["team"].id, page=1, limit=3,
        ))

        assert page.pagination.total_items == 4
        assert page.pagination.total_pages == 2
        assert [t.amount for t in page.items] == [Decimal("3.00"), Decimal("2.00"), Decimal("1.00")]


@pytest.fixture
def statements(engine, ledger):
    """Statements sent to the database after the ledger is seeded."""
    seen = []

    def record(conn, cursor, statement, parameters, context, executemany):
        seen.append((statement, getattr(context, "compiled", None)))

    event.listen(engine, "before_cursor_execute", record)
    yield seen
    event.remove(engine, "before_cursor_execute", record)


def as_postgres(compiled) -> str:
    return str(compiled.statement.compile(dialect=postgresql.dialect()))


def first_index(statements, prefix: str, table: str) -> int:
    return next(
        i for i, (sql, _) in enumerate(statements)
        if sql.lstrip().startswith(prefix) and table in sql
    )


class TestLocking:
    """Row locks, and the order they are taken in."""

    def test_confirm_locks_transaction_before_request(self, run, sql_storage, ledger, statements):
        """Confirmation takes rows in the same order as a direct delete, so the two can't deadlock."""
        request = run(sql_storage.insert_change_request(pending_delete(ledger)))
        statements.clear()

        run(sql_storage.resolve_change_request(
            request.id, ChangeRequestStatus.CONFIRMED, resolved_by=ledger["owner"].id,
        ))

        txn_lock = first_index(statements, "SELECT", "FROM transactions")
        request_swap = first_index(statements, "UPDATE", "change_requests")
        assert txn_lock < request_swap
        assert "FOR UPDATE" in as_postgres(statements[txn_lock][1])

    def test_direct_delete_uses_the_same_order(self, run, sql_storage, ledger, statements):
        run(sql_storage.insert_change_request(pending_delete(ledger)))
        statements.clear()

        run(sql_storage.delete_transaction(ledger["txn"].id, ledger["owner"].id, SUPERSEDED_BY_DELETE))

        assert first_index(statements, "DELETE", "FROM transactions") < first_index(
            statements, "UPDATE", "change_requests",
        )

    def test_request_insert_locks_transaction(self, run, sql_storage, ledger, statements):
        """The transaction row stays locked until the request is committed."""
        run(sql_storage.insert_change_request(pending_delete(ledger)))

        txn_read = first_index(statements, "SELECT", "FROM transactions")
        assert "FOR UPDATE" in as_postgres(statements[txn_read][1])
        assert txn_read < first_index(statements, "INSERT", "change_requests")

    def test_request_on_deleted_transaction(self, run, sql_storage, ledger):
        run(sql_storage.delete_transaction(ledger["txn"].id, ledger["owner"].id, SUPERSEDED_BY_DELETE))

        with pytest.raises(MissingRecordError):
            run(sql_storage.insert_change_request(pending_delete(ledger)))
        assert run(sql_storage.find_pending_by_transaction(ledger["txn"].id)) is None


class TestConcurrentWriters:
    """Two threads with their own connections on one SQLite file."""

    @pytest.fixture
    def file_app(self, tmp_path, mailer, audit_storage):
        storage = SqlLedgerStorage(create_ledger_engine(f"sqlite:///{tmp_path / 'ledger.db'}"))
        storage.create_schema()
        return build_components(storage, email_service=mailer, audit_storage=audit_storage)

    @staticmethod
    def race(*actions):
        """Start every action at once on its own thread; collect outcomes."""
        barrier = threading.Barrier(len(actions))
        outcomes = []

        def runner(action):
            barrier.wait()
            try:
                outcomes.append(asyncio.run(action()))
            except StorageError as e:
                outcomes.append(e)

        threads = [threading.Thread(target=runner, args=(action,)) for action in actions]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return outcomes

    def test_racing_requests_insert_once(self, run, file_app):
        """The partial unique index lets exactly one PENDING request in."""
        data = seed_ledger(file_app, run)
        storage = file_app.storage

        outcomes = self.race(
            lambda: storage.insert_change_request(pending_delete(data)),
            lambda: storage.insert_change_request(pending_delete(data)),
        )

        assert len(outcomes) == 2
        assert sum(isinstance(o, DuplicateError) for o in outcomes) == 1
        assert sum(isinstance(o, ChangeRequest) for o in outcomes) == 1

    def test_confirm_racing_direct_delete(self, run, file_app):
        """Whichever commits first, the other sees it; the request never stays PENDING."""
        data = seed_ledger(file_app, run)
        storage = file_app.storage
        request = run(storage.insert_change_request(pending_delete(data)))

        outcomes = self.race(
            lambda: storage.resolve_change_request(
                request.id, ChangeRequestStatus.CONFIRMED, resolved_by=data["owner"].id,
            ),
            lambda: storage.delete_transaction(data["txn"].id, data["owner"].id, SUPERSEDED_BY_DELETE),
        )

        assert len(outcomes) == 2
        assert sum(isinstance(o, (StaleStateError, MissingRecordError)) for o in outcomes) == 1
        assert run(storage.get_transaction(data["txn"].id)) is None
        assert not run(storage.get_change_request(request.id)).is_pending


class TestMembershipStore:
    """Membership removal against the database."""

    def test_removal_supersedes_pending_requests(self, run, sql_storage, ledger):
        request = run(sql_storage.insert_change_request(pending_delete(ledger)))

        superseded = run(sql_storage.remove_membership(
            ledger["team"].id, ledger["member"].id, ledger["owner"].id, SUPERSEDED_BY_REMOVAL,
        ))

        assert [r.id for r in superseded] == [request.id]
        stored = run(sql_storage.get_change_request(request.id))
        assert stored.status == ChangeRequestStatus.REJECTED
        assert stored.resolution_note == SUPERSEDED_BY_REMOVAL
        assert run(sql_storage.get_membership(ledger["team"].id, ledger["member"].id)) is None

    def test_removing_a_stranger(self, run, sql_storage, ledger):
        with pytest.raises(MissingRecordError):
            run(sql_storage.remove_membership(
                ledger["team"].id, uuid4(), ledger["owner"].id, SUPERSEDED_BY_REMOVAL,
            ))


def invitation_for(ledger, email="guest@example.com", created=None, **overrides) -> Invitation:
    created = created or datetime.utcnow()
    fields = dict(
        token=f"invite-{uuid4().hex}",
        team_id=ledger["team"].id,
        email=email,
        role=Role.MEMBER,
        invited_by=ledger["owner"].id,
        created_at=created,
        expires_at=created + timedelta(days=7),
    )
    fields.update(overrides)
    return Invitation(**fields)


class TestInvitationStore:
    """Invitations in the database."""

    def test_one_live_invitation_per_email(self, run, sql_storage, ledger):
        """The partial unique index refuses a second PENDING invitation."""
        run(sql_storage.insert_invitation(invitation_for(ledger)))

        with pytest.raises(DuplicateError):
            run(sql_storage.insert_invitation(invitation_for(ledger, email="GUEST@example.com")))

    def test_stale_invitation_gives_way(self, run, sql_storage, ledger):
        """An expired PENDING invitation is closed when a new one is sent."""
        stale = run(sql_storage.insert_invitation(
            invitation_for(ledger, created=datetime.utcnow() - timedelta(days=30)),
        ))

        run(sql_storage.insert_invitation(invitation_for(ledger)))

        assert run(sql_storage.get_invitation_by_token(stale.token)).status == InvitationStatus.EXPIRED

    def test_accept_creates_membership(self, run, sql_storage, ledger):
        guest = run(sql_storage.create_user(User(
            email="guest@example.com", password_hash="x", first_name="Gus", last_name="Guest",
        )))
        invitation = run(sql_storage.insert_invitation(invitation_for(ledger, role=Role.ADMIN)))

        answered, membership = run(sql_storage.respond_to_invitation(
            invitation.token, guest.id, True, datetime.utcnow(),
        ))

        assert answered.status == InvitationStatus.ACCEPTED
        assert membership.role == Role.ADMIN
        assert run(sql_storage.get_membership(ledger["team"].id, guest.id)).role == Role.ADMIN

    def test_answer_is_compare_and_swap(self, run, sql_storage, ledger):
        """A second answer finds the invitation closed and changes nothing."""
        invitation = run(sql_storage.insert_invitation(invitation_for(ledger)))
        run(sql_storage.respond_to_invitation(invitation.token, uuid4(), False, datetime.utcnow()))

        with pytest.raises(StaleStateError):
            run(sql_storage.respond_to_invitation(invitation.token, uuid4(), True, datetime.utcnow()))

        assert run(sql_storage.get_invitation_by_token(invitation.token)).status == InvitationStatus.DECLINED

    def test_existing_member_cannot_accept(self, run, sql_storage, ledger):
        """A duplicate membership rolls the whole answer back."""
        invitation = run(sql_storage.insert_invitation(invitation_for(ledger, email=ledger["member"].email)))

        with pytest.raises(DuplicateError):
            run(sql_storage.respond_to_invitation(
                invitation.token, ledger["member"].id, True, datetime.utcnow(),
            ))

        assert run(sql_storage.get_invitation_by_token(invitation.token)).is_pending

    def test_expired_invitation(self, run, sql_storage, ledger):
        invitation = run(sql_storage.insert_invitation(invitation_for(ledger)))

        with pytest.raises(StaleStateError):
            run(sql_storage.respond_to_invitation(
                invitation.token, uuid4(), True, datetime.utcnow() + timedelta(days=8),
            ))

    def test_delete_team_removes_invitations(self, run, sql_storage, ledger):
        invitation = run(sql_storage.insert_invitation(invitation_for(ledger)))

        run(sql_storage.delete_team(ledger["team"].id))

        assert run(sql_storage.get_invitation_by_token(invitation.token)) is None


class TestAccountStore:
    """Password resets and the inbox in the database."""

    def test_reset_is_single_use(self, run, sql_storage, ledger):
        """Completing one grant closes every open grant of the user."""
        now = datetime.utcnow()
        for digest in ("a" * 64, "b" * 64):
            run(sql_storage.insert_password_reset(PasswordReset(
                user_id=ledger["member"].id,
                token_hash=digest,
                created_at=now,
                expires_at=now + timedelta(hours=1),
            )))

        user = run(sql_storage.complete_password_reset("a" * 64, "new-hash", now))

        assert user.password_hash == "new-hash"
        with pytest.raises(StaleStateError):
            run(sql_storage.complete_password_reset("a" * 64, "other-hash", now))
        with pytest.raises(StaleStateError):
            run(sql_storage.complete_password_reset("b" * 64, "other-hash", now))
        with pytest.raises(MissingRecordError):
            run(sql_storage.complete_password_reset("c" * 64, "other-hash", now))

    def test_reset_needs_user(self, run, sql_storage, ledger):
        with pytest.raises(MissingRecordError):
            run(sql_storage.insert_password_reset(PasswordReset(
                user_id=uuid4(),
                token_hash="d" * 64,
                expires_at=datetime.utcnow() + timedelta(hours=1),
            )))

    def test_inbox_round_trip(self, run, sql_storage, ledger):
        """Registration filled the inbox; reading and counting work per user."""
        member = ledger["member"].id

        inbox = run(sql_storage.list_notifications(member))
        kinds = {n.kind for n in inbox}
        assert NotificationKind.WELCOME in kinds
        unread = run(sql_storage.count_notifications(member, unread_only=True))
        assert unread == len(inbox)

        assert run(sql_storage.mark_notifications_read(member, [inbox[0].id])) == 1
        assert run(sql_storage.count_notifications(member, unread_only=True)) == unread - 1
        assert run(sql_storage.mark_notifications_read(ledger["owner"].id, [inbox[1].id])) == 0
        assert run(sql_storage.mark_notifications_read(member)) == unread - 1
