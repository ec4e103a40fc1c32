"""
Tests for recording, listing and directly changing transactions.
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest

from teamledger.errors import ConflictError, ForbiddenError, NotFoundError, PayloadValidationError
from teamledger.models import (
    AuditEventType,
    TransactionDraft,
    TransactionType,
    TransactionUpdate,
)


class TestAddTransaction:
    """Tests for recording transactions."""

    def test_any_member_can_add(self, app, run, users, team, make_transaction):
        """Plain members record transactions directly."""
        txn = make_transaction(users["member"], amount="12.50")

        assert txn.created_by == users["member"].id
        assert txn.team_id == team.id
        assert txn.amount == Decimal("12.50")

    def test_category_is_canonicalised(self, app, run, users, make_transaction):
        """Category lookup ignores case; the team's spelling and icon are stored."""
        txn = make_transaction(users["member"], category="food")

        assert txn.category_name == "Food"
        assert txn.category_icon == "🍽️"

    def test_unknown_category_rejected(self, app, run, storage, users, team):
        """Transactions must use one of the team's categories."""
        with pytest.raises(PayloadValidationError) as exc_info:
            run(app.transactions.add_transaction(users["member"].id, TransactionDraft(
                team_id=team.id,
                amount=Decimal("5.00"),
                type=TransactionType.EXPENSE,
                category_name="Yachts",
            )))

        assert exc_info.value.issues[0].field == "category_name"
        assert run(storage.count_transactions(team.id)) == 0

    @pytest.mark.parametrize("amount", ["0", "-3.00", "1.999", "1000000000.01"])
    def test_bad_amounts_rejected(self, app, run, users, team, amount):
        """Amounts are positive, two decimal places, below the maximum."""
        with pytest.raises(PayloadValidationError):
            run(app.transactions.add_transaction(users["member"].id, TransactionDraft(
                team_id=team.id,
                amount=Decimal(amount),
                type=TransactionType.INCOME,
                category_name="Salary",
            )))

    def test_far_future_date_is_only_a_warning(self, app, run, users, team):
        """A date well in the future is accepted."""
        when = date.today() + timedelta(days=60)

        txn = run(app.transactions.add_transaction(users["member"].id, TransactionDraft(
            team_id=team.id,
            amount=Decimal("5.00"),
            type=TransactionType.EXPENSE,
            category_name="Rent",
            transaction_date=when,
        )))
        assert txn.transaction_date == when

    def test_outsider_cannot_add(self, app, run, users, team):
        """Non-members get NotFound."""
        with pytest.raises(NotFoundError):
            run(app.transactions.add_transaction(users["outsider"].id, TransactionDraft(
                team_id=team.id,
                amount=Decimal("5.00"),
                type=TransactionType.EXPENSE,
                category_name="Food",
            )))

    def test_addition_is_audited(self, users, make_transaction, audit_storage):
        """Each transaction leaves an audit record."""
        txn = make_transaction(users["member"])

        event = audit_storage.events[-1]
        assert event.event_type == AuditEventType.TRANSACTION_ADDED
        assert event.entity_id == txn.id


class TestBudgetAlert:
    """Budget alerts fire once, when spending crosses the threshold."""

    def test_alert_when_threshold_crossed(self, users, make_transaction, mailer):
        """Crossing 90% of the budget emails the owner and admins."""
        make_transaction(users["member"], amount="800.00")
        assert mailer.sent == []

        make_transaction(users["member"], amount="150.00")

        alerts = [e for e in mailer.sent if e.subject == 'Budget alert for "Studio"']
        assert sorted(e.to for e in alerts) == sorted([users["owner"].email, users["admin"].email])

    def test_no_repeat_alert_above_threshold(self, users, make_transaction, mailer):
        """Spending that is already over the threshold doesn't alert again."""
        make_transaction(users["member"], amount="950.00")
        mailer.sent.clear()

        make_transaction(users["member"], amount="10.00")

        assert mailer.sent == []

    def test_income_never_alerts(self, users, make_transaction, mailer):
        """Only expenses count towards the budget."""
        make_transaction(
            users["member"],
            amount="5000.00",
            type=TransactionType.INCOME,
            category="Salary",
        )

        assert mailer.sent == []


class TestListTransactions:
    """Tests for paginated listing."""

    def test_pages_are_newest_first_and_disjoint(self, app, run, users, team, make_transaction):
        """Pages walk the whole ledger once, newest first."""
        created = [make_transaction(users["member"], amount=f"{i}.00") for i in range(1, 6)]

        pages = [
            run(app.transactions.list_transactions(users["owner"].id, team.id, page=p, limit=2))
            for p in (1, 2, 3)
        ]

        seen = [t.id for page in pages for t in page.items]
        expected = [t.id for t in sorted(created, key=lambda t: (t.created_at, t.id), reverse=True)]
        assert seen == expected
        assert [len(page.items) for page in pages] == [2, 2, 1]

    def test_pagination_metadata(self, app, run, users, team, make_transaction):
        """total_items and total_pages describe the whole ledger."""
        for _ in range(3):
            make_transaction(users["member"])

        page = run(app.transactions.list_transactions(users["member"].id, team.id, page=1, limit=2))

        assert page.pagination.page == 1
        assert page.pagination.limit == 2
        assert page.pagination.total_items == 3
        assert page.pagination.total_pages == 2

    def test_page_past_the_end_is_empty(self, app, run, users, team, make_transaction):
        """Asking beyond the last page returns no items."""
        make_transaction(users["member"])

        page = run(app.transactions.list_transactions(users["member"].id, team.id, page=5, limit=2))
        assert page.items == []

    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 101)])
    def test_bad_paging_rejected(self, app, run, users, team, page, limit):
        """page >= 1 and 1 <= limit <= 100."""
        with pytest.raises(PayloadValidationError):
            run(app.transactions.list_transactions(users["member"].id, team.id, page=page, limit=limit))

    def test_outsider_cannot_list(self, app, run, users, team):
        """Non-members get NotFound."""
        with pytest.raises(NotFoundError):
            run(app.transactions.list_transactions(users["outsider"].id, team.id))


class TestDirectChanges:
    """Creator and owner change transactions directly; nobody else does."""

    def test_creator_edits_own_transaction(self, app, run, users, make_transaction):
        """The creator edits without asking anyone."""
        txn = make_transaction(users["member"])

        updated = run(app.transactions.edit_transaction(
            users["member"].id, txn.id, TransactionUpdate(amount=Decimal("30.00")),
        ))

        assert updated.amount == Decimal("30.00")
        assert updated.description == txn.description
        assert updated.updated_at >= txn.updated_at

    def test_category_change_updates_icon(self, app, run, users, make_transaction):
        """Switching category picks up the new category's icon."""
        txn = make_transaction(users["member"])

        updated = run(app.transactions.edit_transaction(
            users["member"].id, txn.id, TransactionUpdate(category_name="transport"),
        ))

        assert updated.category_name == "Transport"
        assert updated.category_icon == "🚗"

    def test_admin_cannot_edit_others_transaction(self, app, run, users, make_transaction):
        """Admins must go through a change request."""
        txn = make_transaction(users["owner"])

        with pytest.raises(ForbiddenError):
            run(app.transactions.edit_transaction(
                users["admin"].id, txn.id, TransactionUpdate(amount=Decimal("1.00")),
            ))

    def test_member_cannot_delete_others_transaction(self, app, run, users, make_transaction):
        """Members can't delete what they didn't record."""
        txn = make_transaction(users["admin"])

        with pytest.raises(ForbiddenError):
            run(app.transactions.delete_transaction(users["member"].id, txn.id))

    def test_empty_edit_rejected(self, app, run, users, make_transaction):
        """An edit must change something."""
        txn = make_transaction(users["member"])

        with pytest.raises(PayloadValidationError):
            run(app.transactions.edit_transaction(users["member"].id, txn.id, TransactionUpdate()))

    def test_owner_deletes_and_creator_is_told(self, app, run, users, make_transaction, mailer):
        """The creator hears when someone else deletes their transaction."""
        txn = make_transaction(users["member"])

        run(app.transactions.delete_transaction(users["owner"].id, txn.id))

        with pytest.raises(NotFoundError):
            run(app.transactions.get_transaction(users["member"].id, txn.id))
        assert [e.subject for e in mailer.to(users["member"].email)] == [
            'Your transaction in "Studio" was deleted',
        ]

    def test_creator_edit_sends_nothing(self, app, run, users, make_transaction, mailer):
        """Changing your own transaction notifies nobody."""
        txn = make_transaction(users["member"])

        run(app.transactions.edit_transaction(
            users["member"].id, txn.id, TransactionUpdate(description="Snacks"),
        ))

        assert mailer.sent == []

    def test_delete_missing_not_found(self, app, run, users, make_transaction):
        """Deleting twice: the second call is NotFound."""
        txn = make_transaction(users["member"])
        run(app.transactions.delete_transaction(users["member"].id, txn.id))

        with pytest.raises(NotFoundError):
            run(app.transactions.delete_transaction(users["member"].id, txn.id))

    def test_edit_can_clear_description(self, app, run, users, make_transaction):
        """An explicit None empties an optional field; unset fields stay."""
        txn = make_transaction(users["member"], description="Team lunch")

        updated = run(app.transactions.edit_transaction(
            users["member"].id, txn.id, TransactionUpdate(description=None),
        ))

        assert updated.description is None
        assert updated.amount == txn.amount
        assert run(app.transactions.get_transaction(users["member"].id, txn.id)).description is None

    def test_edit_cannot_clear_required_field(self, app, run, users, make_transaction):
        txn = make_transaction(users["member"])

        with pytest.raises(PayloadValidationError) as exc_info:
            run(app.transactions.edit_transaction(
                users["member"].id, txn.id, TransactionUpdate(amount=None),
            ))
        assert exc_info.value.issues[0].field == "amount"

    def test_concurrent_deletes_conflict(self, app, run, users, make_transaction):
        """Two deletes racing: one succeeds, the other finds it gone mid-flight."""
        txn = make_transaction(users["member"])

        async def race():
            return await asyncio.gather(
                app.transactions.delete_transaction(users["owner"].id, txn.id),
                app.transactions.delete_transaction(users["member"].id, txn.id),
                return_exceptions=True,
            )

        results = run(race())

        assert sum(r is None for r in results) == 1
        assert sum(isinstance(r, ConflictError) for r in results) == 1

    def test_edit_racing_delete_conflicts(self, app, run, users, make_transaction):
        """An edit that loses to a delete is a conflict, not a missing record."""
        txn = make_transaction(users["member"])

        async def race():
            return await asyncio.gather(
                app.transactions.edit_transaction(
                    users["member"].id, txn.id, TransactionUpdate(amount=Decimal("30.00")),
                ),
                app.transactions.delete_transaction(users["owner"].id, txn.id),
                return_exceptions=True,
            )

        edited, deleted = run(race())

        assert isinstance(edited, ConflictError)
        assert deleted is None
        with pytest.raises(NotFoundError):
            run(app.transactions.get_transaction(users["owner"].id, txn.id))
