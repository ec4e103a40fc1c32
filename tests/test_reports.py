"""
Tests for team reports.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from teamledger.errors import ForbiddenError
from teamledger.models import AuditEventType, Team, Transaction, TransactionType
from teamledger.reports import build_team_summary, total_expense


def entry(team: Team, amount: str, type: TransactionType, category: str, day: int = 1) -> Transaction:
    return Transaction(
        team_id=team.id,
        created_by=team.owner_id,
        amount=Decimal(amount),
        type=type,
        category_name=category,
        transaction_date=date(2024, 6, day),
    )


class TestBuildSummary:
    """Tests for the pure summary fold."""

    def test_empty_ledger(self):
        """No transactions means zeros everywhere, never a division error."""
        team = Team(name="Studio", owner_id=uuid4())

        summary = build_team_summary(team, [])

        assert summary.transaction_count == 0
        assert summary.balance == Decimal("0")
        assert summary.average_amount == Decimal("0")
        assert summary.budget_usage_percent == Decimal("0.00")
        assert summary.income_goal_progress_percent == Decimal("0.00")

    def test_totals_and_percentages(self):
        team = Team(
            name="Studio",
            owner_id=uuid4(),
            budget=Decimal("400.00"),
            income_goal=Decimal("3000.00"),
        )
        transactions = [
            entry(team, "1000.00", TransactionType.INCOME, "Salary"),
            entry(team, "100.00", TransactionType.EXPENSE, "Food"),
            entry(team, "50.00", TransactionType.EXPENSE, "Transport"),
        ]

        summary = build_team_summary(team, transactions)

        assert summary.total_income == Decimal("1000.00")
        assert summary.total_expense == Decimal("150.00")
        assert summary.balance == Decimal("850.00")
        assert summary.budget_remaining == Decimal("250.00")
        assert summary.budget_usage_percent == Decimal("37.50")
        assert summary.income_goal_progress_percent == Decimal("33.33")
        assert summary.average_amount == Decimal("383.33")

    def test_overspending_goes_negative(self):
        """Exceeding the budget shows as negative remaining and >100%."""
        team = Team(name="Studio", owner_id=uuid4(), budget=Decimal("100.00"))

        summary = build_team_summary(team, [entry(team, "150.00", TransactionType.EXPENSE, "Rent")])

        assert summary.budget_remaining == Decimal("-50.00")
        assert summary.budget_usage_percent == Decimal("150.00")

    def test_categories_ordered_by_volume(self):
        """Largest categories first; ties broken by name."""
        team = Team(name="Studio", owner_id=uuid4())
        transactions = [
            entry(team, "10.00", TransactionType.EXPENSE, "Food"),
            entry(team, "10.00", TransactionType.EXPENSE, "Bills"),
            entry(team, "30.00", TransactionType.EXPENSE, "Rent"),
            entry(team, "5.00", TransactionType.INCOME, "Food"),
        ]

        summary = build_team_summary(team, transactions)

        assert [c.category_name for c in summary.categories] == ["Rent", "Food", "Bills"]
        food = summary.categories[1]
        assert (food.income, food.expense, food.count) == (Decimal("5.00"), Decimal("10.00"), 2)

    def test_total_expense_ignores_income(self):
        team = Team(name="Studio", owner_id=uuid4())
        assert total_expense([
            entry(team, "10.00", TransactionType.EXPENSE, "Food"),
            entry(team, "99.00", TransactionType.INCOME, "Salary"),
        ]) == Decimal("10.00")


class TestReportService:
    """Tests for gated report access."""

    def test_member_needs_team_permission(self, app, run, users, team):
        """Members see reports only after a manager allows it."""
        with pytest.raises(ForbiddenError):
            run(app.reports.team_summary(users["member"].id, team.id))

        run(app.teams.set_report_permission(users["admin"].id, team.id, True))

        summary = run(app.reports.team_summary(users["member"].id, team.id))
        assert summary.team_id == team.id

    def test_reflects_ledger(self, app, run, users, team, make_transaction):
        make_transaction(users["member"], amount="200.00")
        make_transaction(users["owner"], amount="500.00", type=TransactionType.INCOME, category="Sales")

        summary = run(app.reports.team_summary(users["owner"].id, team.id))

        assert summary.total_expense == Decimal("200.00")
        assert summary.total_income == Decimal("500.00")
        assert summary.budget_usage_percent == Decimal("20.00")
        assert summary.currency == "USD"

    def test_date_range(self, app, run, users, team, make_transaction):
        """Transactions outside the range are left out."""
        make_transaction(users["owner"], amount="40.00")

        today = date.today()
        inside = run(app.reports.team_summary(users["owner"].id, team.id, date_from=today, date_to=today))
        before = run(app.reports.team_summary(
            users["owner"].id, team.id, date_to=date(2000, 1, 1),
        ))

        assert inside.transaction_count == 1
        assert before.transaction_count == 0

    def test_denial_is_audited(self, app, run, users, team, audit_storage):
        """A refused report leaves an ACCESS_DENIED event like any other refusal."""
        with pytest.raises(ForbiddenError):
            run(app.reports.team_summary(users["member"].id, team.id))

        event = audit_storage.events[-1]
        assert event.event_type == AuditEventType.ACCESS_DENIED
        assert event.actor_id == users["member"].id
        assert event.team_id == team.id
        assert event.details["capability"] == "view_report"
