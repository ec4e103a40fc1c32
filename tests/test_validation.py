"""
Tests for LedgerValidator.
"""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from teamledger.errors import PayloadValidationError
from teamledger.models import (
    Category,
    RegistrationRequest,
    Team,
    TeamCreate,
    TransactionType,
    ValidationIssue,
)
from teamledger.validation import LedgerValidator


@pytest.fixture
def validator():
    return LedgerValidator()


@pytest.fixture
def team():
    return Team(
        name="Studio",
        owner_id=uuid4(),
        categories=[Category(name="Food", icon="🍽️"), Category(name="Salary", icon="💰")],
    )


def fields(**overrides):
    values = {
        "amount": Decimal("12.50"),
        "type": TransactionType.EXPENSE,
        "category_name": "Food",
        "category_icon": None,
        "description": "Lunch",
        "transaction_date": date.today(),
    }
    values.update(overrides)
    return values


class TestMoney:
    """Tests for amount, budget and goal checks."""

    @pytest.mark.parametrize("value", ["0", "10", "10.5", "10.25"])
    def test_accepts_non_negative_cents(self, validator, value):
        assert validator.check_money("budget", Decimal(value)) == []

    def test_rejects_negative(self, validator):
        """Negative budgets are refused."""
        issues = validator.check_money("budget", Decimal("-1"))
        assert [i.issue_type for i in issues] == ["invalid_value"]

    def test_rejects_third_decimal(self, validator):
        """Money has at most two decimal places, and we suggest the rounding."""
        issues = validator.check_money("budget", Decimal("10.005"))
        assert issues[0].issue_type == "invalid_precision"
        assert issues[0].suggested_fix == "Round to 10.00"

    def test_zero_amount_refused_when_positive_required(self, validator):
        issues = validator.check_money("amount", Decimal("0"), allow_zero=False)
        assert issues[0].message == "amount must be greater than zero"

    def test_rejects_non_numbers(self, validator):
        assert validator.check_money("budget", "lots")[0].issue_type == "invalid_value"
        assert validator.check_money("budget", Decimal("NaN"))[0].issue_type == "invalid_value"

    def test_rejects_huge_amounts(self, validator):
        issues = validator.check_money("amount", Decimal("1000000000.01"), allow_zero=False)
        assert [i.issue_type for i in issues] == ["too_large"]


class TestTeamCreate:
    """Tests for team payload validation."""

    def test_valid_payload(self, validator):
        result = validator.validate_team_create(TeamCreate(name="Studio", currency="eur"))
        assert result.is_valid

    def test_every_problem_reported(self, validator):
        """Name, budget and currency problems come back together."""
        result = validator.validate_team_create(TeamCreate(
            name="x" * 51,
            currency="XYZ",
            budget=Decimal("-5"),
        ))

        assert not result.is_valid
        assert {i.field for i in result.issues} == {"name", "budget", "currency"}

    def test_blank_name(self, validator):
        result = validator.validate_team_create(TeamCreate(name="   "))
        assert result.issues[0].issue_type == "missing"

    def test_duplicate_categories_ignore_case(self, validator):
        """Food and FOOD are the same category."""
        result = validator.validate_team_create(TeamCreate(
            name="Studio",
            categories=[Category(name="Food", icon="🍽️"), Category(name="FOOD", icon="🍔")],
        ))
        assert result.issues[0].issue_type == "duplicate"


class TestTransactionFields:
    """Tests for transaction validation against a team."""

    def test_valid_fields(self, validator, team):
        assert validator.validate_transaction_fields(fields(), team).is_valid

    def test_missing_fields_reported_together(self, validator, team):
        """Shape errors are all reported, and team checks are skipped."""
        result = validator.validate_transaction_fields(
            fields(amount=None, type=None, category_name=""),
            team,
        )

        assert {i.field for i in result.issues} == {"amount", "type", "category_name"}
        assert all(i.issue_type != "unknown_category" for i in result.issues)

    def test_unknown_category(self, validator, team):
        """The category must exist in this team."""
        result = validator.validate_transaction_fields(fields(category_name="Rent"), team)

        assert not result.is_valid
        assert result.issues[0].issue_type == "unknown_category"

    def test_category_match_ignores_case(self, validator, team):
        assert validator.validate_transaction_fields(fields(category_name="salary"), team).is_valid

    def test_future_date_is_a_warning(self, validator, team):
        """Far-future dates are flagged but accepted."""
        result = validator.validate_transaction_fields(
            fields(transaction_date=date.today() + timedelta(days=30)),
            team,
        )

        assert result.is_valid
        assert len(result.warnings) == 1

    def test_near_future_date_is_fine(self, validator, team):
        result = validator.validate_transaction_fields(
            fields(transaction_date=date.today() + timedelta(days=7)),
            team,
        )
        assert result.issues == []

    def test_long_description(self, validator, team):
        result = validator.validate_transaction_fields(fields(description="x" * 501), team)
        assert result.issues[0].field == "description"


class TestAccountsAndPaging:
    """Tests for registration and pagination checks."""

    def test_registration(self, validator):
        result = validator.validate_registration(RegistrationRequest(
            email="nora@example.com",
            password="long-enough",
            first_name="Nora",
            last_name="New",
        ))
        assert result.is_valid

    @pytest.mark.parametrize("email", ["", "nora", "nora@example", "no ra@example.com"])
    def test_bad_emails(self, validator, email):
        assert validator.check_email(email)[0].field == "email"

    def test_page_bounds(self, validator):
        """Pages start at 1 and limits are capped."""
        assert validator.validate_page(1, 20).is_valid
        assert {i.field for i in validator.validate_page(0, 101).issues} == {"page", "limit"}


class TestReporting:
    """Tests for turning issues into errors and text."""

    def test_ensure_valid_raises_with_issues(self, validator, team):
        result = validator.validate_transaction_fields(fields(category_name="Rent"), team)

        with pytest.raises(PayloadValidationError) as exc_info:
            LedgerValidator.ensure_valid(result)

        assert exc_info.value.issues == result.issues

    def test_ensure_valid_passes_warnings(self, validator, team):
        result = validator.validate_transaction_fields(
            fields(transaction_date=date.today() + timedelta(days=30)),
            team,
        )
        assert LedgerValidator.ensure_valid(result) is result

    def test_user_friendly_summary(self):
        summary = LedgerValidator.get_user_friendly_summary([
            ValidationIssue(
                field="amount",
                issue_type="invalid_value",
                message="amount must be greater than zero",
                suggested_fix="Enter a positive amount",
            ),
            ValidationIssue(
                field="transaction_date",
                issue_type="future_date",
                message="Date is in the future",
                severity="warning",
            ),
        ])

        assert "❌ Please fix the following:" in summary
        assert "💡 Enter a positive amount" in summary
        assert "⚠️ Please verify the following:" in summary

    def test_summary_without_issues(self):
        assert LedgerValidator.get_user_friendly_summary([]) == "✅ All checks passed."
