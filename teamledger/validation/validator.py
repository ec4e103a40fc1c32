"""
Two-Stage Payload Validation

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SHAPE VALIDATION:
- Required field presence
- Ranges and precision (amounts, budgets)
- Formats (email, currency code)

STAGE 2 - TEAM SEMANTICS:
- Category belongs to the team
- Currency is one we accept
- Suspicious dates and amounts

Stage 2 only runs when stage 1 passed. Every issue found is reported at
once, so a caller can fix everything in one round trip.

IMPORTANT: Validation NEVER silently fixes issues.
It reports them; flows turn errors into PayloadValidationError and
persist nothing.
"""

import re
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from teamledger.config import get_settings
from teamledger.errors import PayloadValidationError
from teamledger.models.ledger import (
    Category,
    RegistrationRequest,
    Team,
    TeamCreate,
    TransactionDraft,
    ValidationIssue,
    ValidationResult,
)


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CENT = Decimal("0.01")


def _has_errors(issues: Iterable[ValidationIssue]) -> bool:
    return any(issue.severity == "error" for issue in issues)


class LedgerValidator:
    """
    Validates team settings, transactions and account payloads.

    Stateless apart from settings; safe to share between flows.
    """

    def __init__(self):
        self._settings = get_settings().app

    # -------------------------------------------------------------------------
    # Field checks (each returns a list of issues)
    # -------------------------------------------------------------------------

    def check_team_name(self, name: Optional[str]) -> list[ValidationIssue]:
        name = (name or "").strip()
        max_length = self._settings.max_team_name_length
        if not name:
            return [ValidationIssue(
                field="name",
                issue_type="missing",
                message="Team name is required",
            )]
        if len(name) > max_length:
            return [ValidationIssue(
                field="name",
                issue_type="too_long",
                message=f"Team name must be at most {max_length} characters",
                suggested_fix="Use a shorter name",
            )]
        return []

    def check_money(self, field: str, value: Any, allow_zero: bool = True) -> list[ValidationIssue]:
        """Non-negative (or positive) amount with at most two decimal places."""
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            return [ValidationIssue(
                field=field,
                issue_type="invalid_value",
                message=f"{field} must be a number",
            )]

        if not amount.is_finite():
            return [ValidationIssue(
                field=field,
                issue_type="invalid_value",
                message=f"{field} must be a finite number",
            )]

        issues = []
        if amount < 0 or (amount == 0 and not allow_zero):
            issues.append(ValidationIssue(
                field=field,
                issue_type="invalid_value",
                message=(
                    f"{field} cannot be negative" if allow_zero
                    else f"{field} must be greater than zero"
                ),
            ))
        if amount != amount.quantize(CENT):
            issues.append(ValidationIssue(
                field=field,
                issue_type="invalid_precision",
                message=f"{field} can have at most two decimal places",
                suggested_fix=f"Round to {amount.quantize(CENT)}",
            ))
        if amount > Decimal(str(self._settings.max_transaction_amount)):
            issues.append(ValidationIssue(
                field=field,
                issue_type="too_large",
                message=f"{field} exceeds the maximum of {self._settings.max_transaction_amount:,.0f}",
            ))
        return issues

    def check_currency(self, currency: Optional[str]) -> list[ValidationIssue]:
        code = (currency or "").strip().upper()
        allowed = self._settings.currency_list
        if code not in allowed:
            return [ValidationIssue(
                field="currency",
                issue_type="invalid_value",
                message=f"Unsupported currency: {currency!r}",
                suggested_fix=f"Use one of {', '.join(allowed)}",
            )]
        return []

    def check_categories(self, categories: Iterable[Category]) -> list[ValidationIssue]:
        """Category names must be unique, ignoring case."""
        issues = []
        seen: set[str] = set()
        for category in categories:
            key = category.name.strip().lower()
            if key in seen:
                issues.append(ValidationIssue(
                    field="categories",
                    issue_type="duplicate",
                    message=f"Duplicate category: {category.name}",
                ))
            seen.add(key)
        return issues

    def check_email(self, email: Optional[str]) -> list[ValidationIssue]:
        if not email or not EMAIL_PATTERN.match(email.strip()):
            return [ValidationIssue(
                field="email",
                issue_type="invalid_format",
                message="A valid email address is required",
            )]
        return []

    def check_password(self, password: Optional[str]) -> list[ValidationIssue]:
        min_length = self._settings.min_password_length
        if not password or len(password) < min_length:
            return [ValidationIssue(
                field="password",
                issue_type="too_short",
                message=f"Password must be at least {min_length} characters",
            )]
        return []

    def check_person_name(self, field: str, value: Optional[str]) -> list[ValidationIssue]:
        value = (value or "").strip()
        if not value:
            return [ValidationIssue(field=field, issue_type="missing", message=f"{field} is required")]
        if len(value) > 100:
            return [ValidationIssue(field=field, issue_type="too_long", message=f"{field} is too long")]
        return []

    # -------------------------------------------------------------------------
    # Payload validators
    # -------------------------------------------------------------------------

    def validate_team_create(self, payload: TeamCreate) -> ValidationResult:
        issues = self.check_team_name(payload.name)
        issues += self.check_money("budget", payload.budget)
        issues += self.check_money("income_goal", payload.income_goal)
        if payload.currency is not None:
            issues += self.check_currency(payload.currency)
        if payload.categories is not None:
            issues += self.check_categories(payload.categories)
        return ValidationResult(is_valid=not _has_errors(issues), issues=issues)

    def validate_transaction_fields(
        self,
        fields: dict[str, Any],
        team: Team,
    ) -> ValidationResult:
        """
        Validate a complete set of mutable transaction fields against a team.

        Used for new transactions, direct edits and EDIT request payloads,
        always on the full field set after merging.
        """
        issues = []

        # Stage 1: shape
        if fields.get("amount") is None:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="missing",
                message="Amount is required",
            ))
        else:
            issues += self.check_money("amount", fields["amount"], allow_zero=False)

        if fields.get("type") is None:
            issues.append(ValidationIssue(
                field="type",
                issue_type="missing",
                message="Transaction type (income or expense) is required",
            ))

        category_name = (fields.get("category_name") or "").strip()
        if not category_name:
            issues.append(ValidationIssue(
                field="category_name",
                issue_type="missing",
                message="Category is required",
            ))

        description = fields.get("description")
        if description and len(description) > 500:
            issues.append(ValidationIssue(
                field="description",
                issue_type="too_long",
                message="Description must be at most 500 characters",
            ))

        if fields.get("transaction_date") is None:
            issues.append(ValidationIssue(
                field="transaction_date",
                issue_type="missing",
                message="Transaction date is required",
            ))

        if _has_errors(issues):
            return ValidationResult(is_valid=False, issues=issues)

        # Stage 2: team semantics
        if team.find_category(category_name) is None:
            issues.append(ValidationIssue(
                field="category_name",
                issue_type="unknown_category",
                message=f"Category {category_name!r} does not exist in this team",
                suggested_fix="Pick one of the team's categories or ask an admin to add it",
            ))

        max_future_date = date.today() + timedelta(days=self._settings.future_date_tolerance_days)
        if fields["transaction_date"] > max_future_date:
            issues.append(ValidationIssue(
                field="transaction_date",
                issue_type="future_date",
                message=f"Transaction date ({fields['transaction_date']}) is in the future",
                severity="warning",
                suggested_fix="Please verify the date is correct",
            ))

        return ValidationResult(is_valid=not _has_errors(issues), issues=issues)

    def validate_draft(self, draft: TransactionDraft, team: Team) -> ValidationResult:
        return self.validate_transaction_fields(
            draft.model_dump(exclude={"team_id"}),
            team,
        )

    def validate_registration(self, payload: RegistrationRequest) -> ValidationResult:
        issues = self.check_email(payload.email)
        issues += self.check_password(payload.password)
        issues += self.check_person_name("first_name", payload.first_name)
        issues += self.check_person_name("last_name", payload.last_name)
        return ValidationResult(is_valid=not _has_errors(issues), issues=issues)

    def validate_page(self, page: int, limit: int) -> ValidationResult:
        issues = []
        if page < 1:
            issues.append(ValidationIssue(
                field="page",
                issue_type="invalid_value",
                message="Page must be 1 or greater",
            ))
        if not 1 <= limit <= self._settings.max_page_size:
            issues.append(ValidationIssue(
                field="limit",
                issue_type="invalid_value",
                message=f"Limit must be between 1 and {self._settings.max_page_size}",
            ))
        return ValidationResult(is_valid=not issues, issues=issues)

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    @staticmethod
    def ensure_valid(result: ValidationResult, message: str = "Invalid payload") -> ValidationResult:
        """
        Raise if the result holds errors; warnings pass through.

        Raises:
            PayloadValidationError: Carrying every issue found
        """
        if result.has_errors:
            raise PayloadValidationError(message, issues=result.issues)
        return result

    @staticmethod
    def raise_issues(issues: list[ValidationIssue], message: str = "Invalid payload") -> None:
        LedgerValidator.ensure_valid(
            ValidationResult(is_valid=not _has_errors(issues), issues=issues),
            message,
        )

    @staticmethod
    def get_user_friendly_summary(issues: list[ValidationIssue]) -> str:
        """
        Summary of issues for display in the console.
        """
        if not issues:
            return "✅ All checks passed."

        lines = []
        errors = [i for i in issues if i.severity == "error"]
        warnings = [i for i in issues if i.severity == "warning"]

        if errors:
            lines.append("❌ Please fix the following:")
            for issue in errors:
                lines.append(f"   • {issue.message}")
                if issue.suggested_fix:
                    lines.append(f"     💡 {issue.suggested_fix}")

        if warnings:
            if lines:
                lines.append("")
            lines.append("⚠️ Please verify the following:")
            for issue in warnings:
                lines.append(f"   • {issue.message}")

        return "\n".join(lines)
