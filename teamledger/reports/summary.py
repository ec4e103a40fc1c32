"""
Team Financial Summary

DESIGN DECISION: Reports are DERIVED, never stored.
Every figure is recomputed from the team's transactions on request, so a
report can never disagree with the ledger.
"""

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from teamledger.audit import AuditLogger
from teamledger.authorization import AuthorizationGate, Capability
from teamledger.errors import ForbiddenError, NotFoundError
from teamledger.models.ledger import (
    CategoryTotals,
    Team,
    TeamSummary,
    Transaction,
    TransactionType,
)
from teamledger.services.storage import LedgerStorageInterface


ZERO = Decimal("0")
CENT = Decimal("0.01")


def _percent(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= 0:
        return ZERO.quantize(CENT)
    return (part / whole * 100).quantize(CENT, rounding=ROUND_HALF_UP)


def total_expense(transactions: list[Transaction]) -> Decimal:
    return sum(
        (t.amount for t in transactions if t.type == TransactionType.EXPENSE),
        ZERO,
    )


def build_team_summary(team: Team, transactions: list[Transaction]) -> TeamSummary:
    """Fold a list of transactions into a TeamSummary."""
    income = ZERO
    expense = ZERO
    by_category: dict[str, CategoryTotals] = {}

    for txn in transactions:
        totals = by_category.setdefault(
            txn.category_name,
            CategoryTotals(category_name=txn.category_name),
        )
        totals.count += 1
        if txn.type == TransactionType.INCOME:
            income += txn.amount
            totals.income += txn.amount
        else:
            expense += txn.amount
            totals.expense += txn.amount

    count = len(transactions)
    average = ((income + expense) / count).quantize(CENT, rounding=ROUND_HALF_UP) if count else ZERO

    categories = sorted(
        by_category.values(),
        key=lambda c: (-(c.income + c.expense), c.category_name.lower()),
    )

    return TeamSummary(
        team_id=team.id,
        team_name=team.name,
        currency=team.currency,
        total_income=income,
        total_expense=expense,
        balance=income - expense,
        budget=team.budget,
        budget_remaining=team.budget - expense,
        budget_usage_percent=_percent(expense, team.budget),
        income_goal=team.income_goal,
        income_goal_progress_percent=_percent(income, team.income_goal),
        transaction_count=count,
        average_amount=average,
        categories=categories,
    )


class ReportService:
    """Gated access to team reports."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        gate: AuthorizationGate,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._gate = gate
        self._audit_logger = audit_logger or AuditLogger()

    async def team_summary(
        self,
        actor_id: UUID,
        team_id: UUID,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> TeamSummary:
        """
        Summarize a team's ledger, optionally within a date range (inclusive).

        Raises:
            NotFoundError: If the team doesn't exist or the actor isn't a member
            ForbiddenError: If the actor may not view reports
        """
        try:
            await self._gate.require(team_id, actor_id, Capability.VIEW_REPORT)
        except ForbiddenError as e:
            await self._audit_logger.log_access_denied(
                team_id=team_id,
                actor_id=actor_id,
                capability=Capability.VIEW_REPORT.value,
                reason=e.message,
            )
            raise
        team = await self._storage.get_team(team_id)
        if team is None:
            raise NotFoundError("Team not found", details={"team_id": str(team_id)})
        transactions = await self._storage.list_transactions(team_id, limit=None)

        if date_from:
            transactions = [t for t in transactions if t.transaction_date >= date_from]
        if date_to:
            transactions = [t for t in transactions if t.transaction_date <= date_to]

        return build_team_summary(team, transactions)
