"""
Transaction Flow

Adding, reading, listing and directly changing transactions.

DESIGN DECISION: Only the creator of a transaction or the team OWNER may
change it directly. Everyone else goes through ChangeRequestFlow.

A direct edit or delete auto-rejects any PENDING change request on the
same transaction, in the same storage call, with a recorded note. The
requester is told their request was superseded.
"""

import math
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from teamledger.authorization import Capability
from teamledger.errors import ConflictError, NotFoundError
from teamledger.models.audit import AuditEventBuilder, AuditEventType
from teamledger.models.ledger import (
    ChangeRequest,
    Pagination,
    Team,
    Transaction,
    TransactionDraft,
    TransactionPage,
    TransactionType,
    TransactionUpdate,
    ValidationIssue,
)
from teamledger.reports import total_expense
from teamledger.services.storage import MissingRecordError
from teamledger.validation import LedgerValidator
from teamledger.flows.base import BaseFlow


SUPERSEDED_BY_EDIT = "superseded by direct edit"
SUPERSEDED_BY_DELETE = "superseded by direct delete"


def prepare_replacement(
    validator: LedgerValidator,
    transaction: Transaction,
    update: TransactionUpdate,
    team: Team,
) -> dict[str, Any]:
    """
    Merge an update over the transaction's current fields and validate
    the result against the team.

    Returns the full, validated set of mutable fields.

    Raises:
        PayloadValidationError: If nothing changes or the result is invalid
    """
    changes = update.changes()
    if not changes:
        validator.raise_issues([ValidationIssue(
            field="update",
            issue_type="empty",
            message="No changes supplied",
        )])

    fields = transaction.mutable_fields()
    fields.update(changes)
    validator.ensure_valid(
        validator.validate_transaction_fields(fields, team),
        "Invalid transaction update",
    )

    category = team.find_category(fields["category_name"])
    fields["category_name"] = category.name
    if "category_name" in changes and "category_icon" not in changes:
        fields["category_icon"] = category.icon
    return fields


class TransactionFlow(BaseFlow):
    """Ledger entries of a team."""

    async def add_transaction(self, actor_id: UUID, draft: TransactionDraft) -> Transaction:
        """
        Record a transaction. Any member may do this; it applies at once.

        Raises:
            NotFoundError: If the team doesn't exist or the actor isn't a member
            PayloadValidationError: If the draft is invalid for the team
        """
        await self._authorize(draft.team_id, actor_id, Capability.ADD_TRANSACTION)
        team = await self._load_team(draft.team_id)
        self._validator.ensure_valid(
            self._validator.validate_draft(draft, team),
            "Invalid transaction",
        )

        category = team.find_category(draft.category_name)
        transaction = Transaction(
            team_id=team.id,
            created_by=actor_id,
            amount=draft.amount,
            type=draft.type,
            category_name=category.name,
            category_icon=draft.category_icon or category.icon,
            description=draft.description,
            transaction_date=draft.transaction_date,
        )
        try:
            await self._storage.insert_transaction(transaction)
        except MissingRecordError:
            raise NotFoundError("Team not found", details={"team_id": str(team.id)})

        await self._audit_logger.log(AuditEventBuilder.transaction_changed(
            AuditEventType.TRANSACTION_ADDED,
            transaction.id,
            team.id,
            actor_id,
            details={
                "amount": str(transaction.amount),
                "type": transaction.type.value,
                "category": transaction.category_name,
            },
        ))

        if transaction.type == TransactionType.EXPENSE:
            await self._check_budget(team, transaction.amount)

        return transaction

    async def _check_budget(self, team: Team, added: Decimal) -> None:
        """Alert OWNER/ADMINs when an expense pushes spending across the threshold."""
        if not self._notifier or team.budget <= 0:
            return

        spent = total_expense(await self._storage.list_transactions(team.id, limit=None))
        threshold = team.budget * Decimal(str(self._settings.budget_alert_threshold))
        if spent - added < threshold <= spent:
            usage = (spent / team.budget * 100).quantize(Decimal("0.01"))
            await self._notifier.budget_alert(team, spent, usage)

    async def get_transaction(self, actor_id: UUID, transaction_id: UUID) -> Transaction:
        transaction = await self._load_transaction(transaction_id)
        await self._authorize(transaction.team_id, actor_id, Capability.VIEW_TRANSACTIONS)
        return transaction

    async def list_transactions(
        self,
        actor_id: UUID,
        team_id: UUID,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> TransactionPage:
        """
        One page of a team's transactions, newest first.

        Order is created_at descending, then id descending, so pages are
        stable while nothing is inserted.
        """
        limit = self._settings.default_page_size if limit is None else limit
        await self._authorize(team_id, actor_id, Capability.VIEW_TRANSACTIONS)
        self._validator.ensure_valid(self._validator.validate_page(page, limit))

        total = await self._storage.count_transactions(team_id)
        items = await self._storage.list_transactions(
            team_id,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return TransactionPage(
            items=items,
            pagination=Pagination(
                page=page,
                limit=limit,
                total_items=total,
                total_pages=math.ceil(total / limit),
            ),
        )

    async def edit_transaction(
        self,
        actor_id: UUID,
        transaction_id: UUID,
        update: TransactionUpdate,
    ) -> Transaction:
        """
        Directly edit a transaction (creator or OWNER only).

        Raises:
            NotFoundError: If the transaction is gone or the actor isn't a member
            ForbiddenError: If the actor is neither creator nor OWNER
            PayloadValidationError: If the edited transaction would be invalid
            ConflictError: If the transaction is deleted while being edited
        """
        transaction = await self._load_transaction(transaction_id)
        await self._authorize(
            transaction.team_id, actor_id, Capability.EDIT_TRANSACTION, transaction,
        )
        team = await self._load_team(transaction.team_id)
        fields = prepare_replacement(self._validator, transaction, update, team)

        try:
            updated, superseded = await self._storage.update_transaction(
                transaction_id, fields, actor_id, SUPERSEDED_BY_EDIT,
            )
        except MissingRecordError:
            raise ConflictError(
                "The transaction no longer exists",
                details={"transaction_id": str(transaction_id)},
            )

        await self._audit_logger.log(AuditEventBuilder.transaction_changed(
            AuditEventType.TRANSACTION_EDITED,
            transaction_id,
            team.id,
            actor_id,
            details={"fields": sorted(update.changes())},
        ))
        await self._after_direct_change(team, updated, actor_id, superseded, deleted=False)
        return updated

    async def delete_transaction(self, actor_id: UUID, transaction_id: UUID) -> None:
        """
        Directly delete a transaction (creator or OWNER only).

        Raises:
            NotFoundError: If the transaction is gone or the actor isn't a member
            ForbiddenError: If the actor is neither creator nor OWNER
            ConflictError: If another caller deleted it first
        """
        transaction = await self._load_transaction(transaction_id)
        await self._authorize(
            transaction.team_id, actor_id, Capability.DELETE_TRANSACTION, transaction,
        )
        try:
            superseded = await self._storage.delete_transaction(
                transaction_id, actor_id, SUPERSEDED_BY_DELETE,
            )
        except MissingRecordError:
            raise ConflictError(
                "The transaction no longer exists",
                details={"transaction_id": str(transaction_id)},
            )

        await self._audit_logger.log(AuditEventBuilder.transaction_changed(
            AuditEventType.TRANSACTION_DELETED,
            transaction_id,
            transaction.team_id,
            actor_id,
            details={"amount": str(transaction.amount), "type": transaction.type.value},
        ))
        team = await self._storage.get_team(transaction.team_id)
        if team:
            await self._after_direct_change(team, transaction, actor_id, superseded, deleted=True)

    async def _after_direct_change(
        self,
        team: Team,
        transaction: Transaction,
        actor_id: UUID,
        superseded: Optional[ChangeRequest],
        deleted: bool,
    ) -> None:
        if superseded:
            await self._audit_logger.log(AuditEventBuilder.change_superseded(
                superseded.id, team.id, actor_id, superseded.resolution_note or "",
            ))
        if not self._notifier:
            return
        if superseded:
            await self._notifier.change_resolved(team, superseded)
        await self._notifier.transaction_changed_by_other(team, transaction, actor_id, deleted)
