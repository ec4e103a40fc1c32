"""
Change Request Flow

Two-step changes to shared transactions:

    request_edit / request_delete      (any member who may not change it directly)
        → PENDING
    resolve(CONFIRMED | REJECTED)      (OWNER or ADMIN, never the requester)
        → CONFIRMED: the edit/delete is applied
        → REJECTED:  the transaction is left untouched

CRITICAL: The store enforces the state machine.
- At most one PENDING request per transaction (atomic insert)
- A request is resolved exactly once (compare-and-swap on PENDING)
- The status change and its effect on the transaction commit together
The flow's own checks only produce better error messages; losing a race
still ends in ConflictError.
"""

from typing import Optional
from uuid import UUID

from teamledger.authorization import Capability, decide
from teamledger.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PayloadValidationError,
)
from teamledger.models.audit import AuditEventBuilder, AuditEventType
from teamledger.models.ledger import (
    ChangeRequest,
    ChangeRequestKind,
    ChangeRequestStatus,
    Transaction,
    TransactionUpdate,
    ValidationIssue,
)
from teamledger.services.storage import (
    DuplicateError,
    MissingRecordError,
    StaleStateError,
)
from teamledger.flows.base import BaseFlow
from teamledger.flows.transactions import prepare_replacement


class ChangeRequestFlow(BaseFlow):
    """Propose, confirm and reject changes to transactions."""

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def _check_requester(
        self,
        actor_id: UUID,
        transaction: Transaction,
        direct_capability: Capability,
    ):
        """
        The actor must be a member who may NOT change the transaction directly.

        Returns the team.
        """
        await self._authorize(transaction.team_id, actor_id, Capability.REQUEST_CHANGE)
        team, membership = await self._gate.load(transaction.team_id, actor_id)
        if decide(direct_capability, membership, team, transaction).allowed:
            action = "edit" if direct_capability == Capability.EDIT_TRANSACTION else "delete"
            raise PayloadValidationError(
                f"You can {action} this transaction directly",
                issues=[ValidationIssue(
                    field="transaction_id",
                    issue_type="direct_change_allowed",
                    message=f"Creators and team owners {action} transactions directly",
                    suggested_fix=f"Use {action}_transaction instead",
                )],
            )
        return team

    def _check_reason(self, reason: Optional[str]) -> Optional[str]:
        reason = (reason or "").strip() or None
        if reason and len(reason) > 500:
            self._validator.raise_issues([ValidationIssue(
                field="reason",
                issue_type="too_long",
                message="Reason must be at most 500 characters",
            )])
        return reason

    async def _submit(self, request: ChangeRequest, team, transaction: Transaction) -> ChangeRequest:
        try:
            await self._storage.insert_change_request(request)
        except DuplicateError:
            raise ConflictError(
                "A change request is already pending for this transaction",
                details={"transaction_id": str(request.transaction_id)},
            )
        except MissingRecordError:
            raise ConflictError(
                "The transaction no longer exists",
                details={"transaction_id": str(request.transaction_id)},
            )

        await self._audit_logger.log(AuditEventBuilder.change_requested(
            request.id,
            request.transaction_id,
            request.team_id,
            request.requester_id,
            request.kind.value,
        ))
        if self._notifier:
            await self._notifier.change_requested(team, request, transaction)
        return request

    async def request_edit(
        self,
        actor_id: UUID,
        transaction_id: UUID,
        update: TransactionUpdate,
        reason: Optional[str] = None,
    ) -> ChangeRequest:
        """
        Propose an edit. The request stores the FULL replacement field set.

        Raises:
            NotFoundError: If the transaction is gone or the actor isn't a member
            PayloadValidationError: If the actor may edit directly, or the
                                    edited transaction would be invalid
            ConflictError: If a request is already pending for the transaction,
                           or the transaction is deleted meanwhile
        """
        transaction = await self._load_transaction(transaction_id)
        team = await self._check_requester(actor_id, transaction, Capability.EDIT_TRANSACTION)
        reason = self._check_reason(reason)
        fields = prepare_replacement(self._validator, transaction, update, team)

        request = ChangeRequest(
            team_id=transaction.team_id,
            transaction_id=transaction.id,
            requester_id=actor_id,
            kind=ChangeRequestKind.EDIT,
            payload=TransactionUpdate(**fields).model_dump(mode="json"),
            reason=reason,
        )
        return await self._submit(request, team, transaction)

    async def request_delete(
        self,
        actor_id: UUID,
        transaction_id: UUID,
        reason: Optional[str] = None,
    ) -> ChangeRequest:
        """
        Propose deleting a transaction.

        Raises:
            NotFoundError: If the transaction is gone or the actor isn't a member
            PayloadValidationError: If the actor may delete directly
            ConflictError: If a request is already pending for the transaction,
                           or the transaction is deleted meanwhile
        """
        transaction = await self._load_transaction(transaction_id)
        team = await self._check_requester(actor_id, transaction, Capability.DELETE_TRANSACTION)
        reason = self._check_reason(reason)

        request = ChangeRequest(
            team_id=transaction.team_id,
            transaction_id=transaction.id,
            requester_id=actor_id,
            kind=ChangeRequestKind.DELETE,
            reason=reason,
        )
        return await self._submit(request, team, transaction)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def resolve(
        self,
        actor_id: UUID,
        request_id: UUID,
        decision: ChangeRequestStatus,
        note: Optional[str] = None,
    ) -> ChangeRequest:
        """
        Confirm or reject a PENDING request.

        Raises:
            NotFoundError: If the request is gone or the actor isn't a member
            PayloadValidationError: If decision is PENDING, or the proposed
                                    edit no longer fits the team
            ForbiddenError: Unless the actor is OWNER/ADMIN; always for the
                            requester themselves
            ConflictError: If the request was already resolved, or its
                           transaction no longer exists
        """
        request = await self._storage.get_change_request(request_id)
        if request is None:
            raise NotFoundError("Change request not found", details={"request_id": str(request_id)})

        await self._authorize(request.team_id, actor_id, Capability.RESOLVE_CHANGE_REQUEST)
        if request.requester_id == actor_id:
            await self._audit_logger.log_access_denied(
                request.team_id, actor_id,
                Capability.RESOLVE_CHANGE_REQUEST.value,
                "requester cannot resolve their own request",
            )
            raise ForbiddenError("You cannot resolve your own change request")

        if decision == ChangeRequestStatus.PENDING:
            self._validator.raise_issues([ValidationIssue(
                field="decision",
                issue_type="invalid_value",
                message="Decision must be confirmed or rejected",
            )])
        note = (note or "").strip() or None
        if note and len(note) > 500:
            self._validator.raise_issues([ValidationIssue(
                field="note",
                issue_type="too_long",
                message="Note must be at most 500 characters",
            )])

        if not request.is_pending:
            raise ConflictError(
                f"Change request is already {request.status.value}",
                details={"request_id": str(request_id), "status": request.status.value},
            )

        team = await self._load_team(request.team_id)
        transaction = await self._storage.get_transaction(request.transaction_id)
        if decision == ChangeRequestStatus.CONFIRMED:
            if transaction is None:
                raise ConflictError(
                    "The transaction no longer exists",
                    details={"transaction_id": str(request.transaction_id)},
                )
            if request.kind == ChangeRequestKind.EDIT:
                # Categories may have changed since the request was made
                fields = transaction.mutable_fields()
                fields.update(request.proposed_changes())
                self._validator.ensure_valid(
                    self._validator.validate_transaction_fields(fields, team),
                    "The proposed change no longer fits this team; reject it instead",
                )

        try:
            resolved = await self._storage.resolve_change_request(
                request_id,
                decision,
                resolved_by=actor_id,
                note=note,
                expected_status=ChangeRequestStatus.PENDING,
            )
        except MissingRecordError:
            raise NotFoundError("Change request not found", details={"request_id": str(request_id)})
        except StaleStateError as e:
            raise ConflictError(str(e), details={"request_id": str(request_id)})

        await self._audit_resolution(resolved, actor_id)
        if self._notifier:
            await self._notifier.change_resolved(team, resolved)
            if transaction and resolved.status == ChangeRequestStatus.CONFIRMED:
                await self._notifier.transaction_changed_by_other(
                    team,
                    transaction,
                    actor_id,
                    deleted=resolved.kind == ChangeRequestKind.DELETE,
                )
        return resolved

    async def confirm(
        self,
        actor_id: UUID,
        request_id: UUID,
        decision: ChangeRequestStatus,
        note: Optional[str] = None,
    ) -> ChangeRequest:
        """Alias of resolve()."""
        return await self.resolve(actor_id, request_id, decision, note)

    async def _audit_resolution(self, request: ChangeRequest, actor_id: UUID) -> None:
        confirmed = request.status == ChangeRequestStatus.CONFIRMED
        await self._audit_logger.log(AuditEventBuilder.change_resolved(
            request.id, request.team_id, actor_id, confirmed, request.resolution_note,
        ))
        if confirmed:
            await self._audit_logger.log(AuditEventBuilder.transaction_changed(
                AuditEventType.TRANSACTION_EDITED
                if request.kind == ChangeRequestKind.EDIT
                else AuditEventType.TRANSACTION_DELETED,
                request.transaction_id,
                request.team_id,
                actor_id,
                details={"change_request_id": str(request.id)},
            ))

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_change_request(self, actor_id: UUID, request_id: UUID) -> ChangeRequest:
        request = await self._storage.get_change_request(request_id)
        if request is None:
            raise NotFoundError("Change request not found", details={"request_id": str(request_id)})
        await self._authorize(request.team_id, actor_id, Capability.VIEW_TRANSACTIONS)
        return request

    async def list_change_requests(
        self,
        actor_id: UUID,
        team_id: UUID,
        status: Optional[ChangeRequestStatus] = None,
    ) -> list[ChangeRequest]:
        """A team's requests, newest first, optionally filtered by status."""
        await self._authorize(team_id, actor_id, Capability.VIEW_TRANSACTIONS)
        return await self._storage.list_change_requests(team_id, status)
