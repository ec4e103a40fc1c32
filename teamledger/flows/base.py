"""
Shared plumbing for the workflow flows.

Each flow receives the authenticated actor id from its caller and never
re-verifies credentials.
"""

from typing import Optional
from uuid import UUID

from teamledger.audit import AuditLogger
from teamledger.authorization import AuthorizationDecision, AuthorizationGate, Capability
from teamledger.config import get_settings
from teamledger.errors import ForbiddenError, NotFoundError
from teamledger.models.ledger import Team, Transaction
from teamledger.notifications import NotificationDispatcher
from teamledger.services.storage import LedgerStorageInterface
from teamledger.validation import LedgerValidator


class BaseFlow:
    """Holds the collaborators every flow needs."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        gate: Optional[AuthorizationGate] = None,
        validator: Optional[LedgerValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self._storage = storage
        self._gate = gate or AuthorizationGate(storage)
        self._validator = validator or LedgerValidator()
        self._audit_logger = audit_logger or AuditLogger()
        self._notifier = notifier
        self._settings = get_settings().app

    async def _authorize(
        self,
        team_id: UUID,
        actor_id: UUID,
        capability: Capability,
        transaction: Optional[Transaction] = None,
    ) -> AuthorizationDecision:
        """Gate check that audits denials before re-raising them."""
        try:
            return await self._gate.require(team_id, actor_id, capability, transaction)
        except ForbiddenError as e:
            await self._audit_logger.log_access_denied(
                team_id=team_id,
                actor_id=actor_id,
                capability=capability.value,
                reason=e.message,
            )
            raise

    async def _load_team(self, team_id: UUID) -> Team:
        team = await self._storage.get_team(team_id)
        if team is None:
            raise NotFoundError("Team not found", details={"team_id": str(team_id)})
        return team

    async def _load_transaction(self, transaction_id: UUID) -> Transaction:
        txn = await self._storage.get_transaction(transaction_id)
        if txn is None:
            raise NotFoundError(
                "Transaction not found",
                details={"transaction_id": str(transaction_id)},
            )
        return txn
