"""
Authorization Gate

Every role-gated operation asks this one place whether the acting user
may do it. The gate reads current membership state and never writes.

    decision = await gate.evaluate(team_id, user_id, Capability.SET_BUDGET)
    await gate.require(team_id, user_id, Capability.DELETE_TEAM)  # raises

CRITICAL: A missing team or membership is NotFound, not Forbidden.
Non-members learn nothing about a team beyond "not found".
"""

from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from teamledger.errors import ForbiddenError, NotFoundError
from teamledger.models.ledger import Membership, Role, Team, Transaction
from teamledger.services.storage import LedgerStorageInterface


class Capability(str, Enum):
    """Something a member may or may not be allowed to do in a team."""
    DELETE_TEAM = "delete_team"
    RENAME_TEAM = "rename_team"
    SET_BUDGET = "set_budget"
    SET_INCOME_GOAL = "set_income_goal"
    SET_CURRENCY = "set_currency"
    SET_CATEGORIES = "set_categories"
    SET_REPORT_PERMISSION = "set_report_permission"
    MANAGE_MEMBERS = "manage_members"
    CHANGE_MEMBER_ROLE = "change_member_role"
    VIEW_TEAM = "view_team"
    VIEW_TRANSACTIONS = "view_transactions"
    ADD_TRANSACTION = "add_transaction"
    REQUEST_CHANGE = "request_change"
    RESOLVE_CHANGE_REQUEST = "resolve_change_request"
    VIEW_REPORT = "view_report"
    EDIT_TRANSACTION = "edit_transaction"
    DELETE_TRANSACTION = "delete_transaction"


ALL_ROLES = frozenset(Role)
MANAGERS = frozenset({Role.OWNER, Role.ADMIN})
OWNER_ONLY = frozenset({Role.OWNER})

# Capabilities decided by role alone
ROLE_TABLE: dict[Capability, frozenset] = {
    Capability.DELETE_TEAM: OWNER_ONLY,
    Capability.RENAME_TEAM: MANAGERS,
    Capability.SET_BUDGET: MANAGERS,
    Capability.SET_INCOME_GOAL: MANAGERS,
    Capability.SET_CURRENCY: MANAGERS,
    Capability.SET_CATEGORIES: MANAGERS,
    Capability.SET_REPORT_PERMISSION: MANAGERS,
    Capability.MANAGE_MEMBERS: MANAGERS,
    Capability.CHANGE_MEMBER_ROLE: OWNER_ONLY,
    Capability.VIEW_TEAM: ALL_ROLES,
    Capability.VIEW_TRANSACTIONS: ALL_ROLES,
    Capability.ADD_TRANSACTION: ALL_ROLES,
    Capability.REQUEST_CHANGE: ALL_ROLES,
    Capability.RESOLVE_CHANGE_REQUEST: MANAGERS,
}

# Capabilities that also depend on the transaction's creator
DIRECT_MUTATIONS = frozenset({Capability.EDIT_TRANSACTION, Capability.DELETE_TRANSACTION})


class AuthorizationDecision(BaseModel):
    """Outcome of one authorization check."""

    allowed: bool
    capability: Capability
    role: Role
    reason: str


def decide(
    capability: Capability,
    membership: Membership,
    team: Team,
    transaction: Optional[Transaction] = None,
) -> AuthorizationDecision:
    """Pure decision over already-loaded state."""
    role = membership.role

    def result(allowed: bool, reason: str) -> AuthorizationDecision:
        return AuthorizationDecision(
            allowed=allowed,
            capability=capability,
            role=role,
            reason=reason,
        )

    if capability in DIRECT_MUTATIONS:
        if transaction is None:
            raise ValueError(f"{capability.value} needs the target transaction")
        if role == Role.OWNER:
            return result(True, "team owner")
        if transaction.created_by == membership.user_id:
            return result(True, "transaction creator")
        return result(False, "only the creator or the team owner may change this transaction directly; submit a change request instead")

    if capability == Capability.VIEW_REPORT:
        if role in MANAGERS:
            return result(True, f"role {role.value}")
        if team.allow_member_view_report:
            return result(True, "members may view reports in this team")
        return result(False, "reports are restricted to owners and admins in this team")

    allowed_roles = ROLE_TABLE[capability]
    if role in allowed_roles:
        return result(True, f"role {role.value}")
    needed = " or ".join(sorted(r.value for r in allowed_roles))
    return result(False, f"requires role {needed}, member has {role.value}")


class AuthorizationGate:
    """Loads team and membership, then applies decide()."""

    def __init__(self, storage: LedgerStorageInterface):
        self._storage = storage

    async def load(self, team_id: UUID, user_id: UUID) -> tuple[Team, Membership]:
        """
        Raises:
            NotFoundError: If the team doesn't exist or the user isn't a member
        """
        team = await self._storage.get_team(team_id)
        if team is None:
            raise NotFoundError("Team not found", details={"team_id": str(team_id)})
        membership = await self._storage.get_membership(team_id, user_id)
        if membership is None:
            raise NotFoundError("Team not found", details={"team_id": str(team_id)})
        return team, membership

    async def evaluate(
        self,
        team_id: UUID,
        user_id: UUID,
        capability: Capability,
        transaction: Optional[Transaction] = None,
    ) -> AuthorizationDecision:
        """
        Decide whether the user holds the capability in the team.

        Raises:
            NotFoundError: If the team or the membership doesn't exist
        """
        team, membership = await self.load(team_id, user_id)
        return decide(capability, membership, team, transaction)

    async def require(
        self,
        team_id: UUID,
        user_id: UUID,
        capability: Capability,
        transaction: Optional[Transaction] = None,
    ) -> AuthorizationDecision:
        """
        Like evaluate(), but a denial raises.

        Raises:
            NotFoundError: If the team or the membership doesn't exist
            ForbiddenError: If the role does not grant the capability
        """
        decision = await self.evaluate(team_id, user_id, capability, transaction)
        if not decision.allowed:
            raise ForbiddenError(
                decision.reason,
                details={"capability": capability.value, "role": decision.role.value},
            )
        return decision
