"""
In-Memory Storage Implementation

An in-process implementation of LedgerStorageInterface, used by the
test suite and for local experiments.

Atomicity: no method awaits anything between reading and writing its
dictionaries, so under asyncio each call runs to completion before any
other coroutine touches the store. That gives the same guarantees the
SQL backend gets from its database transactions.

Every read returns a copy; callers can never mutate stored state.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from teamledger.models.audit import AuditEvent
from teamledger.models.ledger import (
    ChangeRequest,
    ChangeRequestKind,
    ChangeRequestStatus,
    Invitation,
    InvitationStatus,
    Membership,
    Notification,
    PasswordReset,
    Role,
    Team,
    Transaction,
    User,
)
from teamledger.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LedgerStorageInterface,
    MissingRecordError,
    StaleStateError,
)


class InMemoryLedgerStorage(LedgerStorageInterface):
    """Dictionary-backed ledger store. One instance per test or session."""

    def __init__(self):
        self._users: dict[UUID, User] = {}
        self._teams: dict[UUID, Team] = {}
        self._memberships: dict[tuple[UUID, UUID], Membership] = {}
        self._transactions: dict[UUID, Transaction] = {}
        self._requests: dict[UUID, ChangeRequest] = {}
        self._invitations: dict[UUID, Invitation] = {}
        self._resets: dict[UUID, PasswordReset] = {}
        self._notifications: dict[UUID, Notification] = {}

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def _email_taken(self, email: str, exclude: Optional[UUID] = None) -> bool:
        wanted = email.lower()
        return any(
            u.email.lower() == wanted and u.id != exclude
            for u in self._users.values()
        )

    async def create_user(self, user: User) -> User:
        if self._email_taken(user.email):
            raise DuplicateError(f"Email already registered: {user.email}")
        self._users[user.id] = user.model_copy(deep=True)
        return user.model_copy(deep=True)

    async def get_user(self, user_id: UUID) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        wanted = email.strip().lower()
        for user in self._users.values():
            if user.email.lower() == wanted:
                return user.model_copy(deep=True)
        return None

    async def update_user(self, user: User) -> User:
        if user.id not in self._users:
            raise MissingRecordError(f"User not found: {user.id}")
        if self._email_taken(user.email, exclude=user.id):
            raise DuplicateError(f"Email already registered: {user.email}")
        self._users[user.id] = user.model_copy(deep=True)
        return user.model_copy(deep=True)

    async def insert_password_reset(self, reset: PasswordReset) -> PasswordReset:
        if reset.user_id not in self._users:
            raise MissingRecordError(f"User not found: {reset.user_id}")
        self._resets[reset.id] = reset.model_copy()
        return reset.model_copy()

    async def complete_password_reset(
        self,
        token_hash: str,
        password_hash: str,
        now: datetime,
    ) -> User:
        reset = next((r for r in self._resets.values() if r.token_hash == token_hash), None)
        if reset is None:
            raise MissingRecordError("Password reset not found")
        if not reset.is_usable(now):
            raise StaleStateError("Password reset was already used or has expired")
        user = self._users.get(reset.user_id)
        if user is None:
            raise MissingRecordError(f"User not found: {reset.user_id}")

        for other in list(self._resets.values()):
            if other.user_id == user.id and other.used_at is None:
                self._resets[other.id] = other.model_copy(update={"used_at": now})
        updated = user.model_copy(update={"password_hash": password_hash, "updated_at": now})
        self._users[user.id] = updated
        return updated.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Teams & memberships
    # -------------------------------------------------------------------------

    async def create_team(self, team: Team, owner: Membership) -> Team:
        if owner.role != Role.OWNER or owner.user_id != team.owner_id:
            raise StaleStateError("Team must be created with its owner membership")
        self._teams[team.id] = team.model_copy(deep=True)
        self._memberships[(team.id, owner.user_id)] = owner.model_copy()
        return team.model_copy(deep=True)

    async def get_team(self, team_id: UUID) -> Optional[Team]:
        team = self._teams.get(team_id)
        return team.model_copy(deep=True) if team else None

    async def update_team(self, team_id: UUID, changes: dict[str, Any]) -> Team:
        team = self._teams.get(team_id)
        if team is None:
            raise MissingRecordError(f"Team not found: {team_id}")
        data = team.model_dump()
        data.update(changes)
        data["updated_at"] = datetime.utcnow()
        updated = Team.model_validate(data)
        self._teams[team_id] = updated
        return updated.model_copy(deep=True)

    async def delete_team(self, team_id: UUID) -> bool:
        if self._teams.pop(team_id, None) is None:
            return False
        for key in [k for k in self._memberships if k[0] == team_id]:
            del self._memberships[key]
        for txn_id in [t.id for t in self._transactions.values() if t.team_id == team_id]:
            del self._transactions[txn_id]
        for req_id in [r.id for r in self._requests.values() if r.team_id == team_id]:
            del self._requests[req_id]
        for inv_id in [i.id for i in self._invitations.values() if i.team_id == team_id]:
            del self._invitations[inv_id]
        return True

    async def list_teams_for_user(
        self,
        user_id: UUID,
        name_contains: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Team]:
        memberships = sorted(
            (m for m in self._memberships.values() if m.user_id == user_id),
            key=lambda m: m.joined_at,
        )
        teams = []
        for membership in memberships:
            team = self._teams.get(membership.team_id)
            if team is None:
                continue
            if name_contains and name_contains.lower() not in team.name.lower():
                continue
            teams.append(team.model_copy(deep=True))
        return teams[offset:offset + limit]

    async def get_membership(self, team_id: UUID, user_id: UUID) -> Optional[Membership]:
        membership = self._memberships.get((team_id, user_id))
        return membership.model_copy() if membership else None

    async def list_memberships(self, team_id: UUID) -> list[Membership]:
        members = [m.model_copy() for m in self._memberships.values() if m.team_id == team_id]
        members.sort(key=lambda m: m.joined_at)
        return members

    async def add_membership(self, membership: Membership) -> Membership:
        if membership.team_id not in self._teams:
            raise MissingRecordError(f"Team not found: {membership.team_id}")
        key = (membership.team_id, membership.user_id)
        if key in self._memberships:
            raise DuplicateError("User already belongs to this team")
        if membership.role == Role.OWNER:
            raise DuplicateError("Team already has an owner")
        self._memberships[key] = membership.model_copy()
        return membership.model_copy()

    async def update_membership_role(
        self,
        team_id: UUID,
        user_id: UUID,
        role: Role,
    ) -> Membership:
        membership = self._memberships.get((team_id, user_id))
        if membership is None:
            raise MissingRecordError("Membership not found")
        if role == Role.OWNER or membership.role == Role.OWNER:
            raise StaleStateError("The owner role cannot be reassigned this way")
        updated = membership.model_copy(update={"role": role})
        self._memberships[(team_id, user_id)] = updated
        return updated.model_copy()

    async def remove_membership(
        self,
        team_id: UUID,
        user_id: UUID,
        actor_id: UUID,
        supersede_note: str,
    ) -> list[ChangeRequest]:
        if self._memberships.pop((team_id, user_id), None) is None:
            raise MissingRecordError("Membership not found")
        superseded = []
        for request in list(self._requests.values()):
            if request.team_id == team_id and request.requester_id == user_id and request.is_pending:
                closed = self._reject(request, actor_id, supersede_note)
                superseded.append(closed.model_copy(deep=True))
        return superseded

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        if transaction.team_id not in self._teams:
            raise MissingRecordError(f"Team not found: {transaction.team_id}")
        self._transactions[transaction.id] = transaction.model_copy(deep=True)
        return transaction.model_copy(deep=True)

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        txn = self._transactions.get(transaction_id)
        return txn.model_copy(deep=True) if txn else None

    def _reject(self, request: ChangeRequest, actor_id: UUID, note: str) -> ChangeRequest:
        rejected = request.model_copy(update={
            "status": ChangeRequestStatus.REJECTED,
            "resolved_by": actor_id,
            "resolution_note": note,
            "resolved_at": datetime.utcnow(),
        })
        self._requests[request.id] = rejected
        return rejected

    def _supersede_pending(
        self,
        transaction_id: UUID,
        actor_id: UUID,
        note: str,
    ) -> Optional[ChangeRequest]:
        for request in self._requests.values():
            if request.transaction_id == transaction_id and request.is_pending:
                return self._reject(request, actor_id, note).model_copy(deep=True)
        return None

    async def update_transaction(
        self,
        transaction_id: UUID,
        changes: dict[str, Any],
        actor_id: UUID,
        supersede_note: str,
    ) -> tuple[Transaction, Optional[ChangeRequest]]:
        txn = self._transactions.get(transaction_id)
        if txn is None:
            raise MissingRecordError(f"Transaction not found: {transaction_id}")
        updated = txn.with_changes(changes)
        self._transactions[transaction_id] = updated
        superseded = self._supersede_pending(transaction_id, actor_id, supersede_note)
        return updated.model_copy(deep=True), superseded

    async def delete_transaction(
        self,
        transaction_id: UUID,
        actor_id: UUID,
        supersede_note: str,
    ) -> Optional[ChangeRequest]:
        if transaction_id not in self._transactions:
            raise MissingRecordError(f"Transaction not found: {transaction_id}")
        del self._transactions[transaction_id]
        return self._supersede_pending(transaction_id, actor_id, supersede_note)

    async def list_transactions(
        self,
        team_id: UUID,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        txns = [t for t in self._transactions.values() if t.team_id == team_id]
        txns.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        end = None if limit is None else offset + limit
        return [t.model_copy(deep=True) for t in txns[offset:end]]

    async def count_transactions(self, team_id: UUID) -> int:
        return sum(1 for t in self._transactions.values() if t.team_id == team_id)

    # -------------------------------------------------------------------------
    # Change requests
    # -------------------------------------------------------------------------

    async def get_change_request(self, request_id: UUID) -> Optional[ChangeRequest]:
        request = self._requests.get(request_id)
        return request.model_copy(deep=True) if request else None

    async def find_pending_by_transaction(
        self,
        transaction_id: UUID,
    ) -> Optional[ChangeRequest]:
        for request in self._requests.values():
            if request.transaction_id == transaction_id and request.is_pending:
                return request.model_copy(deep=True)
        return None

    async def insert_change_request(self, request: ChangeRequest) -> ChangeRequest:
        if request.transaction_id not in self._transactions:
            raise MissingRecordError(f"Transaction not found: {request.transaction_id}")
        if any(
            r.transaction_id == request.transaction_id and r.is_pending
            for r in self._requests.values()
        ):
            raise DuplicateError("A pending change request already exists for this transaction")
        self._requests[request.id] = request.model_copy(deep=True)
        return request.model_copy(deep=True)

    async def resolve_change_request(
        self,
        request_id: UUID,
        status: ChangeRequestStatus,
        resolved_by: UUID,
        note: Optional[str] = None,
        expected_status: ChangeRequestStatus = ChangeRequestStatus.PENDING,
    ) -> ChangeRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise MissingRecordError(f"Change request not found: {request_id}")
        if request.status != expected_status:
            raise StaleStateError(
                f"Change request is {request.status.value}, expected {expected_status.value}"
            )

        if status == ChangeRequestStatus.CONFIRMED:
            txn = self._transactions.get(request.transaction_id)
            if txn is None:
                raise StaleStateError("The transaction no longer exists")
            if request.kind == ChangeRequestKind.EDIT:
                self._transactions[txn.id] = txn.with_changes(request.proposed_changes())
            else:
                del self._transactions[txn.id]

        resolved = request.model_copy(update={
            "status": status,
            "resolved_by": resolved_by,
            "resolution_note": note,
            "resolved_at": datetime.utcnow(),
        })
        self._requests[request_id] = resolved
        return resolved.model_copy(deep=True)

    async def list_change_requests(
        self,
        team_id: UUID,
        status: Optional[ChangeRequestStatus] = None,
    ) -> list[ChangeRequest]:
        requests = [
            r for r in self._requests.values()
            if r.team_id == team_id and (status is None or r.status == status)
        ]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in requests]

    # -------------------------------------------------------------------------
    # Invitations
    # -------------------------------------------------------------------------

    async def insert_invitation(self, invitation: Invitation) -> Invitation:
        if invitation.team_id not in self._teams:
            raise MissingRecordError(f"Team not found: {invitation.team_id}")
        email = invitation.email.lower()
        for other in list(self._invitations.values()):
            if other.team_id != invitation.team_id or other.email.lower() != email:
                continue
            if not other.is_pending:
                continue
            if not other.is_expired(invitation.created_at):
                raise DuplicateError("A pending invitation already exists for this email")
            self._invitations[other.id] = other.model_copy(
                update={"status": InvitationStatus.EXPIRED}
            )
        self._invitations[invitation.id] = invitation.model_copy()
        return invitation.model_copy()

    async def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        for invitation in self._invitations.values():
            if invitation.token == token:
                return invitation.model_copy()
        return None

    async def list_invitations(
        self,
        team_id: UUID,
        status: Optional[InvitationStatus] = None,
    ) -> list[Invitation]:
        invitations = [
            i.model_copy() for i in self._invitations.values()
            if i.team_id == team_id and (status is None or i.status == status)
        ]
        invitations.sort(key=lambda i: i.created_at, reverse=True)
        return invitations

    async def respond_to_invitation(
        self,
        token: str,
        user_id: UUID,
        accept: bool,
        now: datetime,
    ) -> tuple[Invitation, Optional[Membership]]:
        invitation = next((i for i in self._invitations.values() if i.token == token), None)
        if invitation is None:
            raise MissingRecordError("Invitation not found")
        if not invitation.is_pending:
            raise StaleStateError(f"Invitation is {invitation.status.value}")
        if invitation.is_expired(now):
            raise StaleStateError("Invitation has expired")

        membership = None
        if accept:
            if invitation.team_id not in self._teams:
                raise MissingRecordError(f"Team not found: {invitation.team_id}")
            if (invitation.team_id, user_id) in self._memberships:
                raise DuplicateError("User already belongs to this team")
            membership = Membership(
                team_id=invitation.team_id,
                user_id=user_id,
                role=invitation.role,
                joined_at=now,
            )
            self._memberships[(invitation.team_id, user_id)] = membership

        answered = invitation.model_copy(update={
            "status": InvitationStatus.ACCEPTED if accept else InvitationStatus.DECLINED,
            "responded_at": now,
            "responded_by": user_id,
        })
        self._invitations[invitation.id] = answered
        return answered.model_copy(), membership.model_copy() if membership else None

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    async def insert_notification(self, notification: Notification) -> Notification:
        self._notifications[notification.id] = notification.model_copy()
        return notification.model_copy()

    def _inbox(self, user_id: UUID, unread_only: bool) -> list[Notification]:
        return [
            n for n in self._notifications.values()
            if n.user_id == user_id and not (unread_only and n.is_read)
        ]

    async def list_notifications(
        self,
        user_id: UUID,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Notification]:
        inbox = self._inbox(user_id, unread_only)
        inbox.sort(key=lambda n: (n.created_at, n.id), reverse=True)
        return [n.model_copy() for n in inbox[offset:offset + limit]]

    async def count_notifications(self, user_id: UUID, unread_only: bool = False) -> int:
        return len(self._inbox(user_id, unread_only))

    async def mark_notifications_read(
        self,
        user_id: UUID,
        notification_ids: Optional[list[UUID]] = None,
    ) -> int:
        wanted = None if notification_ids is None else set(notification_ids)
        changed = 0
        for notification in self._inbox(user_id, unread_only=True):
            if wanted is None or notification.id in wanted:
                self._notifications[notification.id] = notification.model_copy(update={"is_read": True})
                changed += 1
        return changed


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event.model_copy(deep=True))
        return True

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self.events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        team_id: Optional[UUID] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = [e for e in self.events if team_id is None or e.team_id == team_id]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
