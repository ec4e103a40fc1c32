"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run against any SQLAlchemy-supported database in production
2. Use in-memory storage for testing
3. Keep business logic decoupled from storage implementation

CRITICAL: The store, not the flows, owns the check-then-act sequences.
- Inserting a change request fails if a PENDING one already exists
  for the same transaction.
- Resolving a change request is a compare-and-swap on its status,
  committed together with its effect on the transaction.
- A direct edit/delete auto-rejects the pending request in the same
  unit of work.
- Accepting an invitation creates the membership and closes the
  invitation together, at most once.
- Removing a member rejects their pending requests in the same unit
  of work.
Implementations must make each of these atomic.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from teamledger.models.audit import AuditEvent
from teamledger.models.ledger import (
    ChangeRequest,
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


class UserStorageInterface(ABC):
    """Identity store."""

    @abstractmethod
    async def create_user(self, user: User) -> User:
        """
        Persist a new user.

        Raises:
            DuplicateError: If the email is already registered
        """
        pass

    @abstractmethod
    async def get_user(self, user_id: UUID) -> Optional[User]:
        pass

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[User]:
        """Lookup by email (case-insensitive)."""
        pass

    @abstractmethod
    async def update_user(self, user: User) -> User:
        """
        Overwrite an existing user.

        Raises:
            MissingRecordError: If the user doesn't exist
            DuplicateError: If the new email belongs to someone else
        """
        pass

    @abstractmethod
    async def insert_password_reset(self, reset: PasswordReset) -> PasswordReset:
        """
        Raises:
            MissingRecordError: If the user doesn't exist
        """
        pass

    @abstractmethod
    async def complete_password_reset(
        self,
        token_hash: str,
        password_hash: str,
        now: datetime,
    ) -> User:
        """
        Use a reset grant: set the new password hash and mark the grant
        (and every other open grant of the user) used, atomically.

        Raises:
            MissingRecordError: If no grant has this digest
            StaleStateError: If the grant was already used or has expired
        """
        pass


class TeamStorageInterface(ABC):
    """Team and membership store."""

    @abstractmethod
    async def create_team(self, team: Team, owner: Membership) -> Team:
        """
        Persist a team together with its OWNER membership.

        Both rows are written in one unit of work.
        """
        pass

    @abstractmethod
    async def get_team(self, team_id: UUID) -> Optional[Team]:
        pass

    @abstractmethod
    async def update_team(self, team_id: UUID, changes: dict[str, Any]) -> Team:
        """
        Apply field changes to a team.

        Raises:
            MissingRecordError: If the team doesn't exist
        """
        pass

    @abstractmethod
    async def delete_team(self, team_id: UUID) -> bool:
        """
        Delete a team and everything it owns (memberships,
        transactions, change requests, invitations).

        Returns:
            True if a team was deleted
        """
        pass

    @abstractmethod
    async def list_teams_for_user(
        self,
        user_id: UUID,
        name_contains: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Team]:
        """Teams the user belongs to, oldest membership first."""
        pass

    @abstractmethod
    async def get_membership(self, team_id: UUID, user_id: UUID) -> Optional[Membership]:
        pass

    @abstractmethod
    async def list_memberships(self, team_id: UUID) -> list[Membership]:
        pass

    @abstractmethod
    async def add_membership(self, membership: Membership) -> Membership:
        """
        Raises:
            DuplicateError: If the user already belongs to the team
            MissingRecordError: If the team doesn't exist
        """
        pass

    @abstractmethod
    async def update_membership_role(
        self,
        team_id: UUID,
        user_id: UUID,
        role: Role,
    ) -> Membership:
        """
        Raises:
            MissingRecordError: If the membership doesn't exist
        """
        pass

    @abstractmethod
    async def remove_membership(
        self,
        team_id: UUID,
        user_id: UUID,
        actor_id: UUID,
        supersede_note: str,
    ) -> list[ChangeRequest]:
        """
        Remove a member. Every PENDING change request the member made in
        the team is marked REJECTED (resolved_by=actor_id,
        resolution_note=supersede_note) in the same unit of work.

        Returns:
            The superseded requests

        Raises:
            MissingRecordError: If the membership doesn't exist
        """
        pass


class TransactionStorageInterface(ABC):
    """Transaction store."""

    @abstractmethod
    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        """
        Raises:
            MissingRecordError: If the team doesn't exist
        """
        pass

    @abstractmethod
    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def update_transaction(
        self,
        transaction_id: UUID,
        changes: dict[str, Any],
        actor_id: UUID,
        supersede_note: str,
    ) -> tuple[Transaction, Optional[ChangeRequest]]:
        """
        Apply a direct edit.

        Any PENDING change request on the transaction is marked REJECTED
        (resolved_by=actor_id, resolution_note=supersede_note) in the
        same unit of work.

        Returns:
            (updated_transaction, superseded_request_or_None)

        Raises:
            MissingRecordError: If the transaction doesn't exist
        """
        pass

    @abstractmethod
    async def delete_transaction(
        self,
        transaction_id: UUID,
        actor_id: UUID,
        supersede_note: str,
    ) -> Optional[ChangeRequest]:
        """
        Apply a direct delete, superseding any PENDING request as above.

        Returns:
            The superseded request, if there was one

        Raises:
            MissingRecordError: If the transaction doesn't exist
        """
        pass

    @abstractmethod
    async def list_transactions(
        self,
        team_id: UUID,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        """
        A team's transactions ordered by created_at descending,
        ties broken by id descending. limit=None returns everything.
        """
        pass

    @abstractmethod
    async def count_transactions(self, team_id: UUID) -> int:
        pass


class ChangeRequestStorageInterface(ABC):
    """Change request store."""

    @abstractmethod
    async def get_change_request(self, request_id: UUID) -> Optional[ChangeRequest]:
        pass

    @abstractmethod
    async def find_pending_by_transaction(
        self,
        transaction_id: UUID,
    ) -> Optional[ChangeRequest]:
        pass

    @abstractmethod
    async def insert_change_request(self, request: ChangeRequest) -> ChangeRequest:
        """
        Atomically insert a PENDING request.

        Raises:
            DuplicateError: If a PENDING request exists for the transaction
            MissingRecordError: If the transaction no longer exists
        """
        pass

    @abstractmethod
    async def resolve_change_request(
        self,
        request_id: UUID,
        status: ChangeRequestStatus,
        resolved_by: UUID,
        note: Optional[str] = None,
        expected_status: ChangeRequestStatus = ChangeRequestStatus.PENDING,
    ) -> ChangeRequest:
        """
        Compare-and-swap the request status and apply its effect.

        CONFIRMED + EDIT overwrites the transaction with the payload,
        CONFIRMED + DELETE removes it, REJECTED touches nothing.
        Status change and effect commit together or not at all.

        Raises:
            MissingRecordError: If the request doesn't exist
            StaleStateError: If the request is not in expected_status,
                             or its transaction no longer exists
        """
        pass

    @abstractmethod
    async def list_change_requests(
        self,
        team_id: UUID,
        status: Optional[ChangeRequestStatus] = None,
    ) -> list[ChangeRequest]:
        """Requests of a team, newest first."""
        pass


class InvitationStorageInterface(ABC):
    """Pending team invitations."""

    @abstractmethod
    async def insert_invitation(self, invitation: Invitation) -> Invitation:
        """
        Store a PENDING invitation. Expired PENDING invitations for the
        same team and email are marked EXPIRED first.

        Raises:
            MissingRecordError: If the team doesn't exist
            DuplicateError: If a live PENDING invitation exists for the
                            same team and email
        """
        pass

    @abstractmethod
    async def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        pass

    @abstractmethod
    async def list_invitations(
        self,
        team_id: UUID,
        status: Optional[InvitationStatus] = None,
    ) -> list[Invitation]:
        """Invitations of a team, newest first."""
        pass

    @abstractmethod
    async def respond_to_invitation(
        self,
        token: str,
        user_id: UUID,
        accept: bool,
        now: datetime,
    ) -> tuple[Invitation, Optional[Membership]]:
        """
        Compare-and-swap the invitation out of PENDING.

        Accepting inserts the Membership with the invited role in the
        same unit of work; declining only records the answer.

        Returns:
            (answered_invitation, new_membership_or_None)

        Raises:
            MissingRecordError: If no invitation has this token
            StaleStateError: If it was already answered or has expired
            DuplicateError: If the user already belongs to the team
        """
        pass


class NotificationStorageInterface(ABC):
    """Per-user inbox."""

    @abstractmethod
    async def insert_notification(self, notification: Notification) -> Notification:
        pass

    @abstractmethod
    async def list_notifications(
        self,
        user_id: UUID,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Notification]:
        """A user's notifications, newest first."""
        pass

    @abstractmethod
    async def count_notifications(self, user_id: UUID, unread_only: bool = False) -> int:
        pass

    @abstractmethod
    async def mark_notifications_read(
        self,
        user_id: UUID,
        notification_ids: Optional[list[UUID]] = None,
    ) -> int:
        """
        Mark the user's notifications read; all of them when no ids are
        given. Ids belonging to other users are ignored.

        Returns:
            How many notifications changed
        """
        pass


class LedgerStorageInterface(
    UserStorageInterface,
    TeamStorageInterface,
    TransactionStorageInterface,
    ChangeRequestStorageInterface,
    InvitationStorageInterface,
    NotificationStorageInterface,
):
    """
    Everything the flows need from one durable store.

    Change-request resolution touches both transactions and requests,
    so a single backend implements all of it.
    """
    pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """Events for one entity in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        team_id: Optional[UUID] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent events (newest first), optionally for one team."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class MissingRecordError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class StaleStateError(StorageError):
    """A compare-and-swap found the record in an unexpected state."""
    pass


class StorageConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
