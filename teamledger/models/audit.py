"""
Audit Models for TeamLedger

Every significant action in the system is logged for audit purposes.
This provides:
1. Complete traceability of who changed which ledger entry
2. Debugging information when things go wrong
3. A history of confirmations and rejections per team

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Accounts
    USER_REGISTERED = "user_registered"
    USER_AUTHENTICATED = "user_authenticated"
    AUTHENTICATION_FAILED = "authentication_failed"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET = "password_reset"
    PROFILE_UPDATED = "profile_updated"

    # Teams
    TEAM_CREATED = "team_created"
    TEAM_DELETED = "team_deleted"
    TEAM_SETTINGS_UPDATED = "team_settings_updated"
    MEMBER_INVITED = "member_invited"
    INVITATION_DECLINED = "invitation_declined"
    MEMBER_ADDED = "member_added"
    MEMBER_ROLE_CHANGED = "member_role_changed"
    MEMBER_REMOVED = "member_removed"

    # Transactions
    TRANSACTION_ADDED = "transaction_added"
    TRANSACTION_EDITED = "transaction_edited"
    TRANSACTION_DELETED = "transaction_deleted"

    # Change requests
    CHANGE_REQUESTED = "change_requested"
    CHANGE_CONFIRMED = "change_confirmed"
    CHANGE_REJECTED = "change_rejected"
    CHANGE_SUPERSEDED = "change_superseded"

    # Authorization
    ACCESS_DENIED = "access_denied"

    # System events
    NOTIFICATION_FAILED = "notification_failed"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about, in which team, by whom?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'team', 'transaction', 'change_request')"
    )
    entity_id: Optional[UUID] = None
    team_id: Optional[UUID] = None
    actor_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "team_id": str(self.team_id) if self.team_id else None,
            "actor_id": str(self.actor_id) if self.actor_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         team_id, actor_id, description, details_json, error_message,
         is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.team_id) if self.team_id else "",
            str(self.actor_id) if self.actor_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.team_created(team_id, name, owner_id)
        event = AuditEventBuilder.change_resolved(request, approver_id)
    """

    @staticmethod
    def user_registered(user_id: UUID, email: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.USER_REGISTERED,
            entity_type="user",
            entity_id=user_id,
            actor_id=user_id,
            description=f"User registered: {email}",
            details={"email": email},
            is_user_action=True,
        )

    @staticmethod
    def account_event(
        event_type: AuditEventType,
        user_id: UUID,
        description: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        """Authenticated, password changed, profile updated."""
        return AuditEvent(
            event_type=event_type,
            entity_type="user",
            entity_id=user_id,
            actor_id=user_id,
            description=description,
            details=details or {},
            is_user_action=True,
        )

    @staticmethod
    def authentication_failed(email: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.AUTHENTICATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="user",
            description="Authentication failed",
            details={"email": email},
            is_user_action=True,
        )

    @staticmethod
    def team_created(team_id: UUID, name: str, owner_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TEAM_CREATED,
            entity_type="team",
            entity_id=team_id,
            team_id=team_id,
            actor_id=owner_id,
            description=f"Team created: {name}",
            details={"name": name},
            is_user_action=True,
        )

    @staticmethod
    def team_deleted(team_id: UUID, actor_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TEAM_DELETED,
            severity=AuditSeverity.WARNING,
            entity_type="team",
            entity_id=team_id,
            team_id=team_id,
            actor_id=actor_id,
            description="Team deleted",
            is_user_action=True,
        )

    @staticmethod
    def team_settings_updated(
        team_id: UUID,
        actor_id: UUID,
        setting: str,
        value: Any,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TEAM_SETTINGS_UPDATED,
            entity_type="team",
            entity_id=team_id,
            team_id=team_id,
            actor_id=actor_id,
            description=f"Team setting updated: {setting}",
            details={"setting": setting, "value": str(value)},
            is_user_action=True,
        )

    @staticmethod
    def member_changed(
        event_type: AuditEventType,
        team_id: UUID,
        actor_id: UUID,
        member_id: UUID,
        role: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type="membership",
            entity_id=member_id,
            team_id=team_id,
            actor_id=actor_id,
            description=f"Membership {event_type.value.replace('member_', '')}",
            details={"member_id": str(member_id), "role": role},
            is_user_action=True,
        )

    @staticmethod
    def invitation_event(
        event_type: AuditEventType,
        invitation_id: UUID,
        team_id: UUID,
        actor_id: UUID,
        email: str,
        role: str,
    ) -> AuditEvent:
        """Invitation sent or declined."""
        return AuditEvent(
            event_type=event_type,
            entity_type="invitation",
            entity_id=invitation_id,
            team_id=team_id,
            actor_id=actor_id,
            description=f"Invitation {event_type.value.split('_')[-1]}: {email}",
            details={"email": email, "role": role},
            is_user_action=True,
        )

    @staticmethod
    def transaction_changed(
        event_type: AuditEventType,
        transaction_id: UUID,
        team_id: UUID,
        actor_id: UUID,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type="transaction",
            entity_id=transaction_id,
            team_id=team_id,
            actor_id=actor_id,
            description=f"Transaction {event_type.value.replace('transaction_', '')}",
            details=details or {},
            is_user_action=True,
        )

    @staticmethod
    def change_requested(
        request_id: UUID,
        transaction_id: UUID,
        team_id: UUID,
        requester_id: UUID,
        kind: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CHANGE_REQUESTED,
            entity_type="change_request",
            entity_id=request_id,
            team_id=team_id,
            actor_id=requester_id,
            description=f"Change requested ({kind}) for transaction {transaction_id}",
            details={"transaction_id": str(transaction_id), "kind": kind},
            is_user_action=True,
        )

    @staticmethod
    def change_resolved(
        request_id: UUID,
        team_id: UUID,
        actor_id: UUID,
        confirmed: bool,
        note: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.CHANGE_CONFIRMED
                if confirmed
                else AuditEventType.CHANGE_REJECTED
            ),
            entity_type="change_request",
            entity_id=request_id,
            team_id=team_id,
            actor_id=actor_id,
            description="Change request " + ("confirmed" if confirmed else "rejected"),
            details={"note": note or ""},
            is_user_action=True,
        )

    @staticmethod
    def change_superseded(
        request_id: UUID,
        team_id: UUID,
        actor_id: UUID,
        note: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CHANGE_SUPERSEDED,
            severity=AuditSeverity.WARNING,
            entity_type="change_request",
            entity_id=request_id,
            team_id=team_id,
            actor_id=actor_id,
            description="Pending change request auto-rejected",
            details={"note": note},
        )

    @staticmethod
    def access_denied(
        team_id: Optional[UUID],
        actor_id: UUID,
        capability: str,
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCESS_DENIED,
            severity=AuditSeverity.WARNING,
            entity_type="team",
            entity_id=team_id,
            team_id=team_id,
            actor_id=actor_id,
            description=f"Access denied: {capability}",
            details={"capability": capability, "reason": reason},
            is_user_action=True,
        )

    @staticmethod
    def notification_failed(
        notification: str,
        recipient: str,
        error_message: str,
        team_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.NOTIFICATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="notification",
            team_id=team_id,
            description=f"Notification failed: {notification}",
            error_message=error_message,
            details={"notification": notification, "recipient": recipient},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
        )
