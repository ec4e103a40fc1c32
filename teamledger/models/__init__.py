"""
Data Models Package

This package contains all Pydantic models used in TeamLedger.
All data flowing through the system must conform to these schemas.
"""

from teamledger.models.ledger import (
    DEFAULT_CATEGORIES,
    MUTABLE_TRANSACTION_FIELDS,
    Category,
    CategoryTotals,
    ChangeRequest,
    ChangeRequestKind,
    ChangeRequestStatus,
    Invitation,
    InvitationStatus,
    MemberView,
    Membership,
    Notification,
    NotificationKind,
    NotificationPage,
    Pagination,
    PasswordReset,
    ProfileUpdate,
    PublicUser,
    RegistrationRequest,
    Role,
    Team,
    TeamCreate,
    TeamSummary,
    Transaction,
    TransactionDraft,
    TransactionPage,
    TransactionType,
    TransactionUpdate,
    User,
    ValidationIssue,
    ValidationResult,
)
from teamledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "DEFAULT_CATEGORIES",
    "MUTABLE_TRANSACTION_FIELDS",
    "Category",
    "CategoryTotals",
    "ChangeRequest",
    "ChangeRequestKind",
    "ChangeRequestStatus",
    "Invitation",
    "InvitationStatus",
    "MemberView",
    "Membership",
    "Notification",
    "NotificationKind",
    "NotificationPage",
    "Pagination",
    "PasswordReset",
    "ProfileUpdate",
    "PublicUser",
    "RegistrationRequest",
    "Role",
    "Team",
    "TeamCreate",
    "TeamSummary",
    "Transaction",
    "TransactionDraft",
    "TransactionPage",
    "TransactionType",
    "TransactionUpdate",
    "User",
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
