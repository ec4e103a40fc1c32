"""
Core Data Models for TeamLedger

These models define the strict schemas for all data flowing through the system.
They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Be serializable for storage and logging
4. Support the audit trail

DESIGN DECISION: Incoming payloads (drafts, updates) are lenient and are
checked by the validator, which reports every problem at once. Stored
entities (Transaction, Team, ChangeRequest) are strict: if one of those
fails to build, a bug slipped past validation.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class Role(str, Enum):
    """
    Team membership role.

    Exactly one OWNER exists per team at any time.
    """
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class TransactionType(str, Enum):
    """Direction of money flow. Amounts are always positive magnitudes."""
    INCOME = "income"
    EXPENSE = "expense"


class ChangeRequestKind(str, Enum):
    """What a change request proposes to do with its transaction."""
    EDIT = "edit"
    DELETE = "delete"


class ChangeRequestStatus(str, Enum):
    """
    Change request lifecycle.

    CRITICAL: CONFIRMED and REJECTED are terminal.
    A request is resolved exactly once.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class InvitationStatus(str, Enum):
    """
    Invitation lifecycle.

    Only a PENDING invitation that hasn't expired can be answered.
    ACCEPTED, DECLINED and EXPIRED are terminal.
    """
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class NotificationKind(str, Enum):
    """What an inbox notification is about."""
    WELCOME = "welcome"
    INVITATION = "invitation"
    INVITATION_ANSWERED = "invitation_answered"
    CHANGE_REQUESTED = "change_requested"
    CHANGE_RESOLVED = "change_resolved"
    TRANSACTION_CHANGED = "transaction_changed"
    BUDGET_ALERT = "budget_alert"


# Fields a change request (or a direct edit) may overwrite
MUTABLE_TRANSACTION_FIELDS = (
    "amount",
    "type",
    "category_name",
    "category_icon",
    "description",
    "transaction_date",
)


# =============================================================================
# USERS
# =============================================================================

class User(BaseModel):
    """
    A registered user, as persisted.

    CRITICAL: Never hand this model to a caller outside the flows.
    Use public() to drop the password hash.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    email: str = Field(..., min_length=3, max_length=254)
    password_hash: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def public(self) -> "PublicUser":
        return PublicUser(
            id=self.id,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            created_at=self.created_at,
        )


class PublicUser(BaseModel):
    """User profile without credentials."""

    id: UUID
    email: str
    first_name: str
    last_name: str
    created_at: datetime

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class RegistrationRequest(BaseModel):
    """Sign-up payload. Checked by the validator, not here."""
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str
    password: str
    first_name: str
    last_name: str


class ProfileUpdate(BaseModel):
    """Partial profile update. Unset fields are left alone."""
    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class PasswordReset(BaseModel):
    """
    A one-time password reset grant.

    Only the SHA-256 digest of the emailed token is stored.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    token_hash: str = Field(..., min_length=64, max_length=64)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime
    used_at: Optional[datetime] = None

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.used_at is None and (now or datetime.utcnow()) < self.expires_at


# =============================================================================
# TEAMS
# =============================================================================

class Category(BaseModel):
    """A team category: a display name plus an icon."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=50)
    icon: str = Field(..., min_length=1, max_length=16)


DEFAULT_CATEGORIES = [
    Category(name="Food", icon="🍽️"),
    Category(name="Transport", icon="🚗"),
    Category(name="Stationery", icon="📝"),
    Category(name="Equipment", icon="💻"),
    Category(name="Marketing", icon="📢"),
    Category(name="Entertainment", icon="🎮"),
    Category(name="Rent", icon="🏠"),
    Category(name="Health", icon="🏥"),
    Category(name="Education", icon="📚"),
    Category(name="Shopping", icon="🛍️"),
    Category(name="Bills", icon="🧾"),
    Category(name="Salary", icon="💰"),
    Category(name="Services", icon="🔧"),
    Category(name="Sales", icon="🛒"),
    Category(name="Investment", icon="📈"),
    Category(name="Bonus", icon="🎁"),
    Category(name="Refund", icon="↩️"),
    Category(name="Other", icon="❓"),
]


class Team(BaseModel):
    """
    A shared ledger (workspace).

    owner_id always points at the member holding the OWNER role.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=200)
    owner_id: UUID
    currency: str = Field(default="USD", min_length=3, max_length=3)
    budget: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    income_goal: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    categories: list[Category] = Field(default_factory=list)
    allow_member_view_report: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def find_category(self, name: str) -> Optional[Category]:
        """Case-insensitive category lookup."""
        wanted = name.strip().lower()
        for category in self.categories:
            if category.name.lower() == wanted:
                return category
        return None


class TeamCreate(BaseModel):
    """Payload for creating a team."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str
    currency: Optional[str] = None
    budget: Decimal = Decimal("0")
    income_goal: Decimal = Decimal("0")
    categories: Optional[list[Category]] = None


class Membership(BaseModel):
    """The (team, user, role) association."""

    team_id: UUID
    user_id: UUID
    role: Role
    joined_at: datetime = Field(default_factory=datetime.utcnow)


class MemberView(BaseModel):
    """A membership joined with the member's public profile."""

    user: PublicUser
    role: Role
    joined_at: datetime


class Invitation(BaseModel):
    """
    An offer of team membership sent to an email address.

    No Membership exists until the invitee accepts. The token is the
    handle the invitee answers with; it is only valid for the account
    registered under `email`.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    token: str = Field(..., min_length=16, max_length=128)
    team_id: UUID
    email: str = Field(..., min_length=3, max_length=254)
    role: Role
    invited_by: UUID
    status: InvitationStatus = InvitationStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime
    responded_at: Optional[datetime] = None
    responded_by: Optional[UUID] = None

    @model_validator(mode='after')
    def validate_role(self) -> 'Invitation':
        if self.role == Role.OWNER:
            raise ValueError("Nobody can be invited as owner")
        return self

    @property
    def is_pending(self) -> bool:
        return self.status == InvitationStatus.PENDING

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionDraft(BaseModel):
    """
    A transaction as submitted by a member.

    This is PROPOSED data. Amount sign, category membership and date
    sanity are checked by the validator before a Transaction is built.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    team_id: UUID
    amount: Decimal
    type: TransactionType
    category_name: str
    category_icon: Optional[str] = None
    description: Optional[str] = None
    transaction_date: date = Field(default_factory=date.today)


class TransactionUpdate(BaseModel):
    """
    Partial transaction update.

    Used both for direct edits and for the proposal inside an EDIT
    change request. Fields left unset keep their current value.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Optional[Decimal] = None
    type: Optional[TransactionType] = None
    category_name: Optional[str] = None
    category_icon: Optional[str] = None
    description: Optional[str] = None
    transaction_date: Optional[date] = None

    def changes(self) -> dict[str, Any]:
        """
        Only the fields the caller actually set.

        An explicit None is kept, so description and category_icon can be
        cleared. None for a required field fails validation later.
        """
        return self.model_dump(exclude_unset=True)


class Transaction(BaseModel):
    """
    A stored ledger entry.

    Amounts are positive; the sign lives in `type`.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    team_id: UUID
    created_by: UUID
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    type: TransactionType
    category_name: str = Field(..., min_length=1, max_length=50)
    category_icon: Optional[str] = Field(default=None, max_length=16)
    description: Optional[str] = Field(default=None, max_length=500)
    transaction_date: date
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def mutable_fields(self) -> dict[str, Any]:
        """Current values of every field a change may overwrite."""
        return {name: getattr(self, name) for name in MUTABLE_TRANSACTION_FIELDS}

    def with_changes(self, changes: dict[str, Any]) -> "Transaction":
        """Return a copy with `changes` applied and validated."""
        data = self.model_dump()
        data.update(changes)
        data["updated_at"] = datetime.utcnow()
        return Transaction.model_validate(data)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.type == TransactionType.INCOME else -self.amount


class Pagination(BaseModel):
    """Page metadata for list endpoints."""

    page: int = Field(ge=1)
    limit: int = Field(ge=1)
    total_items: int = Field(ge=0)
    total_pages: int = Field(ge=0)


class TransactionPage(BaseModel):
    """One page of a team's transactions, newest first."""

    items: list[Transaction] = Field(default_factory=list)
    pagination: Pagination


# =============================================================================
# CHANGE REQUESTS
# =============================================================================

class ChangeRequest(BaseModel):
    """
    A proposed edit or deletion of a transaction.

    CRITICAL: An EDIT request carries the FULL replacement field set,
    computed when the request is made. Confirming it overwrites the
    transaction with exactly that payload.
    """

    id: UUID = Field(default_factory=uuid4)
    team_id: UUID
    transaction_id: UUID
    requester_id: UUID
    kind: ChangeRequestKind
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="JSON-ready replacement fields (EDIT only)"
    )
    reason: Optional[str] = Field(default=None, max_length=500)
    status: ChangeRequestStatus = ChangeRequestStatus.PENDING
    resolved_by: Optional[UUID] = None
    resolution_note: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = None

    @model_validator(mode='after')
    def validate_payload(self) -> 'ChangeRequest':
        """Payload presence must match the request kind."""
        if self.kind == ChangeRequestKind.EDIT and not self.payload:
            raise ValueError("Edit requests must carry a replacement payload")
        if self.kind == ChangeRequestKind.DELETE and self.payload:
            raise ValueError("Delete requests cannot carry a payload")
        unknown = set(self.payload) - set(MUTABLE_TRANSACTION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown payload fields: {sorted(unknown)}")
        return self

    @property
    def is_pending(self) -> bool:
        return self.status == ChangeRequestStatus.PENDING

    def proposed_changes(self) -> dict[str, Any]:
        """Payload parsed back into typed values."""
        return TransactionUpdate.model_validate(self.payload).model_dump(exclude_unset=True)


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class Notification(BaseModel):
    """An entry in a user's in-app inbox, mirroring an email we sent."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    kind: NotificationKind
    title: str = Field(..., min_length=1, max_length=200)
    body: str = ""
    team_id: Optional[UUID] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)


class NotificationPage(BaseModel):
    """One page of a user's inbox, newest first."""

    items: list[Notification] = Field(default_factory=list)
    pagination: Pagination
    unread_count: int = Field(default=0, ge=0)


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'duplicate')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        default="error",
        pattern="^(error|warning)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = None


class ValidationResult(BaseModel):
    """
    Result of validating one payload.

    Stage 1: Shape (presence, ranges, formats)
    Stage 2: Team semantics (category exists, currency allowed, ...)
    """

    is_valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == "error")

    @property
    def warnings(self) -> list[str]:
        return [issue.message for issue in self.issues if issue.severity == "warning"]


# =============================================================================
# REPORT MODELS
# =============================================================================

class CategoryTotals(BaseModel):
    """Income/expense sums for one category."""

    category_name: str
    income: Decimal = Decimal("0")
    expense: Decimal = Decimal("0")
    count: int = 0


class TeamSummary(BaseModel):
    """Derived financial figures for a team. Never stored."""

    team_id: UUID
    team_name: str
    currency: str
    generated_at: datetime = Field(default_factory=datetime.utcnow)

    total_income: Decimal
    total_expense: Decimal
    balance: Decimal

    budget: Decimal
    budget_remaining: Decimal
    budget_usage_percent: Decimal

    income_goal: Decimal
    income_goal_progress_percent: Decimal

    transaction_count: int
    average_amount: Decimal
    categories: list[CategoryTotals] = Field(default_factory=list)
