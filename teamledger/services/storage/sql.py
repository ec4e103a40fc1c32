"""
SQL Storage Implementation

DESIGN DECISION: The ledger lives in a relational database through
SQLAlchemy, so any supported engine works (SQLite locally, PostgreSQL in
production).

How the workflow invariants map onto the database:
- At most one PENDING request per transaction: a partial unique index on
  change_requests(transaction_id) WHERE status = 'pending'. A racing
  insert fails with IntegrityError, which we surface as DuplicateError.
- Resolving a request: UPDATE ... WHERE id = :id AND status = :expected.
  A rowcount of zero means someone else resolved it first.
- Exactly one owner per team: a partial unique index on
  team_members(team_id) WHERE role = 'owner'.
- At most one live invitation per (team, email): a partial unique index
  on invitations(team_id, email) WHERE status = 'pending'.
- Lock order is always transaction row, then change-request rows.
Every public method runs in its own database transaction.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
    create_engine,
    delete,
    func,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from teamledger.config import get_settings
from teamledger.models.ledger import (
    MUTABLE_TRANSACTION_FIELDS,
    ChangeRequest,
    ChangeRequestKind,
    ChangeRequestStatus,
    Invitation,
    InvitationStatus,
    Membership,
    Notification,
    NotificationKind,
    PasswordReset,
    Role,
    Team,
    Transaction,
    User,
)
from teamledger.services.storage.interface import (
    DuplicateError,
    LedgerStorageInterface,
    MissingRecordError,
    StaleStateError,
    StorageConnectionError,
    StorageError,
)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    email: Mapped[str] = mapped_column(String(254), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class TeamRow(Base):
    __tablename__ = "teams"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    budget: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    income_goal: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    categories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    allow_member_view_report: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class MembershipRow(Base):
    __tablename__ = "team_members"
    __table_args__ = (
        Index(
            "uq_team_members_single_owner",
            "team_id",
            unique=True,
            sqlite_where=text("role = 'owner'"),
            postgresql_where=text("role = 'owner'"),
        ),
    )

    team_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), primary_key=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class TransactionRow(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_team_created", "team_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    team_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("teams.id", ondelete="CASCADE"), nullable=False
    )
    created_by: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    category_name: Mapped[str] = mapped_column(String(50), nullable=False)
    category_icon: Mapped[Optional[str]] = mapped_column(String(16))
    description: Mapped[Optional[str]] = mapped_column(String(500))
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ChangeRequestRow(Base):
    __tablename__ = "change_requests"
    __table_args__ = (
        Index(
            "uq_change_requests_one_pending",
            "transaction_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    team_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("teams.id", ondelete="CASCADE"), nullable=False
    )
    # No foreign key: resolved requests outlive the transactions they deleted
    transaction_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    requester_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    reason: Mapped[Optional[str]] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    resolved_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    resolution_note: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class InvitationRow(Base):
    __tablename__ = "invitations"
    __table_args__ = (
        Index(
            "uq_invitations_one_pending",
            "team_id",
            "email",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    team_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("teams.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(254), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    invited_by: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    responded_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)


class PasswordResetRow(Base):
    __tablename__ = "password_resets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class NotificationRow(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # No foreign key: inbox entries outlive the team they mention
    team_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


def create_ledger_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Build an engine from settings (or explicit arguments).

    In-memory SQLite gets a single shared connection so every session
    sees the same database.
    """
    settings = get_settings().database
    url = url or settings.url
    echo = settings.echo if echo is None else echo

    if url.startswith("sqlite") and (":memory:" in url or url == "sqlite://"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=echo)


class SqlLedgerStorage(LedgerStorageInterface):
    """
    SQLAlchemy implementation of the ledger store.

    Rows are converted to Pydantic models at the boundary; no ORM
    object ever leaves this class.
    """

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine or create_ledger_engine()
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)

    def create_schema(self) -> None:
        """Create all tables and indexes that don't exist yet."""
        try:
            Base.metadata.create_all(self._engine)
        except OperationalError as e:
            raise StorageConnectionError(f"Failed to initialise database: {e}")

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_user(row: UserRow) -> User:
        return User(
            id=row.id,
            email=row.email,
            password_hash=row.password_hash,
            first_name=row.first_name,
            last_name=row.last_name,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_team(row: TeamRow) -> Team:
        return Team(
            id=row.id,
            name=row.name,
            owner_id=row.owner_id,
            currency=row.currency,
            budget=Decimal(row.budget),
            income_goal=Decimal(row.income_goal),
            categories=row.categories or [],
            allow_member_view_report=row.allow_member_view_report,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_membership(row: MembershipRow) -> Membership:
        return Membership(
            team_id=row.team_id,
            user_id=row.user_id,
            role=Role(row.role),
            joined_at=row.joined_at,
        )

    @staticmethod
    def _to_transaction(row: TransactionRow) -> Transaction:
        return Transaction(
            id=row.id,
            team_id=row.team_id,
            created_by=row.created_by,
            amount=Decimal(row.amount),
            type=row.type,
            category_name=row.category_name,
            category_icon=row.category_icon,
            description=row.description,
            transaction_date=row.transaction_date,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_request(row: ChangeRequestRow) -> ChangeRequest:
        return ChangeRequest(
            id=row.id,
            team_id=row.team_id,
            transaction_id=row.transaction_id,
            requester_id=row.requester_id,
            kind=ChangeRequestKind(row.kind),
            payload=row.payload or {},
            reason=row.reason,
            status=ChangeRequestStatus(row.status),
            resolved_by=row.resolved_by,
            resolution_note=row.resolution_note,
            created_at=row.created_at,
            resolved_at=row.resolved_at,
        )

    @staticmethod
    def _to_invitation(row: InvitationRow) -> Invitation:
        return Invitation(
            id=row.id,
            token=row.token,
            team_id=row.team_id,
            email=row.email,
            role=Role(row.role),
            invited_by=row.invited_by,
            status=InvitationStatus(row.status),
            created_at=row.created_at,
            expires_at=row.expires_at,
            responded_at=row.responded_at,
            responded_by=row.responded_by,
        )

    @staticmethod
    def _to_reset(row: PasswordResetRow) -> PasswordReset:
        return PasswordReset(
            id=row.id,
            user_id=row.user_id,
            token_hash=row.token_hash,
            created_at=row.created_at,
            expires_at=row.expires_at,
            used_at=row.used_at,
        )

    @staticmethod
    def _to_notification(row: NotificationRow) -> Notification:
        return Notification(
            id=row.id,
            user_id=row.user_id,
            kind=NotificationKind(row.kind),
            title=row.title,
            body=row.body,
            team_id=row.team_id,
            is_read=row.is_read,
            created_at=row.created_at,
        )

    @staticmethod
    def _write_transaction_fields(row: TransactionRow, txn: Transaction) -> None:
        for name in MUTABLE_TRANSACTION_FIELDS:
            value = getattr(txn, name)
            setattr(row, name, value.value if name == "type" else value)
        row.updated_at = txn.updated_at

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def create_user(self, user: User) -> User:
        try:
            with self._sessions.begin() as session:
                session.add(UserRow(
                    id=user.id,
                    email=user.email.lower(),
                    password_hash=user.password_hash,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    created_at=user.created_at,
                    updated_at=user.updated_at,
                ))
        except IntegrityError:
            raise DuplicateError(f"Email already registered: {user.email}")
        return user

    async def get_user(self, user_id: UUID) -> Optional[User]:
        with self._sessions() as session:
            row = session.get(UserRow, user_id)
            return self._to_user(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        with self._sessions() as session:
            row = session.scalars(
                select(UserRow).where(UserRow.email == email.strip().lower())
            ).first()
            return self._to_user(row) if row else None

    async def update_user(self, user: User) -> User:
        try:
            with self._sessions.begin() as session:
                row = session.get(UserRow, user.id)
                if row is None:
                    raise MissingRecordError(f"User not found: {user.id}")
                row.email = user.email.lower()
                row.password_hash = user.password_hash
                row.first_name = user.first_name
                row.last_name = user.last_name
                row.updated_at = user.updated_at
        except IntegrityError:
            raise DuplicateError(f"Email already registered: {user.email}")
        return user

    async def insert_password_reset(self, reset: PasswordReset) -> PasswordReset:
        with self._sessions.begin() as session:
            if session.get(UserRow, reset.user_id) is None:
                raise MissingRecordError(f"User not found: {reset.user_id}")
            session.add(PasswordResetRow(
                id=reset.id,
                user_id=reset.user_id,
                token_hash=reset.token_hash,
                created_at=reset.created_at,
                expires_at=reset.expires_at,
            ))
        return reset

    async def complete_password_reset(
        self,
        token_hash: str,
        password_hash: str,
        now: datetime,
    ) -> User:
        with self._sessions.begin() as session:
            row = session.scalars(
                select(PasswordResetRow)
                .where(PasswordResetRow.token_hash == token_hash)
                .with_for_update()
            ).first()
            if row is None:
                raise MissingRecordError("Password reset not found")
            if not self._to_reset(row).is_usable(now):
                raise StaleStateError("Password reset was already used or has expired")

            claimed = session.execute(
                update(PasswordResetRow)
                .where(PasswordResetRow.id == row.id, PasswordResetRow.used_at.is_(None))
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise StaleStateError("Password reset was already used or has expired")
            session.execute(
                update(PasswordResetRow)
                .where(PasswordResetRow.user_id == row.user_id, PasswordResetRow.used_at.is_(None))
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )

            user_row = session.get(UserRow, row.user_id, with_for_update=True)
            if user_row is None:
                raise MissingRecordError(f"User not found: {row.user_id}")
            user_row.password_hash = password_hash
            user_row.updated_at = now
            return self._to_user(user_row)

    # -------------------------------------------------------------------------
    # Teams & memberships
    # -------------------------------------------------------------------------

    async def create_team(self, team: Team, owner: Membership) -> Team:
        if owner.role != Role.OWNER or owner.user_id != team.owner_id:
            raise StaleStateError("Team must be created with its owner membership")
        with self._sessions.begin() as session:
            session.add(TeamRow(
                id=team.id,
                name=team.name,
                owner_id=team.owner_id,
                currency=team.currency,
                budget=team.budget,
                income_goal=team.income_goal,
                categories=[c.model_dump() for c in team.categories],
                allow_member_view_report=team.allow_member_view_report,
                created_at=team.created_at,
                updated_at=team.updated_at,
            ))
            session.flush()
            session.add(MembershipRow(
                team_id=team.id,
                user_id=owner.user_id,
                role=owner.role.value,
                joined_at=owner.joined_at,
            ))
        return team

    async def get_team(self, team_id: UUID) -> Optional[Team]:
        with self._sessions() as session:
            row = session.get(TeamRow, team_id)
            return self._to_team(row) if row else None

    async def update_team(self, team_id: UUID, changes: dict[str, Any]) -> Team:
        with self._sessions.begin() as session:
            row = session.get(TeamRow, team_id)
            if row is None:
                raise MissingRecordError(f"Team not found: {team_id}")
            data = self._to_team(row).model_dump()
            data.update(changes)
            data["updated_at"] = datetime.utcnow()
            team = Team.model_validate(data)

            row.name = team.name
            row.currency = team.currency
            row.budget = team.budget
            row.income_goal = team.income_goal
            row.categories = [c.model_dump() for c in team.categories]
            row.allow_member_view_report = team.allow_member_view_report
            row.updated_at = team.updated_at
        return team

    async def delete_team(self, team_id: UUID) -> bool:
        with self._sessions.begin() as session:
            # Explicit cascade: SQLite ignores ON DELETE without a pragma
            session.execute(delete(InvitationRow).where(InvitationRow.team_id == team_id))
            session.execute(delete(ChangeRequestRow).where(ChangeRequestRow.team_id == team_id))
            session.execute(delete(TransactionRow).where(TransactionRow.team_id == team_id))
            session.execute(delete(MembershipRow).where(MembershipRow.team_id == team_id))
            result = session.execute(delete(TeamRow).where(TeamRow.id == team_id))
            return result.rowcount > 0

    async def list_teams_for_user(
        self,
        user_id: UUID,
        name_contains: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Team]:
        query = (
            select(TeamRow)
            .join(MembershipRow, MembershipRow.team_id == TeamRow.id)
            .where(MembershipRow.user_id == user_id)
        )
        if name_contains:
            query = query.where(func.lower(TeamRow.name).contains(name_contains.lower()))
        query = query.order_by(MembershipRow.joined_at).limit(limit).offset(offset)

        with self._sessions() as session:
            return [self._to_team(row) for row in session.scalars(query)]

    async def get_membership(self, team_id: UUID, user_id: UUID) -> Optional[Membership]:
        with self._sessions() as session:
            row = session.get(MembershipRow, (team_id, user_id))
            return self._to_membership(row) if row else None

    async def list_memberships(self, team_id: UUID) -> list[Membership]:
        with self._sessions() as session:
            rows = session.scalars(
                select(MembershipRow)
                .where(MembershipRow.team_id == team_id)
                .order_by(MembershipRow.joined_at)
            )
            return [self._to_membership(row) for row in rows]

    async def add_membership(self, membership: Membership) -> Membership:
        try:
            with self._sessions.begin() as session:
                if session.get(TeamRow, membership.team_id) is None:
                    raise MissingRecordError(f"Team not found: {membership.team_id}")
                session.add(MembershipRow(
                    team_id=membership.team_id,
                    user_id=membership.user_id,
                    role=membership.role.value,
                    joined_at=membership.joined_at,
                ))
        except IntegrityError:
            raise DuplicateError("User already belongs to this team")
        return membership

    async def update_membership_role(
        self,
        team_id: UUID,
        user_id: UUID,
        role: Role,
    ) -> Membership:
        with self._sessions.begin() as session:
            row = session.get(MembershipRow, (team_id, user_id))
            if row is None:
                raise MissingRecordError("Membership not found")
            if role == Role.OWNER or row.role == Role.OWNER.value:
                raise StaleStateError("The owner role cannot be reassigned this way")
            row.role = role.value
            return self._to_membership(row)

    async def remove_membership(
        self,
        team_id: UUID,
        user_id: UUID,
        actor_id: UUID,
        supersede_note: str,
    ) -> list[ChangeRequest]:
        with self._sessions.begin() as session:
            result = session.execute(
                delete(MembershipRow).where(
                    MembershipRow.team_id == team_id,
                    MembershipRow.user_id == user_id,
                )
            )
            if result.rowcount == 0:
                raise MissingRecordError("Membership not found")
            rows = session.scalars(
                select(ChangeRequestRow)
                .where(
                    ChangeRequestRow.team_id == team_id,
                    ChangeRequestRow.requester_id == user_id,
                    ChangeRequestRow.status == ChangeRequestStatus.PENDING.value,
                )
                .with_for_update()
            ).all()
            superseded = []
            for row in rows:
                self._mark_rejected(row, actor_id, supersede_note)
                superseded.append(self._to_request(row))
            return superseded

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        with self._sessions.begin() as session:
            if session.get(TeamRow, transaction.team_id) is None:
                raise MissingRecordError(f"Team not found: {transaction.team_id}")
            row = TransactionRow(
                id=transaction.id,
                team_id=transaction.team_id,
                created_by=transaction.created_by,
                created_at=transaction.created_at,
            )
            self._write_transaction_fields(row, transaction)
            session.add(row)
        return transaction

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        with self._sessions() as session:
            row = session.get(TransactionRow, transaction_id)
            return self._to_transaction(row) if row else None

    @staticmethod
    def _mark_rejected(row: ChangeRequestRow, actor_id: UUID, note: str) -> None:
        row.status = ChangeRequestStatus.REJECTED.value
        row.resolved_by = actor_id
        row.resolution_note = note
        row.resolved_at = datetime.utcnow()

    def _supersede_pending(
        self,
        session,
        transaction_id: UUID,
        actor_id: UUID,
        note: str,
    ) -> Optional[ChangeRequest]:
        row = session.scalars(
            select(ChangeRequestRow)
            .where(
                ChangeRequestRow.transaction_id == transaction_id,
                ChangeRequestRow.status == ChangeRequestStatus.PENDING.value,
            )
            .with_for_update()
        ).first()
        if row is None:
            return None
        self._mark_rejected(row, actor_id, note)
        return self._to_request(row)

    async def update_transaction(
        self,
        transaction_id: UUID,
        changes: dict[str, Any],
        actor_id: UUID,
        supersede_note: str,
    ) -> tuple[Transaction, Optional[ChangeRequest]]:
        with self._sessions.begin() as session:
            row = session.get(TransactionRow, transaction_id, with_for_update=True)
            if row is None:
                raise MissingRecordError(f"Transaction not found: {transaction_id}")
            updated = self._to_transaction(row).with_changes(changes)
            self._write_transaction_fields(row, updated)
            superseded = self._supersede_pending(session, transaction_id, actor_id, supersede_note)
        return updated, superseded

    async def delete_transaction(
        self,
        transaction_id: UUID,
        actor_id: UUID,
        supersede_note: str,
    ) -> Optional[ChangeRequest]:
        with self._sessions.begin() as session:
            result = session.execute(
                delete(TransactionRow).where(TransactionRow.id == transaction_id)
            )
            if result.rowcount == 0:
                raise MissingRecordError(f"Transaction not found: {transaction_id}")
            return self._supersede_pending(session, transaction_id, actor_id, supersede_note)

    async def list_transactions(
        self,
        team_id: UUID,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        query = (
            select(TransactionRow)
            .where(TransactionRow.team_id == team_id)
            .order_by(TransactionRow.created_at.desc(), TransactionRow.id.desc())
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        with self._sessions() as session:
            return [self._to_transaction(row) for row in session.scalars(query)]

    async def count_transactions(self, team_id: UUID) -> int:
        with self._sessions() as session:
            return session.scalar(
                select(func.count()).select_from(TransactionRow)
                .where(TransactionRow.team_id == team_id)
            ) or 0

    # -------------------------------------------------------------------------
    # Change requests
    # -------------------------------------------------------------------------

    async def get_change_request(self, request_id: UUID) -> Optional[ChangeRequest]:
        with self._sessions() as session:
            row = session.get(ChangeRequestRow, request_id)
            return self._to_request(row) if row else None

    async def find_pending_by_transaction(
        self,
        transaction_id: UUID,
    ) -> Optional[ChangeRequest]:
        with self._sessions() as session:
            row = session.scalars(
                select(ChangeRequestRow).where(
                    ChangeRequestRow.transaction_id == transaction_id,
                    ChangeRequestRow.status == ChangeRequestStatus.PENDING.value,
                )
            ).first()
            return self._to_request(row) if row else None

    async def insert_change_request(self, request: ChangeRequest) -> ChangeRequest:
        try:
            with self._sessions.begin() as session:
                # Held until commit, so a direct delete sees this request and supersedes it
                txn_row = session.get(TransactionRow, request.transaction_id, with_for_update=True)
                if txn_row is None:
                    raise MissingRecordError(
                        f"Transaction not found: {request.transaction_id}"
                    )
                session.add(ChangeRequestRow(
                    id=request.id,
                    team_id=request.team_id,
                    transaction_id=request.transaction_id,
                    requester_id=request.requester_id,
                    kind=request.kind.value,
                    payload=request.payload,
                    reason=request.reason,
                    status=request.status.value,
                    created_at=request.created_at,
                ))
        except IntegrityError:
            raise DuplicateError("A pending change request already exists for this transaction")
        return request

    async def resolve_change_request(
        self,
        request_id: UUID,
        status: ChangeRequestStatus,
        resolved_by: UUID,
        note: Optional[str] = None,
        expected_status: ChangeRequestStatus = ChangeRequestStatus.PENDING,
    ) -> ChangeRequest:
        with self._sessions.begin() as session:
            row = session.get(ChangeRequestRow, request_id)
            if row is None:
                raise MissingRecordError(f"Change request not found: {request_id}")
            # Transaction row before the request row, as in direct edits
            txn_row = None
            if status == ChangeRequestStatus.CONFIRMED:
                txn_row = session.get(TransactionRow, row.transaction_id, with_for_update=True)

            swapped = session.execute(
                update(ChangeRequestRow)
                .where(
                    ChangeRequestRow.id == request_id,
                    ChangeRequestRow.status == expected_status.value,
                )
                .values(
                    status=status.value,
                    resolved_by=resolved_by,
                    resolution_note=note,
                    resolved_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            row = session.get(ChangeRequestRow, request_id, populate_existing=True)
            if swapped.rowcount != 1:
                raise StaleStateError(
                    f"Change request is {row.status}, expected {expected_status.value}"
                )

            request = self._to_request(row)
            if status == ChangeRequestStatus.CONFIRMED:
                if txn_row is None:
                    # Raising rolls the status swap back as well
                    raise StaleStateError("The transaction no longer exists")
                if request.kind == ChangeRequestKind.EDIT:
                    updated = self._to_transaction(txn_row).with_changes(request.proposed_changes())
                    self._write_transaction_fields(txn_row, updated)
                else:
                    session.delete(txn_row)
            return request

    async def list_change_requests(
        self,
        team_id: UUID,
        status: Optional[ChangeRequestStatus] = None,
    ) -> list[ChangeRequest]:
        query = select(ChangeRequestRow).where(ChangeRequestRow.team_id == team_id)
        if status is not None:
            query = query.where(ChangeRequestRow.status == status.value)
        query = query.order_by(ChangeRequestRow.created_at.desc())
        with self._sessions() as session:
            return [self._to_request(row) for row in session.scalars(query)]

    # -------------------------------------------------------------------------
    # Invitations
    # -------------------------------------------------------------------------

    async def insert_invitation(self, invitation: Invitation) -> Invitation:
        email = invitation.email.lower()
        try:
            with self._sessions.begin() as session:
                if session.get(TeamRow, invitation.team_id) is None:
                    raise MissingRecordError(f"Team not found: {invitation.team_id}")
                session.execute(
                    update(InvitationRow)
                    .where(
                        InvitationRow.team_id == invitation.team_id,
                        InvitationRow.email == email,
                        InvitationRow.status == InvitationStatus.PENDING.value,
                        InvitationRow.expires_at <= invitation.created_at,
                    )
                    .values(status=InvitationStatus.EXPIRED.value)
                    .execution_options(synchronize_session=False)
                )
                session.add(InvitationRow(
                    id=invitation.id,
                    token=invitation.token,
                    team_id=invitation.team_id,
                    email=email,
                    role=invitation.role.value,
                    invited_by=invitation.invited_by,
                    status=invitation.status.value,
                    created_at=invitation.created_at,
                    expires_at=invitation.expires_at,
                ))
        except IntegrityError:
            raise DuplicateError("A pending invitation already exists for this email")
        return invitation

    async def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._sessions() as session:
            row = session.scalars(
                select(InvitationRow).where(InvitationRow.token == token)
            ).first()
            return self._to_invitation(row) if row else None

    async def list_invitations(
        self,
        team_id: UUID,
        status: Optional[InvitationStatus] = None,
    ) -> list[Invitation]:
        query = select(InvitationRow).where(InvitationRow.team_id == team_id)
        if status is not None:
            query = query.where(InvitationRow.status == status.value)
        query = query.order_by(InvitationRow.created_at.desc())
        with self._sessions() as session:
            return [self._to_invitation(row) for row in session.scalars(query)]

    async def respond_to_invitation(
        self,
        token: str,
        user_id: UUID,
        accept: bool,
        now: datetime,
    ) -> tuple[Invitation, Optional[Membership]]:
        answer = InvitationStatus.ACCEPTED if accept else InvitationStatus.DECLINED
        try:
            with self._sessions.begin() as session:
                row = session.scalars(
                    select(InvitationRow).where(InvitationRow.token == token)
                ).first()
                if row is None:
                    raise MissingRecordError("Invitation not found")
                if row.status == InvitationStatus.PENDING.value and row.expires_at <= now:
                    raise StaleStateError("Invitation has expired")

                swapped = session.execute(
                    update(InvitationRow)
                    .where(
                        InvitationRow.id == row.id,
                        InvitationRow.status == InvitationStatus.PENDING.value,
                    )
                    .values(status=answer.value, responded_at=now, responded_by=user_id)
                    .execution_options(synchronize_session=False)
                )
                row = session.get(InvitationRow, row.id, populate_existing=True)
                if swapped.rowcount != 1:
                    raise StaleStateError(f"Invitation is {row.status}")

                membership = None
                if accept:
                    if session.get(TeamRow, row.team_id) is None:
                        raise MissingRecordError(f"Team not found: {row.team_id}")
                    membership = Membership(
                        team_id=row.team_id,
                        user_id=user_id,
                        role=Role(row.role),
                        joined_at=now,
                    )
                    session.add(MembershipRow(
                        team_id=membership.team_id,
                        user_id=membership.user_id,
                        role=membership.role.value,
                        joined_at=membership.joined_at,
                    ))
                    session.flush()
                return self._to_invitation(row), membership
        except IntegrityError:
            raise DuplicateError("User already belongs to this team")

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    async def insert_notification(self, notification: Notification) -> Notification:
        with self._sessions.begin() as session:
            session.add(NotificationRow(
                id=notification.id,
                user_id=notification.user_id,
                kind=notification.kind.value,
                title=notification.title,
                body=notification.body,
                team_id=notification.team_id,
                is_read=notification.is_read,
                created_at=notification.created_at,
            ))
        return notification

    async def list_notifications(
        self,
        user_id: UUID,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Notification]:
        query = select(NotificationRow).where(NotificationRow.user_id == user_id)
        if unread_only:
            query = query.where(NotificationRow.is_read.is_(False))
        query = (
            query.order_by(NotificationRow.created_at.desc(), NotificationRow.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self._sessions() as session:
            return [self._to_notification(row) for row in session.scalars(query)]

    async def count_notifications(self, user_id: UUID, unread_only: bool = False) -> int:
        query = (
            select(func.count()).select_from(NotificationRow)
            .where(NotificationRow.user_id == user_id)
        )
        if unread_only:
            query = query.where(NotificationRow.is_read.is_(False))
        with self._sessions() as session:
            return session.scalar(query) or 0

    async def mark_notifications_read(
        self,
        user_id: UUID,
        notification_ids: Optional[list[UUID]] = None,
    ) -> int:
        statement = update(NotificationRow).where(
            NotificationRow.user_id == user_id,
            NotificationRow.is_read.is_(False),
        )
        if notification_ids is not None:
            statement = statement.where(NotificationRow.id.in_(notification_ids))
        with self._sessions.begin() as session:
            result = session.execute(
                statement.values(is_read=True).execution_options(synchronize_session=False)
            )
            return result.rowcount


__all__ = [
    "Base",
    "SqlLedgerStorage",
    "StorageError",
    "create_ledger_engine",
]
