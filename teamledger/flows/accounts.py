"""
Account Flow

Registration, authentication, password reset, profile management and
the in-app notification inbox.

CRITICAL: Plaintext passwords never leave this module. Only werkzeug
password hashes are stored, and callers only ever see PublicUser.
"""

import hashlib
import math
import secrets
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog
from werkzeug.security import check_password_hash, generate_password_hash

from teamledger.errors import AuthenticationError, ConflictError, NotFoundError
from teamledger.models.audit import AuditEventBuilder, AuditEventType
from teamledger.models.ledger import (
    NotificationPage,
    Pagination,
    PasswordReset,
    ProfileUpdate,
    PublicUser,
    RegistrationRequest,
    User,
)
from teamledger.services.storage import DuplicateError, MissingRecordError, StaleStateError
from teamledger.flows.base import BaseFlow


logger = structlog.get_logger(__name__)


class AccountFlow(BaseFlow):
    """Identity operations. No team context, so no gate checks."""

    async def _load_user(self, user_id: UUID) -> User:
        user = await self._storage.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})
        return user

    async def register(self, payload: RegistrationRequest) -> PublicUser:
        """
        Create an account and send the welcome email.

        Raises:
            PayloadValidationError: Bad email, short password, missing names
            ConflictError: If the email is already registered
        """
        self._validator.ensure_valid(
            self._validator.validate_registration(payload),
            "Invalid registration",
        )

        email = payload.email.strip().lower()
        if await self._storage.get_user_by_email(email):
            raise ConflictError("Email is already registered", details={"email": email})

        user = User(
            email=email,
            password_hash=generate_password_hash(payload.password),
            first_name=payload.first_name,
            last_name=payload.last_name,
        )
        try:
            await self._storage.create_user(user)
        except DuplicateError:
            raise ConflictError("Email is already registered", details={"email": email})

        await self._audit_logger.log(AuditEventBuilder.user_registered(user.id, email))
        if self._notifier:
            await self._notifier.welcome(user)

        return user.public()

    async def authenticate(self, email: str, password: str) -> PublicUser:
        """
        Check credentials.

        Raises:
            AuthenticationError: Unknown email or wrong password (indistinguishable)
        """
        user = await self._storage.get_user_by_email((email or "").strip())
        if user is None or not check_password_hash(user.password_hash, password or ""):
            await self._audit_logger.log(AuditEventBuilder.authentication_failed(email))
            raise AuthenticationError("Invalid email or password")

        await self._audit_logger.log(AuditEventBuilder.account_event(
            AuditEventType.USER_AUTHENTICATED,
            user.id,
            "User authenticated",
        ))
        return user.public()

    async def get_profile(self, user_id: UUID) -> PublicUser:
        return (await self._load_user(user_id)).public()

    async def update_profile(self, user_id: UUID, update: ProfileUpdate) -> PublicUser:
        """
        Change email and/or names. Unset fields are left alone.

        Raises:
            NotFoundError: If the user doesn't exist
            PayloadValidationError: If a supplied field is invalid
            ConflictError: If the new email belongs to another account
        """
        user = await self._load_user(user_id)
        changes = update.model_dump(exclude_unset=True, exclude_none=True)

        issues = []
        if "email" in changes:
            issues += self._validator.check_email(changes["email"])
            changes["email"] = changes["email"].strip().lower()
        for name in ("first_name", "last_name"):
            if name in changes:
                issues += self._validator.check_person_name(name, changes[name])
        self._validator.raise_issues(issues, "Invalid profile update")

        if not changes:
            return user.public()

        if "email" in changes and changes["email"] != user.email:
            other = await self._storage.get_user_by_email(changes["email"])
            if other and other.id != user.id:
                raise ConflictError("Email is already registered", details={"email": changes["email"]})

        updated = user.model_copy(update={**changes, "updated_at": datetime.utcnow()})
        try:
            await self._storage.update_user(updated)
        except DuplicateError:
            raise ConflictError("Email is already registered", details={"email": updated.email})
        except MissingRecordError:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})

        await self._audit_logger.log(AuditEventBuilder.account_event(
            AuditEventType.PROFILE_UPDATED,
            user.id,
            "Profile updated",
            details={"fields": sorted(changes)},
        ))
        return updated.public()

    async def change_password(
        self,
        user_id: UUID,
        current_password: str,
        new_password: str,
    ) -> None:
        """
        Raises:
            NotFoundError: If the user doesn't exist
            AuthenticationError: If current_password is wrong
            PayloadValidationError: If new_password is too short
        """
        user = await self._load_user(user_id)
        if not check_password_hash(user.password_hash, current_password or ""):
            await self._audit_logger.log(AuditEventBuilder.authentication_failed(user.email))
            raise AuthenticationError("Current password is incorrect")

        self._validator.raise_issues(
            self._validator.check_password(new_password),
            "Invalid new password",
        )

        updated = user.model_copy(update={
            "password_hash": generate_password_hash(new_password),
            "updated_at": datetime.utcnow(),
        })
        try:
            await self._storage.update_user(updated)
        except MissingRecordError:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})

        await self._audit_logger.log(AuditEventBuilder.account_event(
            AuditEventType.PASSWORD_CHANGED,
            user.id,
            "Password changed",
        ))

    # -------------------------------------------------------------------------
    # Password reset
    # -------------------------------------------------------------------------

    async def request_password_reset(self, email: str) -> None:
        """
        Email a one-time reset code to the account registered under `email`.

        Unknown addresses return silently, so the call can't be used to find
        out who is registered. Only the SHA-256 digest of the code is stored.
        """
        user = await self._storage.get_user_by_email((email or "").strip())
        if user is None:
            logger.info("password_reset_unknown_email")
            return

        token = secrets.token_urlsafe(32)
        now = datetime.utcnow()
        reset = PasswordReset(
            user_id=user.id,
            token_hash=_digest(token),
            created_at=now,
            expires_at=now + timedelta(minutes=self._settings.password_reset_ttl_minutes),
        )
        try:
            await self._storage.insert_password_reset(reset)
        except MissingRecordError:
            logger.info("password_reset_user_gone", user_id=str(user.id))
            return

        await self._audit_logger.log(AuditEventBuilder.account_event(
            AuditEventType.PASSWORD_RESET_REQUESTED,
            user.id,
            "Password reset requested",
        ))
        if self._notifier:
            await self._notifier.password_reset(user, token, reset.expires_at)

    async def reset_password(self, token: str, new_password: str) -> PublicUser:
        """
        Set a new password with an emailed reset code.

        Using a code closes every other open code for the same account.

        Raises:
            PayloadValidationError: If new_password is too short
            AuthenticationError: If the code is unknown, used or expired
        """
        self._validator.raise_issues(
            self._validator.check_password(new_password),
            "Invalid new password",
        )
        try:
            user = await self._storage.complete_password_reset(
                _digest((token or "").strip()),
                generate_password_hash(new_password),
                datetime.utcnow(),
            )
        except (MissingRecordError, StaleStateError):
            raise AuthenticationError("Invalid or expired reset code")

        await self._audit_logger.log(AuditEventBuilder.account_event(
            AuditEventType.PASSWORD_RESET,
            user.id,
            "Password reset",
        ))
        return user.public()

    # -------------------------------------------------------------------------
    # Inbox
    # -------------------------------------------------------------------------

    async def list_notifications(
        self,
        user_id: UUID,
        page: int = 1,
        limit: Optional[int] = None,
        unread_only: bool = False,
    ) -> NotificationPage:
        """The user's inbox, newest first, with the unread count."""
        limit = self._settings.default_page_size if limit is None else limit
        self._validator.ensure_valid(self._validator.validate_page(page, limit))
        await self._load_user(user_id)

        total = await self._storage.count_notifications(user_id, unread_only=unread_only)
        items = await self._storage.list_notifications(
            user_id,
            unread_only=unread_only,
            limit=limit,
            offset=(page - 1) * limit,
        )
        unread = total if unread_only else await self._storage.count_notifications(
            user_id, unread_only=True,
        )
        return NotificationPage(
            items=items,
            pagination=Pagination(
                page=page,
                limit=limit,
                total_items=total,
                total_pages=math.ceil(total / limit),
            ),
            unread_count=unread,
        )

    async def mark_notifications_read(
        self,
        user_id: UUID,
        notification_ids: Optional[list[UUID]] = None,
    ) -> int:
        """Mark some (or, with no ids, all) of the user's notifications read."""
        await self._load_user(user_id)
        return await self._storage.mark_notifications_read(user_id, notification_ids)


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
