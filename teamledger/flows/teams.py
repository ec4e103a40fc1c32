"""
Team Flow

Team lifecycle, settings and membership management.

Every operation goes through the authorization gate first, then
validation, then a single storage call. Invalid payloads persist nothing.
"""

import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from teamledger.authorization import Capability
from teamledger.errors import ConflictError, ForbiddenError, NotFoundError
from teamledger.models.audit import AuditEventBuilder, AuditEventType
from teamledger.models.ledger import (
    DEFAULT_CATEGORIES,
    Category,
    Invitation,
    InvitationStatus,
    MemberView,
    Membership,
    Role,
    Team,
    TeamCreate,
    ValidationIssue,
)
from teamledger.services.storage import (
    DuplicateError,
    MissingRecordError,
    StaleStateError,
)
from teamledger.flows.base import BaseFlow


SUPERSEDED_BY_REMOVAL = "superseded: requester left the team"


class TeamFlow(BaseFlow):
    """
    Team management.

    Flow for every setter:
    1. Gate → capability for the actor's role
    2. Validate → payload shape
    3. Persist → one storage call
    4. Audit
    """

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_team(self, actor_id: UUID, payload: TeamCreate) -> Team:
        """
        Create a team owned by the actor.

        The actor becomes the one and only member, with role OWNER.
        Teams start with the default categories unless some are supplied.

        Raises:
            NotFoundError: If the actor doesn't exist
            PayloadValidationError: If the payload is invalid
        """
        if await self._storage.get_user(actor_id) is None:
            raise NotFoundError("User not found", details={"user_id": str(actor_id)})

        self._validator.ensure_valid(
            self._validator.validate_team_create(payload),
            "Invalid team",
        )

        team = Team(
            name=payload.name,
            owner_id=actor_id,
            currency=(payload.currency or self._settings.default_currency).upper(),
            budget=payload.budget,
            income_goal=payload.income_goal,
            categories=(
                payload.categories
                if payload.categories is not None
                else [c.model_copy() for c in DEFAULT_CATEGORIES]
            ),
        )
        owner = Membership(team_id=team.id, user_id=actor_id, role=Role.OWNER)
        await self._storage.create_team(team, owner)

        await self._audit_logger.log(AuditEventBuilder.team_created(team.id, team.name, actor_id))
        return team

    async def get_team(self, actor_id: UUID, team_id: UUID) -> Team:
        await self._authorize(team_id, actor_id, Capability.VIEW_TEAM)
        return await self._load_team(team_id)

    async def list_teams(
        self,
        actor_id: UUID,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> list[Team]:
        """Teams the actor belongs to, oldest membership first."""
        limit = self._settings.default_page_size if limit is None else limit
        self._validator.ensure_valid(self._validator.validate_page(page, limit))
        return await self._storage.list_teams_for_user(
            actor_id,
            limit=limit,
            offset=(page - 1) * limit,
        )

    async def search_teams(
        self,
        actor_id: UUID,
        query: str,
        limit: Optional[int] = None,
    ) -> list[Team]:
        """Case-insensitive substring search over the actor's own teams."""
        limit = self._settings.default_page_size if limit is None else limit
        self._validator.ensure_valid(self._validator.validate_page(1, limit))
        return await self._storage.list_teams_for_user(
            actor_id,
            name_contains=(query or "").strip() or None,
            limit=limit,
        )

    async def delete_team(self, actor_id: UUID, team_id: UUID) -> None:
        """
        Delete a team with its memberships, transactions and requests.

        Raises:
            NotFoundError: If the team doesn't exist or the actor isn't a member
            ForbiddenError: Unless the actor is the OWNER
        """
        await self._authorize(team_id, actor_id, Capability.DELETE_TEAM)
        if not await self._storage.delete_team(team_id):
            raise NotFoundError("Team not found", details={"team_id": str(team_id)})

        await self._audit_logger.log(AuditEventBuilder.team_deleted(team_id, actor_id))

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    async def _update_setting(
        self,
        actor_id: UUID,
        team_id: UUID,
        capability: Capability,
        issues: list[ValidationIssue],
        changes: dict[str, Any],
    ) -> Team:
        await self._authorize(team_id, actor_id, capability)
        self._validator.raise_issues(issues, "Invalid team setting")
        try:
            team = await self._storage.update_team(team_id, changes)
        except MissingRecordError:
            raise NotFoundError("Team not found", details={"team_id": str(team_id)})

        for setting, value in changes.items():
            await self._audit_logger.log(AuditEventBuilder.team_settings_updated(
                team_id=team_id,
                actor_id=actor_id,
                setting=setting,
                value=value,
            ))
        return team

    async def rename_team(self, actor_id: UUID, team_id: UUID, name: str) -> Team:
        return await self._update_setting(
            actor_id, team_id, Capability.RENAME_TEAM,
            self._validator.check_team_name(name),
            {"name": (name or "").strip()},
        )

    async def set_budget(self, actor_id: UUID, team_id: UUID, budget: Decimal) -> Team:
        return await self._update_setting(
            actor_id, team_id, Capability.SET_BUDGET,
            self._validator.check_money("budget", budget),
            {"budget": budget},
        )

    async def set_income_goal(self, actor_id: UUID, team_id: UUID, income_goal: Decimal) -> Team:
        return await self._update_setting(
            actor_id, team_id, Capability.SET_INCOME_GOAL,
            self._validator.check_money("income_goal", income_goal),
            {"income_goal": income_goal},
        )

    async def set_currency(self, actor_id: UUID, team_id: UUID, currency: str) -> Team:
        return await self._update_setting(
            actor_id, team_id, Capability.SET_CURRENCY,
            self._validator.check_currency(currency),
            {"currency": (currency or "").strip().upper()},
        )

    async def set_categories(
        self,
        actor_id: UUID,
        team_id: UUID,
        categories: list[Category],
    ) -> Team:
        """Replace the whole category list."""
        issues = self._validator.check_categories(categories)
        if not categories:
            issues.append(ValidationIssue(
                field="categories",
                issue_type="missing",
                message="A team needs at least one category",
            ))
        return await self._update_setting(
            actor_id, team_id, Capability.SET_CATEGORIES,
            issues,
            {"categories": [c.model_dump() for c in categories]},
        )

    async def add_category(self, actor_id: UUID, team_id: UUID, category: Category) -> Team:
        """
        Raises:
            ConflictError: If a category with the same name (any case) exists
        """
        await self._authorize(team_id, actor_id, Capability.SET_CATEGORIES)
        team = await self._load_team(team_id)
        if team.find_category(category.name):
            raise ConflictError(
                f"Category already exists: {category.name}",
                details={"category": category.name},
            )
        categories = [c.model_dump() for c in team.categories] + [category.model_dump()]
        return await self._update_setting(
            actor_id, team_id, Capability.SET_CATEGORIES, [],
            {"categories": categories},
        )

    async def set_report_permission(self, actor_id: UUID, team_id: UUID, allowed: bool) -> Team:
        """Let plain members view team reports (or stop them)."""
        return await self._update_setting(
            actor_id, team_id, Capability.SET_REPORT_PERMISSION, [],
            {"allow_member_view_report": bool(allowed)},
        )

    # -------------------------------------------------------------------------
    # Invitations
    # -------------------------------------------------------------------------

    async def invite_member(
        self,
        actor_id: UUID,
        team_id: UUID,
        email: str,
        role: Role = Role.MEMBER,
    ) -> Invitation:
        """
        Invite an email address to join the team.

        Nothing changes in the team until the invitee accepts. The address
        doesn't need an account yet; it must have one by the time the
        invitation is answered.

        Raises:
            ForbiddenError: Unless the actor is OWNER or ADMIN
            PayloadValidationError: If role is OWNER or the email is malformed
            ConflictError: If the address already belongs to a member, or a
                           live invitation for it is still pending
        """
        await self._authorize(team_id, actor_id, Capability.MANAGE_MEMBERS)
        issues = self._validator.check_email(email)
        if role == Role.OWNER:
            issues.append(ValidationIssue(
                field="role",
                issue_type="invalid_value",
                message="A team has exactly one owner; invite the user as admin or member",
            ))
        self._validator.raise_issues(issues, "Invalid invitation")

        email = email.strip().lower()
        team = await self._load_team(team_id)
        existing = await self._storage.get_user_by_email(email)
        if existing and await self._storage.get_membership(team_id, existing.id):
            raise ConflictError("User is already a member of this team", details={"email": email})

        now = datetime.utcnow()
        invitation = Invitation(
            token=secrets.token_urlsafe(32),
            team_id=team_id,
            email=email,
            role=role,
            invited_by=actor_id,
            created_at=now,
            expires_at=now + timedelta(days=self._settings.invitation_ttl_days),
        )
        try:
            invitation = await self._storage.insert_invitation(invitation)
        except DuplicateError:
            raise ConflictError(
                "An invitation for this email is already pending",
                details={"email": email},
            )
        except MissingRecordError:
            raise NotFoundError("Team not found", details={"team_id": str(team_id)})

        await self._audit_logger.log(AuditEventBuilder.invitation_event(
            AuditEventType.MEMBER_INVITED, invitation.id, team_id, actor_id, email, role.value,
        ))
        if self._notifier:
            await self._notifier.member_invited(team, invitation)
        return invitation

    async def respond_to_invitation(
        self,
        actor_id: UUID,
        token: str,
        accept: bool,
    ) -> Invitation:
        """
        Accept or decline an invitation addressed to the actor's email.

        Accepting creates the membership with the invited role in the same
        storage call that closes the invitation, so a token is never used
        twice.

        Raises:
            NotFoundError: If the token is unknown or the actor doesn't exist
            ForbiddenError: If the invitation was sent to another address
            ConflictError: If it was already answered, has expired, or the
                           actor already belongs to the team
        """
        user = await self._storage.get_user(actor_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": str(actor_id)})
        invitation = await self._storage.get_invitation_by_token((token or "").strip())
        if invitation is None:
            raise NotFoundError("Invitation not found")
        if invitation.email.lower() != user.email.lower():
            raise ForbiddenError("This invitation was sent to another address")

        try:
            answered, membership = await self._storage.respond_to_invitation(
                invitation.token, actor_id, accept, datetime.utcnow(),
            )
        except MissingRecordError:
            raise NotFoundError("Invitation not found")
        except StaleStateError as e:
            raise ConflictError(str(e), details={"invitation_id": str(invitation.id)})
        except DuplicateError:
            raise ConflictError(
                "You already belong to this team",
                details={"team_id": str(invitation.team_id)},
            )

        if membership:
            await self._audit_logger.log(AuditEventBuilder.member_changed(
                AuditEventType.MEMBER_ADDED, answered.team_id, actor_id, actor_id,
                membership.role.value,
            ))
        else:
            await self._audit_logger.log(AuditEventBuilder.invitation_event(
                AuditEventType.INVITATION_DECLINED, answered.id, answered.team_id,
                actor_id, answered.email, answered.role.value,
            ))

        if self._notifier:
            team = await self._storage.get_team(answered.team_id)
            if team:
                await self._notifier.invitation_answered(team, answered)
        return answered

    async def list_invitations(
        self,
        actor_id: UUID,
        team_id: UUID,
        status: Optional[InvitationStatus] = None,
    ) -> list[Invitation]:
        """Invitations sent for a team, newest first. OWNER/ADMIN only."""
        await self._authorize(team_id, actor_id, Capability.MANAGE_MEMBERS)
        return await self._storage.list_invitations(team_id, status)

    # -------------------------------------------------------------------------
    # Members
    # -------------------------------------------------------------------------

    async def list_members(self, actor_id: UUID, team_id: UUID) -> list[MemberView]:
        await self._authorize(team_id, actor_id, Capability.VIEW_TEAM)
        members = []
        for membership in await self._storage.list_memberships(team_id):
            user = await self._storage.get_user(membership.user_id)
            if user is None:
                continue
            members.append(MemberView(
                user=user.public(),
                role=membership.role,
                joined_at=membership.joined_at,
            ))
        return members

    async def change_member_role(
        self,
        actor_id: UUID,
        team_id: UUID,
        member_id: UUID,
        role: Role,
    ) -> Membership:
        """
        Switch a member between ADMIN and MEMBER.

        Raises:
            ForbiddenError: Unless the actor is the OWNER
            PayloadValidationError: If role is OWNER
            NotFoundError: If the target isn't a member
            ConflictError: If the target is the owner
        """
        await self._authorize(team_id, actor_id, Capability.CHANGE_MEMBER_ROLE)
        if role == Role.OWNER:
            self._validator.raise_issues([ValidationIssue(
                field="role",
                issue_type="invalid_value",
                message="Ownership cannot be assigned through a role change",
            )])

        target = await self._storage.get_membership(team_id, member_id)
        if target is None:
            raise NotFoundError("Member not found", details={"user_id": str(member_id)})
        if target.role == Role.OWNER:
            raise ConflictError("The owner's role cannot be changed")

        try:
            updated = await self._storage.update_membership_role(team_id, member_id, role)
        except MissingRecordError:
            raise NotFoundError("Member not found", details={"user_id": str(member_id)})
        except StaleStateError as e:
            raise ConflictError(str(e))

        await self._audit_logger.log(AuditEventBuilder.member_changed(
            AuditEventType.MEMBER_ROLE_CHANGED, team_id, actor_id, member_id, role.value,
        ))
        return updated

    async def remove_member(self, actor_id: UUID, team_id: UUID, member_id: UUID) -> None:
        """
        Raises:
            ForbiddenError: Unless the actor is OWNER or ADMIN; when removing
                            the owner; when an ADMIN removes another ADMIN
            NotFoundError: If the target isn't a member
        """
        decision = await self._authorize(team_id, actor_id, Capability.MANAGE_MEMBERS)
        target = await self._storage.get_membership(team_id, member_id)
        if target is None:
            raise NotFoundError("Member not found", details={"user_id": str(member_id)})
        if target.role == Role.OWNER:
            raise ForbiddenError("The team owner cannot be removed")
        if (
            decision.role == Role.ADMIN
            and target.role == Role.ADMIN
            and member_id != actor_id
        ):
            raise ForbiddenError("Admins cannot remove other admins")

        await self._remove(team_id, actor_id, member_id)

    async def leave_team(self, actor_id: UUID, team_id: UUID) -> None:
        """
        Raises:
            ConflictError: If the actor is the owner (delete the team instead)
        """
        decision = await self._authorize(team_id, actor_id, Capability.VIEW_TEAM)
        if decision.role == Role.OWNER:
            raise ConflictError("The owner cannot leave the team; delete it instead")
        await self._remove(team_id, actor_id, actor_id)

    async def _remove(self, team_id: UUID, actor_id: UUID, member_id: UUID) -> None:
        try:
            superseded = await self._storage.remove_membership(
                team_id, member_id, actor_id, SUPERSEDED_BY_REMOVAL,
            )
        except MissingRecordError:
            raise NotFoundError("Member not found", details={"user_id": str(member_id)})

        await self._audit_logger.log(AuditEventBuilder.member_changed(
            AuditEventType.MEMBER_REMOVED, team_id, actor_id, member_id,
        ))
        for request in superseded:
            await self._audit_logger.log(AuditEventBuilder.change_superseded(
                request.id, team_id, actor_id, SUPERSEDED_BY_REMOVAL,
            ))
        if superseded and self._notifier:
            team = await self._storage.get_team(team_id)
            if team:
                for request in superseded:
                    await self._notifier.change_resolved(team, request)
