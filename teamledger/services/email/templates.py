"""
Email templates.

Each function composes one OutgoingEmail. Plain text only; the console
and most mail clients render it fine and it keeps tests readable.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from teamledger.models.ledger import (
    ChangeRequest,
    ChangeRequestKind,
    ChangeRequestStatus,
    Invitation,
    PublicUser,
    Team,
    Transaction,
)
from teamledger.services.email.smtp_service import OutgoingEmail


SIGNATURE = "\n\n-- \nTeamLedger"


def _describe(txn: Transaction, currency: str) -> str:
    line = f"{txn.type.value} of {currency} {txn.amount:,.2f} in {txn.category_name} on {txn.transaction_date.isoformat()}"
    if txn.description:
        line += f" ({txn.description})"
    return line


def welcome(user: PublicUser) -> OutgoingEmail:
    return OutgoingEmail(
        to=user.email,
        subject="Welcome to TeamLedger",
        text=(
            f"Hello {user.full_name},\n\n"
            "Your account is ready. Create a team, invite your colleagues "
            "and start recording income and expenses together."
            + SIGNATURE
        ),
    )


def team_invitation(
    invitation: Invitation,
    team: Team,
    inviter: PublicUser,
    recipient: Optional[PublicUser] = None,
) -> OutgoingEmail:
    greeting = f"Hello {recipient.full_name}," if recipient else "Hello,"
    text = (
        f"{greeting}\n\n"
        f'{inviter.full_name} invited you to join the team "{team.name}" '
        f"as {invitation.role.value}.\n\n"
        f"  Invitation code: {invitation.token}\n"
        f"  Valid until:     {invitation.expires_at:%Y-%m-%d %H:%M} UTC\n\n"
    )
    if recipient is None:
        text += f"Create an account with {invitation.email} first, then "
    else:
        text += "Sign in and "
    text += "accept or decline the invitation with the code above."
    return OutgoingEmail(
        to=invitation.email,
        subject=f'Invitation to join "{team.name}"',
        text=text + SIGNATURE,
    )


def invitation_answered(
    inviter: PublicUser,
    invitee: PublicUser,
    team: Team,
    accepted: bool,
) -> OutgoingEmail:
    outcome = "accepted" if accepted else "declined"
    return OutgoingEmail(
        to=inviter.email,
        subject=f"Invitation {outcome}",
        text=(
            f"Hello {inviter.full_name},\n\n"
            f'{invitee.full_name} {outcome} your invitation to "{team.name}".'
            + SIGNATURE
        ),
    )


def password_reset(user: PublicUser, token: str, expires_at: datetime) -> OutgoingEmail:
    return OutgoingEmail(
        to=user.email,
        subject="Reset your TeamLedger password",
        text=(
            f"Hello {user.full_name},\n\n"
            "Someone asked to reset the password of this account. Use this "
            "code to choose a new one:\n\n"
            f"  Reset code:  {token}\n"
            f"  Valid until: {expires_at:%Y-%m-%d %H:%M} UTC\n\n"
            "If it wasn't you, ignore this email; your password is unchanged."
            + SIGNATURE
        ),
    )


def change_request_created(
    reviewer: PublicUser,
    requester: PublicUser,
    team: Team,
    request: ChangeRequest,
    txn: Transaction,
) -> OutgoingEmail:
    action = "edit" if request.kind == ChangeRequestKind.EDIT else "delete"
    text = (
        f"Hello {reviewer.full_name},\n\n"
        f'{requester.full_name} asked to {action} a transaction in "{team.name}":\n'
        f"  {_describe(txn, team.currency)}\n"
    )
    if request.reason:
        text += f"\nReason: {request.reason}\n"
    text += "\nPlease confirm or reject the request." + SIGNATURE
    return OutgoingEmail(
        to=reviewer.email,
        subject=f'Change request pending in "{team.name}"',
        text=text,
    )


def change_request_resolved(
    requester: PublicUser,
    resolver: Optional[PublicUser],
    team: Team,
    request: ChangeRequest,
) -> OutgoingEmail:
    outcome = "confirmed" if request.status == ChangeRequestStatus.CONFIRMED else "rejected"
    by = f" by {resolver.full_name}" if resolver else ""
    text = (
        f"Hello {requester.full_name},\n\n"
        f'Your {request.kind.value} request in "{team.name}" was {outcome}{by}.\n'
    )
    if request.resolution_note:
        text += f"\nNote: {request.resolution_note}\n"
    return OutgoingEmail(
        to=requester.email,
        subject=f"Change request {outcome}",
        text=text + SIGNATURE,
    )


def transaction_changed_by_other(
    creator: PublicUser,
    actor: PublicUser,
    team: Team,
    txn: Transaction,
    deleted: bool,
) -> OutgoingEmail:
    verb = "deleted" if deleted else "edited"
    return OutgoingEmail(
        to=creator.email,
        subject=f'Your transaction in "{team.name}" was {verb}',
        text=(
            f"Hello {creator.full_name},\n\n"
            f"{actor.full_name} {verb} a transaction you recorded:\n"
            f"  {_describe(txn, team.currency)}"
            + SIGNATURE
        ),
    )


def budget_alert(
    recipient: PublicUser,
    team: Team,
    spent: Decimal,
    usage_percent: Decimal,
) -> OutgoingEmail:
    remaining = team.budget - spent
    state = "exceeded" if spent > team.budget else "nearly reached"
    return OutgoingEmail(
        to=recipient.email,
        subject=f'Budget alert for "{team.name}"',
        text=(
            f"Hello {recipient.full_name},\n\n"
            f'The team "{team.name}" has {state} its budget.\n\n'
            f"  Budget:    {team.currency} {team.budget:,.2f}\n"
            f"  Spent:     {team.currency} {spent:,.2f}\n"
            f"  Remaining: {team.currency} {remaining:,.2f}\n"
            f"  Usage:     {usage_percent}%"
            + SIGNATURE
        ),
    )
