"""
Workflow flows.

Each flow takes the authenticated actor id as its first argument and
raises only LedgerError subclasses.
"""

from teamledger.flows.accounts import AccountFlow
from teamledger.flows.change_requests import ChangeRequestFlow
from teamledger.flows.teams import SUPERSEDED_BY_REMOVAL, TeamFlow
from teamledger.flows.transactions import (
    SUPERSEDED_BY_DELETE,
    SUPERSEDED_BY_EDIT,
    TransactionFlow,
)

__all__ = [
    "AccountFlow",
    "ChangeRequestFlow",
    "SUPERSEDED_BY_DELETE",
    "SUPERSEDED_BY_EDIT",
    "SUPERSEDED_BY_REMOVAL",
    "TeamFlow",
    "TransactionFlow",
]
