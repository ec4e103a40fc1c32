"""
Main Orchestrator for TeamLedger

This module ties together all the components:
1. Storage (SQL ledger, optional Google Sheets audit sink)
2. Authorization gate and validator
3. Audit logger and notification dispatcher
4. The flows callers actually use

DESIGN DECISION: The flows share ONE gate, ONE validator, ONE audit
logger and ONE notifier, so every entry point enforces the same rules.
"""

from typing import NamedTuple, Optional

import structlog

from teamledger.audit import AuditLogger
from teamledger.authorization import AuthorizationGate
from teamledger.flows import AccountFlow, ChangeRequestFlow, TeamFlow, TransactionFlow
from teamledger.notifications import NotificationDispatcher
from teamledger.reports import ReportService
from teamledger.services.email import EmailService
from teamledger.services.storage import (
    AuditStorageInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    SqlLedgerStorage,
)
from teamledger.validation import LedgerValidator


logger = structlog.get_logger(__name__)


class AppComponents(NamedTuple):
    """Everything a front end needs."""

    accounts: AccountFlow
    teams: TeamFlow
    transactions: TransactionFlow
    change_requests: ChangeRequestFlow
    reports: ReportService
    storage: LedgerStorageInterface
    audit_logger: AuditLogger
    notifier: NotificationDispatcher


def build_components(
    storage: LedgerStorageInterface,
    email_service: Optional[EmailService] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
) -> AppComponents:
    """Wire flows around an already-constructed store."""
    audit_logger = AuditLogger(audit_storage)
    gate = AuthorizationGate(storage)
    validator = LedgerValidator()
    notifier = NotificationDispatcher(
        email_service or EmailService(),
        storage,
        audit_logger,
    )

    shared = dict(
        storage=storage,
        gate=gate,
        validator=validator,
        audit_logger=audit_logger,
        notifier=notifier,
    )
    return AppComponents(
        accounts=AccountFlow(**shared),
        teams=TeamFlow(**shared),
        transactions=TransactionFlow(**shared),
        change_requests=ChangeRequestFlow(**shared),
        reports=ReportService(storage, gate, audit_logger),
        storage=storage,
        audit_logger=audit_logger,
        notifier=notifier,
    )


def create_app_components(
    use_database: bool = True,
    use_sheets_audit: bool = True,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        use_database: Use the SQL store from settings. Set to False for
                      an in-memory store (demos, tests).
        use_sheets_audit: Mirror audit events to Google Sheets when it is
                          configured. Missing configuration falls back to
                          local-only audit logging.
    """
    if use_database:
        storage = SqlLedgerStorage()
        storage.create_schema()
    else:
        storage = InMemoryLedgerStorage()

    audit_storage = None
    if use_sheets_audit:
        try:
            audit_storage = GoogleSheetsAuditStorage(GoogleSheetsClient())
        except Exception as e:
            # Sheets not configured - continue with local logging only
            logger.warning("audit_sheets_not_configured", error=str(e))

    return build_components(storage, audit_storage=audit_storage)
