"""Services package."""

from teamledger.services.email import EmailDeliveryError, EmailService
from teamledger.services.storage import (
    AuditStorageInterface,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    MissingRecordError,
    SqlLedgerStorage,
    StaleStateError,
    StorageConnectionError,
    StorageError,
)

__all__ = [
    # Email
    "EmailDeliveryError",
    "EmailService",
    # Storage services
    "AuditStorageInterface",
    "DuplicateError",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    "LedgerStorageInterface",
    "MissingRecordError",
    "SqlLedgerStorage",
    "StaleStateError",
    "StorageConnectionError",
    "StorageError",
]
