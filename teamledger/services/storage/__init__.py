"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
The ledger lives in SQL (SQLAlchemy); the audit trail can be mirrored to
Google Sheets. In-memory doubles back the test suite.
"""

from teamledger.services.storage.interface import (
    AuditStorageInterface,
    ChangeRequestStorageInterface,
    DuplicateError,
    LedgerStorageInterface,
    MissingRecordError,
    StaleStateError,
    StorageConnectionError,
    StorageError,
    TeamStorageInterface,
    TransactionStorageInterface,
    UserStorageInterface,
)
from teamledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
)
from teamledger.services.storage.sql import SqlLedgerStorage, create_ledger_engine
from teamledger.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "ChangeRequestStorageInterface",
    "LedgerStorageInterface",
    "TeamStorageInterface",
    "TransactionStorageInterface",
    "UserStorageInterface",
    # Exceptions
    "DuplicateError",
    "MissingRecordError",
    "StaleStateError",
    "StorageConnectionError",
    "StorageError",
    # Implementations
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    "SqlLedgerStorage",
    "create_ledger_engine",
]
