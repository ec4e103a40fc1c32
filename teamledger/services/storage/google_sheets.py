"""
Google Sheets Audit Storage

DESIGN DECISION: The audit trail can be mirrored to a Google Sheet because:
1. Team owners can read the history without database access
2. No extra infrastructure for an append-only log
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- Not suitable for high-volume data (fine for a team ledger's audit log)
- Limited query capabilities (we filter in Python)

Ledger data itself lives in the SQL store; only audit events go here.
"""

import json
from datetime import datetime
from typing import Optional
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from teamledger.config import get_settings
from teamledger.models.audit import AuditEvent, AuditEventType, AuditSeverity
from teamledger.services.storage.interface import (
    AuditStorageInterface,
    StorageConnectionError,
    StorageError,
)


logger = structlog.get_logger(__name__)


# Column mappings for the audit sheet (matches AuditEvent.to_sheets_row)
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "team_id",
    "actor_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """Authorize with the service account credentials."""
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise StorageConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise StorageConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(self._settings.spreadsheet_id)
            except gspread.SpreadsheetNotFound:
                raise StorageConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the audit worksheet."""
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(self._settings.audit_sheet_name)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=self._settings.audit_sheet_name,
                rows=5000,
                cols=len(AUDIT_COLUMNS),
            )
            sheet.append_row(AUDIT_COLUMNS)
        return sheet


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            entity_type=safe_get(4) or None,
            entity_id=UUID(safe_get(5)) if safe_get(5) else None,
            team_id=UUID(safe_get(6)) if safe_get(6) else None,
            actor_id=UUID(safe_get(7)) if safe_get(7) else None,
            description=safe_get(8),
            details=json.loads(safe_get(9)) if safe_get(9) else {},
            error_message=safe_get(10) or None,
            is_user_action=safe_get(11).lower() == "true",
        )

    def _read_events(self) -> list[AuditEvent]:
        sheet = self._client.get_audit_sheet()
        events = []
        for row in sheet.get_all_values()[1:]:
            if not row or not row[0]:
                continue
            try:
                events.append(self._row_to_event(row))
            except (ValueError, IndexError) as e:
                logger.warning("audit_row_skipped", row_id=row[0], error=str(e))
        return events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _append_row(self, row: list) -> None:
        self._client.get_audit_sheet().append_row(row, value_input_option="RAW")

    async def append_event(self, event: AuditEvent) -> bool:
        try:
            self._append_row(event.to_sheets_row())
            return True
        except Exception as e:
            # Audit persistence must never break the calling workflow
            logger.error(
                "audit_sheet_write_failed",
                event_id=str(event.event_id),
                error=str(e),
            )
            return False

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        try:
            events = [
                e for e in self._read_events()
                if e.entity_type == entity_type and e.entity_id == entity_id
            ]
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        team_id: Optional[UUID] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        try:
            events = self._read_events()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
        if team_id is not None:
            events = [e for e in events if e.team_id == team_id]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
