"""
Workflow error taxonomy.

Every failure a flow reports is one of these. Each carries a stable
`code` and an HTTP-style `status_code` so a boundary layer can map it
without knowing anything about the workflow. None of them is retried
inside the flows.
"""

from typing import Optional

from teamledger.models.ledger import ValidationIssue


class LedgerError(Exception):
    """Base exception for all workflow failures."""

    code = "error"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(LedgerError):
    """Referenced team, membership, transaction, request or user is absent."""

    code = "not_found"
    status_code = 404


class ForbiddenError(LedgerError):
    """Authenticated, but the role does not grant the capability."""

    code = "forbidden"
    status_code = 403


class ConflictError(LedgerError):
    """A state-transition precondition does not hold."""

    code = "conflict"
    status_code = 409


class PayloadValidationError(LedgerError):
    """Malformed payload. Nothing was persisted."""

    code = "validation"
    status_code = 400

    def __init__(self, message: str, issues: Optional[list[ValidationIssue]] = None):
        self.issues = issues or []
        super().__init__(
            message,
            details={"issues": [issue.model_dump() for issue in self.issues]},
        )


class AuthenticationError(LedgerError):
    """Credentials did not match."""

    code = "unauthenticated"
    status_code = 401
