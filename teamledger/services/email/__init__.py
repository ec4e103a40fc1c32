"""Email package."""

from teamledger.services.email import templates
from teamledger.services.email.smtp_service import (
    EmailDeliveryError,
    EmailService,
    OutgoingEmail,
)

__all__ = [
    "EmailDeliveryError",
    "EmailService",
    "OutgoingEmail",
    "templates",
]
