"""Authorization package."""

from teamledger.authorization.gate import (
    AuthorizationDecision,
    AuthorizationGate,
    Capability,
    decide,
)

__all__ = [
    "AuthorizationDecision",
    "AuthorizationGate",
    "Capability",
    "decide",
]
