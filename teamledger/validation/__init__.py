"""Validation package."""

from teamledger.validation.validator import LedgerValidator

__all__ = ["LedgerValidator"]
