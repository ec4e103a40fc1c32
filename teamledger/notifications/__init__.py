"""Notifications package."""

from teamledger.notifications.dispatcher import NotificationDispatcher

__all__ = ["NotificationDispatcher"]
