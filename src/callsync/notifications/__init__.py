"""Opt-in email notifications for sync outcomes.

Exports:
    NotificationService: Renders and sends ``sync_success`` / ``sync_error`` emails.
"""

from __future__ import annotations

from src.callsync.notifications.email import NotificationService

__all__ = ["NotificationService"]
