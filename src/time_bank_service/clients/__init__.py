"""Clients for external collaborators."""

from time_bank_service.clients.notification_client import NotificationClient
from time_bank_service.clients.session_client import SessionClient

__all__ = ["NotificationClient", "SessionClient"]
