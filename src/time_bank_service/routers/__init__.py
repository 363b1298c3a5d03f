"""API routers."""

from time_bank_service.routers import accounts, health, tasks

__all__ = ["accounts", "health", "tasks"]
