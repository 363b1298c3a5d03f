"""User time-credit balances."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from time_bank_service.services.hours import from_storage, to_storage

if TYPE_CHECKING:
    from time_bank_service.services.database import Database


class AccountExistsError(Exception):
    """Raised when opening an account that already exists."""


class AccountNotFoundError(Exception):
    """Raised when the user has no balance record."""


class InsufficientBalanceError(Exception):
    """Raised when a debit exceeds the current balance."""


class BalanceStore:
    """
    Reads and writes user balances.

    A balance never drops below zero: `debit` checks the current value
    inside the same transaction that writes the new one.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    def open_account(self, user_id: str, initial_balance: Decimal) -> dict[str, Any]:
        """
        Create a balance record for a user.

        Raises:
            AccountExistsError: the user already has a balance record
            ValueError: initial_balance is negative
        """
        if initial_balance < 0:
            msg = "Initial balance must be non-negative"
            raise ValueError(msg)

        created_at = datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
        with self._database.transaction() as db:
            try:
                db.execute(
                    "INSERT INTO balances (user_id, time_balance, created_at) VALUES (?, ?, ?)",
                    (user_id, to_storage(initial_balance), created_at),
                )
            except sqlite3.IntegrityError as exc:
                msg = f"Account already exists for user {user_id}"
                raise AccountExistsError(msg) from exc

        return {
            "user_id": user_id,
            "time_balance": from_storage(to_storage(initial_balance)),
            "created_at": created_at,
        }

    def get_account(self, user_id: str) -> dict[str, Any] | None:
        """Look up a balance record. Returns None if not found."""
        with self._database.read() as db:
            row = db.execute(
                "SELECT user_id, time_balance, created_at FROM balances WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "user_id": row["user_id"],
            "time_balance": from_storage(row["time_balance"]),
            "created_at": row["created_at"],
        }

    def get_balance(self, user_id: str) -> Decimal:
        """
        Current balance of a user.

        Raises:
            AccountNotFoundError: the user has no balance record
        """
        account = self.get_account(user_id)
        if account is None:
            msg = f"No account for user {user_id}"
            raise AccountNotFoundError(msg)
        balance: Decimal = account["time_balance"]
        return balance

    def credit(self, user_id: str, amount: Decimal) -> Decimal:
        """Add hours to a balance and return the new balance."""
        if amount <= 0:
            msg = "Credit amount must be positive"
            raise ValueError(msg)

        with self._database.transaction():
            new_balance = self.get_balance(user_id) + amount
            self._write(user_id, new_balance)
        return new_balance

    def debit(self, user_id: str, amount: Decimal) -> Decimal:
        """
        Remove hours from a balance and return the new balance.

        Raises:
            InsufficientBalanceError: amount exceeds the current balance
        """
        if amount <= 0:
            msg = "Debit amount must be positive"
            raise ValueError(msg)

        with self._database.transaction():
            current = self.get_balance(user_id)
            if amount > current:
                msg = f"Balance {current} is less than {amount}"
                raise InsufficientBalanceError(msg)
            new_balance = current - amount
            self._write(user_id, new_balance)
        return new_balance

    def _write(self, user_id: str, balance: Decimal) -> None:
        with self._database.transaction() as db:
            db.execute(
                "UPDATE balances SET time_balance = ? WHERE user_id = ?",
                (to_storage(balance), user_id),
            )
