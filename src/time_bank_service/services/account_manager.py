"""Balance accounts and ledger history."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from starlette.concurrency import run_in_threadpool

from time_bank_service.core.exceptions import ServiceError, retryable
from time_bank_service.logging import get_logger
from time_bank_service.services.balance_store import AccountExistsError
from time_bank_service.services.database import StoreTimeoutError
from time_bank_service.services.hours import to_json

if TYPE_CHECKING:
    from time_bank_service.services.balance_store import BalanceStore
    from time_bank_service.services.ledger_store import LedgerStore


class AccountManager:
    """Opens balance accounts and exposes balances and earned-time history."""

    def __init__(
        self,
        balances: BalanceStore,
        ledger: LedgerStore,
        initial_balance: Decimal,
    ) -> None:
        self._balances = balances
        self._ledger = ledger
        self._initial_balance = initial_balance
        self._logger = get_logger(__name__)

    @staticmethod
    def _account_to_response(account: dict[str, Any]) -> dict[str, Any]:
        return {
            "user_id": account["user_id"],
            "time_balance": to_json(account["time_balance"]),
            "created_at": account["created_at"],
        }

    def _load_account(self, user_id: str) -> dict[str, Any]:
        account = self._balances.get_account(user_id)
        if account is None:
            raise ServiceError("USER_NOT_FOUND", "User has no time balance account", 404, {})
        return account

    async def open_account(self, user_id: str) -> dict[str, Any]:
        """
        Open a balance account for the caller with the configured starting credit.

        Raises:
            ServiceError: ACCOUNT_EXISTS, STORE_TIMEOUT
        """
        try:
            account = await run_in_threadpool(
                self._balances.open_account, user_id, self._initial_balance
            )
        except AccountExistsError as exc:
            raise ServiceError(
                "ACCOUNT_EXISTS",
                "An account already exists for this user",
                409,
                {},
            ) from exc
        except StoreTimeoutError as exc:
            raise retryable("STORE_TIMEOUT", "Balance store did not respond in time", 503) from exc

        self._logger.info(
            "Account opened",
            extra={"user_id": user_id, "time_balance": str(account["time_balance"])},
        )
        return self._account_to_response(account)

    async def get_account(self, user_id: str) -> dict[str, Any]:
        """
        Get a user's balance.

        Raises:
            ServiceError: USER_NOT_FOUND, STORE_TIMEOUT
        """
        try:
            account = await run_in_threadpool(self._load_account, user_id)
        except StoreTimeoutError as exc:
            raise retryable("STORE_TIMEOUT", "Balance store did not respond in time", 503) from exc
        return self._account_to_response(account)

    async def list_ledger(self, user_id: str) -> list[dict[str, Any]]:
        """List hours credited to a user, newest first."""

        def load() -> list[dict[str, Any]]:
            self._load_account(user_id)
            return self._ledger.list_by_user(user_id)

        try:
            entries = await run_in_threadpool(load)
        except StoreTimeoutError as exc:
            raise retryable("STORE_TIMEOUT", "Balance store did not respond in time", 503) from exc
        return [
            {
                "entry_id": entry["entry_id"],
                "task_id": entry["task_id"],
                "user_id": entry["user_id"],
                "time_earned": to_json(entry["time_earned"]),
                "timestamp": entry["timestamp"],
            }
            for entry in entries
        ]
