"""
Credit ledger: reserve / finalize / refund against a per-user balance.

Every mutation appends an immutable ledger row and updates the balance in the
same atomic step.  The check-then-debit sequence of `reserve` is serialized
per user (a per-user lock in memory, `SELECT ... FOR UPDATE` in Postgres), so
concurrent reservations can never drive a balance negative or push a user
past the daily cap.

Ledger rows for one request_id read as a small state machine:
    reserve            → reservation open
    reserve, finalize  → committed
    reserve, refund    → refunded (a later reserve may reopen it on retry)

A request_id belongs to the first user that reserves it; reserving, finalizing
or refunding it as anyone else is rejected with VALIDATION_FAILED.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from postgrest.exceptions import APIError
from supabase import Client

from ..config import CreditPolicy
from ..errors import CreditError, ErrorCode, StoreUnavailable, ValidationFailed

logger = logging.getLogger(__name__)

ALLOWED_ACTIONS = frozenset({
    "image.gen",
    "video.gen",
    "story.gen",
    "mask.gen",
    "preset",
    "custom",
})


class LedgerAction(str, Enum):
    RESERVE = "reserve"
    FINALIZE = "finalize"
    REFUND = "refund"
    GRANT = "grant"


@dataclass(frozen=True)
class LedgerEntry:
    user_id: str
    request_id: str
    action: LedgerAction
    amount: int
    status: str
    reason: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ReserveResult:
    balance: int
    replayed: bool = False


def check_reservation_args(action: str, cost: int) -> None:
    if not isinstance(cost, int) or isinstance(cost, bool) or cost <= 0:
        raise ValidationFailed(f"Invalid cost: {cost} - must be a positive integer")
    if action not in ALLOWED_ACTIONS:
        raise CreditError(
            ErrorCode.INVALID_ACTION,
            f"Invalid action: {action}. Allowed: {', '.join(sorted(ALLOWED_ACTIONS))}",
        )


# ═════════════════════════════════════════════════════════════════════════════
# In-memory ledger
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryCreditLedger:
    """Process-local ledger; one lock per user guards the balance row."""

    def __init__(self, policy: CreditPolicy, clock=None):
        self._policy = policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._registry_lock = threading.Lock()
        self._user_locks: dict[str, threading.Lock] = {}
        self._balances: dict[str, int] = {}
        self._entries: list[LedgerEntry] = []
        self._owners: dict[str, str] = {}  # request_id → user_id

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.Lock()
            return lock

    def _append(self, entry: LedgerEntry) -> None:
        with self._registry_lock:
            self._entries.append(entry)

    def entries(self, request_id: Optional[str] = None, user_id: Optional[str] = None) -> list[LedgerEntry]:
        with self._registry_lock:
            return [
                e for e in self._entries
                if (request_id is None or e.request_id == request_id)
                and (user_id is None or e.user_id == user_id)
            ]

    def _claim(self, request_id: str, user_id: str) -> bool:
        """Bind request_id to user_id; True when this call made the binding."""
        with self._registry_lock:
            owner = self._owners.get(request_id)
            if owner is None:
                self._owners[request_id] = user_id
                return True
        if owner != user_id:
            raise ValidationFailed(f"request_id {request_id} belongs to another user")
        return False

    def _check_owner(self, request_id: str, user_id: str) -> bool:
        with self._registry_lock:
            owner = self._owners.get(request_id)
        if owner is None:
            return False
        if owner != user_id:
            raise ValidationFailed(f"request_id {request_id} belongs to another user")
        return True

    def _open_reservation(self, request_id: str, user_id: str) -> Optional[LedgerEntry]:
        """Latest reserve row for the request, if nothing has settled it yet."""
        rows = [e for e in self.entries(request_id, user_id) if e.action != LedgerAction.GRANT]
        if rows and rows[-1].action == LedgerAction.RESERVE:
            return rows[-1]
        return None

    def _consumed_today(self, user_id: str) -> int:
        today = self._clock().date()
        total = 0
        for e in self.entries(user_id=user_id):
            if e.created_at.date() != today:
                continue
            if e.action == LedgerAction.RESERVE:
                total += e.amount
            elif e.action == LedgerAction.REFUND:
                total -= e.amount
        return total

    def balance(self, user_id: str) -> int:
        with self._lock_for(user_id):
            return self._balances.get(user_id, 0)

    def reserve(self, user_id: str, request_id: str, action: str, cost: int) -> ReserveResult:
        check_reservation_args(action, cost)
        claimed = self._claim(request_id, user_id)
        try:
            return self._reserve(user_id, request_id, action, cost)
        except CreditError:
            if claimed:
                with self._registry_lock:
                    self._owners.pop(request_id, None)
            raise

    def _reserve(self, user_id: str, request_id: str, action: str, cost: int) -> ReserveResult:
        with self._lock_for(user_id):
            if user_id not in self._balances:
                grant = self._policy.starter_grant
                self._balances[user_id] = grant
                self._append(LedgerEntry(
                    user_id, f"grant:{user_id}", LedgerAction.GRANT, grant,
                    "completed", "starter grant", self._clock(),
                ))
                logger.info(f"Provisioned {grant} starter credits for user {user_id}")

            balance = self._balances[user_id]

            if self._open_reservation(request_id, user_id) is not None:
                logger.info(f"Reservation {request_id} already open, replaying (balance={balance})")
                return ReserveResult(balance=balance, replayed=True)

            consumed = self._consumed_today(user_id)
            if consumed + cost > self._policy.daily_cap:
                logger.warning(
                    f"Daily cap reached for {user_id}: {consumed}+{cost} > {self._policy.daily_cap}"
                )
                raise CreditError(
                    ErrorCode.DAILY_CAP_REACHED,
                    "Daily generation limit reached. Please try again tomorrow.",
                    balance=balance,
                )

            if balance < cost:
                raise CreditError(
                    ErrorCode.INSUFFICIENT_CREDITS,
                    f"You need {cost} credits but only have {balance}.",
                    balance=balance,
                )

            self._balances[user_id] = balance - cost
            self._append(LedgerEntry(
                user_id, request_id, LedgerAction.RESERVE, cost, "reserved", action, self._clock(),
            ))
            logger.info(f"Reserved {cost} credits for {user_id} ({request_id}), balance={balance - cost}")
            return ReserveResult(balance=balance - cost)

    def finalize(self, request_id: str, user_id: str) -> bool:
        if not self._check_owner(request_id, user_id):
            return False
        with self._lock_for(user_id):
            open_row = self._open_reservation(request_id, user_id)
            if open_row is None:
                return False
            self._append(LedgerEntry(
                user_id, request_id, LedgerAction.FINALIZE, open_row.amount,
                "completed", open_row.reason, self._clock(),
            ))
            logger.info(f"Finalized reservation {request_id}")
            return True

    def refund(self, request_id: str, user_id: str, amount: Optional[int] = None, reason: str = "") -> bool:
        if not self._check_owner(request_id, user_id):
            return False
        with self._lock_for(user_id):
            open_row = self._open_reservation(request_id, user_id)
            if open_row is None:
                return False
            refund = open_row.amount if amount is None else max(0, min(amount, open_row.amount))
            self._balances[user_id] += refund
            self._append(LedgerEntry(
                user_id, request_id, LedgerAction.REFUND, refund,
                "refunded", reason or open_row.reason, self._clock(),
            ))
            logger.info(f"Refunded {refund} credits to {user_id} ({request_id})")
            return True


# ═════════════════════════════════════════════════════════════════════════════
# Supabase / Postgres ledger
# ═════════════════════════════════════════════════════════════════════════════

_DB_ERROR_CODES = {
    ErrorCode.DAILY_CAP_REACHED.value: ErrorCode.DAILY_CAP_REACHED,
    ErrorCode.INSUFFICIENT_CREDITS.value: ErrorCode.INSUFFICIENT_CREDITS,
    ErrorCode.INVALID_ACTION.value: ErrorCode.INVALID_ACTION,
}


class SupabaseCreditLedger:
    """
    Ledger backed by the plpgsql functions in migrations/001_generation_jobs.sql.

    Each RPC runs in a single transaction that locks the user's balance row,
    so the serialization guarantee is held by Postgres, not by this process.
    """

    def __init__(self, client: Client, policy: CreditPolicy):
        self._client = client
        self._policy = policy

    def _rpc(self, fn: str, params: dict):
        try:
            return self._client.rpc(fn, params).execute().data
        except APIError as e:
            message = getattr(e, "message", None) or str(e)
            for token, code in _DB_ERROR_CODES.items():
                if token in message:
                    raise CreditError(code, message) from e
            if ErrorCode.VALIDATION_FAILED.value in message:
                raise ValidationFailed(message) from e
            logger.error(f"Credit RPC {fn} failed: {message}")
            raise StoreUnavailable(f"{fn} failed: {message}") from e

    @staticmethod
    def _first(data) -> dict:
        if isinstance(data, list):
            return data[0] if data else {}
        return data or {}

    def reserve(self, user_id: str, request_id: str, action: str, cost: int) -> ReserveResult:
        check_reservation_args(action, cost)
        row = self._first(self._rpc("reserve_credits", {
            "p_user_id": user_id,
            "p_request_id": request_id,
            "p_action": action,
            "p_cost": cost,
            "p_starter_grant": self._policy.starter_grant,
            "p_daily_cap": self._policy.daily_cap,
        }))
        if not isinstance(row.get("balance"), int):
            raise StoreUnavailable(f"reserve_credits returned unexpected payload: {row}")
        return ReserveResult(balance=row["balance"], replayed=bool(row.get("replayed")))

    def finalize(self, request_id: str, user_id: str) -> bool:
        row = self._first(self._rpc("finalize_credits", {
            "p_request_id": request_id,
            "p_user_id": user_id,
        }))
        return bool(row.get("applied"))

    def refund(self, request_id: str, user_id: str, amount: Optional[int] = None, reason: str = "") -> bool:
        row = self._first(self._rpc("refund_credits", {
            "p_request_id": request_id,
            "p_user_id": user_id,
            "p_amount": amount,
            "p_reason": reason,
        }))
        return bool(row.get("applied"))

    def balance(self, user_id: str) -> int:
        try:
            result = (
                self._client.table("user_credits")
                .select("balance")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except APIError as e:
            raise StoreUnavailable(f"balance lookup failed: {e}") from e
        rows = result.data or []
        return rows[0]["balance"] if rows else 0

    def entries(self, request_id: Optional[str] = None, user_id: Optional[str] = None) -> list[LedgerEntry]:
        query = self._client.table("credits_ledger").select("*")
        if request_id is not None:
            query = query.eq("request_id", request_id)
        if user_id is not None:
            query = query.eq("user_id", user_id)
        try:
            result = query.order("id").execute()
        except APIError as e:
            raise StoreUnavailable(f"ledger lookup failed: {e}") from e
        return [
            LedgerEntry(
                user_id=row["user_id"],
                request_id=row["request_id"],
                action=LedgerAction(row["action"]),
                amount=row["amount"],
                status=row["status"],
                reason=row.get("reason") or "",
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in result.data or []
        ]
