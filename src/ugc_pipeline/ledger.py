import logging
import sqlite3
from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from ugc_pipeline.config import settings
from ugc_pipeline.db import iso, reading, unit_of_work

logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    pass


class InsufficientCredits(LedgerError):
    def __init__(self, user_id: str, balance: int, required: int) -> None:
        super().__init__(f"Insufficient credits. You have {balance} credits, but need {required}.")
        self.user_id = user_id
        self.balance = balance
        self.required = required


class AccountNotFound(LedgerError):
    pass


class DuplicateRefund(LedgerError):
    pass


class TransactionType(str, Enum):
    DEBIT = "DEBIT"
    REFUND = "REFUND"
    BONUS = "BONUS"
    SUBSCRIPTION_CREDIT = "SUBSCRIPTION_CREDIT"


class CreditTransaction(BaseModel):
    id: int
    user_id: str
    type: TransactionType
    amount: int
    balance_after: int
    related_job_id: str | None = None
    description: str = ""
    created_at: datetime


class CreditLedger:
    """Account balances plus the append-only transaction log.

    Every mutation updates ``accounts.credit_balance`` and inserts the matching
    ``credit_transactions`` row inside one sqlite transaction. Passing ``conn``
    joins a unit of work the caller already opened.
    """

    def __init__(self, database_path: str | None = None) -> None:
        self._database_path = database_path

    @property
    def database_path(self) -> str:
        return self._database_path or settings.database_path

    def _append(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        entry_type: TransactionType,
        amount: int,
        balance_after: int,
        related_job_id: str | None,
        description: str,
    ) -> int:
        ts = iso()
        conn.execute(
            "UPDATE accounts SET credit_balance = ?, updated_at = ? WHERE user_id = ?",
            (balance_after, ts, user_id),
        )
        cur = conn.execute(
            """
            INSERT INTO credit_transactions (user_id, type, amount, balance_after, related_job_id, description, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, entry_type.value, amount, balance_after, related_job_id, description, ts),
        )
        return int(cur.lastrowid)

    def _current_balance(self, conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute("SELECT credit_balance FROM accounts WHERE user_id = ?", (user_id,)).fetchone()
        if not row:
            raise AccountNotFound(f"Account {user_id} not found")
        return int(row["credit_balance"])

    def ensure_account(self, user_id: str, conn: sqlite3.Connection | None = None) -> None:
        ts = iso()
        with unit_of_work(conn, self.database_path) as c:
            c.execute(
                "INSERT INTO accounts (user_id, created_at, updated_at) VALUES (?, ?, ?) ON CONFLICT(user_id) DO NOTHING",
                (user_id, ts, ts),
            )

    def debit(
        self,
        user_id: str,
        amount: int,
        related_job_id: str,
        description: str = "Video generation",
        conn: sqlite3.Connection | None = None,
    ) -> int:
        if amount <= 0:
            raise ValueError("amount must be > 0")
        with unit_of_work(conn, self.database_path) as c:
            balance = self._current_balance(c, user_id)
            if balance < amount:
                raise InsufficientCredits(user_id, balance, amount)
            try:
                tx_id = self._append(c, user_id, TransactionType.DEBIT, amount, balance - amount, related_job_id, description)
            except sqlite3.IntegrityError as exc:
                raise LedgerError(f"Job {related_job_id} has already been debited") from exc
        logger.info("Debited %s credit(s) from %s for job %s", amount, user_id, related_job_id)
        return tx_id

    def refund(self, user_id: str, amount: int, related_job_id: str, reason: str) -> int:
        if amount <= 0:
            raise ValueError("amount must be > 0")
        with unit_of_work(None, self.database_path) as c:
            balance = self._current_balance(c, user_id)
            try:
                tx_id = self._append(c, user_id, TransactionType.REFUND, amount, balance + amount, related_job_id, reason)
            except sqlite3.IntegrityError as exc:
                raise DuplicateRefund(f"Job {related_job_id} has already been refunded") from exc
        logger.info("Refunded %s credit(s) to %s for job %s", amount, user_id, related_job_id)
        return tx_id

    def grant(
        self,
        user_id: str,
        amount: int,
        entry_type: TransactionType = TransactionType.BONUS,
        description: str = "manual grant",
    ) -> int:
        if amount <= 0:
            raise ValueError("amount must be > 0")
        if entry_type not in {TransactionType.BONUS, TransactionType.SUBSCRIPTION_CREDIT}:
            raise ValueError(f"cannot grant credits as {entry_type.value}")
        with unit_of_work(None, self.database_path) as c:
            self.ensure_account(user_id, conn=c)
            balance = self._current_balance(c, user_id)
            return self._append(c, user_id, entry_type, amount, balance + amount, None, description)

    def balance(self, user_id: str) -> int:
        with reading(self.database_path) as conn:
            row = conn.execute("SELECT credit_balance FROM accounts WHERE user_id = ?", (user_id,)).fetchone()
        return int(row["credit_balance"]) if row else 0

    def history(self, user_id: str, page: int = 1, limit: int = 20) -> tuple[list[CreditTransaction], int]:
        offset = max(page - 1, 0) * limit
        with reading(self.database_path) as conn:
            rows = conn.execute(
                "SELECT * FROM credit_transactions WHERE user_id = ? ORDER BY id DESC LIMIT ? OFFSET ?",
                (user_id, limit, offset),
            ).fetchall()
            total = conn.execute(
                "SELECT COUNT(*) c FROM credit_transactions WHERE user_id = ?", (user_id,)
            ).fetchone()["c"]
        return [CreditTransaction(**dict(r)) for r in rows], int(total)

    def transactions_for_job(self, job_id: str) -> list[CreditTransaction]:
        with reading(self.database_path) as conn:
            rows = conn.execute(
                "SELECT * FROM credit_transactions WHERE related_job_id = ? ORDER BY id",
                (job_id,),
            ).fetchall()
        return [CreditTransaction(**dict(r)) for r in rows]

    def _has_entry(self, job_id: str, entry_type: TransactionType) -> bool:
        with reading(self.database_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM credit_transactions WHERE related_job_id = ? AND type = ?",
                (job_id, entry_type.value),
            ).fetchone()
        return row is not None

    def has_debit(self, job_id: str) -> bool:
        return self._has_entry(job_id, TransactionType.DEBIT)

    def has_refund(self, job_id: str) -> bool:
        return self._has_entry(job_id, TransactionType.REFUND)
