"""
SQLite Storage Implementation

One SQLite database holds staged actions, the ledger, the rate cache and
the audit log.

DESIGN DECISION: Every write that must be atomic runs inside a
`BEGIN IMMEDIATE` transaction. IMMEDIATE takes the database write lock up
front, so two concurrent approvals cannot interleave their balance
read-modify-write, and a check-then-insert cannot race another writer.
Uniqueness is also enforced by indexes:
- pending_actions: (COALESCE(batch_id, ''), signature)
- transactions:    pending_action_id
- rate_cache:      (from_currency, to_currency, rate_date, source)

Each call opens its own connection and runs in a worker thread, so the
async API never blocks the event loop on disk I/O or the write lock.

Decimals are stored as TEXT to avoid float rounding.
"""

import asyncio
import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterator, Optional, Union
from uuid import UUID

import structlog

from ledger_intake.models.action import (
    Action,
    PendingAction,
    PendingStatus,
    action_adapter,
    utc_now,
)
from ledger_intake.models.audit import AuditEvent
from ledger_intake.models.ledger import (
    RateQuote,
    Transaction,
    Vault,
    VaultEntry,
    VaultMovement,
)
from ledger_intake.services.storage.interface import (
    AuditStorageInterface,
    InsufficientBalanceError,
    LedgerStorage,
    PendingActionStorage,
    RateCacheStorage,
    StorageError,
)


logger = structlog.get_logger(__name__)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS pending_actions (
      id TEXT PRIMARY KEY,
      batch_id TEXT,
      source TEXT NOT NULL,
      raw_input TEXT NOT NULL,
      raw_response TEXT,
      action_json TEXT,
      confidence REAL NOT NULL,
      status TEXT NOT NULL,
      signature TEXT NOT NULL,
      created_at TEXT NOT NULL,
      decided_at TEXT,
      meta_json TEXT NOT NULL,
      rejection_reason TEXT,
      committed_transaction_id TEXT,
      commit_error TEXT
    );
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_pending_batch_signature
      ON pending_actions (COALESCE(batch_id, ''), signature);
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_pending_status ON pending_actions (status);
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
      id TEXT PRIMARY KEY,
      pending_action_id TEXT NOT NULL UNIQUE,
      tx_date TEXT NOT NULL,
      type TEXT NOT NULL,
      asset TEXT NOT NULL,
      valuation_pending INTEGER NOT NULL,
      created_at TEXT NOT NULL,
      record_json TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS vaults (
      name TEXT PRIMARY KEY,
      allow_overdraft INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS vault_balances (
      vault TEXT NOT NULL REFERENCES vaults (name),
      asset TEXT NOT NULL,
      balance TEXT NOT NULL,
      PRIMARY KEY (vault, asset)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS vault_entries (
      seq INTEGER PRIMARY KEY AUTOINCREMENT,
      id TEXT NOT NULL UNIQUE,
      vault TEXT NOT NULL REFERENCES vaults (name),
      asset TEXT NOT NULL,
      kind TEXT NOT NULL,
      amount TEXT NOT NULL,
      usd_value TEXT,
      transaction_id TEXT NOT NULL REFERENCES transactions (id),
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_cache (
      from_currency TEXT NOT NULL,
      to_currency TEXT NOT NULL,
      rate_date TEXT NOT NULL,
      source TEXT NOT NULL,
      rate TEXT NOT NULL,
      fetched_at TEXT NOT NULL,
      PRIMARY KEY (from_currency, to_currency, rate_date, source)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
      event_id TEXT PRIMARY KEY,
      timestamp TEXT NOT NULL,
      event_type TEXT NOT NULL,
      severity TEXT NOT NULL,
      entity_type TEXT,
      entity_id TEXT,
      correlation_id TEXT,
      record_json TEXT NOT NULL
    );
    """,
)


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _row_to_pending(row: sqlite3.Row) -> PendingAction:
    return PendingAction(
        id=row["id"],
        batch_id=row["batch_id"],
        source=row["source"],
        raw_input=row["raw_input"],
        raw_response=row["raw_response"],
        action=json.loads(row["action_json"]) if row["action_json"] else None,
        confidence=row["confidence"],
        status=row["status"],
        signature=row["signature"],
        created_at=row["created_at"],
        decided_at=row["decided_at"],
        meta=json.loads(row["meta_json"]),
        rejection_reason=row["rejection_reason"],
        committed_transaction_id=row["committed_transaction_id"],
        commit_error=row["commit_error"],
    )


def _row_to_entry(row: sqlite3.Row) -> VaultEntry:
    return VaultEntry(
        id=row["id"],
        vault=row["vault"],
        asset=row["asset"],
        kind=row["kind"],
        amount=Decimal(row["amount"]),
        usd_value=_dec(row["usd_value"]),
        allow_overdraft=bool(row["allow_overdraft"]),
        transaction_id=row["transaction_id"],
        created_at=row["created_at"],
    )


class SQLiteStore(
    PendingActionStorage,
    LedgerStorage,
    RateCacheStorage,
    AuditStorageInterface,
):
    """
    SQLite implementation of every storage interface.

    Usage:
        store = SQLiteStore("ledger_intake.db")
        pending, created = await store.insert_if_absent(pending_action)
    """

    def __init__(
        self,
        database_path: Union[str, Path],
        busy_timeout_seconds: float = 30.0,
    ):
        self._path = str(database_path)
        self._timeout = busy_timeout_seconds
        self.init_schema()

    @property
    def database_path(self) -> str:
        return self._path

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        # isolation_level=None: we issue BEGIN/COMMIT ourselves
        con = sqlite3.connect(self._path, timeout=self._timeout, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys=ON;")
        try:
            yield con
        finally:
            con.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._conn() as con:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                con.execute("ROLLBACK")
                raise
            con.execute("COMMIT")

    def init_schema(self) -> None:
        """Create tables and indexes if missing."""
        with self._conn() as con:
            con.execute("PRAGMA journal_mode=WAL;")
            for statement in _SCHEMA:
                con.execute(statement)

    # =========================================================================
    # PENDING ACTIONS
    # =========================================================================

    def _find_by_signature(
        self,
        con: sqlite3.Connection,
        batch_id: Optional[str],
        signature: str,
    ) -> Optional[PendingAction]:
        row = con.execute(
            "SELECT * FROM pending_actions WHERE COALESCE(batch_id, '') = ? AND signature = ?",
            (batch_id or "", signature),
        ).fetchone()
        return _row_to_pending(row) if row else None

    def _insert_if_absent(self, pending: PendingAction) -> tuple[PendingAction, bool]:
        data = pending.model_dump(mode="json")
        try:
            with self._transaction() as con:
                existing = self._find_by_signature(con, pending.batch_id, pending.signature)
                if existing is not None:
                    return existing, False
                con.execute(
                    """
                    INSERT INTO pending_actions (
                      id, batch_id, source, raw_input, raw_response, action_json,
                      confidence, status, signature, created_at, decided_at,
                      meta_json, rejection_reason, committed_transaction_id, commit_error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        data["id"],
                        data["batch_id"],
                        data["source"],
                        data["raw_input"],
                        data["raw_response"],
                        json.dumps(data["action"]) if data["action"] is not None else None,
                        data["confidence"],
                        data["status"],
                        data["signature"],
                        data["created_at"],
                        data["decided_at"],
                        json.dumps(data["meta"], ensure_ascii=False),
                        data["rejection_reason"],
                        data["committed_transaction_id"],
                        data["commit_error"],
                    ),
                )
        except sqlite3.IntegrityError:
            # Lost a race on the unique index; the winner's row is the answer
            with self._conn() as con:
                existing = self._find_by_signature(con, pending.batch_id, pending.signature)
            if existing is None:
                raise
            logger.info("pending_insert_race_lost", signature=pending.signature)
            return existing, False
        return pending, True

    async def insert_if_absent(self, pending: PendingAction) -> tuple[PendingAction, bool]:
        return await asyncio.to_thread(self._insert_if_absent, pending)

    def _get_pending(self, pending_id: UUID) -> Optional[PendingAction]:
        with self._conn() as con:
            row = con.execute(
                "SELECT * FROM pending_actions WHERE id = ?", (str(pending_id),)
            ).fetchone()
        return _row_to_pending(row) if row else None

    async def get_pending_action(self, pending_id: UUID) -> Optional[PendingAction]:
        return await asyncio.to_thread(self._get_pending, pending_id)

    def _list_pending(
        self,
        batch_id: Optional[str],
        status: Optional[PendingStatus],
        limit: int,
        offset: int,
    ) -> list[PendingAction]:
        clauses = []
        params: list = []
        if batch_id is not None:
            clauses.append("batch_id = ?")
            params.append(batch_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(PendingStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._conn() as con:
            rows = con.execute(
                f"SELECT * FROM pending_actions {where} "
                "ORDER BY created_at, rowid LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [_row_to_pending(row) for row in rows]

    async def list_pending_actions(
        self,
        batch_id: Optional[str] = None,
        status: Optional[PendingStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[PendingAction]:
        return await asyncio.to_thread(self._list_pending, batch_id, status, limit, offset)

    def _transition_status(
        self,
        pending_id: UUID,
        to_status: PendingStatus,
        decided_at: datetime,
        rejection_reason: Optional[str],
    ) -> bool:
        if to_status is PendingStatus.PENDING:
            raise StorageError("Cannot transition back to pending")
        sql = (
            "UPDATE pending_actions SET status = ?, decided_at = ?, rejection_reason = ? "
            "WHERE id = ? AND status = 'pending'"
        )
        if to_status is PendingStatus.APPROVED:
            sql += " AND action_json IS NOT NULL"
        with self._transaction() as con:
            cursor = con.execute(
                sql,
                (to_status.value, decided_at.isoformat(), rejection_reason, str(pending_id)),
            )
            return cursor.rowcount == 1

    async def transition_status(
        self,
        pending_id: UUID,
        to_status: PendingStatus,
        decided_at: datetime,
        rejection_reason: Optional[str] = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._transition_status, pending_id, to_status, decided_at, rejection_reason
        )

    def _approve_batch(self, batch_id: str, threshold: float, decided_at: datetime) -> list[UUID]:
        with self._transaction() as con:
            rows = con.execute(
                """
                SELECT id FROM pending_actions
                WHERE batch_id = ? AND status = 'pending'
                  AND action_json IS NOT NULL AND confidence >= ?
                ORDER BY created_at, rowid
                """,
                (batch_id, threshold),
            ).fetchall()
            ids = [row["id"] for row in rows]
            con.executemany(
                "UPDATE pending_actions SET status = 'approved', decided_at = ? "
                "WHERE id = ? AND status = 'pending'",
                [(decided_at.isoformat(), pending_id) for pending_id in ids],
            )
        return [UUID(pending_id) for pending_id in ids]

    async def approve_batch(
        self,
        batch_id: str,
        threshold: float,
        decided_at: datetime,
    ) -> list[UUID]:
        return await asyncio.to_thread(self._approve_batch, batch_id, threshold, decided_at)

    def _amend_action(
        self,
        pending_id: UUID,
        action: Action,
        confidence: float,
        meta: dict,
    ) -> bool:
        action_json = json.dumps(action_adapter.dump_python(action, mode="json"))
        with self._transaction() as con:
            cursor = con.execute(
                "UPDATE pending_actions SET action_json = ?, confidence = ?, meta_json = ? "
                "WHERE id = ? AND status = 'pending'",
                (action_json, confidence, json.dumps(meta, ensure_ascii=False, default=str), str(pending_id)),
            )
            return cursor.rowcount == 1

    async def amend_action(
        self,
        pending_id: UUID,
        action: Action,
        confidence: float,
        meta: dict,
    ) -> bool:
        return await asyncio.to_thread(self._amend_action, pending_id, action, confidence, meta)

    def _record_commit_error(self, pending_id: UUID, error: str) -> None:
        with self._transaction() as con:
            con.execute(
                "UPDATE pending_actions SET commit_error = ? WHERE id = ?",
                (error, str(pending_id)),
            )

    async def record_commit_error(self, pending_id: UUID, error: str) -> None:
        await asyncio.to_thread(self._record_commit_error, pending_id, error)

    # =========================================================================
    # LEDGER
    # =========================================================================

    def _ensure_vault_row(
        self,
        con: sqlite3.Connection,
        name: str,
        allow_overdraft: bool,
    ) -> bool:
        """Create the vault on first use. Returns its effective overdraft flag."""
        con.execute(
            "INSERT OR IGNORE INTO vaults (name, allow_overdraft, created_at) VALUES (?, ?, ?)",
            (name, int(allow_overdraft), utc_now().isoformat()),
        )
        if allow_overdraft:
            # Configuration can grant overdraft to an existing vault, never revoke it
            con.execute("UPDATE vaults SET allow_overdraft = 1 WHERE name = ?", (name,))
        row = con.execute(
            "SELECT allow_overdraft FROM vaults WHERE name = ?", (name,)
        ).fetchone()
        return bool(row["allow_overdraft"])

    def _read_balance(self, con: sqlite3.Connection, vault: str, asset: str) -> Decimal:
        row = con.execute(
            "SELECT balance FROM vault_balances WHERE vault = ? AND asset = ?",
            (vault, asset),
        ).fetchone()
        return Decimal(row["balance"]) if row else Decimal("0")

    def _entries_for(self, con: sqlite3.Connection, transaction_id: str) -> list[VaultEntry]:
        rows = con.execute(
            """
            SELECT e.*, v.allow_overdraft FROM vault_entries e
            JOIN vaults v ON v.name = e.vault
            WHERE e.transaction_id = ? ORDER BY e.seq
            """,
            (transaction_id,),
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def _commit_transaction(
        self,
        transaction: Transaction,
        movements: list[VaultMovement],
    ) -> tuple[Transaction, list[VaultEntry], bool]:
        with self._transaction() as con:
            row = con.execute(
                "SELECT record_json FROM transactions WHERE pending_action_id = ?",
                (str(transaction.pending_action_id),),
            ).fetchone()
            if row is not None:
                existing = Transaction.model_validate_json(row["record_json"])
                return existing, self._entries_for(con, str(existing.id)), False

            balances: dict[tuple[str, str], Decimal] = {}
            entries: list[VaultEntry] = []
            for movement in movements:
                allow_overdraft = self._ensure_vault_row(
                    con, movement.vault, movement.allow_overdraft
                )
                key = (movement.vault, movement.asset)
                if key not in balances:
                    balances[key] = self._read_balance(con, *key)
                new_balance = balances[key] + movement.signed_amount
                if new_balance < 0 and not allow_overdraft:
                    raise InsufficientBalanceError(
                        movement.vault, movement.asset, balances[key], movement.signed_amount
                    )
                balances[key] = new_balance
                entries.append(VaultEntry(
                    **movement.model_dump(exclude={"allow_overdraft"}),
                    allow_overdraft=allow_overdraft,
                    transaction_id=transaction.id,
                    created_at=transaction.created_at,
                ))

            con.execute(
                """
                INSERT INTO transactions (
                  id, pending_action_id, tx_date, type, asset,
                  valuation_pending, created_at, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(transaction.id),
                    str(transaction.pending_action_id),
                    transaction.date.isoformat(),
                    transaction.type,
                    transaction.asset,
                    int(transaction.valuation_pending),
                    transaction.created_at.isoformat(),
                    transaction.model_dump_json(),
                ),
            )
            for (vault, asset), balance in balances.items():
                con.execute(
                    """
                    INSERT INTO vault_balances (vault, asset, balance) VALUES (?, ?, ?)
                    ON CONFLICT (vault, asset) DO UPDATE SET balance = excluded.balance
                    """,
                    (vault, asset, str(balance)),
                )
            con.executemany(
                """
                INSERT INTO vault_entries (
                  id, vault, asset, kind, amount, usd_value, transaction_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        str(entry.id),
                        entry.vault,
                        entry.asset,
                        entry.kind.value,
                        str(entry.amount),
                        str(entry.usd_value) if entry.usd_value is not None else None,
                        str(entry.transaction_id),
                        entry.created_at.isoformat(),
                    )
                    for entry in entries
                ],
            )
            cursor = con.execute(
                """
                UPDATE pending_actions
                SET committed_transaction_id = ?, commit_error = NULL
                WHERE id = ? AND status = 'approved' AND committed_transaction_id IS NULL
                """,
                (str(transaction.id), str(transaction.pending_action_id)),
            )
            if cursor.rowcount != 1:
                raise StorageError(
                    f"Pending action {transaction.pending_action_id} is not approved"
                )
        return transaction, entries, True

    async def commit_transaction(
        self,
        transaction: Transaction,
        movements: list[VaultMovement],
    ) -> tuple[Transaction, list[VaultEntry], bool]:
        return await asyncio.to_thread(self._commit_transaction, transaction, movements)

    def _get_transaction(self, column: str, value: UUID) -> Optional[Transaction]:
        with self._conn() as con:
            row = con.execute(
                f"SELECT record_json FROM transactions WHERE {column} = ?", (str(value),)
            ).fetchone()
        return Transaction.model_validate_json(row["record_json"]) if row else None

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        return await asyncio.to_thread(self._get_transaction, "id", transaction_id)

    async def get_transaction_for_action(self, pending_id: UUID) -> Optional[Transaction]:
        return await asyncio.to_thread(self._get_transaction, "pending_action_id", pending_id)

    def _list_entries(
        self,
        vault: Optional[str],
        transaction_id: Optional[UUID],
    ) -> list[VaultEntry]:
        clauses = []
        params: list = []
        if vault is not None:
            clauses.append("e.vault = ?")
            params.append(vault)
        if transaction_id is not None:
            clauses.append("e.transaction_id = ?")
            params.append(str(transaction_id))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._conn() as con:
            rows = con.execute(
                f"""
                SELECT e.*, v.allow_overdraft FROM vault_entries e
                JOIN vaults v ON v.name = e.vault
                {where} ORDER BY e.seq
                """,
                params,
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    async def list_entries(
        self,
        vault: Optional[str] = None,
        transaction_id: Optional[UUID] = None,
    ) -> list[VaultEntry]:
        return await asyncio.to_thread(self._list_entries, vault, transaction_id)

    def _load_vault(self, con: sqlite3.Connection, name: str) -> Optional[Vault]:
        row = con.execute("SELECT * FROM vaults WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        balances = {
            b["asset"]: Decimal(b["balance"])
            for b in con.execute(
                "SELECT asset, balance FROM vault_balances WHERE vault = ?", (name,)
            ).fetchall()
        }
        return Vault(
            name=row["name"],
            allow_overdraft=bool(row["allow_overdraft"]),
            balances=balances,
            created_at=row["created_at"],
        )

    def _ensure_vault(self, name: str, allow_overdraft: bool) -> Vault:
        with self._transaction() as con:
            self._ensure_vault_row(con, name, allow_overdraft)
            return self._load_vault(con, name)

    async def ensure_vault(self, name: str, allow_overdraft: bool = False) -> Vault:
        return await asyncio.to_thread(self._ensure_vault, name, allow_overdraft)

    def _get_vault(self, name: str) -> Optional[Vault]:
        with self._conn() as con:
            return self._load_vault(con, name)

    async def get_vault(self, name: str) -> Optional[Vault]:
        return await asyncio.to_thread(self._get_vault, name)

    def _list_vaults(self) -> list[Vault]:
        with self._conn() as con:
            names = [row["name"] for row in con.execute("SELECT name FROM vaults ORDER BY name")]
            return [self._load_vault(con, name) for name in names]

    async def list_vaults(self) -> list[Vault]:
        return await asyncio.to_thread(self._list_vaults)

    def _list_pending_valuation(self, limit: int) -> list[Transaction]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT record_json FROM transactions WHERE valuation_pending = 1 "
                "ORDER BY created_at LIMIT ?",
                (limit,),
            ).fetchall()
        return [Transaction.model_validate_json(row["record_json"]) for row in rows]

    async def list_pending_valuation(self, limit: int = 100) -> list[Transaction]:
        return await asyncio.to_thread(self._list_pending_valuation, limit)

    # =========================================================================
    # RATE CACHE
    # =========================================================================

    @staticmethod
    def _row_to_quote(row: sqlite3.Row) -> RateQuote:
        return RateQuote(
            from_currency=row["from_currency"],
            to_currency=row["to_currency"],
            rate_date=row["rate_date"],
            source=row["source"],
            rate=Decimal(row["rate"]),
            fetched_at=row["fetched_at"],
        )

    def _get_rate(self, from_currency: str, to_currency: str, rate_date: date) -> Optional[RateQuote]:
        with self._conn() as con:
            row = con.execute(
                """
                SELECT * FROM rate_cache
                WHERE from_currency = ? AND to_currency = ? AND rate_date = ?
                ORDER BY fetched_at LIMIT 1
                """,
                (from_currency.upper(), to_currency.upper(), rate_date.isoformat()),
            ).fetchone()
        return self._row_to_quote(row) if row else None

    async def get_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate_date: date,
    ) -> Optional[RateQuote]:
        return await asyncio.to_thread(self._get_rate, from_currency, to_currency, rate_date)

    def _put_rate(self, quote: RateQuote) -> RateQuote:
        key = (
            quote.from_currency,
            quote.to_currency,
            quote.rate_date.isoformat(),
            quote.source,
        )
        with self._transaction() as con:
            con.execute(
                """
                INSERT OR IGNORE INTO rate_cache (
                  from_currency, to_currency, rate_date, source, rate, fetched_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                key + (str(quote.rate), quote.fetched_at.isoformat()),
            )
            row = con.execute(
                """
                SELECT * FROM rate_cache
                WHERE from_currency = ? AND to_currency = ? AND rate_date = ? AND source = ?
                """,
                key,
            ).fetchone()
        return self._row_to_quote(row)

    async def put_rate(self, quote: RateQuote) -> RateQuote:
        return await asyncio.to_thread(self._put_rate, quote)

    # =========================================================================
    # AUDIT LOG
    # =========================================================================

    def _append_event(self, event: AuditEvent) -> bool:
        with self._transaction() as con:
            con.execute(
                """
                INSERT INTO audit_log (
                  event_id, timestamp, event_type, severity, entity_type,
                  entity_id, correlation_id, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(event.event_id),
                    event.timestamp.isoformat(),
                    event.event_type.value,
                    event.severity.value,
                    event.entity_type,
                    event.entity_id,
                    str(event.correlation_id) if event.correlation_id else None,
                    event.model_dump_json(),
                ),
            )
        return True

    async def append_event(self, event: AuditEvent) -> bool:
        return await asyncio.to_thread(self._append_event, event)

    def _query_events(self, where: str, params: tuple, order: str, limit: Optional[int] = None) -> list[AuditEvent]:
        sql = f"SELECT record_json FROM audit_log {where} ORDER BY timestamp {order}, rowid {order}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        with self._conn() as con:
            rows = con.execute(sql, params).fetchall()
        return [AuditEvent.model_validate_json(row["record_json"]) for row in rows]

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return await asyncio.to_thread(
            self._query_events, "WHERE correlation_id = ?", (str(correlation_id),), "ASC"
        )

    async def get_events_by_entity(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        return await asyncio.to_thread(
            self._query_events,
            "WHERE entity_type = ? AND entity_id = ?",
            (entity_type, str(entity_id)),
            "ASC",
        )

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return await asyncio.to_thread(self._query_events, "", (), "DESC", limit)
