"""Contract and ticket storage for the commission engine.

SQLite-backed Contract Aggregate plus its ticket collections. Every engine
mutation runs inside transaction(): one writer at a time, commit on success,
rollback on any exception. Contract writes are guarded by lock_version
(optimistic concurrency).
"""

import sqlite3
import json
import threading
import time
import uuid
from contextlib import contextmanager

from protocol import ConcurrencyConflict, TicketKind, OPEN_CONTRACT_STATES, ACTIVE_RESOLUTION_STATES
from server.tickets import Ticket, ticket_from_dict


class CommissionStore:
    """SQLite-backed contract aggregate + ticket collections."""

    def __init__(self, db_path: str = ":memory:", clock=time.time):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self.clock = clock
        # Re-entrant so reads can run inside an open transaction
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS contracts (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'active',
                contract TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                lock_version INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS tickets (
                id TEXT PRIMARY KEY,
                contract_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                due_at REAL,
                target_id TEXT,
                data TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_contract_status ON contracts(status)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_ticket_contract ON tickets(contract_id, kind)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_ticket_due ON tickets(due_at)")
        self.db.commit()

    @contextmanager
    def transaction(self):
        """Hold the writer lock for a unit of work; commit or roll back as one."""
        with self._lock:
            try:
                yield self.db
            except BaseException:
                self.db.rollback()
                raise
            else:
                self.db.commit()

    # --- Contracts ---

    def create_contract(self, contract: dict) -> str:
        """Store a new contract. Returns contract ID."""
        contract_id = uuid.uuid4().hex[:16]
        now = self.clock()
        contract = {**contract, "id": contract_id}
        with self.transaction():
            self.db.execute(
                "INSERT INTO contracts (id, status, contract, version, lock_version, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (contract_id, contract["status"], json.dumps(contract), contract["version"], contract["lock_version"], now, now),
            )
        return contract_id

    def get_contract(self, contract_id: str) -> dict | None:
        """Get a contract by ID."""
        with self._lock:
            row = self.db.execute("SELECT * FROM contracts WHERE id = ?", (contract_id,)).fetchone()
        if not row:
            return None
        return self._row_to_dict(row)

    def list_contracts(self, status: str | None = None, limit: int = 50) -> list[dict]:
        with self._lock:
            if status:
                rows = self.db.execute(
                    "SELECT * FROM contracts WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (status, limit),
                ).fetchall()
            else:
                rows = self.db.execute(
                    "SELECT * FROM contracts ORDER BY created_at DESC LIMIT ?", (limit,),
                ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def save_contract(self, contract: dict, expected_lock_version: int) -> int:
        """Write the aggregate back if nobody else did in between.

        Must run inside transaction(). Bumps and returns the new lock_version;
        raises ConcurrencyConflict if the stored lock_version moved on.
        """
        new_lock_version = expected_lock_version + 1
        contract["lock_version"] = new_lock_version
        now = self.clock()
        cursor = self.db.execute(
            "UPDATE contracts SET status = ?, contract = ?, version = ?, lock_version = ?, updated_at = ? WHERE id = ? AND lock_version = ?",
            (contract["status"], json.dumps(contract), contract["version"], new_lock_version, now,
             contract["id"], expected_lock_version),
        )
        if cursor.rowcount == 0:
            contract["lock_version"] = expected_lock_version
            raise ConcurrencyConflict(f"Contract {contract['id']} was modified concurrently")
        return new_lock_version

    def _row_to_dict(self, row) -> dict:
        data = json.loads(row["contract"])
        data.update({
            "id": row["id"],
            "status": row["status"],
            "version": row["version"],
            "lock_version": row["lock_version"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        })
        return data

    # --- Tickets ---

    def new_ticket_id(self) -> str:
        return uuid.uuid4().hex[:16]

    def insert_ticket(self, ticket: Ticket):
        """Add a ticket. Must run inside transaction()."""
        now = self.clock()
        self.db.execute(
            "INSERT INTO tickets (id, contract_id, kind, status, due_at, target_id, data, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (ticket.id, ticket.contract_id, ticket.kind.value, ticket.status.value,
             ticket.due_at(), getattr(ticket, "target_id", None), json.dumps(ticket.to_dict()),
             ticket.created_at, now),
        )

    def save_ticket(self, ticket: Ticket):
        """Persist ticket state. Must run inside transaction()."""
        now = self.clock()
        cursor = self.db.execute(
            "UPDATE tickets SET status = ?, due_at = ?, data = ?, updated_at = ? WHERE id = ?",
            (ticket.status.value, ticket.due_at(), json.dumps(ticket.to_dict()), now, ticket.id),
        )
        return cursor.rowcount > 0

    def get_ticket(self, ticket_id: str, kind: TicketKind | None = None) -> Ticket | None:
        with self._lock:
            if kind is None:
                row = self.db.execute("SELECT data FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
            else:
                row = self.db.execute(
                    "SELECT data FROM tickets WHERE id = ? AND kind = ?", (ticket_id, kind.value),
                ).fetchone()
        if not row:
            return None
        return ticket_from_dict(json.loads(row["data"]))

    def tickets_for(self, contract_id: str, kind: TicketKind | None = None) -> list[Ticket]:
        """All tickets of a contract, oldest first."""
        with self._lock:
            if kind is None:
                rows = self.db.execute(
                    "SELECT data FROM tickets WHERE contract_id = ? ORDER BY created_at, rowid",
                    (contract_id,),
                ).fetchall()
            else:
                rows = self.db.execute(
                    "SELECT data FROM tickets WHERE contract_id = ? AND kind = ? ORDER BY created_at, rowid",
                    (contract_id, kind.value),
                ).fetchall()
        return [ticket_from_dict(json.loads(r["data"])) for r in rows]

    def due_tickets(self, now: float, limit: int = 200) -> list[dict]:
        """Tickets whose watched deadline has passed, oldest deadline first.

        Leaves out tickets the engine would only skip: those on closed
        contracts, tickets named by an active resolution, and uploads on a
        contract with any active resolution.
        """
        open_states = sorted(s.value for s in OPEN_CONTRACT_STATES)
        active = sorted(s.value for s in ACTIVE_RESOLUTION_STATES)
        sql = f"""
            SELECT t.id, t.contract_id, t.kind FROM tickets t
            JOIN contracts c ON c.id = t.contract_id
            WHERE t.due_at IS NOT NULL AND t.due_at <= ?
              AND c.status IN ({", ".join("?" * len(open_states))})
              AND (t.kind = ? OR NOT EXISTS (
                  SELECT 1 FROM tickets r
                  WHERE r.contract_id = t.contract_id AND r.kind = ?
                    AND r.status IN ({", ".join("?" * len(active))})
                    AND (r.target_id = t.id OR t.kind = ?)
              ))
            ORDER BY t.due_at LIMIT ?
        """
        resolution = TicketKind.RESOLUTION.value
        params = (now, *open_states, resolution, resolution, *active, TicketKind.UPLOAD.value, limit)
        with self._lock:
            rows = self.db.execute(sql, params).fetchall()
        return [{"id": r["id"], "contract_id": r["contract_id"], "kind": r["kind"]} for r in rows]

    def close(self):
        self.db.close()
