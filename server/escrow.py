"""Escrow accounting for the commission engine.

Fee/Outcome Calculator: pure functions that split a contract's escrowed total
between artist and client on cancellation or completion. Amounts are integers
in currency minor units; intermediate math runs on Decimal and the artist
share is truncated, so any sub-unit remainder lands with the client.

EscrowManager: SQLite ledger of charge/release/refund intents sent to the
escrow gateway (server/gateway.py).
"""

import logging
import uuid
from decimal import Decimal, ROUND_FLOOR

from protocol import (
    DEFAULT_LATE_PENALTY_PERCENT,
    FeeKind, IntentStatus, IntentType, Party,
    GatewayFailure, NotFound, ValidationFailed,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def _floor(amount: Decimal) -> int:
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


def _check_total(total):
    if not isinstance(total, int) or isinstance(total, bool) or total < 0:
        raise ValidationFailed(f"total must be a non-negative int, got {total!r}")


def check_work_progress(work_progress):
    if not isinstance(work_progress, int) or isinstance(work_progress, bool) or not 0 <= work_progress <= 100:
        raise ValidationFailed(f"work_progress must be an int between 0 and 100, got {work_progress!r}")


def calculate_fee(total: int, policy: dict) -> Decimal:
    """Cancellation fee from the contract's policy. Capped at total."""
    _check_total(total)
    kind = policy.get("kind", FeeKind.FLAT.value)
    amount = Decimal(str(policy.get("amount", 0)))
    if amount < 0:
        raise ValidationFailed("cancellation fee cannot be negative")
    if kind == FeeKind.FLAT.value:
        fee = amount
    elif kind == FeeKind.PERCENT.value:
        if amount > HUNDRED:
            raise ValidationFailed("percent cancellation fee cannot exceed 100")
        fee = Decimal(total) * amount / HUNDRED
    else:
        raise ValidationFailed(f"unknown cancellation fee kind: {kind}")
    return min(fee, Decimal(total))


def cancellation_split(total: int, policy: dict, requested_by: Party, work_progress: int,
                       late: bool = False, late_penalty_percent=DEFAULT_LATE_PENALTY_PERCENT) -> dict:
    """Split escrow on an accepted cancellation.

    fee    = policy fee (capped at total); waived when a client cancels a late contract
    pool   = total - fee
    artist = pool * work_progress / 100, plus the fee when the client cancelled
    artist = max(0, artist - total * late_penalty_percent / 100) when late
    client = total - floor(artist)

    A client-requested cancellation pays the fee to the artist; an
    artist-requested one forfeits it to the client.
    """
    _check_total(total)
    check_work_progress(work_progress)

    fee = calculate_fee(total, policy)
    if late and requested_by is Party.CLIENT:
        fee = ZERO

    total_d = Decimal(total)
    pool = total_d - fee
    artist = pool * work_progress / HUNDRED
    if requested_by is Party.CLIENT:
        artist += fee

    penalty = ZERO
    if late:
        penalty = total_d * Decimal(str(late_penalty_percent)) / HUNDRED
        artist = max(ZERO, artist - penalty)

    artist_amount = _floor(artist)
    return {
        "kind": "cancellation",
        "requested_by": requested_by.value,
        "work_progress": work_progress,
        "fee": _floor(fee),
        "late": late,
        "late_penalty": _floor(penalty),
        "artist_amount": artist_amount,
        "client_amount": total - artist_amount,
        "total": total,
    }


def completion_split(total: int, late: bool = False,
                     late_penalty_percent=DEFAULT_LATE_PENALTY_PERCENT) -> dict:
    """Split escrow on accepted final delivery. Late delivery costs the penalty."""
    _check_total(total)
    penalty = ZERO
    artist = Decimal(total)
    if late:
        penalty = Decimal(total) * Decimal(str(late_penalty_percent)) / HUNDRED
        artist = max(ZERO, artist - penalty)
    artist_amount = _floor(artist)
    return {
        "kind": "completion",
        "work_progress": 100,
        "fee": 0,
        "late": late,
        "late_penalty": _floor(penalty),
        "artist_amount": artist_amount,
        "client_amount": total - artist_amount,
        "total": total,
    }


class Escrow:
    """Payment routing for a single contract.

    Reads the finance terms off the aggregate and turns a cancellation or
    completion into a split plus the payouts that realise it.
    """

    def __init__(self, contract: dict):
        self.contract_id = contract.get("id", "")
        self.total = contract["finance"]["total"]
        self.policy = contract.get("cancellation_fee") or {"kind": FeeKind.FLAT.value, "amount": 0}
        self.late_penalty_percent = contract.get("late_penalty_percent", DEFAULT_LATE_PENALTY_PERCENT)
        self.deadline_at = contract.get("deadline_at")
        self.client_id = contract.get("client_id", "")
        self.artist_id = contract.get("artist_id", "")

    def is_late(self, now: float) -> bool:
        return self.deadline_at is not None and now > self.deadline_at

    def cancellation(self, requested_by: Party, work_progress: int, now: float) -> dict:
        return cancellation_split(
            self.total, self.policy, requested_by, work_progress,
            late=self.is_late(now), late_penalty_percent=self.late_penalty_percent,
        )

    def completion(self, now: float) -> dict:
        return completion_split(self.total, late=self.is_late(now),
                                late_penalty_percent=self.late_penalty_percent)

    def payouts(self, split: dict) -> list[tuple]:
        """(intent type, payee id, amount) for each non-zero share."""
        out = []
        if split["artist_amount"] > 0:
            out.append((IntentType.RELEASE, self.artist_id, split["artist_amount"]))
        if split["client_amount"] > 0:
            out.append((IntentType.REFUND, self.client_id, split["client_amount"]))
        return out


class EscrowManager:
    """Ledger of escrow intents, kept in the commission store's database.

    Payout intents are recorded inside the caller's store transaction so they
    commit together with the settlement; gateway calls happen afterwards,
    outside the writer lock.
    """

    def __init__(self, store, gateway=None):
        from server.gateway import StubGateway
        self.store = store
        self.db = store.db
        self.gateway = gateway or StubGateway()
        self._init_db()

    def _init_db(self):
        with self.store.transaction():
            self.db.execute("""
                CREATE TABLE IF NOT EXISTS escrow_intents (
                    id TEXT PRIMARY KEY,
                    contract_id TEXT NOT NULL,
                    ticket_id TEXT,
                    type TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    party_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    gateway_ref TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            self.db.execute("CREATE INDEX IF NOT EXISTS idx_intent_status ON escrow_intents(status)")
            self.db.execute("CREATE INDEX IF NOT EXISTS idx_intent_ref ON escrow_intents(gateway_ref)")

    def charge_intent(self, contract_id: str, ticket_id: str, intent_type: IntentType,
                      amount: int, payer: str) -> str:
        """Open a fee charge with the gateway and record it. Returns the intent id.

        Call this without holding a contract transaction: it waits on the
        gateway. GatewayFailure propagates and nothing is recorded.
        """
        if amount <= 0:
            raise ValidationFailed("charge amount must be positive")
        intent_id = self.gateway.charge_intent(amount, payer, f"{contract_id}:{ticket_id}")
        now = self.store.clock()
        with self.store.transaction():
            self.db.execute(
                "INSERT INTO escrow_intents (id, contract_id, ticket_id, type, amount, party_id, status, gateway_ref, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (intent_id, contract_id, ticket_id, intent_type.value, amount, payer,
                 IntentStatus.ISSUED.value, intent_id, now, now),
            )
        logger.info("charge intent %s: %s %d from %s (contract %s)",
                    intent_id, intent_type.value, amount, payer, contract_id)
        return intent_id

    def record_payout(self, contract_id: str, ticket_id: str | None, intent_type: IntentType,
                      amount: int, payee: str) -> str:
        """Queue a release/refund as pending. Must run inside store.transaction()."""
        intent_id = "payout_" + uuid.uuid4().hex[:16]
        now = self.store.clock()
        self.db.execute(
            "INSERT INTO escrow_intents (id, contract_id, ticket_id, type, amount, party_id, status, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (intent_id, contract_id, ticket_id, intent_type.value, amount, payee,
             IntentStatus.PENDING.value, now, now),
        )
        return intent_id

    def get_intent(self, intent_id: str) -> dict | None:
        """Look up by our id or by the gateway's reference."""
        with self.store._lock:
            row = self.db.execute(
                "SELECT * FROM escrow_intents WHERE id = ? OR gateway_ref = ? LIMIT 1",
                (intent_id, intent_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_dict(row)

    def mark(self, intent_id: str, status: IntentStatus):
        """Set an intent's status. Must run inside store.transaction()."""
        cursor = self.db.execute(
            "UPDATE escrow_intents SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, self.store.clock(), intent_id),
        )
        if cursor.rowcount == 0:
            raise NotFound(f"No escrow intent {intent_id}")

    def list_intents(self, contract_id: str) -> list[dict]:
        with self.store._lock:
            rows = self.db.execute(
                "SELECT * FROM escrow_intents WHERE contract_id = ? ORDER BY created_at, rowid",
                (contract_id,),
            ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def pending_payouts(self, contract_id: str | None = None) -> list[dict]:
        with self.store._lock:
            if contract_id:
                rows = self.db.execute(
                    "SELECT * FROM escrow_intents WHERE status = ? AND contract_id = ? ORDER BY created_at, rowid",
                    (IntentStatus.PENDING.value, contract_id),
                ).fetchall()
            else:
                rows = self.db.execute(
                    "SELECT * FROM escrow_intents WHERE status = ? ORDER BY created_at, rowid",
                    (IntentStatus.PENDING.value,),
                ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def dispatch_pending(self, contract_id: str | None = None) -> int:
        """Send pending payouts to the gateway. Returns how many went out.

        Each payout is claimed (pending -> issued) before the gateway call so
        overlapping dispatchers never send it twice. A GatewayFailure puts it
        back to pending for the next sweep.
        """
        sent = 0
        for intent in self.pending_payouts(contract_id):
            with self.store.transaction():
                cursor = self.db.execute(
                    "UPDATE escrow_intents SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                    (IntentStatus.ISSUED.value, self.store.clock(), intent["id"], IntentStatus.PENDING.value),
                )
            if cursor.rowcount == 0:
                continue  # another dispatcher claimed it

            try:
                ref = self.gateway.release(intent["amount"], intent["party_id"], f"{intent['contract_id']}:{intent['id']}")
            except GatewayFailure as e:
                logger.warning("payout %s (%s %d to %s) failed, will retry: %s",
                               intent["id"], intent["type"], intent["amount"], intent["party_id"], e)
                with self.store.transaction():
                    self.db.execute(
                        "UPDATE escrow_intents SET status = ?, updated_at = ? WHERE id = ?",
                        (IntentStatus.PENDING.value, self.store.clock(), intent["id"]),
                    )
                continue

            with self.store.transaction():
                self.db.execute(
                    "UPDATE escrow_intents SET gateway_ref = ?, updated_at = ? WHERE id = ?",
                    (ref, self.store.clock(), intent["id"]),
                )
            logger.info("payout %s: %s %d to %s (ref %s)",
                        intent["id"], intent["type"], intent["amount"], intent["party_id"], ref)
            sent += 1
        return sent

    def _row_to_dict(self, row) -> dict:
        return {
            "id": row["id"],
            "contract_id": row["contract_id"],
            "ticket_id": row["ticket_id"],
            "type": row["type"],
            "amount": row["amount"],
            "party_id": row["party_id"],
            "status": row["status"],
            "gateway_ref": row["gateway_ref"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
