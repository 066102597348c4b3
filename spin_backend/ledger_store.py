# ledger_store.py
"""
SQLite persistence for the spin ledger.

Tables:
- ledger_entries : one row per wallet (points, cooldown timestamp, spin credits)
- spins          : append-only issuance journal
- orders         : one row per settled payment reference

All mutating helpers expect the caller to hold an open `BEGIN IMMEDIATE`
transaction on `con`; they never commit or roll back themselves. The UPDATEs are
additionally guarded in their WHERE clause, so a helper that would break an
invariant changes zero rows and reports it instead of writing.
"""
import re
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import DuplicateSettlementError, InvalidWalletError

WALLET_RE = re.compile(r"^0x[0-9a-f]{40}$")


@dataclass(frozen=True)
class LedgerRow:
    wallet: str
    points_total: int
    last_spin_at: Optional[int]
    spin_credits: int
    created_at: int


def normalize_wallet(wallet: str) -> str:
    """Lowercase + validate an EVM address. Lookups are exact-match on this form."""
    w = (wallet or "").strip().lower()
    if not WALLET_RE.match(w):
        raise InvalidWalletError("invalid wallet address")
    return w


# ---------------------------
# Connection / schema
# ---------------------------
def db(path: str) -> sqlite3.Connection:
    con = sqlite3.connect(path, timeout=30, isolation_level=None)  # autocommit, explicit BEGIN
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL;")
    con.execute("PRAGMA synchronous=NORMAL;")
    con.execute("PRAGMA busy_timeout=30000;")
    return con


def init_db(con: sqlite3.Connection) -> None:
    con.execute("""
    CREATE TABLE IF NOT EXISTS ledger_entries (
      wallet TEXT PRIMARY KEY,
      points_total INTEGER NOT NULL DEFAULT 0 CHECK (points_total >= 0),
      last_spin_at INTEGER,
      spin_credits INTEGER NOT NULL DEFAULT 0 CHECK (spin_credits >= 0),
      created_at INTEGER NOT NULL
    );
    """)
    con.execute("""
    CREATE TABLE IF NOT EXISTS spins (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      wallet TEXT NOT NULL,
      reward_kind TEXT NOT NULL,
      reward_value TEXT NOT NULL,
      attestation_ref TEXT,
      created_at INTEGER NOT NULL
    );
    """)
    con.execute("CREATE INDEX IF NOT EXISTS idx_spins_wallet ON spins(wallet, id);")
    con.execute("""
    CREATE TABLE IF NOT EXISTS orders (
      id TEXT PRIMARY KEY,
      wallet TEXT NOT NULL,
      sku TEXT NOT NULL,
      amount_usdc TEXT NOT NULL,
      status TEXT NOT NULL,
      from_address TEXT,
      block_number INTEGER,
      credits_added INTEGER NOT NULL,
      completed_at INTEGER NOT NULL
    );
    """)


# ---------------------------
# Ledger entries
# ---------------------------
def get_entry(con: sqlite3.Connection, wallet: str) -> Optional[LedgerRow]:
    row = con.execute(
        "SELECT wallet, points_total, last_spin_at, spin_credits, created_at FROM ledger_entries WHERE wallet=?",
        (wallet,),
    ).fetchone()
    if not row:
        return None
    return LedgerRow(
        wallet=str(row["wallet"]),
        points_total=int(row["points_total"]),
        last_spin_at=int(row["last_spin_at"]) if row["last_spin_at"] is not None else None,
        spin_credits=int(row["spin_credits"]),
        created_at=int(row["created_at"]),
    )


def ensure_entry(con: sqlite3.Connection, wallet: str, ts: int) -> None:
    con.execute(
        "INSERT OR IGNORE INTO ledger_entries(wallet, points_total, last_spin_at, spin_credits, created_at) VALUES(?,?,?,?,?)",
        (wallet, 0, None, 0, ts),
    )


def apply_free_spin(con: sqlite3.Connection, wallet: str, points: int, ts: int, cooldown_sec: int) -> bool:
    """Start a new cooldown window and add points. False if the window had not elapsed."""
    cur = con.execute(
        """
        UPDATE ledger_entries
        SET points_total = points_total + ?,
            last_spin_at = ?
        WHERE wallet=? AND (last_spin_at IS NULL OR last_spin_at <= ?)
        """,
        (points, ts, wallet, ts - cooldown_sec),
    )
    return cur.rowcount == 1


def apply_credit_spin(con: sqlite3.Connection, wallet: str, points: int) -> bool:
    """Consume one spin credit and add points. Cooldown is left untouched. False if no credit."""
    cur = con.execute(
        """
        UPDATE ledger_entries
        SET points_total = points_total + ?,
            spin_credits = spin_credits - 1
        WHERE wallet=? AND spin_credits > 0
        """,
        (points, wallet),
    )
    return cur.rowcount == 1


def credit_purchase(con: sqlite3.Connection, wallet: str, credits: int, points: int, ts: int) -> None:
    if credits < 0 or points < 0:
        raise ValueError("purchase credit must not be negative")
    ensure_entry(con, wallet, ts)
    con.execute(
        """
        UPDATE ledger_entries
        SET spin_credits = spin_credits + ?,
            points_total = points_total + ?
        WHERE wallet=?
        """,
        (credits, points, wallet),
    )


# ---------------------------
# Spin journal
# ---------------------------
def record_spin(
    con: sqlite3.Connection,
    wallet: str,
    reward_kind: str,
    reward_value: str,
    attestation_ref: Optional[str],
    ts: int,
) -> int:
    cur = con.execute(
        "INSERT INTO spins(wallet, reward_kind, reward_value, attestation_ref, created_at) VALUES(?,?,?,?,?)",
        (wallet, reward_kind, reward_value, attestation_ref, ts),
    )
    return int(cur.lastrowid)


def fetch_spins(
    con: sqlite3.Connection,
    wallet: str,
    limit: int = 20,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    limit = int(limit)
    offset = int(offset)
    if limit < 1:
        limit = 1
    if limit > 200:
        limit = 200
    if offset < 0:
        offset = 0

    rows = con.execute(
        """
        SELECT id, wallet, reward_kind, reward_value, attestation_ref, created_at
        FROM spins
        WHERE wallet=?
        ORDER BY id DESC LIMIT ? OFFSET ?
        """,
        (wallet, limit, offset),
    ).fetchall()
    return [
        dict(
            spin_id=int(r["id"]),
            wallet=str(r["wallet"]),
            reward_kind=str(r["reward_kind"]),
            reward_value=str(r["reward_value"]),
            attestation_ref=r["attestation_ref"],
            created_at=int(r["created_at"]),
        )
        for r in rows
    ]


def count_spins(con: sqlite3.Connection, wallet: str) -> int:
    return int(con.execute("SELECT COUNT(*) FROM spins WHERE wallet=?", (wallet,)).fetchone()[0])


# ---------------------------
# Orders
# ---------------------------
def insert_order(
    con: sqlite3.Connection,
    order_id: str,
    wallet: str,
    sku: str,
    amount_usdc: str,
    credits_added: int,
    ts: int,
    from_address: Optional[str] = None,
    block_number: Optional[int] = None,
) -> None:
    """Insert the order keyed by payment reference; raises DuplicateSettlementError if it exists."""
    cur = con.execute(
        """
        INSERT OR IGNORE INTO orders(id, wallet, sku, amount_usdc, status, from_address, block_number, credits_added, completed_at)
        VALUES(?,?,?,?,?,?,?,?,?)
        """,
        (order_id, wallet, sku, amount_usdc, "completed", from_address, block_number, credits_added, ts),
    )
    if cur.rowcount == 0:
        existing = get_order(con, order_id)
        raise DuplicateSettlementError(order_id, existing["wallet"] if existing else None)


def get_order(con: sqlite3.Connection, order_id: str) -> Optional[Dict[str, Any]]:
    r = con.execute(
        """
        SELECT id, wallet, sku, amount_usdc, status, from_address, block_number, credits_added, completed_at
        FROM orders WHERE id=?
        """,
        (order_id,),
    ).fetchone()
    if not r:
        return None
    return dict(
        order_id=str(r["id"]),
        wallet=str(r["wallet"]),
        sku=str(r["sku"]),
        amount_usdc=str(r["amount_usdc"]),
        status=str(r["status"]),
        from_address=r["from_address"],
        block_number=int(r["block_number"]) if r["block_number"] is not None else None,
        credits_added=int(r["credits_added"]),
        completed_at=int(r["completed_at"]),
    )


def rollback(con: sqlite3.Connection) -> None:
    """ROLLBACK if a transaction is open; no-op when BEGIN never ran or already rolled back."""
    if con.in_transaction:
        con.execute("ROLLBACK;")
