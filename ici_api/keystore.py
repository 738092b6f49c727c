"""
SQLite-backed store for API key records, alert subscriptions and the
billing event ledger.

Keys are addressed by the SHA-256 digest of the secret token; the token
itself never reaches this module.
"""

from __future__ import annotations

import hashlib
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .models import KEY_STATUS_ACTIVE, KeyRecord


def hash_key(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_api_key(plan: str) -> Tuple[str, str]:
    api_key = f"ici-{plan}-{secrets.token_urlsafe(24)}"
    return api_key, hash_key(api_key)


class KeyStore:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _use(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own

    def init_db(self) -> None:
        """Create tables if missing."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.transaction() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS api_keys (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    key_hash TEXT UNIQUE NOT NULL,
                    plan TEXT NOT NULL DEFAULT 'pro',
                    status TEXT NOT NULL DEFAULT 'active',
                    email TEXT,
                    stripe_customer_id TEXT,
                    stripe_subscription_id TEXT,
                    created_at TEXT NOT NULL
                )
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_api_keys_subscription
                ON api_keys (stripe_customer_id, stripe_subscription_id)
            ''')

            # Self-service alert subscriptions
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS alert_subscriptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    api_key_id INTEGER NOT NULL,
                    email TEXT,
                    telegram_chat_id TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (api_key_id) REFERENCES api_keys(id)
                )
            ''')

            # Billing events ledger; event_id is the idempotency key
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS billing_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT UNIQUE NOT NULL,
                    event_type TEXT NOT NULL,
                    key_hash TEXT,
                    created_at TEXT NOT NULL
                )
            ''')

            # Signal monitor state
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS alert_state (
                    name TEXT PRIMARY KEY,
                    last_signal TEXT,
                    last_score REAL,
                    alert_count INTEGER DEFAULT 0,
                    updated_at TEXT
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS alert_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    signal_from TEXT,
                    signal_to TEXT NOT NULL,
                    score REAL,
                    message TEXT,
                    delivered INTEGER DEFAULT 0,
                    failed INTEGER DEFAULT 0,
                    sent_at TEXT NOT NULL
                )
            ''')

    def lookup_by_hash(self, key_hash: str) -> Optional[KeyRecord]:
        conn = self.connect()
        try:
            row = conn.execute("SELECT * FROM api_keys WHERE key_hash = ?", (key_hash,)).fetchone()
        finally:
            conn.close()
        return KeyRecord(**dict(row)) if row else None

    def insert(self, record: KeyRecord, *, conn: Optional[sqlite3.Connection] = None) -> KeyRecord:
        created_at = record.created_at or datetime.utcnow().isoformat() + "Z"
        with self._use(conn) as db:
            cursor = db.execute(
                '''
                INSERT INTO api_keys (key_hash, plan, status, email, stripe_customer_id, stripe_subscription_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    record.key_hash,
                    record.plan,
                    record.status,
                    record.email,
                    record.stripe_customer_id,
                    record.stripe_subscription_id,
                    created_at,
                ),
            )
            return record.model_copy(update={"id": cursor.lastrowid, "created_at": created_at})

    def update_status_by_subscription(self, customer_id: Optional[str], subscription_id: Optional[str], status: str) -> int:
        """Set the status of keys linked to this customer+subscription pair.

        Returns the number of records changed; zero when nothing matches.
        """
        if not customer_id or not subscription_id:
            return 0
        with self.transaction() as conn:
            cursor = conn.execute(
                '''
                UPDATE api_keys
                SET status = ?
                WHERE stripe_customer_id = ? AND stripe_subscription_id = ?
                ''',
                (status, customer_id, subscription_id),
            )
            return cursor.rowcount

    def claim_event(
        self,
        event_id: str,
        event_type: str,
        key_hash: Optional[str] = None,
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Record a billing event id; False if it was already recorded."""
        with self._use(conn) as db:
            cursor = db.execute(
                '''
                INSERT OR IGNORE INTO billing_events (event_id, event_type, key_hash, created_at)
                VALUES (?, ?, ?, ?)
                ''',
                (event_id, event_type, key_hash, datetime.utcnow().isoformat() + "Z"),
            )
            return cursor.rowcount == 1

    def add_alert(self, api_key_id: int, email: Optional[str], telegram_chat_id: Optional[str]) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                '''
                INSERT INTO alert_subscriptions (api_key_id, email, telegram_chat_id, created_at)
                VALUES (?, ?, ?, ?)
                ''',
                (api_key_id, email, telegram_chat_id, datetime.utcnow().isoformat() + "Z"),
            )
            return cursor.lastrowid

    def list_alert_subscriptions(self) -> List[Dict[str, Any]]:
        """Subscriptions whose key is still active."""
        conn = self.connect()
        try:
            rows = conn.execute(
                '''
                SELECT s.id, s.api_key_id, s.email, s.telegram_chat_id
                FROM alert_subscriptions s
                JOIN api_keys k ON k.id = s.api_key_id
                WHERE k.status = ?
                ORDER BY s.id
                ''',
                (KEY_STATUS_ACTIVE,),
            ).fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]

    def stats(self) -> Dict[str, int]:
        conn = self.connect()
        try:
            rows = conn.execute("SELECT status, COUNT(*) AS count FROM api_keys GROUP BY status").fetchall()
        finally:
            conn.close()
        return {row["status"]: row["count"] for row in rows}

    def get_alert_state(self, name: str) -> Optional[Dict[str, Any]]:
        conn = self.connect()
        try:
            row = conn.execute("SELECT * FROM alert_state WHERE name = ?", (name,)).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None

    def record_alert(
        self,
        name: str,
        signal_from: Optional[str],
        signal_to: str,
        score: Optional[float],
        message: Optional[str] = None,
        delivered: int = 0,
        failed: int = 0,
    ) -> None:
        """Update the monitor state; log a history row when a message went out."""
        now = datetime.utcnow().isoformat() + "Z"
        dispatched = 1 if message is not None else 0
        with self.transaction() as conn:
            if dispatched:
                conn.execute(
                    '''
                    INSERT INTO alert_history (signal_from, signal_to, score, message, delivered, failed, sent_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ''',
                    (signal_from, signal_to, score, message, delivered, failed, now),
                )
            conn.execute(
                '''
                INSERT INTO alert_state (name, last_signal, last_score, alert_count, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    last_signal = excluded.last_signal,
                    last_score = excluded.last_score,
                    alert_count = alert_count + ?,
                    updated_at = excluded.updated_at
                ''',
                (name, signal_to, score, dispatched, now, dispatched),
            )
