"""
SolGate - Pending Payment Ledger
Storage of in-flight payment attempts keyed by transaction signature.

A row exists only while an attempt is pending. Settled and failed attempts
are removed, so the ledger never grows with history.
"""

import os
import json
import time
import logging
import dataclasses
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import aiosqlite
import redis.asyncio as aioredis
from dotenv import load_dotenv

from .types import PaymentRecord

load_dotenv()

logger = logging.getLogger("solgate.ledger")


class Ledger(ABC):
    """
    Storage contract for pending payments.

    `insert_pending` must be atomic and a no-op when the signature already
    exists; concurrent requests carrying the same transaction rely on it.
    """

    async def init_db(self):
        """Prepare the backend. Safe to call more than once."""

    async def close(self):
        """Release backend resources."""

    @abstractmethod
    async def insert_pending(
        self,
        signature: str,
        from_: str,
        to: str,
        amount: str,
        mint: Optional[str],
        route: str
    ) -> None:
        """Record a pending attempt unless the signature is already recorded."""

    @abstractmethod
    async def remove(self, signature: str) -> None:
        """Drop the row for a signature, if any."""

    @abstractmethod
    async def get(self, signature: str) -> Optional[PaymentRecord]:
        """Fetch the row for a signature."""

    @abstractmethod
    async def get_by_intent(
        self,
        from_: str,
        to: str,
        mint: Optional[str],
        route: str
    ) -> List[PaymentRecord]:
        """All pending rows for the same payer, payee, mint and route."""

    @abstractmethod
    async def get_all_pending(self) -> List[PaymentRecord]:
        """All pending rows."""

    async def get_all(self) -> List[PaymentRecord]:
        """All rows. Only pending rows are ever stored."""
        return await self.get_all_pending()


class MemoryLedger(Ledger):
    """
    Process-local ledger. Suitable for tests and single-worker deployments.

    Example:
        ledger = MemoryLedger()
        await ledger.insert_pending(sig, payer, merchant, "5000", None, "/buy")
    """

    def __init__(self):
        self.records: Dict[str, PaymentRecord] = {}

    async def insert_pending(self, signature, from_, to, amount, mint, route):
        # check-and-set without awaiting keeps this atomic on the event loop
        if signature in self.records:
            return
        self.records[signature] = PaymentRecord(
            signature=signature,
            from_=from_,
            to=to,
            amount=amount,
            mint=mint,
            route=route,
            created_at=int(time.time()),
        )

    async def remove(self, signature):
        self.records.pop(signature, None)

    async def get(self, signature):
        record = self.records.get(signature)
        return dataclasses.replace(record) if record else None

    async def get_by_intent(self, from_, to, mint, route):
        return [
            dataclasses.replace(r) for r in self.records.values()
            if r.from_ == from_ and r.to == to and (r.mint or "") == (mint or "") and r.route == route
        ]

    async def get_all_pending(self):
        return [dataclasses.replace(r) for r in self.records.values() if r.status == "pending"]


class SQLiteLedger(Ledger):
    """
    SQLite-backed ledger.

    Uniqueness of the signature column plus INSERT OR IGNORE gives the
    idempotent insert.

    Example:
        ledger = SQLiteLedger("payments.db")
        await ledger.init_db()
        record = await ledger.get(signature)
    """

    def __init__(self, db_path: str = None):
        """
        Initialize the ledger.

        Args:
            db_path: Path to SQLite database file (default from LEDGER_DB_PATH env)
        """
        self.db_path = db_path or os.getenv("LEDGER_DB_PATH", "solgate.db")
        self._initialized = False

    async def init_db(self):
        """Initialize database schema."""
        if self._initialized:
            return

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode = WAL")
            await db.execute("PRAGMA busy_timeout = 5000")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS payments (
                    signature  TEXT PRIMARY KEY,
                    status     TEXT NOT NULL CHECK(status IN ('pending')),
                    "from"     TEXT NOT NULL,
                    "to"       TEXT NOT NULL,
                    amount     TEXT NOT NULL,
                    mint       TEXT,
                    route      TEXT NOT NULL,
                    created_at INTEGER NOT NULL DEFAULT (strftime('%s','now'))
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_payments_intent
                ON payments("from", "to", route)
            """)
            await db.commit()

        self._initialized = True
        logger.info(f"Ledger initialized: {self.db_path}")

    @staticmethod
    def _to_record(row) -> PaymentRecord:
        return PaymentRecord(
            signature=row["signature"],
            from_=row["from"],
            to=row["to"],
            amount=row["amount"],
            mint=row["mint"],
            route=row["route"],
            status=row["status"],
            created_at=row["created_at"],
        )

    async def insert_pending(self, signature, from_, to, amount, mint, route):
        await self.init_db()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT OR IGNORE INTO payments
                    (signature, status, "from", "to", amount, mint, route, created_at)
                VALUES (?, 'pending', ?, ?, ?, ?, ?, ?)
            """, (signature, from_, to, amount, mint, route, int(time.time())))
            await db.commit()

    async def remove(self, signature):
        await self.init_db()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM payments WHERE signature = ?", (signature,))
            await db.commit()

    async def get(self, signature):
        await self.init_db()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payments WHERE signature = ?",
                (signature,)
            )
            row = await cursor.fetchone()
            return self._to_record(row) if row else None

    async def get_by_intent(self, from_, to, mint, route):
        await self.init_db()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("""
                SELECT * FROM payments
                WHERE "from" = ? AND "to" = ? AND COALESCE(mint, '') = COALESCE(?, '') AND route = ?
            """, (from_, to, mint, route))
            rows = await cursor.fetchall()
            return [self._to_record(row) for row in rows]

    async def get_all_pending(self):
        await self.init_db()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM payments WHERE status = 'pending'")
            rows = await cursor.fetchall()
            return [self._to_record(row) for row in rows]

    async def get_all(self):
        await self.init_db()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM payments ORDER BY created_at")
            rows = await cursor.fetchall()
            return [self._to_record(row) for row in rows]


class RedisLedger(Ledger):
    """
    Redis-backed ledger for multi-worker deployments.

    Each record is a JSON string written with SET NX; set indexes track
    pending signatures and signatures per payment intent.

    Args:
        redis_url: Redis connection URL (default from REDIS_URL env)
        client: Optional pre-built redis.asyncio client
        prefix: Key namespace
    """

    def __init__(self, redis_url: str = None, client=None, prefix: str = "solgate:"):
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.prefix = prefix
        self._redis = client

    async def init_db(self):
        if self._redis is not None:
            return
        self._redis = aioredis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        await self._redis.ping()
        logger.info(f"Redis ledger connected: {self.redis_url}")

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _record_key(self, signature: str) -> str:
        return f"{self.prefix}payment:{signature}"

    @property
    def _pending_key(self) -> str:
        return f"{self.prefix}pending"

    def _intent_key(self, from_: str, to: str, mint: Optional[str], route: str) -> str:
        return f"{self.prefix}intent:{from_}:{to}:{mint or ''}:{route}"

    async def _load_many(self, signatures) -> List[PaymentRecord]:
        if not signatures:
            return []
        values = await self._redis.mget([self._record_key(s) for s in sorted(signatures)])
        return [PaymentRecord.from_dict(json.loads(v)) for v in values if v]

    async def insert_pending(self, signature, from_, to, amount, mint, route):
        await self.init_db()

        record = PaymentRecord(
            signature=signature,
            from_=from_,
            to=to,
            amount=amount,
            mint=mint,
            route=route,
            created_at=int(time.time()),
        )
        created = await self._redis.set(
            self._record_key(signature),
            json.dumps(record.to_dict()),
            nx=True
        )
        if not created:
            return

        await self._redis.sadd(self._pending_key, signature)
        await self._redis.sadd(self._intent_key(from_, to, mint, route), signature)

    async def remove(self, signature):
        await self.init_db()

        record = await self.get(signature)
        await self._redis.delete(self._record_key(signature))
        await self._redis.srem(self._pending_key, signature)
        if record:
            await self._redis.srem(
                self._intent_key(record.from_, record.to, record.mint, record.route),
                signature
            )

    async def get(self, signature):
        await self.init_db()

        raw = await self._redis.get(self._record_key(signature))
        return PaymentRecord.from_dict(json.loads(raw)) if raw else None

    async def get_by_intent(self, from_, to, mint, route):
        await self.init_db()

        signatures = await self._redis.smembers(self._intent_key(from_, to, mint, route))
        return await self._load_many(signatures)

    async def get_all_pending(self):
        await self.init_db()

        signatures = await self._redis.smembers(self._pending_key)
        return await self._load_many(signatures)
