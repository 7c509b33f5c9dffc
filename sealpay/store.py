"""
SealPay SDK - Metadata Store
SQLite-based persistence for content records and payment intents.
"""

import logging
from typing import List, Optional, Tuple

import aiosqlite

from .errors import NotFoundError
from .models import (
    ContentRecord,
    IntentStatus,
    PaymentIntent,
    PaymentState,
    sources_for,
    transition,
    utcnow,
)

logger = logging.getLogger("sealpay.store")


class MetadataStore:
    """
    Durable record of sealed content and its payment state.

    Conflicting writes to the same content id are serialized by SQLite
    (BEGIN IMMEDIATE plus state-guarded conditional updates); there are
    no application-level locks.

    Example:
        store = MetadataStore("sealpay.db")
        await store.init_db()

        inserted = await store.insert_content(record)
        record = await store.get_content(content_id)
    """

    def __init__(self, db_path: str = "sealpay.db", timeout: float = 10.0):
        """
        Initialize the MetadataStore.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database
        """
        self.db_path = db_path
        self.timeout = timeout
        self._initialized = False

    def _connect(self):
        return aiosqlite.connect(self.db_path, timeout=self.timeout)

    async def init_db(self):
        """Initialize database schema."""
        if self._initialized:
            return

        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")

            await db.execute("""
                CREATE TABLE IF NOT EXISTS content (
                    id TEXT PRIMARY KEY,
                    wrapped_key BLOB NOT NULL,
                    wrap_nonce BLOB NOT NULL,
                    wrap_tag BLOB NOT NULL,
                    content_nonce BLOB NOT NULL,
                    algorithm TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    fingerprint TEXT NOT NULL UNIQUE,
                    payment_state TEXT NOT NULL DEFAULT 'unpaid',
                    created_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS payment_intents (
                    content_id TEXT PRIMARY KEY,
                    backend TEXT NOT NULL,
                    external_ref TEXT NOT NULL,
                    payer TEXT,
                    payment_request TEXT,
                    mint_ref TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (content_id) REFERENCES content(id)
                )
            """)

            await db.commit()

        self._initialized = True
        logger.info(f"Metadata store initialized: {self.db_path}")

    # === CONTENT ===

    async def insert_content(self, record: ContentRecord) -> bool:
        """
        Insert a content record if neither its id nor its fingerprint exists.

        Returns:
            True if inserted, False if an equivalent record already exists
        """
        await self.init_db()

        async with self._connect() as db:
            cursor = await db.execute("""
                INSERT INTO content
                (id, wrapped_key, wrap_nonce, wrap_tag, content_nonce,
                 algorithm, size, fingerprint, payment_state, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
            """, (
                record.id, record.wrapped_key, record.wrap_nonce, record.wrap_tag,
                record.content_nonce, record.algorithm, record.size,
                record.fingerprint, record.payment_state.value, record.created_at
            ))
            await db.commit()
            return cursor.rowcount > 0

    async def get_content(self, content_id: str) -> Optional[ContentRecord]:
        await self.init_db()

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM content WHERE id = ?", (content_id,))
            row = await cursor.fetchone()
            return self._row_to_record(row) if row else None

    async def get_by_fingerprint(self, fingerprint: str) -> Optional[ContentRecord]:
        await self.init_db()

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM content WHERE fingerprint = ?",
                (fingerprint,)
            )
            row = await cursor.fetchone()
            return self._row_to_record(row) if row else None

    async def list_content_ids(self) -> List[str]:
        await self.init_db()

        async with self._connect() as db:
            cursor = await db.execute("SELECT id FROM content ORDER BY id")
            rows = await cursor.fetchall()
            return [row[0] for row in rows]

    # === PAYMENT INTENTS ===

    async def get_intent(self, content_id: str) -> Optional[PaymentIntent]:
        await self.init_db()

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payment_intents WHERE content_id = ?",
                (content_id,)
            )
            row = await cursor.fetchone()
            return self._row_to_intent(row) if row else None

    async def open_intent(self, intent: PaymentIntent) -> Tuple[PaymentIntent, PaymentState, bool]:
        """
        Upsert an intent and move the content to pending, in one transaction.

        A live (pending) intent or a paid record is never replaced: the
        stored intent is returned instead.

        Returns:
            Tuple of (stored intent, payment state, whether `intent` was stored)

        Raises:
            IllegalTransitionError: if the record's state cannot move to pending
        """
        await self.init_db()

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "SELECT payment_state FROM content WHERE id = ?",
                    (intent.content_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    await db.rollback()
                    raise NotFoundError(f"Content {intent.content_id[:12]}... not found")
                state = PaymentState(row["payment_state"])

                cursor = await db.execute(
                    "SELECT * FROM payment_intents WHERE content_id = ?",
                    (intent.content_id,)
                )
                existing_row = await cursor.fetchone()
                existing = self._row_to_intent(existing_row) if existing_row else None

                if existing and (existing.is_live or state == PaymentState.PAID):
                    await db.rollback()
                    return existing, state, False

                new_state = transition(state, PaymentState.PENDING)
                now = utcnow()

                await db.execute("""
                    INSERT INTO payment_intents
                    (content_id, backend, external_ref, payer, payment_request, mint_ref,
                     status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(content_id) DO UPDATE SET
                        backend = excluded.backend,
                        external_ref = excluded.external_ref,
                        payer = excluded.payer,
                        payment_request = excluded.payment_request,
                        mint_ref = excluded.mint_ref,
                        status = excluded.status,
                        created_at = excluded.created_at,
                        updated_at = excluded.updated_at
                    WHERE payment_intents.status != 'pending'
                """, (
                    intent.content_id, intent.backend, intent.external_ref,
                    intent.payer, intent.payment_request, intent.mint_ref,
                    IntentStatus.PENDING.value, now, now
                ))

                await db.execute(
                    "UPDATE content SET payment_state = ? WHERE id = ?",
                    (new_state.value, intent.content_id)
                )

                await db.commit()
            except BaseException:
                await db.rollback()
                raise

        stored = await self.get_intent(intent.content_id)
        return stored, new_state, True

    async def record_settlement(
        self,
        content_id: str,
        intent_status: IntentStatus,
        target: PaymentState
    ) -> PaymentState:
        """
        Apply an adapter-reported outcome: update the intent status and move
        the record to `target` with a state-guarded conditional update.

        Returns:
            The record's payment state afterwards

        Raises:
            IllegalTransitionError: if the current state cannot reach `target`
        """
        await self.init_db()

        sources = [s.value for s in sources_for(target)]
        placeholders = ", ".join("?" for _ in sources)

        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    f"UPDATE content SET payment_state = ? "
                    f"WHERE id = ? AND payment_state IN ({placeholders})",
                    (target.value, content_id, *sources)
                )

                if cursor.rowcount == 0:
                    cursor = await db.execute(
                        "SELECT payment_state FROM content WHERE id = ?",
                        (content_id,)
                    )
                    row = await cursor.fetchone()
                    await db.rollback()
                    if row is None:
                        raise NotFoundError(f"Content {content_id[:12]}... not found")
                    # Idempotent when already there, IllegalTransitionError otherwise
                    return transition(PaymentState(row[0]), target)

                await db.execute(
                    "UPDATE payment_intents SET status = ?, updated_at = ? WHERE content_id = ?",
                    (intent_status.value, utcnow(), content_id)
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise

        logger.info(f"Payment state {content_id[:12]}... -> {target.value}")
        return target

    async def set_mint_ref(self, content_id: str, mint_ref: str) -> bool:
        """
        Remember the access-token mint submitted for a live intent.

        Returns:
            True if a pending intent was updated
        """
        await self.init_db()

        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE payment_intents SET mint_ref = ?, updated_at = ? "
                "WHERE content_id = ? AND status = ?",
                (mint_ref, utcnow(), content_id, IntentStatus.PENDING.value)
            )
            await db.commit()
            updated = cursor.rowcount > 0

        if updated:
            logger.info(f"Mint {mint_ref[:12]}... recorded for {content_id[:12]}...")
        return updated

    # === ROW MAPPING ===

    @staticmethod
    def _row_to_record(row) -> ContentRecord:
        return ContentRecord(
            id=row["id"],
            wrapped_key=bytes(row["wrapped_key"]),
            wrap_nonce=bytes(row["wrap_nonce"]),
            wrap_tag=bytes(row["wrap_tag"]),
            content_nonce=bytes(row["content_nonce"]),
            algorithm=row["algorithm"],
            size=row["size"],
            fingerprint=row["fingerprint"],
            payment_state=PaymentState(row["payment_state"]),
            created_at=row["created_at"]
        )

    @staticmethod
    def _row_to_intent(row) -> PaymentIntent:
        return PaymentIntent(
            content_id=row["content_id"],
            backend=row["backend"],
            external_ref=row["external_ref"],
            payer=row["payer"],
            payment_request=row["payment_request"],
            mint_ref=row["mint_ref"],
            status=IntentStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"]
        )
