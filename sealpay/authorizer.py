"""
SealPay SDK - Release Authorizer
Payment state machine gating content-key disclosure.

    unpaid -> pending -> paid
              pending -> failed -> pending (retry)

Every key read re-verifies against the settlement backend. The stored
"paid" flag is never the sole authority for disclosure.
"""

import logging
from typing import Optional

from .cache import SettlementCache
from .errors import NotFoundError, PaymentRequiredError
from .key_vault import KeyVault
from .models import (
    ContentRecord,
    IntentStatus,
    PaymentIntent,
    PaymentState,
    PaymentStatus,
    ReleasedKey,
    Settlement,
)
from .oracle import PaymentOracle
from .store import MetadataStore

logger = logging.getLogger("sealpay.authorizer")


class ReleaseAuthorizer:
    """
    Reconciles payment state with the settlement backend and releases keys.

    Example:
        authorizer = ReleaseAuthorizer(store, oracle, vault)

        status = await authorizer.request_payment(content_id, payer="Wallet...")
        status = await authorizer.refresh(content_id)
        key = await authorizer.release_key(content_id, payer="Wallet...")
    """

    def __init__(
        self,
        store: MetadataStore,
        oracle: PaymentOracle,
        vault: KeyVault,
        cache: Optional[SettlementCache] = None
    ):
        self.store = store
        self.oracle = oracle
        self.vault = vault
        self.cache = cache

    async def _get_record(self, content_id: str) -> ContentRecord:
        record = await self.store.get_content(content_id)
        if record is None:
            raise NotFoundError(f"Content {content_id[:12]}... not found")
        return record

    async def request_payment(self, content_id: str, payer: Optional[str] = None) -> PaymentStatus:
        """
        Open (or return) the payment intent for a piece of content.

        Idempotent while pending: the live intent is returned, never a
        duplicate. Paid content returns its settled intent with
        already_paid=True.
        """
        record = await self._get_record(content_id)
        existing = await self.store.get_intent(content_id)

        if record.payment_state == PaymentState.PAID:
            return PaymentStatus(content_id, PaymentState.PAID, existing, already_paid=True)

        if existing and existing.is_live:
            return PaymentStatus(content_id, record.payment_state, existing)

        intent = await self.oracle.create_intent(content_id, payer)
        stored, state, created = await self.store.open_intent(intent)

        if not created:
            logger.info(f"Concurrent intent for {content_id[:12]}... won; returning it")
        if self.cache:
            await self.cache.invalidate(content_id)

        return PaymentStatus(
            content_id, state, stored,
            already_paid=state == PaymentState.PAID
        )

    async def refresh(self, content_id: str) -> PaymentStatus:
        """
        Status query. Polls the backend only while an intent is pending and
        only mutates state on a genuine settled/failed report.

        Raises:
            ExternalBackendError: backend unreachable; state is left untouched
        """
        record = await self._get_record(content_id)
        intent = await self.store.get_intent(content_id)

        if intent is None or not intent.is_live:
            return PaymentStatus(content_id, record.payment_state, intent)

        if self.cache and await self.cache.recently_pending(content_id):
            return PaymentStatus(content_id, record.payment_state, intent)

        settlement = await self.oracle.poll_settlement(intent)
        state = await self._apply(record.payment_state, content_id, settlement)

        if state == PaymentState.PENDING and self.cache:
            await self.cache.remember_pending(content_id)

        return PaymentStatus(content_id, state, await self.store.get_intent(content_id))

    async def release_key(self, content_id: str, payer: Optional[str] = None) -> ReleasedKey:
        """
        Disclose the content key and nonce, only for paid content.

        Raises:
            NotFoundError: unknown id
            PaymentRequiredError: no intent, or the backend does not currently
                report settlement
            AuthenticationError: the wrapped key does not verify
        """
        record = await self._get_record(content_id)
        intent = await self.store.get_intent(content_id)

        if intent is None:
            raise PaymentRequiredError(content_id, None, "No payment intent for this content")

        settlement = await self.oracle.verify_access(content_id, payer, intent)
        state = await self._apply(record.payment_state, content_id, settlement)

        if not settlement.settled or state != PaymentState.PAID:
            refreshed = await self.store.get_intent(content_id)
            status = refreshed.status.value if refreshed else None
            logger.info(f"Key request for {content_id[:12]}... refused (state {state.value})")
            raise PaymentRequiredError(content_id, status, settlement.detail or "Payment not settled")

        content_key = self.vault.unwrap(
            record.wrapped_key, record.wrap_nonce, record.wrap_tag, record.id
        )
        logger.info(f"Key released for {content_id[:12]}...")
        return ReleasedKey(record.id, record.algorithm, content_key, record.content_nonce)

    async def _apply(self, state: PaymentState, content_id: str, settlement: Settlement) -> PaymentState:
        """Turn an adapter report into a transition, if one genuinely applies."""
        if state != PaymentState.PENDING:
            return state

        if settlement.mint_ref:
            await self.store.set_mint_ref(content_id, settlement.mint_ref)

        if settlement.settled:
            return await self.store.record_settlement(content_id, IntentStatus.SETTLED, PaymentState.PAID)
        if settlement.failed:
            logger.warning(f"Payment for {content_id[:12]}... rejected: {settlement.detail}")
            return await self.store.record_settlement(content_id, IntentStatus.FAILED, PaymentState.FAILED)
        return state
