"""
SealPay SDK - Payment Oracle Adapter
One interface over every settlement backend.

Backends are plain tagged values (one dataclass per kind); PaymentOracle
dispatches on the tag. Transient backend trouble surfaces as
ExternalBackendError; a definitive rejection is reported as
Settlement(failed=True).

On-chain backends check the requester's own wallet on every key read:
a key request without a payer is rejected, never answered with the
wallet stored on the intent.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from .chain import ChainClient, TxFinality
from .errors import InputError
from .lightning import LndClient
from .models import PaymentIntent, Settlement
from .relay import SponsorRelayClient

logger = logging.getLogger("sealpay.oracle")


class BackendKind(Enum):
    """Settlement backend variants."""
    INVOICE = "invoice"
    OWNERSHIP = "ownership"
    SPONSORED = "sponsored"
    INVOICE_MINT = "invoice_mint"


@dataclass(frozen=True)
class InvoiceBackend:
    """Lightning invoice; settlement polled by payment hash."""
    lnd: LndClient
    amount_sat: int = 1000
    kind: BackendKind = field(default=BackendKind.INVOICE, init=False)


@dataclass(frozen=True)
class OwnershipBackend:
    """No external intent; settlement is current ownership of the access token."""
    chain: ChainClient
    kind: BackendKind = field(default=BackendKind.OWNERSHIP, init=False)


@dataclass(frozen=True)
class SponsoredBackend:
    """Intent is a relay-submitted mint; settled once final and owned."""
    relay: SponsorRelayClient
    chain: ChainClient
    kind: BackendKind = field(default=BackendKind.SPONSORED, init=False)


@dataclass(frozen=True)
class InvoiceMintBackend:
    """
    Pay by Lightning invoice, then receive the access token.

    Once the invoice settles the relay mints the content's token to the
    payer; the payment counts as settled when that mint is final and the
    payer holds the token. Key reads check token ownership, so the token
    can change hands.
    """
    lnd: LndClient
    relay: SponsorRelayClient
    chain: ChainClient
    amount_sat: int = 1000
    kind: BackendKind = field(default=BackendKind.INVOICE_MINT, init=False)


SettlementBackend = Union[InvoiceBackend, OwnershipBackend, SponsoredBackend, InvoiceMintBackend]

SETTLED = Settlement(settled=True)
PENDING = Settlement(settled=False)
FAILED = Settlement(settled=False, failed=True)


def _require_payer(payer: Optional[str]) -> str:
    if not payer or not payer.strip():
        raise InputError("Payer wallet address required for on-chain settlement")
    return payer.strip()


async def _token_settlement(chain: ChainClient, content_id: str, owner: str,
                            signature: str) -> Settlement:
    finality = await chain.transaction_finality(signature)

    if finality == TxFinality.FAILED:
        return Settlement(settled=False, failed=True, detail="transaction rejected")
    if finality == TxFinality.PENDING:
        return PENDING

    # Final on chain; ownership is the confirmation
    if await chain.owns_token(content_id, owner):
        return SETTLED
    return Settlement(settled=False, detail="final but token not held by payer")


# === INVOICE ===

async def _invoice_create(backend: InvoiceBackend, content_id: str, payer: Optional[str]) -> PaymentIntent:
    invoice = await backend.lnd.add_invoice(backend.amount_sat, f"content:{content_id}")
    return PaymentIntent(
        content_id=content_id,
        backend=backend.kind.value,
        external_ref=invoice["r_hash_hex"],
        payer=payer,
        payment_request=invoice["payment_request"]
    )


async def _invoice_poll(backend: InvoiceBackend, intent: PaymentIntent) -> Settlement:
    invoice = await backend.lnd.lookup_invoice(intent.external_ref)
    state = invoice.get("state", "")

    if state == "SETTLED" or invoice.get("settled") is True:
        return SETTLED
    if state == "CANCELED":
        return Settlement(settled=False, failed=True, detail="invoice canceled")
    return PENDING


async def _invoice_verify(backend: InvoiceBackend, content_id: str, payer: Optional[str],
                          intent: PaymentIntent) -> Settlement:
    # The settled invoice itself is the proof; payer identity is not involved.
    return await _invoice_poll(backend, intent)


# === OWNERSHIP ===

async def _ownership_create(backend: OwnershipBackend, content_id: str, payer: Optional[str]) -> PaymentIntent:
    payer = _require_payer(payer)
    return PaymentIntent(
        content_id=content_id,
        backend=backend.kind.value,
        external_ref=str(backend.chain.mint_for(content_id)),
        payer=payer
    )


async def _ownership_poll(backend: OwnershipBackend, intent: PaymentIntent) -> Settlement:
    owned = await backend.chain.owns_token(intent.content_id, _require_payer(intent.payer))
    return SETTLED if owned else PENDING


async def _ownership_verify(backend: OwnershipBackend, content_id: str, payer: Optional[str],
                            intent: PaymentIntent) -> Settlement:
    owned = await backend.chain.owns_token(content_id, _require_payer(payer))
    return SETTLED if owned else PENDING


# === SPONSORED TRANSACTION ===

async def _sponsored_create(backend: SponsoredBackend, content_id: str, payer: Optional[str]) -> PaymentIntent:
    payer = _require_payer(payer)
    mint = str(backend.chain.mint_for(content_id))
    signature = await backend.relay.submit_mint(payer, mint, content_id)
    return PaymentIntent(
        content_id=content_id,
        backend=backend.kind.value,
        external_ref=signature,
        payer=payer
    )


async def _sponsored_poll(backend: SponsoredBackend, intent: PaymentIntent) -> Settlement:
    return await _token_settlement(
        backend.chain, intent.content_id, _require_payer(intent.payer), intent.external_ref
    )


async def _sponsored_verify(backend: SponsoredBackend, content_id: str, payer: Optional[str],
                            intent: PaymentIntent) -> Settlement:
    return await _token_settlement(
        backend.chain, content_id, _require_payer(payer), intent.external_ref
    )


# === INVOICE THEN MINT ===

async def _invoice_mint_create(backend: InvoiceMintBackend, content_id: str,
                               payer: Optional[str]) -> PaymentIntent:
    payer = _require_payer(payer)
    invoice = await backend.lnd.add_invoice(backend.amount_sat, f"content:{content_id}")
    return PaymentIntent(
        content_id=content_id,
        backend=backend.kind.value,
        external_ref=invoice["r_hash_hex"],
        payer=payer,
        payment_request=invoice["payment_request"]
    )


async def _submit_access_mint(backend: InvoiceMintBackend, intent: PaymentIntent, owner: str) -> Settlement:
    # One idempotency key per (invoice, previous attempt): a repeated submit
    # of the same attempt is collapsed by the relay
    attempt = f"{intent.external_ref}:{intent.mint_ref or ''}"
    signature = await backend.relay.submit_mint(
        owner,
        str(backend.chain.mint_for(intent.content_id)),
        intent.content_id,
        idempotency_key=hashlib.sha256(attempt.encode("utf-8")).hexdigest()
    )
    return Settlement(settled=False, detail="access token mint submitted", mint_ref=signature)


async def _invoice_mint_poll(backend: InvoiceMintBackend, intent: PaymentIntent) -> Settlement:
    invoice = await _invoice_poll(backend, intent)
    if not invoice.settled:
        return invoice

    owner = _require_payer(intent.payer)
    if not intent.mint_ref:
        return await _submit_access_mint(backend, intent, owner)

    minted = await _token_settlement(backend.chain, intent.content_id, owner, intent.mint_ref)
    if minted.failed:
        # The invoice is paid; a rejected mint is retried, never a failed payment
        logger.warning(f"Mint {intent.mint_ref[:12]}... rejected for {intent.content_id[:12]}..., resubmitting")
        return await _submit_access_mint(backend, intent, owner)
    return minted


async def _invoice_mint_verify(backend: InvoiceMintBackend, content_id: str, payer: Optional[str],
                               intent: PaymentIntent) -> Settlement:
    payer = _require_payer(payer)
    if await backend.chain.owns_token(content_id, payer):
        return SETTLED
    if payer == intent.payer:
        # The buyer's own mint may still be on its way
        return await _invoice_mint_poll(backend, intent)
    return Settlement(settled=False, detail="access token not held by requester")


_CREATE = {
    BackendKind.INVOICE: _invoice_create,
    BackendKind.OWNERSHIP: _ownership_create,
    BackendKind.SPONSORED: _sponsored_create,
    BackendKind.INVOICE_MINT: _invoice_mint_create,
}

_POLL = {
    BackendKind.INVOICE: _invoice_poll,
    BackendKind.OWNERSHIP: _ownership_poll,
    BackendKind.SPONSORED: _sponsored_poll,
    BackendKind.INVOICE_MINT: _invoice_mint_poll,
}

_VERIFY = {
    BackendKind.INVOICE: _invoice_verify,
    BackendKind.OWNERSHIP: _ownership_verify,
    BackendKind.SPONSORED: _sponsored_verify,
    BackendKind.INVOICE_MINT: _invoice_mint_verify,
}


class PaymentOracle:
    """
    Uniform payment contract over a settlement backend.

    Example:
        oracle = PaymentOracle(InvoiceBackend(LndClient(), amount_sat=1000))
        intent = await oracle.create_intent(content_id)
        settlement = await oracle.poll_settlement(intent)
        if settlement.settled:
            ...
    """

    def __init__(self, backend: SettlementBackend):
        self.backend = backend

    @property
    def kind(self) -> BackendKind:
        return self.backend.kind

    async def create_intent(self, content_id: str, payer: Optional[str] = None) -> PaymentIntent:
        intent = await _CREATE[self.kind](self.backend, content_id, payer)
        logger.info(f"Intent created ({self.kind.value}) for {content_id[:12]}...")
        return intent

    async def poll_settlement(self, intent: PaymentIntent) -> Settlement:
        return await _POLL[self.kind](self.backend, intent)

    async def verify_access(self, content_id: str, payer: Optional[str],
                            intent: PaymentIntent) -> Settlement:
        """Authoritative check performed on every key read."""
        return await _VERIFY[self.kind](self.backend, content_id, payer, intent)

    async def close(self):
        backend = self.backend
        if isinstance(backend, InvoiceBackend):
            await backend.lnd.close()
        elif isinstance(backend, OwnershipBackend):
            await backend.chain.close()
        elif isinstance(backend, SponsoredBackend):
            await backend.relay.close()
            await backend.chain.close()
        elif isinstance(backend, InvoiceMintBackend):
            await backend.lnd.close()
            await backend.relay.close()
            await backend.chain.close()


def build_oracle(settings) -> PaymentOracle:
    """Construct the oracle selected by SETTLEMENT_BACKEND."""
    try:
        kind = BackendKind(settings.settlement_backend)
    except ValueError:
        raise ValueError(
            f"Unknown SETTLEMENT_BACKEND {settings.settlement_backend!r}; "
            f"expected one of {[k.value for k in BackendKind]}"
        ) from None

    if kind == BackendKind.INVOICE:
        backend = InvoiceBackend(LndClient(), amount_sat=settings.invoice_amount_sat)
    elif kind == BackendKind.OWNERSHIP:
        backend = OwnershipBackend(ChainClient())
    elif kind == BackendKind.SPONSORED:
        backend = SponsoredBackend(SponsorRelayClient(), ChainClient())
    else:
        backend = InvoiceMintBackend(
            LndClient(), SponsorRelayClient(), ChainClient(),
            amount_sat=settings.invoice_amount_sat
        )

    logger.info(f"Settlement backend: {kind.value}")
    return PaymentOracle(backend)
