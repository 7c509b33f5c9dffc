"""
SealPay SDK - Solana Chain Client
Token-ownership and transaction-finality queries for on-chain settlement.

Each content id maps to one access token: the mint is a program-derived
address over (b"sealpay", id bytes) under the configured collection program.
Holding a non-zero balance of that mint is proof of payment.
"""

import os
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TokenAccountOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from .crypto import validate_content_id
from .errors import ExternalBackendError, InputError

logger = logging.getLogger("sealpay.chain")

T = TypeVar("T")

MINT_SEED = b"sealpay"


class TxFinality(Enum):
    PENDING = "pending"
    FINALIZED = "finalized"
    FAILED = "failed"


def parse_pubkey(value: str, what: str = "wallet") -> Pubkey:
    try:
        return Pubkey.from_string(value.strip())
    except (ValueError, AttributeError):
        raise InputError(f"Invalid {what} address") from None


class ChainClient:
    """
    Queries Solana for access-token ownership and transaction finality.

    Args:
        rpc_url: Solana RPC endpoint URL (default from SOLANA_RPC_URL)
        collection_program: Program id the access-token mints derive from
            (default from SOLANA_COLLECTION_PROGRAM)
        max_retries: Number of RPC retry attempts
        retry_delay: Delay between retries in seconds

    Example:
        chain = ChainClient(rpc_url="https://api.devnet.solana.com")
        mint = chain.mint_for(content_id)
        if await chain.owns_token(content_id, "Wallet111..."):
            ...
    """

    def __init__(
        self,
        rpc_url: str = None,
        collection_program: str = None,
        max_retries: int = None,
        retry_delay: float = None,
        client: AsyncClient = None
    ):
        self.rpc_url = rpc_url or os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
        self.max_retries = max_retries or int(os.getenv("RPC_MAX_RETRIES", "3"))
        self.retry_delay = retry_delay if retry_delay is not None else float(
            os.getenv("RPC_RETRY_DELAY_SECONDS", "1.0")
        )

        program = collection_program or os.getenv("SOLANA_COLLECTION_PROGRAM", "")
        if not program:
            raise ValueError("SOLANA_COLLECTION_PROGRAM not configured")
        self.program_id = parse_pubkey(program, "collection program")

        self.client = client or AsyncClient(self.rpc_url)
        logger.info(f"Connected to Solana RPC: {self.rpc_url}")

    async def close(self):
        """Close the Solana RPC client."""
        if self.client:
            await self.client.close()

    def mint_for(self, content_id: str) -> Pubkey:
        validate_content_id(content_id)
        mint, _bump = Pubkey.find_program_address(
            [MINT_SEED, bytes.fromhex(content_id)], self.program_id
        )
        return mint

    async def _with_retry(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run an RPC call with retry logic for RPC resilience."""
        last_error = None

        for attempt in range(self.max_retries):
            try:
                return await call()
            except Exception as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    logger.warning(f"RPC attempt {attempt + 1} failed, retrying...")
                    await asyncio.sleep(self.retry_delay)

        logger.error(f"RPC unavailable after {self.max_retries} attempts: {last_error}")
        raise ExternalBackendError("Solana RPC unavailable")

    async def owns_token(self, content_id: str, owner: str) -> bool:
        """True if `owner` currently holds the content's access token."""
        owner_pk = parse_pubkey(owner)
        mint = self.mint_for(content_id)

        resp = await self._with_retry(
            lambda: self.client.get_token_accounts_by_owner_json_parsed(
                owner_pk, TokenAccountOpts(mint=mint), commitment=Confirmed
            )
        )

        for keyed in resp.value:
            try:
                info = keyed.account.data.parsed["info"]
                if int(info["tokenAmount"]["amount"]) > 0:
                    return True
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Unexpected token account layout: {e}")

        return False

    async def transaction_finality(self, signature: str) -> TxFinality:
        try:
            sig = Signature.from_string(signature.strip())
        except (ValueError, AttributeError):
            raise InputError("Invalid transaction signature") from None

        resp = await self._with_retry(
            lambda: self.client.get_signature_statuses([sig], search_transaction_history=True)
        )

        status = resp.value[0] if resp.value else None
        if status is None:
            return TxFinality.PENDING
        if status.err is not None:
            logger.info(f"Transaction {signature[:12]}... failed: {status.err}")
            return TxFinality.FAILED
        if status.confirmation_status == TransactionConfirmationStatus.Finalized:
            return TxFinality.FINALIZED
        return TxFinality.PENDING
