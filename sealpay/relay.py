"""
SealPay SDK - Sponsored Transaction Relay Client
Submits fee-sponsored access-token mints on behalf of a payer.
"""

import os
import asyncio
import logging
from typing import Optional

import httpx

from .errors import ExternalBackendError, InputError

logger = logging.getLogger("sealpay.relay")


class SponsorRelayClient:
    """
    Client for a paymaster relay that signs and submits a mint transaction,
    paying the network fees itself.

    Args:
        url: Relay base URL (default from SPONSOR_RELAY_URL)
        api_key: Relay API key (default from SPONSOR_RELAY_API_KEY)
        timeout: HTTP request timeout in seconds
        max_retries: Attempts on network errors
        retry_delay: Delay between attempts in seconds
    """

    SUBMIT_PATH = "/v1/transactions/mint"

    def __init__(
        self,
        url: str = None,
        api_key: str = None,
        timeout: float = 30.0,
        max_retries: int = None,
        retry_delay: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = (url or os.getenv("SPONSOR_RELAY_URL", "")).rstrip("/")
        if not self.url:
            raise ValueError("SPONSOR_RELAY_URL not configured")

        api_key = api_key or os.getenv("SPONSOR_RELAY_API_KEY", "")
        self.max_retries = max_retries or int(os.getenv("RPC_MAX_RETRIES", "3"))
        self.retry_delay = retry_delay if retry_delay is not None else float(
            os.getenv("RPC_RETRY_DELAY_SECONDS", "1.0")
        )

        self._client = httpx.AsyncClient(
            base_url=self.url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport
        )

    async def close(self):
        await self._client.aclose()

    async def submit_mint(self, owner: str, mint: str, content_id: str,
                          idempotency_key: Optional[str] = None) -> str:
        """
        Ask the relay to mint the access token to `owner`.

        Args:
            idempotency_key: Sent as Idempotency-Key; the relay answers a
                repeated key with the original submission

        Returns:
            Submitted transaction signature

        Raises:
            InputError: if the relay rejects the payer
            ExternalBackendError: if the relay is unreachable
        """
        payload = {"owner": owner, "mint": mint, "memo": f"content:{content_id}"}
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        last_error = None

        # Only retried when the request never reached the relay: a submitted
        # mint must not be sent twice.
        for attempt in range(self.max_retries):
            try:
                resp = await self._client.post(self.SUBMIT_PATH, json=payload, headers=headers)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                last_error = e
            except httpx.TransportError as e:
                raise ExternalBackendError(f"Relay request interrupted: {e}")
            else:
                if resp.status_code in (400, 422):
                    raise InputError(f"Relay rejected payer: {resp.text[:200]}")
                if resp.status_code >= 400:
                    raise ExternalBackendError(f"Relay returned {resp.status_code}")
                signature = resp.json().get("signature")
                if not signature:
                    raise ExternalBackendError("Relay returned no signature", retryable=False)
                logger.info(f"Sponsored mint submitted: {signature[:12]}...")
                return signature

            if attempt < self.max_retries - 1:
                logger.warning(f"Relay attempt {attempt + 1} failed, retrying...")
                await asyncio.sleep(self.retry_delay)

        logger.error(f"Relay unavailable after {self.max_retries} attempts: {last_error}")
        raise ExternalBackendError("Sponsor relay unavailable")
