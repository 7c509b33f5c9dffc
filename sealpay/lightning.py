"""
SealPay SDK - Lightning Invoice Client
Minimal LND REST client for invoice-backed settlement.
"""

import os
import ssl
import base64
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from .errors import ExternalBackendError

logger = logging.getLogger("sealpay.lightning")


class LndClient:
    """
    Creates and looks up Lightning invoices through LND's REST API.

    Args:
        url: LND REST base URL (default from LND_URL env)
        macaroon_hex: Invoice macaroon, hex-encoded (default from LND_MACAROON_HEX)
        tls_cert_b64: Node TLS certificate, base64 PEM (default from LND_TLS_CERT_B64)
        timeout: HTTP request timeout in seconds
        max_retries: Attempts on transient failures
        retry_delay: Delay between attempts in seconds
        transport: Optional httpx transport (tests)

    Example:
        lnd = LndClient()
        invoice = await lnd.add_invoice(1000, "content:ab12...")
        state = await lnd.lookup_invoice(invoice["r_hash_hex"])
    """

    def __init__(
        self,
        url: str = None,
        macaroon_hex: str = None,
        tls_cert_b64: str = None,
        timeout: float = 10.0,
        max_retries: int = None,
        retry_delay: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = (url or os.getenv("LND_URL", "https://localhost:8080")).rstrip("/")
        self.macaroon_hex = macaroon_hex or os.getenv("LND_MACAROON_HEX", "")
        self.max_retries = max_retries or int(os.getenv("RPC_MAX_RETRIES", "3"))
        self.retry_delay = retry_delay if retry_delay is not None else float(
            os.getenv("RPC_RETRY_DELAY_SECONDS", "1.0")
        )

        cert_b64 = tls_cert_b64 or os.getenv("LND_TLS_CERT_B64", "")
        if cert_b64:
            verify = ssl.create_default_context(cadata=base64.b64decode(cert_b64).decode("ascii"))
        else:
            verify = False
            logger.warning("LND_TLS_CERT_B64 not set - TLS verification disabled (dev only)")

        if not self.macaroon_hex:
            logger.warning("LND_MACAROON_HEX not configured - invoice calls will be rejected")

        self._client = httpx.AsyncClient(
            base_url=self.url,
            headers={"Grpc-Metadata-macaroon": self.macaroon_hex},
            timeout=timeout,
            verify=verify,
            transport=transport
        )
        logger.info(f"LND REST endpoint: {self.url}")

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Dict[str, Any] = None) -> Dict[str, Any]:
        """Send a request, retrying network errors and 5xx answers."""
        last_error = None

        for attempt in range(self.max_retries):
            try:
                resp = await self._client.request(method, path, json=json)
            except httpx.TransportError as e:
                last_error = e
            else:
                if resp.status_code < 400:
                    return resp.json()
                if resp.status_code < 500:
                    raise ExternalBackendError(
                        f"LND rejected {method} {path}: {resp.status_code}",
                        retryable=False
                    )
                last_error = f"LND {resp.status_code}"

            if attempt < self.max_retries - 1:
                logger.warning(f"LND attempt {attempt + 1} failed, retrying...")
                await asyncio.sleep(self.retry_delay)

        logger.error(f"LND unavailable after {self.max_retries} attempts: {last_error}")
        raise ExternalBackendError("Lightning node unavailable")

    async def add_invoice(self, value_sat: int, memo: str) -> Dict[str, str]:
        """
        Create an invoice.

        Returns:
            Dict with r_hash_hex and payment_request (bolt11)
        """
        data = await self._request("POST", "/v1/invoices", {"memo": memo, "value": value_sat})
        try:
            r_hash_hex = base64.b64decode(data["r_hash"]).hex()
            payment_request = data["payment_request"]
        except (KeyError, ValueError) as e:
            raise ExternalBackendError(f"Malformed LND invoice response: {e}", retryable=False)

        logger.info(f"Created invoice {r_hash_hex[:12]}... for {value_sat} sat")
        return {"r_hash_hex": r_hash_hex, "payment_request": payment_request}

    async def lookup_invoice(self, r_hash_hex: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/invoice/{r_hash_hex}")
