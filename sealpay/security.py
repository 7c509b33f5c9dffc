"""
SealPay SDK - Signed Receipts
Ed25519-signed envelopes for upload, payment and status responses.

A receipt lets a client prove later what the service told it, e.g. that
content id X was registered with size N, or that X was reported paid.
Released content keys are never placed in a receipt.
"""

import os
import json
import time
import hashlib
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

logger = logging.getLogger("sealpay.security")


@dataclass
class SignedReceipt:
    """
    Attributes:
        data: The original response payload
        signature: Ed25519 signature over "<data_hash>:<timestamp>" (hex)
        timestamp: Unix timestamp of signing
        provider_pubkey: Verification key (hex)
        data_hash: SHA-256 of the canonical JSON payload (hex)
    """
    data: Any
    signature: str
    timestamp: int
    provider_pubkey: str
    data_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReceiptSigner:
    """
    Signs response payloads with the service's Ed25519 key.

    The key comes from RECEIPT_PRIVATE_KEY (hex seed) or is generated
    fresh; persist it to keep receipts verifiable across restarts.

    Example:
        signer = ReceiptSigner()
        receipt = signer.sign_response({"id": content_id, "size": 1024})
        assert ReceiptSigner.verify_receipt(receipt)
    """

    def __init__(self, private_key_hex: Optional[str] = None):
        key_hex = private_key_hex or os.getenv("RECEIPT_PRIVATE_KEY", "")

        if key_hex:
            try:
                self._signing_key = SigningKey(bytes.fromhex(key_hex))
                logger.info("Loaded receipt signing key from configuration")
            except (ValueError, TypeError) as e:
                raise ValueError(f"Invalid RECEIPT_PRIVATE_KEY: {e}") from None
        else:
            self._signing_key = SigningKey.generate()
            logger.warning("Generated ephemeral receipt signing key (set RECEIPT_PRIVATE_KEY for production)")

        self._pubkey_hex = self._signing_key.verify_key.encode(encoder=HexEncoder).decode("ascii")
        logger.info(f"Receipt public key: {self._pubkey_hex[:16]}...{self._pubkey_hex[-16:]}")

    @property
    def public_key_hex(self) -> str:
        return self._pubkey_hex

    @staticmethod
    def _hash_data(data: Any) -> str:
        """SHA-256 of sorted, compact JSON."""
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hashlib.sha256(canonical).hexdigest()

    def sign_response(self, data: Any) -> Dict[str, Any]:
        timestamp = int(time.time())
        data_hash = self._hash_data(data)
        message = f"{data_hash}:{timestamp}".encode("utf-8")

        signed = self._signing_key.sign(message, encoder=HexEncoder)

        return SignedReceipt(
            data=data,
            signature=signed.signature.decode("ascii"),
            timestamp=timestamp,
            provider_pubkey=self._pubkey_hex,
            data_hash=data_hash
        ).to_dict()

    @staticmethod
    def verify_receipt(receipt: Dict[str, Any]) -> bool:
        """
        Verify a receipt from any ReceiptSigner, without the private key.

        Returns:
            True if the hash matches the data and the signature is valid
        """
        try:
            data_hash = receipt["data_hash"]
            if ReceiptSigner._hash_data(receipt["data"]) != data_hash:
                logger.warning("Receipt hash mismatch - data may be tampered")
                return False

            message = f"{data_hash}:{receipt['timestamp']}".encode("utf-8")
            verify_key = VerifyKey(bytes.fromhex(receipt["provider_pubkey"]))
            verify_key.verify(message, bytes.fromhex(receipt["signature"]))
            return True

        except BadSignatureError:
            logger.warning("Invalid receipt signature")
            return False
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed receipt: {e}")
            return False
