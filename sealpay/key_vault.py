"""
SealPay SDK - Key Vault
Per-content key-encryption keys derived from one master secret.

The vault holds no state besides the injected master secret. Every KEK is
recomputed on demand: HKDF-SHA256(master, salt=content id bytes, info="kek").
"""

import hmac
import hashlib
import logging

from .config import MasterSecret
from .crypto import (
    KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    aead_decrypt,
    aead_encrypt,
    hkdf_sha256,
    random_nonce,
    validate_content_id,
)
from .errors import AuthenticationError, InputError
from .models import WrappedKey

logger = logging.getLogger("sealpay.key_vault")

KEK_INFO = b"kek"
FINGERPRINT_INFO = b"fingerprint"


def derive_kek(master: MasterSecret, content_id: str) -> bytes:
    """Deterministic KEK for one content id. Never stored."""
    validate_content_id(content_id)
    return hkdf_sha256(master.key, salt=bytes.fromhex(content_id), info=KEK_INFO)


def derive_fingerprint_key(master: MasterSecret) -> bytes:
    return hkdf_sha256(master.key, salt=b"", info=FINGERPRINT_INFO)


class KeyVault:
    """
    Wraps and unwraps content keys.

    Compromising one wrapped-key record discloses nothing about another
    content's key: each id salts its own KEK. Compromising the master
    secret compromises all of them.

    Example:
        vault = KeyVault(settings.master_secret)
        wrapped = vault.wrap(content_key, content_id)
        assert vault.unwrap(wrapped.wrapped, wrapped.wrap_nonce,
                            wrapped.wrap_tag, content_id) == content_key
    """

    def __init__(self, master: MasterSecret):
        self._master = master
        self._fingerprint_key = derive_fingerprint_key(master)

    def __repr__(self) -> str:
        return "KeyVault(<redacted>)"

    def derive_kek(self, content_id: str) -> bytes:
        return derive_kek(self._master, content_id)

    def wrap(self, content_key: bytes, content_id: str) -> WrappedKey:
        """AEAD-encrypt a content key under the id's KEK with a fresh nonce."""
        if len(content_key) != KEY_SIZE:
            raise InputError(f"Content key must be {KEY_SIZE} bytes")

        kek = self.derive_kek(content_id)
        nonce = random_nonce()
        wrapped, tag = aead_encrypt(kek, nonce, content_key, content_id.encode("ascii"))
        return WrappedKey(wrapped=wrapped, wrap_nonce=nonce, wrap_tag=tag)

    def unwrap(self, wrapped: bytes, wrap_nonce: bytes, wrap_tag: bytes, content_id: str) -> bytes:
        """
        Recover a content key.

        Raises:
            AuthenticationError: if the wrap does not verify for this id;
                no key material is returned in that case
        """
        if len(wrap_nonce) != NONCE_SIZE or len(wrap_tag) != TAG_SIZE:
            raise AuthenticationError("Malformed key wrap")

        kek = self.derive_kek(content_id)
        try:
            return aead_decrypt(kek, wrap_nonce, wrapped, wrap_tag, content_id.encode("ascii"))
        except AuthenticationError:
            logger.error(f"Key unwrap failed for {content_id[:12]}... (tampered record?)")
            raise

    def fingerprinter(self) -> "hmac.HMAC":
        """Keyed plaintext digest used to detect re-uploads of identical bytes."""
        return hmac.new(self._fingerprint_key, digestmod=hashlib.sha256)
