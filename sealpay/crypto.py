"""
SealPay SDK - AEAD Primitives
AES-256-GCM sealing and HKDF-SHA256 derivation.

Sealed blob layout: ciphertext || tag (16 bytes). The nonce travels
separately, in the metadata row and in the key-release response.
"""

import os
import re
import hashlib

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import AuthenticationError, InputError

ALGORITHM = "aes-256-gcm"
KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16

_CONTENT_ID_RE = re.compile(r"^[0-9a-f]{64}$")


def random_key() -> bytes:
    return os.urandom(KEY_SIZE)


def random_nonce() -> bytes:
    return os.urandom(NONCE_SIZE)


def validate_content_id(content_id: str) -> str:
    """Content ids are lowercase hex SHA-256 digests."""
    if not isinstance(content_id, str) or not _CONTENT_ID_RE.match(content_id):
        raise InputError("Content id must be 64 lowercase hex characters")
    return content_id


def hkdf_sha256(ikm: bytes, salt: bytes, info: bytes, length: int = KEY_SIZE) -> bytes:
    """Extract-and-expand key derivation."""
    return HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info,
    ).derive(ikm)


def aead_encrypt(key: bytes, nonce: bytes, plaintext: bytes, associated_data: bytes = None):
    """
    Encrypt with AES-256-GCM.

    Returns:
        Tuple of (ciphertext, tag)
    """
    sealed = AESGCM(key).encrypt(nonce, plaintext, associated_data)
    return sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes,
                 associated_data: bytes = None) -> bytes:
    """
    Decrypt with AES-256-GCM.

    Raises:
        AuthenticationError: if the tag does not verify
    """
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, associated_data)
    except InvalidTag:
        raise AuthenticationError("AEAD tag verification failed") from None


class StreamSealer:
    """
    Single-pass AES-256-GCM encryptor that also digests its own output.

    Feed plaintext chunks with update(); each call returns the ciphertext
    bytes to append to the blob. finalize() returns the trailing bytes
    (including the tag) and the hex digest of the complete sealed blob.

    Example:
        sealer = StreamSealer(key, nonce)
        for chunk in chunks:
            out.write(sealer.update(chunk))
        tail, digest = sealer.finalize()
        out.write(tail)
    """

    def __init__(self, key: bytes, nonce: bytes):
        self._encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
        self._digest = hashlib.sha256()
        self.plaintext_size = 0

    def update(self, chunk: bytes) -> bytes:
        self.plaintext_size += len(chunk)
        ciphertext = self._encryptor.update(chunk)
        self._digest.update(ciphertext)
        return ciphertext

    def finalize(self):
        tail = self._encryptor.finalize() + self._encryptor.tag
        self._digest.update(tail)
        return tail, self._digest.hexdigest()


def open_sealed(sealed: bytes, key: bytes, nonce: bytes) -> bytes:
    """
    Decrypt a sealed blob (ciphertext || tag) back to its plaintext.

    Raises:
        InputError: if the blob is shorter than a tag or key/nonce sizes are wrong
        AuthenticationError: if the blob was tampered with or the key is wrong
    """
    if len(key) != KEY_SIZE or len(nonce) != NONCE_SIZE:
        raise InputError(f"Key must be {KEY_SIZE} bytes and nonce {NONCE_SIZE} bytes")
    if len(sealed) < TAG_SIZE:
        raise InputError("Sealed blob shorter than the authentication tag")
    return aead_decrypt(key, nonce, sealed[:-TAG_SIZE], sealed[-TAG_SIZE:])
