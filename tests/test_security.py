"""Tests for Ed25519 signed receipts."""
import os

import pytest

from sealpay import ReceiptSigner


@pytest.fixture
def signer():
    return ReceiptSigner(os.urandom(32).hex())


def test_sign_and_verify(signer):
    receipt = signer.sign_response({"id": "ab" * 32, "size": 1024, "algorithm": "aes-256-gcm"})

    assert receipt["provider_pubkey"] == signer.public_key_hex
    assert ReceiptSigner.verify_receipt(receipt)


def test_tampered_data_rejected(signer):
    receipt = signer.sign_response({"payment_state": "pending"})
    receipt["data"]["payment_state"] = "paid"

    assert not ReceiptSigner.verify_receipt(receipt)


def test_forged_signature_rejected(signer):
    receipt = signer.sign_response({"id": "x"})
    other = ReceiptSigner(os.urandom(32).hex())
    receipt["signature"] = other.sign_response({"id": "x"})["signature"]

    assert not ReceiptSigner.verify_receipt(receipt)


def test_malformed_receipt(signer):
    assert not ReceiptSigner.verify_receipt({"data": {}})


def test_key_is_stable_for_same_seed():
    seed = os.urandom(32).hex()
    assert ReceiptSigner(seed).public_key_hex == ReceiptSigner(seed).public_key_hex


def test_invalid_seed():
    with pytest.raises(ValueError):
        ReceiptSigner("not-hex")
