"""
Decrypt a downloaded sealed blob with a released key.

Usage:
    python -m sealpay.decrypt_local cipher.bin out.mp4 <CONTENT_KEY_B64> <NONCE_B64>
"""

import sys
import base64
import binascii
import argparse
from pathlib import Path

from .crypto import open_sealed
from .errors import SealPayError


def decrypt_file(in_path: Path, out_path: Path, key_b64: str, nonce_b64: str) -> int:
    """Decrypt in_path into out_path. Returns the plaintext size."""
    try:
        key = base64.b64decode(key_b64, validate=True)
        nonce = base64.b64decode(nonce_b64, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Key and nonce must be base64: {e}") from None

    plaintext = open_sealed(Path(in_path).read_bytes(), key, nonce)
    Path(out_path).write_bytes(plaintext)
    return len(plaintext)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Decrypt a SealPay blob")
    parser.add_argument("in_path", type=Path, help="sealed blob (ciphertext || tag)")
    parser.add_argument("out_path", type=Path, help="where to write the plaintext")
    parser.add_argument("key_b64", help="content key from /keys/{id}, base64")
    parser.add_argument("nonce_b64", help="nonce from /keys/{id}, base64")
    args = parser.parse_args(argv)

    try:
        size = decrypt_file(args.in_path, args.out_path, args.key_b64, args.nonce_b64)
    except (SealPayError, ValueError, OSError) as e:
        print(f"Decryption failed: {e}", file=sys.stderr)
        return 1

    print(f"Wrote {size} bytes to {args.out_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
