"""
SealPay SDK - Configuration
Environment-driven settings. The master secret is loaded once here and
handed to the Key Vault explicitly.
"""

import os
import base64
import binascii
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

MASTER_KEY_SIZE = 32
DEFAULT_MAX_UPLOAD_BYTES = 2 * 1024 * 1024 * 1024


@dataclass(frozen=True)
class MasterSecret:
    """
    Process-wide 256-bit key from which every KEK is derived.

    Never persisted, never logged: repr and str are redacted.
    """
    key: bytes = field(repr=False)

    def __post_init__(self):
        if len(self.key) != MASTER_KEY_SIZE:
            raise ValueError(f"Master secret must be {MASTER_KEY_SIZE} bytes")

    @classmethod
    def from_base64(cls, value: str) -> "MasterSecret":
        try:
            raw = base64.b64decode(value.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("MASTER_KEY_BASE64 is not valid base64") from None
        return cls(raw)

    def __repr__(self) -> str:
        return "MasterSecret(<redacted>)"

    __str__ = __repr__


@dataclass(frozen=True)
class Settings:
    """
    Immutable service configuration.

    Example:
        settings = Settings.from_env()
        vault = KeyVault(settings.master_secret)
    """
    master_secret: MasterSecret
    data_dir: Path = Path(".")
    db_path: Path = Path("sealpay.db")
    blobs_dir: Path = Path("blobs")
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    settlement_backend: str = "invoice"
    invoice_amount_sat: int = 1000
    redis_url: Optional[str] = None
    status_cache_ttl: int = 5
    receipt_private_key: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        """
        Build settings from the environment (and an optional .env file).

        Raises:
            ValueError: if MASTER_KEY_BASE64 is missing or not 32 bytes
        """
        load_dotenv(env_file)

        master_b64 = os.getenv("MASTER_KEY_BASE64", "")
        if not master_b64:
            raise ValueError("MASTER_KEY_BASE64 missing (32 bytes, base64)")

        data_dir = Path(os.getenv("SEALPAY_DATA_DIR", "."))

        return cls(
            master_secret=MasterSecret.from_base64(master_b64),
            data_dir=data_dir,
            db_path=Path(os.getenv("DB_PATH", str(data_dir / "sealpay.db"))),
            blobs_dir=Path(os.getenv("BLOBS_DIR", str(data_dir / "blobs"))),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(DEFAULT_MAX_UPLOAD_BYTES))),
            settlement_backend=os.getenv("SETTLEMENT_BACKEND", "invoice").strip().lower(),
            invoice_amount_sat=int(os.getenv("INVOICE_AMOUNT_SAT", "1000")),
            redis_url=os.getenv("REDIS_URL") or None,
            status_cache_ttl=int(os.getenv("STATUS_CACHE_TTL_SECONDS", "5")),
            receipt_private_key=os.getenv("RECEIPT_PRIVATE_KEY") or None,
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
        )
