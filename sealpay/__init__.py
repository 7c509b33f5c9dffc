"""
SealPay SDK - Pay-to-Decrypt Content Protocol

Sells access to uploaded binary content: uploads are sealed with
AES-256-GCM, the sealed blob is public, and the content key is released
(HTTP 402 until then) only once a settlement backend confirms payment.

Settlement backends:
- Lightning invoices (LND REST)
- Solana access-token ownership
- Fee-sponsored mint transactions (relay + Solana finality)

Usage:
    from sealpay import (
        Settings, KeyVault, BlobStore, MetadataStore,
        ContentSealer, ReleaseAuthorizer, build_oracle
    )

    settings = Settings.from_env()
    vault = KeyVault(settings.master_secret)
    store = MetadataStore("sealpay.db")
    sealer = ContentSealer(vault, BlobStore("blobs"), store)
    authorizer = ReleaseAuthorizer(store, build_oracle(settings), vault)

    result = await sealer.seal(chunks)
    await authorizer.request_payment(result.id)
    key = await authorizer.release_key(result.id)
"""

# Core components
from .config import MasterSecret, Settings
from .key_vault import KeyVault, derive_kek
from .blob_store import BlobStore
from .store import MetadataStore
from .sealer import ContentSealer
from .authorizer import ReleaseAuthorizer

# Settlement
from .oracle import (
    BackendKind,
    InvoiceBackend,
    InvoiceMintBackend,
    OwnershipBackend,
    SponsoredBackend,
    PaymentOracle,
    build_oracle,
)
from .lightning import LndClient
from .chain import ChainClient
from .relay import SponsorRelayClient
from .cache import SettlementCache

# HTTP & receipts
from .middleware import Layer402Middleware
from .security import ReceiptSigner, SignedReceipt

# Types
from .models import (
    ContentRecord,
    IntentStatus,
    PaymentIntent,
    PaymentState,
    PaymentStatus,
    ReleasedKey,
    SealResult,
    Settlement,
)
from .errors import (
    AuthenticationError,
    ExternalBackendError,
    IllegalTransitionError,
    InputError,
    IntegrityError,
    NotFoundError,
    PayloadTooLargeError,
    PaymentRequiredError,
    SealPayError,
)

__version__ = "0.1.0"

__all__ = [
    # Core components
    "MasterSecret",
    "Settings",
    "KeyVault",
    "derive_kek",
    "BlobStore",
    "MetadataStore",
    "ContentSealer",
    "ReleaseAuthorizer",

    # Settlement
    "BackendKind",
    "InvoiceBackend",
    "InvoiceMintBackend",
    "OwnershipBackend",
    "SponsoredBackend",
    "PaymentOracle",
    "build_oracle",
    "LndClient",
    "ChainClient",
    "SponsorRelayClient",
    "SettlementCache",

    # HTTP & receipts
    "Layer402Middleware",
    "ReceiptSigner",
    "SignedReceipt",

    # Types
    "ContentRecord",
    "IntentStatus",
    "PaymentIntent",
    "PaymentState",
    "PaymentStatus",
    "ReleasedKey",
    "SealResult",
    "Settlement",

    # Errors
    "SealPayError",
    "InputError",
    "PayloadTooLargeError",
    "NotFoundError",
    "PaymentRequiredError",
    "IllegalTransitionError",
    "AuthenticationError",
    "IntegrityError",
    "ExternalBackendError",

    # Metadata
    "__version__",
]
