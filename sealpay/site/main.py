"""
SealPay402 API Server
Sealed content with keys released on payment (HTTP 402).

Routes:
- POST /content            - Upload and seal a payload (raw body)
- GET  /content/{id}       - Download the sealed blob (always public)
- POST /pay/{id}           - Open a payment intent
- GET  /pay/{id}/status    - Reconcile payment state with the backend
- GET  /keys/{id}          - Content key + nonce, only once paid
- GET  /receipt-key        - Public key for receipt verification
- GET  /integrity          - Blob/metadata consistency report
"""

import base64
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel

from sealpay import (
    BlobStore,
    ContentSealer,
    KeyVault,
    Layer402Middleware,
    MetadataStore,
    PaymentOracle,
    PayloadTooLargeError,
    ReceiptSigner,
    ReleaseAuthorizer,
    SettlementCache,
    Settings,
    __version__,
    build_oracle,
)
from sealpay.crypto import validate_content_id
from sealpay.integrity import audit, resolve_blob

ROOT_DIR = Path(__file__).parent.parent.parent

logger = logging.getLogger("sealpay.site")


# === LOGGING ===
def setup_logging(log_dir: Path):
    log_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.handlers = []

    file_handler = RotatingFileHandler(
        log_dir / "sealpay.log",
        maxBytes=10_000_000,
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# === PYDANTIC MODELS ===

class PaymentRequest(BaseModel):
    """Request body for opening a payment intent."""
    payer: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "example": {"payer": "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"}
        }
    }


# === APP ===

def create_app(
    settings: Settings = None,
    oracle: PaymentOracle = None,
    signer: ReceiptSigner = None,
    cache: SettlementCache = None
) -> FastAPI:
    """
    Build the API. Collaborators can be injected (tests); otherwise they
    are constructed from the settings.
    """
    settings = settings or Settings.from_env(ROOT_DIR / ".env")

    vault = KeyVault(settings.master_secret)
    blobs = BlobStore(settings.blobs_dir)
    store = MetadataStore(str(settings.db_path))
    sealer = ContentSealer(vault, blobs, store, max_size=settings.max_upload_bytes)
    oracle = oracle or build_oracle(settings)
    cache = cache or SettlementCache(settings.redis_url, settings.status_cache_ttl)
    authorizer = ReleaseAuthorizer(store, oracle, vault, cache)
    signer = signer or ReceiptSigner(settings.receipt_private_key)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        await store.init_db()

        if await cache.init_cache():
            logger.info("Redis status cache: ENABLED")
        else:
            logger.warning("Redis status cache: DISABLED (polling backend directly)")

        report = await audit(blobs, store)
        if not report.ok:
            logger.error("=" * 50)
            logger.error("Blob store and metadata disagree - see GET /integrity")
            logger.error("=" * 50)

        logger.info(f"SealPay402 starting on {settings.host}:{settings.port}")
        logger.info(f"Settlement backend: {oracle.kind.value}")
        logger.info(f"Max upload: {settings.max_upload_bytes} bytes")

        yield

        # Shutdown
        await cache.close()
        await oracle.close()
        logger.info("Server shutdown complete")

    app = FastAPI(
        title="SealPay402 API",
        description="Sealed content, keys released on payment",
        version=__version__,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(Layer402Middleware)

    # === PUBLIC ROUTES ===

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "settlement_backend": oracle.kind.value,
            "cache": await cache.get_cache_stats()
        }

    @app.get("/receipt-key")
    async def get_receipt_key():
        """Public key that verifies the 'signature' field of receipts."""
        return {
            "provider": "SealPay402",
            "protocol": "Ed25519",
            "public_key": signer.public_key_hex,
            "usage": {
                "verification_steps": [
                    "1. Extract 'data' from the receipt",
                    "2. Compute SHA-256 of JSON-serialized data (sorted keys, compact separators)",
                    "3. Concatenate: '{data_hash}:{timestamp}'",
                    "4. Verify the Ed25519 signature over that message with this key"
                ]
            }
        }

    @app.get("/integrity")
    async def integrity():
        return (await audit(blobs, store)).to_dict()

    def with_receipt(body: dict) -> dict:
        """Response body plus a signed receipt over that same body."""
        return {**body, "receipt": signer.sign_response(body)}

    # === CONTENT ROUTES ===

    @app.post("/content")
    async def upload_content(request: Request):
        """Seal the raw request body. Returns {id, algorithm, size, created} and its receipt."""
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > settings.max_upload_bytes:
            raise PayloadTooLargeError(f"Upload exceeds {settings.max_upload_bytes} bytes")

        result = await sealer.seal(request.stream())
        return with_receipt(result.to_dict())

    @app.get("/content/{content_id}")
    async def download_content(content_id: str):
        """Sealed blob, unconditionally. Useless without the key."""
        validate_content_id(content_id)
        path = await resolve_blob(blobs, store, content_id)
        return FileResponse(path, media_type="application/octet-stream")

    # === PAYMENT ROUTES ===

    @app.post("/pay/{content_id}")
    async def request_payment(content_id: str, body: Optional[PaymentRequest] = None):
        validate_content_id(content_id)
        payer = body.payer if body else None

        status = await authorizer.request_payment(content_id, payer)
        return with_receipt(status.to_dict())

    @app.get("/pay/{content_id}/status")
    async def payment_status(content_id: str):
        validate_content_id(content_id)
        status = await authorizer.refresh(content_id)
        return with_receipt(status.to_dict())

    @app.get("/keys/{content_id}")
    async def release_key(
        content_id: str,
        payer: Optional[str] = None,
        x_payer_wallet: Optional[str] = Header(default=None)
    ):
        """Content key and nonce; 402 until the backend confirms payment."""
        validate_content_id(content_id)
        released = await authorizer.release_key(content_id, payer or x_payer_wallet)
        return {
            "id": released.content_id,
            "algorithm": released.algorithm,
            "content_key_b64": base64.b64encode(released.content_key).decode("ascii"),
            "nonce_b64": base64.b64encode(released.nonce).decode("ascii")
        }

    return app


# === ENTRY POINT ===
def run():
    settings = Settings.from_env(ROOT_DIR / ".env")
    setup_logging(settings.data_dir / "logs")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
