"""
Shared fixtures: an in-memory Lightning node behind httpx.MockTransport,
and real stores rooted in tmp_path.
"""
import base64
import hashlib

import httpx
import pytest

from sealpay import (
    BlobStore,
    ContentSealer,
    InvoiceBackend,
    KeyVault,
    LndClient,
    MasterSecret,
    MetadataStore,
    PaymentOracle,
    ReleaseAuthorizer,
)


class FakeLightning:
    """Just enough of LND's REST API: add and look up invoices."""

    def __init__(self):
        self.invoices = {}
        self.created = 0
        self.down = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if request.method == "POST" and path == "/v1/invoices":
            self.created += 1
            r_hash = hashlib.sha256(f"invoice-{self.created}".encode()).digest()
            self.invoices[r_hash.hex()] = "OPEN"
            return httpx.Response(200, json={
                "r_hash": base64.b64encode(r_hash).decode(),
                "payment_request": f"lnbc10u1fake{self.created}",
                "add_index": str(self.created),
            })

        if request.method == "GET" and path.startswith("/v1/invoice/"):
            r_hash_hex = path.rsplit("/", 1)[1]
            state = self.invoices.get(r_hash_hex)
            if state is None:
                return httpx.Response(404, json={"message": "unable to locate invoice"})
            return httpx.Response(200, json={"state": state, "settled": state == "SETTLED"})

        return httpx.Response(404, json={"message": "not found"})

    def settle(self, r_hash_hex: str):
        self.invoices[r_hash_hex] = "SETTLED"

    def cancel(self, r_hash_hex: str):
        self.invoices[r_hash_hex] = "CANCELED"


async def chunked(data: bytes, size: int = 256):
    for i in range(0, len(data), size):
        yield data[i:i + size]


@pytest.fixture
def as_chunks():
    return chunked


@pytest.fixture
def master_secret():
    return MasterSecret(bytes(range(32)))


@pytest.fixture
def vault(master_secret):
    return KeyVault(master_secret)


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(tmp_path / "blobs")


@pytest.fixture
async def store(tmp_path):
    s = MetadataStore(str(tmp_path / "sealpay.db"))
    await s.init_db()
    return s


@pytest.fixture
def sealer(vault, blobs, store):
    return ContentSealer(vault, blobs, store, max_size=64 * 1024)


@pytest.fixture
def lightning():
    return FakeLightning()


@pytest.fixture
async def oracle(lightning):
    lnd = LndClient(
        url="https://lnd.test",
        macaroon_hex="0201036c6e64",
        transport=httpx.MockTransport(lightning.handler),
        max_retries=2,
        retry_delay=0,
    )
    o = PaymentOracle(InvoiceBackend(lnd, amount_sat=1000))
    yield o
    await o.close()


@pytest.fixture
def authorizer(store, oracle, vault):
    return ReleaseAuthorizer(store, oracle, vault)
