"""Tests for the settlement backends and their clients."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from sealpay import (
    BackendKind,
    ChainClient,
    IntentStatus,
    InvoiceMintBackend,
    LndClient,
    OwnershipBackend,
    PaymentIntent,
    PaymentOracle,
    PaymentState,
    ReleaseAuthorizer,
    SponsoredBackend,
    SponsorRelayClient,
)
from sealpay.chain import TxFinality
from sealpay.errors import ExternalBackendError, InputError, PaymentRequiredError

CONTENT_ID = "ab" * 32
WALLET = str(Pubkey.new_unique())
SIGNATURE = str(Signature.default())


def token_accounts(*amounts):
    return SimpleNamespace(value=[
        SimpleNamespace(account=SimpleNamespace(data=SimpleNamespace(
            parsed={"info": {"tokenAmount": {"amount": str(a)}}}
        )))
        for a in amounts
    ])


def signature_status(err=None, confirmation=TransactionConfirmationStatus.Finalized):
    return SimpleNamespace(value=[SimpleNamespace(err=err, confirmation_status=confirmation)])


@pytest.fixture
def rpc():
    client = MagicMock()
    client.get_token_accounts_by_owner_json_parsed = AsyncMock(return_value=token_accounts())
    client.get_signature_statuses = AsyncMock(return_value=SimpleNamespace(value=[None]))
    client.close = AsyncMock()
    return client


@pytest.fixture
def chain(rpc):
    return ChainClient(
        rpc_url="http://solana.test",
        collection_program=str(Pubkey.new_unique()),
        max_retries=2,
        retry_delay=0,
        client=rpc
    )


class TestChainClient:
    def test_mint_is_deterministic_per_id(self, chain):
        assert chain.mint_for(CONTENT_ID) == chain.mint_for(CONTENT_ID)
        assert chain.mint_for(CONTENT_ID) != chain.mint_for("cd" * 32)

    def test_requires_program(self, rpc, monkeypatch):
        monkeypatch.delenv("SOLANA_COLLECTION_PROGRAM", raising=False)
        with pytest.raises(ValueError):
            ChainClient(rpc_url="http://solana.test", client=rpc)

    async def test_owns_token(self, chain, rpc):
        rpc.get_token_accounts_by_owner_json_parsed.return_value = token_accounts(0, 1)
        assert await chain.owns_token(CONTENT_ID, WALLET) is True

    async def test_zero_balance_is_not_ownership(self, chain, rpc):
        rpc.get_token_accounts_by_owner_json_parsed.return_value = token_accounts(0)
        assert await chain.owns_token(CONTENT_ID, WALLET) is False

    async def test_bad_wallet_is_input_error(self, chain):
        with pytest.raises(InputError):
            await chain.owns_token(CONTENT_ID, "not-a-wallet")

    async def test_rpc_down(self, chain, rpc):
        rpc.get_token_accounts_by_owner_json_parsed.side_effect = ConnectionError("refused")
        with pytest.raises(ExternalBackendError):
            await chain.owns_token(CONTENT_ID, WALLET)
        assert rpc.get_token_accounts_by_owner_json_parsed.await_count == 2

    @pytest.mark.parametrize("response,expected", [
        (SimpleNamespace(value=[None]), TxFinality.PENDING),
        (signature_status(err="InstructionError"), TxFinality.FAILED),
        (signature_status(confirmation=TransactionConfirmationStatus.Confirmed), TxFinality.PENDING),
        (signature_status(), TxFinality.FINALIZED),
    ])
    async def test_finality(self, chain, rpc, response, expected):
        rpc.get_signature_statuses.return_value = response
        assert await chain.transaction_finality(SIGNATURE) == expected


class TestOwnershipBackend:
    async def test_intent_requires_payer(self, chain):
        oracle = PaymentOracle(OwnershipBackend(chain))
        with pytest.raises(InputError):
            await oracle.create_intent(CONTENT_ID)

    async def test_settles_on_ownership(self, chain, rpc):
        oracle = PaymentOracle(OwnershipBackend(chain))
        intent = await oracle.create_intent(CONTENT_ID, WALLET)

        assert oracle.kind == BackendKind.OWNERSHIP
        assert intent.external_ref == str(chain.mint_for(CONTENT_ID))
        assert (await oracle.poll_settlement(intent)).settled is False

        rpc.get_token_accounts_by_owner_json_parsed.return_value = token_accounts(1)
        assert (await oracle.verify_access(CONTENT_ID, WALLET, intent)).settled is True

    async def test_access_check_requires_requester_wallet(self, chain, rpc):
        oracle = PaymentOracle(OwnershipBackend(chain))
        intent = await oracle.create_intent(CONTENT_ID, WALLET)
        rpc.get_token_accounts_by_owner_json_parsed.return_value = token_accounts(1)

        # The intent's payer never stands in for the requester
        with pytest.raises(InputError):
            await oracle.verify_access(CONTENT_ID, None, intent)
        rpc.get_token_accounts_by_owner_json_parsed.assert_not_awaited()

    async def test_transferred_token_revokes_access(self, chain, rpc):
        oracle = PaymentOracle(OwnershipBackend(chain))
        intent = await oracle.create_intent(CONTENT_ID, WALLET)
        rpc.get_token_accounts_by_owner_json_parsed.return_value = token_accounts(0)

        settlement = await oracle.verify_access(CONTENT_ID, WALLET, intent)

        assert settlement.settled is False
        assert settlement.failed is False


class TestSponsoredBackend:
    @pytest.fixture
    def relay(self):
        relay = MagicMock(spec=SponsorRelayClient)
        relay.submit_mint = AsyncMock(return_value=SIGNATURE)
        relay.close = AsyncMock()
        return relay

    async def test_intent_is_relay_signature(self, relay, chain):
        oracle = PaymentOracle(SponsoredBackend(relay, chain))
        intent = await oracle.create_intent(CONTENT_ID, WALLET)

        assert intent.external_ref == SIGNATURE
        relay.submit_mint.assert_awaited_once_with(WALLET, str(chain.mint_for(CONTENT_ID)), CONTENT_ID)

    async def test_pending_until_final(self, relay, chain):
        oracle = PaymentOracle(SponsoredBackend(relay, chain))
        intent = await oracle.create_intent(CONTENT_ID, WALLET)

        settlement = await oracle.poll_settlement(intent)
        assert settlement.settled is False and settlement.failed is False

    async def test_rejected_transaction_fails(self, relay, chain, rpc):
        oracle = PaymentOracle(SponsoredBackend(relay, chain))
        intent = await oracle.create_intent(CONTENT_ID, WALLET)
        rpc.get_signature_statuses.return_value = signature_status(err="InsufficientFunds")

        assert (await oracle.poll_settlement(intent)).failed is True

    async def test_final_and_owned_settles(self, relay, chain, rpc):
        oracle = PaymentOracle(SponsoredBackend(relay, chain))
        intent = await oracle.create_intent(CONTENT_ID, WALLET)
        rpc.get_signature_statuses.return_value = signature_status()

        not_owned = await oracle.poll_settlement(intent)
        assert not_owned.settled is False
        assert not_owned.failed is False

        rpc.get_token_accounts_by_owner_json_parsed.return_value = token_accounts(1)
        assert (await oracle.verify_access(CONTENT_ID, WALLET, intent)).settled is True

    async def test_access_check_requires_requester_wallet(self, relay, chain, rpc):
        oracle = PaymentOracle(SponsoredBackend(relay, chain))
        intent = await oracle.create_intent(CONTENT_ID, WALLET)
        rpc.get_signature_statuses.return_value = signature_status()
        rpc.get_token_accounts_by_owner_json_parsed.return_value = token_accounts(1)

        with pytest.raises(InputError):
            await oracle.verify_access(CONTENT_ID, None, intent)
        with pytest.raises(InputError):
            await oracle.verify_access(CONTENT_ID, "  ", intent)

    async def test_close_closes_both_clients(self, relay, chain, rpc):
        await PaymentOracle(SponsoredBackend(relay, chain)).close()
        relay.close.assert_awaited_once()
        rpc.close.assert_awaited_once()


class TestInvoiceMintBackend:
    @pytest.fixture
    def relay(self):
        relay = MagicMock(spec=SponsorRelayClient)
        relay.submit_mint = AsyncMock(return_value=SIGNATURE)
        relay.close = AsyncMock()
        return relay

    @pytest.fixture
    async def flow(self, lightning, relay, chain, store, vault, sealer, as_chunks):
        lnd = LndClient(url="https://lnd.test", macaroon_hex="00",
                        transport=httpx.MockTransport(lightning.handler),
                        max_retries=2, retry_delay=0)
        oracle = PaymentOracle(InvoiceMintBackend(lnd, relay, chain, amount_sat=1000))
        sealed = await sealer.seal(as_chunks(b"minted on settlement" * 20))
        yield ReleaseAuthorizer(store, oracle, vault), sealed.id
        await oracle.close()

    async def test_intent_requires_payer(self, flow):
        authorizer, content_id = flow
        with pytest.raises(InputError):
            await authorizer.request_payment(content_id)

    async def test_settled_invoice_mints_token_then_releases(self, flow, lightning, relay, chain, rpc, store):
        authorizer, content_id = flow

        status = await authorizer.request_payment(content_id, WALLET)
        assert status.payment_state == PaymentState.PENDING
        assert status.intent.payment_request.startswith("lnbc")
        with pytest.raises(PaymentRequiredError):
            await authorizer.release_key(content_id, WALLET)
        relay.submit_mint.assert_not_awaited()

        lightning.settle(status.intent.external_ref)
        status = await authorizer.refresh(content_id)

        assert status.payment_state == PaymentState.PENDING
        assert status.intent.mint_ref == SIGNATURE
        relay.submit_mint.assert_awaited_once()
        owner, mint, memo_id = relay.submit_mint.await_args.args
        assert (owner, mint, memo_id) == (WALLET, str(chain.mint_for(content_id)), content_id)

        # Mint still in flight: no second submission
        status = await authorizer.refresh(content_id)
        assert status.payment_state == PaymentState.PENDING
        assert relay.submit_mint.await_count == 1

        rpc.get_signature_statuses.return_value = signature_status()
        rpc.get_token_accounts_by_owner_json_parsed.return_value = token_accounts(1)
        status = await authorizer.refresh(content_id)

        assert status.payment_state == PaymentState.PAID
        assert status.intent.status == IntentStatus.SETTLED
        released = await authorizer.release_key(content_id, WALLET)
        assert len(released.content_key) == 32
        with pytest.raises(InputError):
            await authorizer.release_key(content_id, None)

    async def test_rejected_mint_is_resubmitted(self, flow, lightning, relay, rpc, store):
        authorizer, content_id = flow
        second = str(Signature.new_unique())
        relay.submit_mint.side_effect = [SIGNATURE, second]

        status = await authorizer.request_payment(content_id, WALLET)
        lightning.settle(status.intent.external_ref)
        await authorizer.refresh(content_id)

        rpc.get_signature_statuses.return_value = signature_status(err="BlockhashNotFound")
        status = await authorizer.refresh(content_id)

        # The invoice is paid, so a rejected mint never fails the payment
        assert status.payment_state == PaymentState.PENDING
        assert status.intent.mint_ref == second
        assert relay.submit_mint.await_count == 2
        keys = [c.kwargs["idempotency_key"] for c in relay.submit_mint.await_args_list]
        assert keys[0] != keys[1]

    async def test_other_wallet_holding_no_token_is_refused(self, flow, lightning, rpc):
        authorizer, content_id = flow
        status = await authorizer.request_payment(content_id, WALLET)
        lightning.settle(status.intent.external_ref)

        with pytest.raises(PaymentRequiredError):
            await authorizer.release_key(content_id, str(Pubkey.new_unique()))


class TestLndClient:
    def make(self, handler, **kwargs):
        return LndClient(url="https://lnd.test", macaroon_hex="00",
                         transport=httpx.MockTransport(handler), retry_delay=0, **kwargs)

    async def test_retries_server_errors(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"state": "OPEN"})

        lnd = self.make(handler, max_retries=3)
        assert (await lnd.lookup_invoice("00" * 32))["state"] == "OPEN"
        assert calls["n"] == 2
        await lnd.close()

    async def test_client_error_not_retried(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(401, json={"message": "bad macaroon"})

        lnd = self.make(handler, max_retries=3)
        with pytest.raises(ExternalBackendError) as exc:
            await lnd.add_invoice(1000, "content:x")
        assert exc.value.retryable is False
        assert calls["n"] == 1
        await lnd.close()

    async def test_sends_macaroon(self, lightning):
        seen = {}

        def handler(request):
            seen["macaroon"] = request.headers.get("Grpc-Metadata-macaroon")
            return lightning.handler(request)

        lnd = self.make(handler)
        invoice = await lnd.add_invoice(1000, "content:x")
        assert seen["macaroon"] == "00"
        assert len(invoice["r_hash_hex"]) == 64
        await lnd.close()


class TestSponsorRelayClient:
    def make(self, handler):
        return SponsorRelayClient(url="https://relay.test", api_key="k",
                                  transport=httpx.MockTransport(handler),
                                  max_retries=3, retry_delay=0)

    async def test_submit(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer k"
            return httpx.Response(200, json={"signature": SIGNATURE})

        relay = self.make(handler)
        assert await relay.submit_mint(WALLET, "mint", CONTENT_ID) == SIGNATURE
        await relay.close()

    async def test_rejected_payer(self):
        relay = self.make(lambda request: httpx.Response(422, json={"error": "bad owner"}))
        with pytest.raises(InputError):
            await relay.submit_mint(WALLET, "mint", CONTENT_ID)
        await relay.close()

    async def test_connect_errors_retried(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            raise httpx.ConnectError("refused", request=request)

        relay = self.make(handler)
        with pytest.raises(ExternalBackendError):
            await relay.submit_mint(WALLET, "mint", CONTENT_ID)
        assert calls["n"] == 3
        await relay.close()

    async def test_interrupted_submit_not_resent(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            raise httpx.ReadTimeout("timed out", request=request)

        relay = self.make(handler)
        with pytest.raises(ExternalBackendError):
            await relay.submit_mint(WALLET, "mint", CONTENT_ID)
        assert calls["n"] == 1
        await relay.close()


async def test_intent_carries_backend_kind(oracle):
    intent = await oracle.create_intent(CONTENT_ID)
    assert isinstance(intent, PaymentIntent)
    assert intent.backend == "invoice"
    assert intent.payment_request
