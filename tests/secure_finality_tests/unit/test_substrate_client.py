"""
Test suite for the Substrate ChainClient.

Tests verify:
- Wire payload decoding (storage values, block numbers, extrinsic statuses)
- Reads over the JSON-RPC transport
- Watermark subscription filtering by storage key
- Status mapping and dispatch outcome decoding on finalization
- Runtime surface validation at startup
"""

import hashlib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from secure_finality.config import ChainSurface, Settings
from secure_finality.exceptions import ConfigurationError, NotFoundError
from secure_finality.models import AdvanceCall, DispatchOutcome, TxStatus
from secure_finality.protocols import ChainClient
from secure_finality.substrate import (
    SubstrateChainClient,
    decode_watermark,
    extrinsic_hash,
    parse_block_number,
    parse_extrinsic_status,
)

KEY = "0x26aa394eea5630e07c48ae0c9558cef7"


@pytest.fixture
def transport():
    transport = MagicMock()
    transport.request = AsyncMock()
    transport.subscribe = AsyncMock(return_value=MagicMock(name="unsubscribe"))
    transport.close = AsyncMock()
    transport.connect = AsyncMock()
    return transport


@pytest.fixture
def codec():
    codec = MagicMock()
    codec.signer_address = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
    codec.storage_key.return_value = KEY
    codec.has_storage.return_value = True
    codec.has_call.return_value = True
    codec.sign_call.return_value = "0x0102"
    codec.dispatch_outcome.return_value = DispatchOutcome.ok()
    return codec


@pytest.fixture
def client(transport, codec):
    return SubstrateChainClient(transport, codec)


def subscription_handlers(transport):
    kwargs = transport.subscribe.call_args.kwargs
    return kwargs["on_result"], kwargs["on_error"]


class TestWireDecoding:
    """Test conversion of raw node payloads."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            (None, 0),
            ("", 0),
            ("0x", 0),
            ("0x0c000000", 12),
            ("0x00010000", 256),
        ],
    )
    def test_decode_watermark(self, raw, expected):
        assert decode_watermark(raw) == expected

    def test_parse_block_number(self):
        assert parse_block_number("0x1a") == 26
        assert parse_block_number(26) == 26
        assert parse_block_number("26") == 26

    def test_extrinsic_hash_is_blake2b_256(self):
        expected = "0x" + hashlib.blake2b(bytes.fromhex("0102"), digest_size=32).hexdigest()
        assert extrinsic_hash("0x0102") == expected

    def test_parse_extrinsic_status(self):
        assert parse_extrinsic_status("ready") == (TxStatus.READY, None)
        assert parse_extrinsic_status({"inBlock": "0xh"}) == (TxStatus.IN_BLOCK, "0xh")
        assert parse_extrinsic_status({"finalized": "0xf"}) == (TxStatus.FINALIZED, "0xf")
        assert parse_extrinsic_status({"broadcast": ["12D3KooW"]}) == (TxStatus.BROADCAST, None)
        assert parse_extrinsic_status("dropped") == (TxStatus.DROPPED, None)

    @pytest.mark.parametrize("raw", [42, {"a": 1, "b": 2}, "bogus", {"bogus": "0x"}])
    def test_parse_extrinsic_status_rejects_unknown(self, raw):
        with pytest.raises(ValueError):
            parse_extrinsic_status(raw)


class TestReads:
    """Test read operations."""

    def test_satisfies_chain_client_protocol(self, client, fake_client):
        assert isinstance(client, ChainClient)
        assert isinstance(fake_client, ChainClient)

    @pytest.mark.asyncio
    async def test_get_finalized_height(self, client, transport):
        transport.request.side_effect = ["0xhead", {"number": "0x2a", "parentHash": "0xparent"}]

        assert await client.get_finalized_height() == 42
        assert transport.request.call_args_list[0].args == ("chain_getFinalizedHead",)
        assert transport.request.call_args_list[1].args == ("chain_getHeader", ["0xhead"])

    @pytest.mark.asyncio
    async def test_get_header(self, client, transport):
        transport.request.return_value = {"number": "0x7", "parentHash": "0xparent"}

        header = await client.get_header("0xb7")

        assert (header.number, header.hash, header.parent_hash) == (7, "0xb7", "0xparent")

    @pytest.mark.asyncio
    async def test_get_header_unknown_block(self, client, transport):
        transport.request.return_value = None

        with pytest.raises(NotFoundError):
            await client.get_header("0xmissing")

    @pytest.mark.asyncio
    async def test_get_watermark(self, client, transport, codec):
        transport.request.return_value = "0x0a000000"

        assert await client.get_watermark() == 10
        transport.request.assert_awaited_once_with("state_getStorage", [KEY])
        codec.storage_key.assert_called_once_with("Anchor", "SecureUpTo")

    @pytest.mark.asyncio
    async def test_get_watermark_empty_storage(self, client, transport):
        transport.request.return_value = None

        assert await client.get_watermark() == 0


class TestWatermarkSubscription:
    """Test subscribe_watermark."""

    @pytest.mark.asyncio
    async def test_routes_only_the_watermark_key(self, client, transport):
        values, errors = [], []

        unsubscribe = await client.subscribe_watermark(values.append, errors.append)
        on_result, on_error = subscription_handlers(transport)
        on_result({"block": "0x01", "changes": [[KEY, "0x05000000"], ["0xother", "0xff"]]})
        on_result({"block": "0x02", "changes": [[KEY, None]]})
        on_error(ConnectionError("lost"))

        assert values == [5, 0]
        assert len(errors) == 1
        assert unsubscribe is transport.subscribe.return_value
        kwargs = transport.subscribe.call_args.kwargs
        assert transport.subscribe.call_args.args == ("state_subscribeStorage", [[KEY]])
        assert kwargs["notification"] == "state_storage"
        assert kwargs["unsubscribe_method"] == "state_unsubscribeStorage"


class TestSubmission:
    """Test submit_transaction and submit_privileged_call."""

    @pytest.mark.asyncio
    async def test_status_updates_are_mapped(self, client, transport):
        updates = []

        await client.submit_transaction("0x0102", updates.append)
        on_result, _ = subscription_handlers(transport)
        on_result("ready")
        on_result({"broadcast": ["peer"]})
        on_result({"inBlock": "0xb1"})
        on_result({"usurped": "0xother"})

        assert [(u.status, u.block_hash) for u in updates] == [
            (TxStatus.READY, None),
            (TxStatus.BROADCAST, None),
            (TxStatus.IN_BLOCK, "0xb1"),
            (TxStatus.USURPED, "0xother"),
        ]
        assert transport.subscribe.call_args.args == ("author_submitAndWatchExtrinsic", ["0x0102"])

    @pytest.mark.asyncio
    async def test_finalized_carries_dispatch_outcome(self, client, transport, codec, wait_until):
        failure = DispatchOutcome.failed("Balances", "InsufficientBalance")
        codec.dispatch_outcome.return_value = failure
        updates = []

        await client.submit_transaction("0x0102", updates.append)
        on_result, _ = subscription_handlers(transport)
        on_result({"finalized": "0xb9"})
        await wait_until(lambda: updates)

        assert updates[0].status is TxStatus.FINALIZED
        assert updates[0].block_hash == "0xb9"
        assert updates[0].dispatch == failure
        codec.dispatch_outcome.assert_called_once_with("0xb9", extrinsic_hash("0x0102"))

    @pytest.mark.asyncio
    async def test_outcome_decoding_failure_reports_error(self, client, transport, codec, wait_until):
        codec.dispatch_outcome.side_effect = RuntimeError("events unavailable")
        updates = []

        await client.submit_transaction("0x0102", updates.append)
        on_result, _ = subscription_handlers(transport)
        on_result({"finalized": "0xb9"})
        await wait_until(lambda: updates)

        assert updates[0].status is TxStatus.ERROR
        assert isinstance(updates[0].error, RuntimeError)

    @pytest.mark.asyncio
    async def test_transport_failure_and_garbage_become_errors(self, client, transport):
        updates = []

        await client.submit_transaction("0x0102", updates.append)
        on_result, on_error = subscription_handlers(transport)
        on_result({"mystery": 1})
        on_error(ConnectionError("lost"))

        assert [u.status for u in updates] == [TxStatus.ERROR, TxStatus.ERROR]
        assert isinstance(updates[0].error, ValueError)
        assert isinstance(updates[1].error, ConnectionError)

    @pytest.mark.asyncio
    async def test_privileged_call_is_wrapped(self, client, transport, codec):
        await client.submit_privileged_call(AdvanceCall(12), lambda update: None)

        codec.sign_call.assert_called_once_with(
            "Anchor", "note_anchor_verified", {"block_number": 12}, ("Sudo", "sudo")
        )
        assert transport.subscribe.call_args.args == ("author_submitAndWatchExtrinsic", ["0x0102"])

    @pytest.mark.asyncio
    async def test_sign_transfer_prefers_keep_alive(self, client, codec):
        await client.sign_transfer("5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty", 5)

        args = codec.sign_call.call_args.args
        assert args[:2] == ("Balances", "transfer_keep_alive")
        assert args[2] == {"dest": "5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty", "value": 5}

    @pytest.mark.asyncio
    async def test_sign_transfer_falls_back(self, client, codec):
        codec.has_call.side_effect = lambda pallet, function: function == "transfer"

        await client.sign_transfer("5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty", 5)

        assert codec.sign_call.call_args.args[1] == "transfer"

    @pytest.mark.asyncio
    async def test_sign_transfer_without_balances(self, client, codec):
        codec.has_call.return_value = False

        with pytest.raises(ConfigurationError):
            await client.sign_transfer("5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty", 5)


class TestSurfaceValidation:
    """Test validate_surface and connect."""

    @pytest.mark.asyncio
    async def test_valid_surface(self, client, codec):
        await client.validate_surface()

        codec.has_storage.assert_called_once_with("Anchor", "SecureUpTo")
        called = [c.args for c in codec.has_call.call_args_list]
        assert called == [("Anchor", "note_anchor_verified"), ("Sudo", "sudo")]

    @pytest.mark.asyncio
    async def test_missing_storage(self, client, codec):
        codec.has_storage.return_value = False

        with pytest.raises(ConfigurationError, match="Anchor.SecureUpTo"):
            await client.validate_surface()

    @pytest.mark.asyncio
    async def test_missing_advance_call(self, client, codec):
        codec.has_call.side_effect = lambda pallet, function: pallet == "Sudo"

        with pytest.raises(ConfigurationError, match="Anchor.note_anchor_verified"):
            await client.validate_surface()

    @pytest.mark.asyncio
    async def test_missing_privileged_wrapper(self, client, codec):
        codec.has_call.side_effect = lambda pallet, function: pallet != "Sudo"

        with pytest.raises(ConfigurationError, match="Sudo.sudo"):
            await client.validate_surface()

    @pytest.mark.asyncio
    async def test_watch_only_skips_call_checks(self, client, codec):
        codec.has_call.return_value = False

        await client.validate_surface(require_advance=False)

    @pytest.mark.asyncio
    async def test_custom_surface(self, transport, codec):
        surface = ChainSurface(pallet="Verifier", watermark_storage="VerifiedUpTo")
        client = SubstrateChainClient(transport, codec, surface)
        transport.request.return_value = "0x03000000"

        assert await client.get_watermark() == 3
        codec.storage_key.assert_called_once_with("Verifier", "VerifiedUpTo")

    @pytest.mark.asyncio
    async def test_connect_closes_transport_on_invalid_surface(self, transport, codec):
        codec.has_storage.return_value = False
        settings = Settings(seed="//Bob")

        with patch("secure_finality.substrate.JsonRpcWebSocket", return_value=transport), \
                patch("secure_finality.substrate.SubstrateInterfaceCodec", return_value=codec):
            with pytest.raises(ConfigurationError):
                await SubstrateChainClient.connect(settings)

        transport.connect.assert_awaited_once()
        transport.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_and_close(self, transport, codec):
        settings = Settings(seed="//Bob")

        with patch("secure_finality.substrate.JsonRpcWebSocket", return_value=transport), \
                patch("secure_finality.substrate.SubstrateInterfaceCodec", return_value=codec):
            client = await SubstrateChainClient.connect(settings)

        assert client.signer_address == codec.signer_address
        await client.close()
        transport.close.assert_awaited_once()
        codec.close.assert_called_once()
