"""Unit tests for the kaspa SDK adapters (RPC client and KIP-9 generator)."""

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import kaspa_rpc  # noqa: E402
from kaspa_api import FeeEstimate  # noqa: E402
from kaspa_transaction import FundingEntry, SendRequest  # noqa: E402
from kaspa_wallet import KaspaConfig  # noqa: E402


def _utxo(amount, tx="aa"):
    return {
        "address": "kaspatest:qsender",
        "outpoint": {"transactionId": tx, "index": 0},
        "utxoEntry": {"amount": amount, "isCoinbase": False},
    }


class FakeRpcClient:
    def __init__(self, entries=(), synced=True):
        self.entries = list(entries)
        self.synced = synced
        self.calls = []

    async def connect(self):
        self.calls.append("connect")

    async def disconnect(self):
        self.calls.append("disconnect")

    async def get_server_info(self):
        return {"isSynced": self.synced, "serverVersion": "1.0.0"}

    async def get_utxos_by_addresses(self, request):
        self.calls.append(("utxos", request))
        return {"entries": self.entries}


class FakeSdkPending:
    def __init__(self, tx_id):
        self.tx_id = tx_id
        self.signed_with = None
        self.submitted_to = None

    def sign(self, keys):
        self.signed_with = keys

    async def submit(self, client):
        self.submitted_to = client
        return self.tx_id


class FakeGenerator:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.pending = [FakeSdkPending("tx1"), FakeSdkPending("tx2")]
        FakeGenerator.instances.append(self)

    def __iter__(self):
        return iter(self.pending)

    def summary(self):
        return SimpleNamespace(fees=4200)


def _fake_sdk():
    return SimpleNamespace(
        Generator=FakeGenerator,
        PaymentOutput=lambda address, amount: ("output", address, amount),
        Address=lambda text: f"addr({text})",
    )


# ---------------------------------------------------------------------------
# RpcUtxoSource
# ---------------------------------------------------------------------------


def test_funding_entries_carry_amount_and_raw_handle():
    raw = [_utxo(300, "aa"), _utxo(100, "bb")]
    client = FakeRpcClient(entries=raw)
    source = kaspa_rpc.RpcUtxoSource("testnet-10", client=client)

    entries = asyncio.run(source.get_funding_entries("kaspatest:qsender"))

    assert [e.amount for e in entries] == [300, 100]
    assert entries[0].handle is raw[0]
    assert client.calls == [("utxos", {"addresses": ["kaspatest:qsender"]})]


def test_funding_entries_empty_response():
    client = FakeRpcClient()
    client.entries = None
    source = kaspa_rpc.RpcUtxoSource("testnet-10", client=client)
    assert asyncio.run(source.get_funding_entries("kaspatest:qsender")) == []


def test_server_info_normalizes_sync_flag():
    source = kaspa_rpc.RpcUtxoSource("mainnet", client=FakeRpcClient(synced=False))
    info = asyncio.run(source.get_server_info())
    assert info["isSynced"] is False
    assert info["serverVersion"] == "1.0.0"


def test_connect_and_disconnect_delegate():
    client = FakeRpcClient()
    source = kaspa_rpc.RpcUtxoSource("mainnet", client=client)

    async def scenario():
        await source.connect()
        await source.disconnect()

    asyncio.run(scenario())
    assert client.calls == ["connect", "disconnect"]


# ---------------------------------------------------------------------------
# GeneratorBuilder
# ---------------------------------------------------------------------------


def test_generator_builder_settings(monkeypatch):
    monkeypatch.setattr(kaspa_rpc, "kaspa", _fake_sdk())
    FakeGenerator.instances.clear()
    entries = [FundingEntry(100, handle="h1"), FundingEntry(300, handle="h2")]

    kaspa_rpc.GeneratorBuilder(
        entries=entries,
        to="kaspatest:qrecipient",
        amount_sompi=250,
        priority_fee=10,
        change_address="kaspatest:qsender",
        network_id="testnet-10",
        payload=bytes.fromhex("deadbeef"),
    )

    kwargs = FakeGenerator.instances[-1].kwargs
    assert kwargs["entries"] == ["h1", "h2"]
    assert kwargs["outputs"] == [("output", "addr(kaspatest:qrecipient)", 250)]
    assert kwargs["change_address"] == "addr(kaspatest:qsender)"
    assert kwargs["priority_fee"] == 10
    assert kwargs["network_id"] == "testnet-10"
    assert kwargs["payload"] == bytes.fromhex("deadbeef")


def test_generator_builder_omits_empty_payload(monkeypatch):
    monkeypatch.setattr(kaspa_rpc, "kaspa", _fake_sdk())
    FakeGenerator.instances.clear()

    kaspa_rpc.GeneratorBuilder([FundingEntry(1, "h")], "kaspa:qr", 1, 0, "kaspa:qs", "mainnet")

    assert "payload" not in FakeGenerator.instances[-1].kwargs


def test_pending_transactions_sign_and_submit_through_client(monkeypatch):
    monkeypatch.setattr(kaspa_rpc, "kaspa", _fake_sdk())
    client = FakeRpcClient()
    source = kaspa_rpc.RpcUtxoSource("mainnet", client=client)
    builder = kaspa_rpc.GeneratorBuilder([FundingEntry(1, "h")], "kaspa:qr", 1, 0, "kaspa:qs", "mainnet")

    async def scenario():
        ids = []
        for pending in builder:
            await pending.sign(["key"])
            ids.append(await pending.submit(source))
        return ids

    assert asyncio.run(scenario()) == ["tx1", "tx2"]
    sdk_pending = FakeGenerator.instances[-1].pending
    assert all(p.signed_with == ["key"] for p in sdk_pending)
    assert all(p.submitted_to is client for p in sdk_pending)
    assert builder.summary().fees == 4200


# ---------------------------------------------------------------------------
# submit_payment wiring
# ---------------------------------------------------------------------------


class FakeWallet:
    def get_address(self):
        return "kaspatest:qsender"

    def get_network_id(self):
        return "testnet-10"

    def get_private_key(self):
        return "key"


def test_submit_payment_runs_full_pipeline(monkeypatch):
    monkeypatch.setattr(kaspa_rpc, "kaspa", _fake_sdk())
    client = FakeRpcClient(entries=[_utxo(500_000_000, "bb"), _utxo(200_000_000, "aa")])
    created = {}
    real_source = kaspa_rpc.RpcUtxoSource

    def fake_source(network_id, url=None):
        created["network_id"] = network_id
        created["url"] = url
        return real_source(network_id, client=client)

    oracle = SimpleNamespace(get_fee_estimate=lambda: FeeEstimate(1.0, None, None))
    monkeypatch.setattr(kaspa_rpc, "RpcUtxoSource", fake_source)
    monkeypatch.setattr(kaspa_rpc, "get_api", lambda network: oracle)
    FakeGenerator.instances.clear()

    cfg = KaspaConfig(network="testnet-10", private_key_hex="00" * 32, rpc_url="ws://node")
    request = SendRequest(to="kaspatest:qrecipient", amount_sompi=100_000_000)

    result = asyncio.run(kaspa_rpc.submit_payment(request, FakeWallet(), cfg))

    assert result.tx_id == "tx2"
    assert result.transaction_ids == ["tx1", "tx2"]
    assert result.fee == "0.000042"
    assert created == {"network_id": "testnet-10", "url": "ws://node"}
    # Smallest UTXO first.
    handles = FakeGenerator.instances[-1].kwargs["entries"]
    assert [h["outpoint"]["transactionId"] for h in handles] == ["aa", "bb"]
    assert client.calls[0] == "connect"
    assert client.calls[-1] == "disconnect"
