"""
Adapters from the kaspa SDK to the submission pipeline's collaborators.

RpcUtxoSource wraps kaspa.RpcClient (wRPC, Borsh encoding) and
GeneratorBuilder wraps the KIP-9 kaspa.Generator.
"""

from __future__ import annotations

from typing import Any, Iterator

import kaspa

from kaspa_api import get_api
from kaspa_transaction import (
    FundingEntry,
    SendRequest,
    SendResult,
    UtxoSource,
    send_kaspa,
)
from kaspa_wallet import KaspaConfig, KaspaWallet


def _entry_amount(entry: Any) -> int:
    if isinstance(entry, dict):
        utxo_entry = entry.get("utxoEntry") or entry.get("utxo_entry") or entry
        return int(utxo_entry["amount"])
    return int(entry.amount)


class RpcUtxoSource:
    def __init__(
        self,
        network_id: str,
        url: str | None = None,
        client: Any = None,
    ) -> None:
        if client is None:
            client = kaspa.RpcClient(
                resolver=None if url else kaspa.Resolver(),
                url=url,
                encoding="borsh",
                network_id=network_id,
            )
        self.client = client
        self.network_id = network_id

    async def connect(self) -> None:
        await self.client.connect()

    async def disconnect(self) -> None:
        await self.client.disconnect()

    async def get_server_info(self) -> dict[str, Any]:
        info = await self.client.get_server_info()
        synced = info.get("isSynced", info.get("is_synced", False))
        return {**info, "isSynced": bool(synced)}

    async def get_funding_entries(self, address: str) -> list[FundingEntry]:
        response = await self.client.get_utxos_by_addresses({"addresses": [address]})
        raw_entries = (response or {}).get("entries") or []
        return [FundingEntry(amount=_entry_amount(e), handle=e) for e in raw_entries]


class _PendingTransaction:
    def __init__(self, pending: Any) -> None:
        self._pending = pending

    async def sign(self, keys: list[Any]) -> None:
        self._pending.sign(keys)

    async def submit(self, utxo_source: UtxoSource) -> str:
        client = getattr(utxo_source, "client", utxo_source)
        return await self._pending.submit(client)


class GeneratorBuilder:
    """KIP-9 generator over already-ordered funding entries."""

    def __init__(
        self,
        entries: list[FundingEntry],
        to: str,
        amount_sompi: int,
        priority_fee: int,
        change_address: str,
        network_id: str,
        payload: bytes | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {
            "network_id": network_id,
            "entries": [entry.handle for entry in entries],
            "outputs": [kaspa.PaymentOutput(kaspa.Address(to), amount_sompi)],
            "change_address": kaspa.Address(change_address),
            "priority_fee": priority_fee,
        }
        if payload:
            kwargs["payload"] = payload
        self._generator = kaspa.Generator(**kwargs)

    def __iter__(self) -> Iterator[_PendingTransaction]:
        for pending in self._generator:
            yield _PendingTransaction(pending)

    def summary(self) -> Any:
        return self._generator.summary()


async def submit_payment(
    request: SendRequest,
    wallet: KaspaWallet,
    cfg: KaspaConfig,
) -> SendResult:
    """Send a payment from the wallet over a fresh node connection."""
    network_id = wallet.get_network_id()
    return await send_kaspa(
        request,
        wallet=wallet,
        fee_oracle=get_api(network_id),
        utxo_source=RpcUtxoSource(network_id, url=cfg.rpc_url),
        builder_factory=GeneratorBuilder,
        connect_timeout=cfg.rpc_timeout,
        fee_mass=cfg.fee_mass_estimate,
    )
