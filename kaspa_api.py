"""
Kaspa REST API client.

Stateless pass-through for balance, UTXO, fee-estimate and transaction lookups
against the public api.kaspa.org deployments (mainnet and testnets).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

import requests

from kaspa_wallet import KaspaConfigError

API_ENDPOINTS: dict[str, str] = {
    "mainnet": "https://api.kaspa.org",
    "testnet-10": "https://api-tn10.kaspa.org",
    "testnet-11": "https://api-tn11.kaspa.org",
}

REQUEST_TIMEOUT = 15


class KaspaApiError(RuntimeError):
    """Non-success HTTP response from the Kaspa REST API."""

    def __init__(self, status_code: int, text: str) -> None:
        super().__init__(f"API error {status_code}: {text}")
        self.status_code = status_code
        self.text = text


@dataclass
class FeeEstimate:
    priority_feerate: float
    normal_feerate: float | None
    low_feerate: float | None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> FeeEstimate:
        normal = data.get("normalBuckets") or []
        low = data.get("lowBuckets") or []
        return cls(
            priority_feerate=float(data["priorityBucket"]["feerate"]),
            normal_feerate=float(normal[0]["feerate"]) if normal else None,
            low_feerate=float(low[0]["feerate"]) if low else None,
        )


class KaspaApi:
    def __init__(self, network: str = "mainnet") -> None:
        endpoint = API_ENDPOINTS.get(network)
        if not endpoint:
            raise KaspaConfigError(
                f'Unknown network "{network}". Supported: {", ".join(API_ENDPOINTS)}'
            )
        self.network = network
        self.base_url = endpoint
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    def _get(self, path: str) -> Any:
        resp = self.session.get(f"{self.base_url}{path}", timeout=REQUEST_TIMEOUT)
        if not resp.ok:
            raise KaspaApiError(resp.status_code, resp.text)
        return resp.json()

    def get_balance(self, address: str) -> dict[str, Any]:
        return self._get(f"/addresses/{address}/balance")

    def get_utxos(self, address: str) -> list[dict[str, Any]]:
        data = self._get(f"/addresses/{address}/utxos")
        if isinstance(data, list):
            return data
        return []

    def get_fee_estimate(self) -> FeeEstimate:
        return FeeEstimate.from_response(self._get("/info/fee-estimate"))

    def get_transaction(self, tx_id: str) -> dict[str, Any]:
        return self._get(f"/transactions/{tx_id}")


_api_lock = threading.Lock()
_api_instances: dict[str, KaspaApi] = {}


def get_api(network: str) -> KaspaApi:
    """Return the cached client for a network, creating it on first use."""
    api = _api_instances.get(network)
    if api is None:
        with _api_lock:
            api = _api_instances.get(network)
            if api is None:
                api = KaspaApi(network)
                _api_instances[network] = api
    return api


def reset_api_cache() -> None:
    with _api_lock:
        _api_instances.clear()
