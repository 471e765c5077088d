#!/usr/bin/env python3
"""
MCP server for Kaspa wallet operations.

Exposes address, balance, fee estimate, transaction lookup, send, mnemonic
generation and health check tools over stdio.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import sys
from typing import Any, List

from loguru import logger
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from kaspa_api import KaspaApiError, get_api
from kaspa_rpc import submit_payment
from kaspa_transaction import SendRequest
from kaspa_wallet import (
    SUPPORTED_NETWORKS,
    KaspaConfig,
    KaspaWallet,
    format_kas,
    generate_mnemonic_phrase,
    get_wallet,
    kas_to_sompi,
    validate_address,
)

SERVER_VERSION = "0.1.0"

_HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{2})*$")

MNEMONIC_WARNING = (
    "IMPORTANT: Save this mnemonic securely. It cannot be recovered if lost. "
    "Never share it with anyone."
)

app = Server("kaspa_wallet")


def setup_logging(level: str) -> None:
    """Configure loguru logging. stdout is reserved for the MCP transport."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _json_response(result: dict[str, Any]) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps(result))]


def _error_response(message: str) -> List[TextContent]:
    logger.warning(f"Tool error: {message}")
    return [TextContent(type="text", text=json.dumps({"success": False, "error": message}))]


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="kaspa_get_my_address",
            description="Get the Kaspa address derived from the configured key.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="kaspa_get_balance",
            description="Get the KAS balance of an address (defaults to your wallet address).",
            inputSchema={
                "type": "object",
                "properties": {
                    "address": {
                        "type": "string",
                        "description": "Kaspa address to check (optional)",
                    },
                },
            },
        ),
        Tool(
            name="kaspa_get_fee_estimate",
            description="Get current fee rates (sompi/gram) from the Kaspa network.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="kaspa_send",
            description=(
                "Send KAS to a recipient address. Large payments may be split "
                "into several chained transactions."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "to": {"type": "string", "description": "Recipient Kaspa address"},
                    "amount": {"type": "string", "description": "Amount to send in KAS"},
                    "priority_fee": {
                        "type": "integer",
                        "description": "Optional priority fee in sompi",
                    },
                    "payload": {
                        "type": "string",
                        "description": "Optional hex-encoded transaction payload",
                    },
                },
                "required": ["to", "amount"],
            },
        ),
        Tool(
            name="kaspa_get_transaction",
            description="Get transaction status and details.",
            inputSchema={
                "type": "object",
                "properties": {
                    "tx_id": {"type": "string", "description": "Transaction ID"},
                },
                "required": ["tx_id"],
            },
        ),
        Tool(
            name="kaspa_generate_mnemonic",
            description="Generate a new BIP-39 mnemonic and its first Kaspa address.",
            inputSchema={
                "type": "object",
                "properties": {
                    "word_count": {
                        "type": "integer",
                        "enum": [12, 24],
                        "description": "Number of words (default 24)",
                    },
                    "network": {
                        "type": "string",
                        "enum": list(SUPPORTED_NETWORKS),
                        "description": "Network for the derived address (default mainnet)",
                    },
                },
            },
        ),
        Tool(
            name="kaspa_health_check",
            description="Check wallet configuration, address derivation and API connectivity.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    if name == "kaspa_get_my_address":
        return await _handle_get_my_address()
    if name == "kaspa_get_balance":
        return await _handle_get_balance(arguments)
    if name == "kaspa_get_fee_estimate":
        return await _handle_get_fee_estimate()
    if name == "kaspa_send":
        return await _handle_send(arguments)
    if name == "kaspa_get_transaction":
        return await _handle_get_transaction(arguments)
    if name == "kaspa_generate_mnemonic":
        return await _handle_generate_mnemonic(arguments)
    if name == "kaspa_health_check":
        return await _handle_health_check()

    return _error_response(f"Unknown tool: {name}")


async def _handle_get_my_address() -> List[TextContent]:
    try:
        wallet = await asyncio.to_thread(get_wallet)
        return _json_response(
            {
                "success": True,
                "address": wallet.get_address(),
                "network": wallet.get_network_id(),
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _error_response(_error_message(exc))


async def _handle_get_balance(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        wallet = await asyncio.to_thread(get_wallet)
        address = (arguments.get("address") or "").strip() or wallet.get_address()
        api = get_api(wallet.get_network_id())

        balance, utxos = await asyncio.gather(
            asyncio.to_thread(api.get_balance, address),
            asyncio.to_thread(api.get_utxos, address),
        )
        return _json_response(
            {
                "success": True,
                "address": address,
                "balance": format_kas(int(balance.get("balance", 0))),
                "utxo_count": len(utxos),
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _error_response(_error_message(exc))


async def _handle_get_fee_estimate() -> List[TextContent]:
    try:
        wallet = await asyncio.to_thread(get_wallet)
        api = get_api(wallet.get_network_id())
        estimate = await asyncio.to_thread(api.get_fee_estimate)

        def _rate(value: float | None) -> str:
            return "unavailable" if value is None else f"{value:g}"

        return _json_response(
            {
                "success": True,
                "priority_fee": _rate(estimate.priority_feerate),
                "normal_fee": _rate(estimate.normal_feerate),
                "low_fee": _rate(estimate.low_feerate),
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _error_response(_error_message(exc))


def _parse_priority_fee(value: Any) -> int:
    if value is None:
        return 0
    try:
        fee = int(value)
    except (ValueError, TypeError) as exc:
        raise ValueError("Invalid priority_fee. Must be an integer number of sompi.") from exc
    if isinstance(value, float) and value != fee:
        raise ValueError("Invalid priority_fee. Must be an integer number of sompi.")
    if fee < 0:
        raise ValueError("Invalid priority_fee. Must not be negative.")
    return fee


def _parse_payload(value: Any) -> bytes | None:
    if value is None or value == "":
        return None
    payload = str(value).strip()
    if payload.startswith("0x"):
        payload = payload[2:]
    if not _HEX_RE.match(payload):
        raise ValueError("Invalid payload. Must be an even-length hex string.")
    return bytes.fromhex(payload)


async def _handle_send(arguments: dict[str, Any]) -> List[TextContent]:
    to_address = (arguments.get("to") or "").strip()
    if not to_address:
        return _error_response("Recipient address (to) is required")
    amount = arguments.get("amount")
    if amount is None or str(amount).strip() == "":
        return _error_response("Amount is required")

    try:
        wallet = await asyncio.to_thread(get_wallet)
        cfg = await asyncio.to_thread(KaspaConfig.from_env)
        validate_address(to_address, wallet)
        request = SendRequest(
            to=to_address,
            amount_sompi=kas_to_sompi(str(amount)),
            priority_fee=_parse_priority_fee(arguments.get("priority_fee")),
            payload=_parse_payload(arguments.get("payload")),
        )

        result = await submit_payment(request, wallet, cfg)
        return _json_response(
            {
                "success": True,
                "tx_id": result.tx_id,
                "fee": result.fee,
                "transaction_ids": result.transaction_ids,
                "network": wallet.get_network_id(),
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _error_response(_error_message(exc))


async def _handle_get_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    tx_id = (arguments.get("tx_id") or "").strip()
    if not tx_id:
        return _error_response("Transaction ID (tx_id) is required")

    try:
        wallet = await asyncio.to_thread(get_wallet)
        api = get_api(wallet.get_network_id())
        try:
            tx = await asyncio.to_thread(api.get_transaction, tx_id)
        except KaspaApiError as exc:
            if exc.status_code == 404:
                raise RuntimeError(f"Transaction not found: {tx_id}") from exc
            raise

        block_hashes = tx.get("block_hash") or []
        return _json_response(
            {
                "success": True,
                "tx_id": tx.get("transaction_id", tx_id),
                "accepted": bool(tx.get("is_accepted", False)),
                "block_hash": block_hashes[0] if block_hashes else None,
                "block_time": tx.get("block_time"),
                "inputs": [
                    {
                        "transaction_id": i.get("previous_outpoint_hash", ""),
                        "index": int(i.get("previous_outpoint_index", 0)),
                    }
                    for i in tx.get("inputs") or []
                ],
                "outputs": [
                    {
                        "index": idx,
                        "amount": format_kas(int(o.get("amount", 0))),
                        "address": o.get("script_public_key_address", ""),
                    }
                    for idx, o in enumerate(tx.get("outputs") or [])
                ],
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _error_response(_error_message(exc))


async def _handle_generate_mnemonic(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        word_count = int(arguments.get("word_count") or 24)
        network = arguments.get("network") or "mainnet"
        if network not in SUPPORTED_NETWORKS:
            raise ValueError(
                f"Unknown network {network!r}. Supported: {', '.join(SUPPORTED_NETWORKS)}"
            )

        phrase = await asyncio.to_thread(generate_mnemonic_phrase, word_count)
        wallet = await asyncio.to_thread(KaspaWallet.from_mnemonic, phrase, network, 0)
        return _json_response(
            {
                "success": True,
                "mnemonic": phrase,
                "address": wallet.get_address(),
                "network": network,
                "warning": MNEMONIC_WARNING,
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _error_response(_error_message(exc))


async def health_check() -> dict[str, Any]:
    """
    Three-tier health status:
    - unhealthy: wallet is not configured or its address cannot be derived
    - degraded: wallet is fine but the REST API is unreachable
    - healthy: everything answered
    """
    checks: dict[str, dict[str, Any]] = {
        "wallet": {"ok": False},
        "address": {"ok": False},
        "api": {"ok": False},
    }
    network = "unknown"

    try:
        wallet = await asyncio.to_thread(get_wallet)
        checks["wallet"] = {"ok": True}
    except Exception as exc:  # noqa: BLE001
        checks["wallet"] = {"ok": False, "error": _error_message(exc)}
        return {
            "status": "unhealthy",
            "checks": checks,
            "network": network,
            "version": SERVER_VERSION,
        }

    network = wallet.get_network_id()

    try:
        checks["address"] = {"ok": True, "address": wallet.get_address()}
    except Exception as exc:  # noqa: BLE001
        checks["address"] = {"ok": False, "error": _error_message(exc)}

    try:
        api = get_api(network)
        await asyncio.to_thread(api.get_fee_estimate)
        checks["api"] = {"ok": True}
    except Exception as exc:  # noqa: BLE001
        checks["api"] = {"ok": False, "error": _error_message(exc)}

    if not checks["wallet"]["ok"] or not checks["address"]["ok"]:
        status = "unhealthy"
    elif not checks["api"]["ok"]:
        status = "degraded"
    else:
        status = "healthy"

    return {"status": status, "checks": checks, "network": network, "version": SERVER_VERSION}


async def _handle_health_check() -> List[TextContent]:
    result = await health_check()
    return _json_response({"success": True, **result})


async def main() -> None:
    setup_logging(os.getenv("KASPA_LOG_LEVEL", "INFO"))
    logger.info("Kaspa MCP server started")
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    try:
        asyncio.run(main())
    except Exception as exc:  # noqa: BLE001
        # Message only; tracebacks may carry key material.
        logger.error(f"Fatal error: {_error_message(exc)}")
        sys.exit(1)


if __name__ == "__main__":
    run()
