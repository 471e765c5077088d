"""
Funded transaction submission pipeline.

Turns a validated "pay X sompi to address Y" request into one or more signed,
broadcast Kaspa transactions:

- open the node connection with a hard timeout
- check the node is synced and fetch the wallet's funding entries
- check the entries cover amount + projected fee + priority fee
- drive the KIP-9 generator, signing and submitting each transaction in order
- report exactly which transactions were broadcast if a later one fails

The node connection is released on every path. Key handling, address encoding
and transaction construction live behind the collaborator protocols below.
"""

from __future__ import annotations

import asyncio
import functools
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Protocol

from loguru import logger

from kaspa_api import FeeEstimate
from kaspa_wallet import format_kas, sompi_to_kas

DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_FEE_MASS_ESTIMATE = 3000
UNKNOWN_FEE = "unknown"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class KaspaTransactionError(RuntimeError):
    """Base class for failures of the submission pipeline."""


class ConnectionTimedOutError(KaspaTransactionError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"RPC connection timed out after {timeout:g} seconds")
        self.timeout = timeout


class NodeNotSyncedError(KaspaTransactionError):
    def __init__(self) -> None:
        super().__init__("RPC node is not synced")


class NoFundingEntriesError(KaspaTransactionError):
    def __init__(self) -> None:
        super().__init__("No UTXOs available")


class InsufficientFundsError(KaspaTransactionError):
    """Available funds do not cover amount + estimated fee + priority fee."""

    def __init__(self, available: Decimal, required: Decimal) -> None:
        super().__init__(
            f"Insufficient balance: have {available} KAS, "
            f"need ~{required} KAS (including estimated fees)"
        )
        self.available = available
        self.required = required


class NoTransactionsProducedError(KaspaTransactionError):
    def __init__(self) -> None:
        super().__init__("Transaction generator produced no transactions")


class SigningFailedError(KaspaTransactionError):
    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Failed to sign transaction: {cause}")
        self.cause = cause


class SubmitFailedError(KaspaTransactionError):
    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Failed to submit transaction: {cause}")
        self.cause = cause


class PartialBroadcastError(KaspaTransactionError):
    """
    Raised when a failure happens after at least one transaction was broadcast.

    The message lists every submitted transaction id so an operator can
    reconcile without querying the chain. Do not resend the full amount.
    """

    def __init__(self, submitted_tx_ids: list[str], cause: BaseException | str) -> None:
        self.submitted_tx_ids = list(submitted_tx_ids)
        self.cause = cause
        count = len(self.submitted_tx_ids)
        super().__init__(
            f"Transaction partially completed: {count} transaction(s) already "
            f"submitted [{', '.join(self.submitted_tx_ids)}] before failure: {cause}"
        )


# ---------------------------------------------------------------------------
# Data model and collaborator protocols
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SendRequest:
    to: str
    amount_sompi: int
    priority_fee: int = 0
    payload: bytes | None = None


@dataclass(frozen=True)
class FundingEntry:
    amount: int
    # Provider-specific UTXO entry handed back to the builder untouched.
    handle: Any = None


@dataclass
class SendResult:
    tx_id: str
    fee: str
    transaction_ids: list[str] = field(default_factory=list)


class WalletSource(Protocol):
    def get_address(self) -> str: ...

    def get_network_id(self) -> str: ...

    def get_private_key(self) -> Any: ...


class FeeOracle(Protocol):
    def get_fee_estimate(self) -> FeeEstimate: ...


class UtxoSource(Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def get_server_info(self) -> dict[str, Any]: ...

    async def get_funding_entries(self, address: str) -> list[FundingEntry]: ...


class PendingTransaction(Protocol):
    async def sign(self, keys: list[Any]) -> None: ...

    async def submit(self, utxo_source: UtxoSource) -> str: ...


class TransactionBuilder(Protocol):
    def __iter__(self): ...

    def summary(self) -> Any: ...


BuilderFactory = Callable[..., TransactionBuilder]


# ---------------------------------------------------------------------------
# Connection guard
# ---------------------------------------------------------------------------

# Abandoned connect attempts, kept referenced until they settle.
_abandoned_connects: set[asyncio.Future] = set()


def _discard_late_outcome(
    task: asyncio.Future,
    on_late_success: Callable[[], Awaitable[None]] | None = None,
) -> None:
    _abandoned_connects.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Ignoring late connect failure after timeout: {exc}")
        return

    logger.debug("Closing connection that completed after timeout")
    if on_late_success is not None:
        # Held until it finishes; the cleanup suppresses its own errors.
        cleanup = asyncio.ensure_future(on_late_success())
        _abandoned_connects.add(cleanup)
        cleanup.add_done_callback(_abandoned_connects.discard)


async def open_with_timeout(
    connect: Callable[[], Awaitable[None]],
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
    on_late_success: Callable[[], Awaitable[None]] | None = None,
) -> None:
    """
    Run a single connect attempt, giving up after ``timeout`` seconds.

    The attempt is never retried. On timeout it is left running: a late
    failure is consumed and dropped, a late success is handed to
    ``on_late_success`` so the connection it opened gets closed.
    """
    task = asyncio.ensure_future(connect())
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        # Re-raises the connector's own error unchanged.
        task.result()
        return

    _abandoned_connects.add(task)
    task.add_done_callback(
        functools.partial(_discard_late_outcome, on_late_success=on_late_success)
    )
    raise ConnectionTimedOutError(timeout)


# ---------------------------------------------------------------------------
# Funding checks
# ---------------------------------------------------------------------------


def estimate_fee_sompi(
    fee_estimate: FeeEstimate, fee_mass: int = DEFAULT_FEE_MASS_ESTIMATE
) -> int:
    """Project a worst-case network fee from the priority fee rate."""
    return math.ceil(fee_estimate.priority_feerate * fee_mass)


async def assure_funds(
    entries: list[FundingEntry] | None,
    amount_sompi: int,
    priority_fee: int,
    fee_oracle: FeeOracle,
    fee_mass: int = DEFAULT_FEE_MASS_ESTIMATE,
) -> int:
    """
    Fail fast when the funding entries cannot cover the payment.

    This is a point-in-time estimate; the generator computes the real fee.
    Returns the projected fee in sompi.
    """
    if not entries:
        raise NoFundingEntriesError()

    total_available = sum(entry.amount for entry in entries)
    fee_estimate = await asyncio.to_thread(fee_oracle.get_fee_estimate)
    estimated_fee = estimate_fee_sompi(fee_estimate, fee_mass)
    total_required = amount_sompi + estimated_fee + priority_fee

    if total_available < total_required:
        raise InsufficientFundsError(
            sompi_to_kas(total_available), sompi_to_kas(total_required)
        )
    return estimated_fee


def order_funding_entries(entries: Iterable[FundingEntry]) -> list[FundingEntry]:
    """Smallest first, so many small outputs get consolidated over time."""
    return sorted(entries, key=lambda entry: entry.amount)


# ---------------------------------------------------------------------------
# Submission loop and accounting
# ---------------------------------------------------------------------------


async def run_submission_loop(
    builder: TransactionBuilder,
    signing_key: Any,
    utxo_source: UtxoSource,
    submitted_tx_ids: list[str],
) -> None:
    """
    Sign and submit every transaction the builder yields, in order.

    Ids are appended to ``submitted_tx_ids`` as each submission settles, so the
    caller still holds them if a later step raises.
    """
    iterator = iter(builder)
    produced = 0
    while True:
        pending = next(iterator, None)
        if pending is None:
            break
        produced += 1

        try:
            await pending.sign([signing_key])
        except Exception as exc:  # noqa: BLE001
            raise SigningFailedError(exc) from exc

        try:
            tx_id = await pending.submit(utxo_source)
        except Exception as exc:  # noqa: BLE001
            raise SubmitFailedError(exc) from exc

        submitted_tx_ids.append(str(tx_id))
        logger.info(f"Submitted transaction {produced}: {tx_id}")

    if produced == 0:
        raise NoTransactionsProducedError()


def _summary_fees(builder: TransactionBuilder) -> int | None:
    # Every transaction is already broadcast here, so a missing summary only
    # loses the fee figure.
    try:
        return int(builder.summary().fees)
    except Exception as exc:  # noqa: BLE001
        logger.warning(f"Could not read generator fee summary: {exc}")
        return None


def finalize_submission(
    submitted_tx_ids: list[str],
    fees_sompi: int | None = None,
    error: BaseException | None = None,
) -> SendResult:
    if error is None:
        return SendResult(
            tx_id=submitted_tx_ids[-1],
            fee=UNKNOWN_FEE if fees_sompi is None else format_kas(fees_sompi),
            transaction_ids=list(submitted_tx_ids),
        )
    if submitted_tx_ids:
        logger.warning(
            f"Submission failed after {len(submitted_tx_ids)} broadcast "
            f"transaction(s): {', '.join(submitted_tx_ids)}"
        )
        raise PartialBroadcastError(submitted_tx_ids, error) from error
    raise error


async def _disconnect_quietly(utxo_source: UtxoSource) -> None:
    try:
        await utxo_source.disconnect()
    except Exception as exc:  # noqa: BLE001
        logger.debug(f"Ignoring RPC disconnect failure: {exc}")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


async def send_kaspa(
    request: SendRequest,
    wallet: WalletSource,
    fee_oracle: FeeOracle,
    utxo_source: UtxoSource,
    builder_factory: BuilderFactory,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    fee_mass: int = DEFAULT_FEE_MASS_ESTIMATE,
) -> SendResult:
    sender_address = wallet.get_address()
    network_id = wallet.get_network_id()
    submitted_tx_ids: list[str] = []
    fees_sompi: int | None = None
    error: Exception | None = None

    try:
        await open_with_timeout(
            utxo_source.connect,
            connect_timeout,
            on_late_success=functools.partial(_disconnect_quietly, utxo_source),
        )
        logger.info(f"Connected to Kaspa node ({network_id})")

        server_info = await utxo_source.get_server_info()
        if not server_info.get("isSynced"):
            raise NodeNotSyncedError()

        entries = await utxo_source.get_funding_entries(sender_address)
        await assure_funds(
            entries, request.amount_sompi, request.priority_fee, fee_oracle, fee_mass
        )

        builder = builder_factory(
            entries=order_funding_entries(entries),
            to=request.to,
            amount_sompi=request.amount_sompi,
            priority_fee=request.priority_fee,
            change_address=sender_address,
            network_id=network_id,
            payload=request.payload,
        )
        await run_submission_loop(
            builder, wallet.get_private_key(), utxo_source, submitted_tx_ids
        )
        fees_sompi = _summary_fees(builder)
    except Exception as exc:  # noqa: BLE001
        error = exc
    finally:
        await _disconnect_quietly(utxo_source)

    return finalize_submission(submitted_tx_ids, fees_sompi, error)
