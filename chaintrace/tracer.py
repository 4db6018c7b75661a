"""Follow large base-asset funds forward through the transaction graph.

The tracer keeps two FIFO work queues: addresses whose history still has to
be fetched and outputs whose disposition still has to be checked. Addresses
always drain first, so an output is only judged unspent after every address
known at that moment has been inspected.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .client import iter_pages
from .config import CONFIG, TracerConfig
from .models import (
    OUTPUT_VARIABLE,
    RECEIPT_MESSAGE_OUT,
    RECEIPT_TRANSFER,
    RECEIPT_TRANSFER_OUT,
    STATUS_SUCCESS,
    Receipt,
    Transaction,
    TransactionStatus,
    UtxoId,
    normalize_hex,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SurfacedTransfer:
    tx_id: str
    kind: str
    to: str
    amount: int
    asset_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "kind": self.kind,
            "to": self.to,
            "amount": self.amount,
            "asset_id": self.asset_id,
        }


@dataclass
class TraversalState:
    addresses: set[str] = field(default_factory=set)
    address_queue: deque[str] = field(default_factory=deque)
    outputs: set[UtxoId] = field(default_factory=set)
    output_queue: deque[UtxoId] = field(default_factory=deque)
    spent_by: dict[UtxoId, str] = field(default_factory=dict)
    tracked: dict[UtxoId, int] = field(default_factory=dict)
    dust: set[UtxoId] = field(default_factory=set)
    transactions: dict[str, tuple[Transaction, TransactionStatus]] = field(default_factory=dict)
    expanded: set[str] = field(default_factory=set)
    message_ids: list[str] = field(default_factory=list)
    transfers: list[SurfacedTransfer] = field(default_factory=list)
    addresses_inspected: int = 0
    outputs_checked: int = 0

    def enqueue_address(self, address: str) -> bool:
        if address in self.addresses:
            return False
        self.addresses.add(address)
        self.address_queue.append(address)
        return True

    def enqueue_output(self, utxo_id: UtxoId, amount: int) -> bool:
        if utxo_id in self.outputs:
            return False
        self.outputs.add(utxo_id)
        self.tracked[utxo_id] = int(amount)
        self.output_queue.append(utxo_id)
        return True

    def drained(self) -> bool:
        return not self.address_queue and not self.output_queue


@dataclass
class TraceReport:
    unspent: dict[UtxoId, int]
    bridge_messages: list[str]
    transfers: list[SurfacedTransfer] = field(default_factory=list)
    spent: dict[UtxoId, str] = field(default_factory=dict)
    dust: set[UtxoId] = field(default_factory=set)
    addresses_inspected: int = 0
    outputs_checked: int = 0
    transactions_seen: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "unspent": {str(utxo_id): amount for utxo_id, amount in sorted(self.unspent.items())},
            "bridge_messages": list(self.bridge_messages),
            "transfers": [transfer.to_dict() for transfer in self.transfers],
            "spent": {str(utxo_id): tx_id for utxo_id, tx_id in sorted(self.spent.items())},
            "dust": sorted(str(utxo_id) for utxo_id in self.dust),
            "stats": {
                "addresses_inspected": self.addresses_inspected,
                "outputs_checked": self.outputs_checked,
                "transactions_seen": self.transactions_seen,
            },
        }


class ProvenanceTracer:
    """Breadth-first fixed point over addresses and outputs.

    ``source`` must provide ``fetch_transactions_by_owner(owner, request)``
    returning a ``PaginatedResult`` of ``(Transaction, TransactionStatus)``
    pairs, as ``FuelGraphQLClient`` does.
    """

    def __init__(self, source: Any, config: TracerConfig = CONFIG, state: TraversalState | None = None) -> None:
        self.source = source
        self.config = config
        self.state = state if state is not None else TraversalState()
        self.base_asset_id = normalize_hex(config.base_asset_id)
        self.threshold = int(config.threshold)

    def is_tracked_amount(self, amount: int, asset_id: str) -> bool:
        return amount > self.threshold and asset_id == self.base_asset_id

    def seed_address(self, address: str) -> bool:
        added = self.state.enqueue_address(normalize_hex(address))
        if added:
            logger.debug("tracking address %s", address)
        return added

    def seed_output(self, utxo_id: UtxoId, amount: int, owner: str | None = None) -> bool:
        """Queue an output for inspection.

        Spending is detected through the owner's transaction history, so
        the owner is tracked too when given. Without a tracked owner the
        output will be reported unspent.
        """
        if owner is not None:
            self.seed_address(owner)
        else:
            logger.warning("output %s seeded without an owner, its spend cannot be found", utxo_id)
        added = self.state.enqueue_output(utxo_id, amount)
        if added:
            logger.debug("tracking output %s (%d)", utxo_id, amount)
        return added

    def seed_coin(self, owner: str, utxo_id: UtxoId, amount: int) -> None:
        self.seed_output(utxo_id, amount, owner=owner)

    def seed_from_snapshot(self, path: str | Path) -> int:
        """Seed initial coin allocations from a chain state snapshot.

        Only coins in the base asset above the threshold are seeded.
        """
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        coins = payload.get("coins") if isinstance(payload, dict) else None
        if not isinstance(coins, list):
            raise ValueError(f"Snapshot {path} has no coins list")

        seeded = 0
        for coin in coins:
            amount = int(coin["amount"])
            if not self.is_tracked_amount(amount, normalize_hex(coin["asset_id"])):
                continue
            utxo_id = UtxoId(tx_id=coin["tx_id"], output_index=int(coin["output_index"]))
            self.seed_coin(coin["owner"], utxo_id, amount)
            seeded += 1
        logger.info("seeded %d of %d snapshot coins", seeded, len(coins))
        return seeded

    def run(self) -> TraceReport:
        state = self.state
        while not state.drained():
            if state.address_queue:
                self._inspect_address(state.address_queue.popleft())
            else:
                self._check_output(state.output_queue.popleft())
        logger.info(
            "trace finished: %d addresses, %d outputs, %d transactions",
            state.addresses_inspected,
            state.outputs_checked,
            len(state.transactions),
        )
        return self.report()

    def report(self) -> TraceReport:
        state = self.state
        unspent = {utxo_id: amount for utxo_id, amount in state.tracked.items() if utxo_id not in state.spent_by}
        spent = {utxo_id: state.spent_by[utxo_id] for utxo_id in state.tracked if utxo_id in state.spent_by}
        return TraceReport(
            unspent=unspent,
            bridge_messages=list(state.message_ids),
            transfers=list(state.transfers),
            spent=spent,
            dust=set(state.dust),
            addresses_inspected=state.addresses_inspected,
            outputs_checked=state.outputs_checked,
            transactions_seen=len(state.transactions),
        )

    def _inspect_address(self, address: str) -> None:
        history = iter_pages(
            lambda request: self.source.fetch_transactions_by_owner(address, request),
            self.config.page_size,
        )
        self.state.addresses_inspected += 1
        logger.info("address %s: %d transactions", address, len(history))
        for tx, status in history:
            self._observe(tx, status)

    def _observe(self, tx: Transaction, status: TransactionStatus | None) -> None:
        if status is None or not status.executed:
            logger.debug("skipping unexecuted transaction %s", tx.tx_id)
            return

        first_seen = tx.tx_id not in self.state.transactions
        if first_seen:
            self.state.transactions[tx.tx_id] = (tx, status)
        else:
            tx, status = self.state.transactions[tx.tx_id]

        self._classify_inputs(tx)
        if first_seen and status.kind == STATUS_SUCCESS:
            for receipt in status.receipts:
                self._classify_receipt(tx, status, receipt)

    def _classify_inputs(self, tx: Transaction) -> None:
        for coin in tx.coin_inputs():
            if coin.owner not in self.state.addresses:
                continue
            self.state.spent_by.setdefault(coin.utxo_id, tx.tx_id)
            self.seed_address(coin.owner)

    def _classify_receipt(self, tx: Transaction, status: TransactionStatus, receipt: Receipt) -> None:
        if receipt.kind in (RECEIPT_TRANSFER, RECEIPT_TRANSFER_OUT):
            if not self.is_tracked_amount(receipt.amount, receipt.asset_id):
                return
            self.state.transfers.append(
                SurfacedTransfer(
                    tx_id=tx.tx_id,
                    kind=receipt.kind,
                    to=receipt.to,
                    amount=receipt.amount,
                    asset_id=receipt.asset_id,
                )
            )
            if receipt.kind == RECEIPT_TRANSFER_OUT:
                self._follow_transfer_out(tx, status, receipt)
        elif receipt.kind == RECEIPT_MESSAGE_OUT:
            # Bridged funds leave the asset model, so no asset check here.
            if receipt.amount <= self.threshold:
                return
            message_id = receipt.message_id()
            if message_id not in self.state.message_ids:
                logger.info("bridge message %s (%d) in %s", message_id, receipt.amount, tx.tx_id)
                self.state.message_ids.append(message_id)

    def _follow_transfer_out(self, tx: Transaction, status: TransactionStatus, receipt: Receipt) -> None:
        self.seed_address(receipt.to)
        for index, tx_out in tx.coin_outputs(status):
            if tx_out.kind != OUTPUT_VARIABLE:
                continue
            if (tx_out.to, tx_out.amount, tx_out.asset_id) != (receipt.to, receipt.amount, receipt.asset_id):
                continue
            if self.seed_output(UtxoId(tx.tx_id, index), tx_out.amount, owner=receipt.to):
                return

    def _check_output(self, utxo_id: UtxoId) -> None:
        self.state.outputs_checked += 1
        spender = self.state.spent_by.get(utxo_id)
        if spender is None:
            logger.debug("output %s unspent", utxo_id)
            return
        if spender in self.state.expanded:
            return
        self.state.expanded.add(spender)

        tx, status = self.state.transactions[spender]
        for index, tx_out in tx.coin_outputs(status):
            child = UtxoId(tx.tx_id, index)
            if self.is_tracked_amount(tx_out.amount, tx_out.asset_id):
                self.seed_output(child, tx_out.amount, owner=tx_out.to)
            elif child not in self.state.outputs:
                self.state.dust.add(child)
