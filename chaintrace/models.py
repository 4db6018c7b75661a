from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Optional, Union

TX_KINDS = ("script", "create", "mint", "upgrade", "upload", "blob")

OUTPUT_COIN = "coin"
OUTPUT_CHANGE = "change"
OUTPUT_VARIABLE = "variable"

RECEIPT_TRANSFER = "TRANSFER"
RECEIPT_TRANSFER_OUT = "TRANSFER_OUT"
RECEIPT_MESSAGE_OUT = "MESSAGE_OUT"

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_SUBMITTED = "submitted"
STATUS_SQUEEZED_OUT = "squeezed_out"

CONSENSUS_GENESIS = "genesis"
CONSENSUS_POA = "poa"
CONSENSUS_UNKNOWN = "unknown"


class MintTransactionError(Exception):
    pass


def strip_hex(value: Any) -> str:
    raw = str(value).strip().lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    return raw


def normalize_hex(value: Any, size: int = 32) -> str:
    raw = strip_hex(value)
    if len(raw) != size * 2:
        raise ValueError(f"Expected {size}-byte hex value, got {value!r}")
    try:
        bytes.fromhex(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid hex value {value!r}") from exc
    return f"0x{raw}"


def hex_to_bytes(value: Any) -> bytes:
    raw = strip_hex(value)
    try:
        return bytes.fromhex(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid hex value {value!r}") from exc


def _u64(value: Any) -> int:
    # GraphQL encodes U64 as a decimal string.
    return int(value or 0)


def compute_message_id(sender: str, recipient: str, nonce: str, amount: int, data: bytes) -> str:
    """Identifier of an outgoing bridge message.

    sha256 over sender, recipient and nonce (32 bytes each), the amount as a
    big-endian u64, then the raw message data.
    """
    hasher = hashlib.sha256()
    hasher.update(hex_to_bytes(normalize_hex(sender)))
    hasher.update(hex_to_bytes(normalize_hex(recipient)))
    hasher.update(hex_to_bytes(normalize_hex(nonce)))
    hasher.update(int(amount).to_bytes(8, "big"))
    hasher.update(bytes(data))
    return "0x" + hasher.hexdigest()


@dataclass(frozen=True, order=True)
class UtxoId:
    tx_id: str
    output_index: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "tx_id", normalize_hex(self.tx_id))
        index = int(self.output_index)
        if not 0 <= index <= 0xFFFF:
            raise ValueError(f"Output index out of range: {self.output_index}")
        object.__setattr__(self, "output_index", index)

    def to_hex(self) -> str:
        return f"{self.tx_id}{self.output_index:04x}"

    @classmethod
    def from_hex(cls, value: str) -> "UtxoId":
        raw = normalize_hex(value, size=34)[2:]
        return cls(tx_id=raw[:64], output_index=int(raw[64:], 16))

    def __str__(self) -> str:
        return self.to_hex()


@dataclass(frozen=True)
class CoinInput:
    utxo_id: UtxoId
    owner: str
    amount: int
    asset_id: str


@dataclass(frozen=True)
class ContractInput:
    contract_id: str


@dataclass(frozen=True)
class MessageInput:
    sender: str
    recipient: str
    amount: int
    nonce: str


TxInput = Union[CoinInput, ContractInput, MessageInput]


def input_from_dict(data: dict[str, Any]) -> TxInput:
    typename = data.get("__typename", "")
    if typename == "InputCoin":
        return CoinInput(
            utxo_id=UtxoId.from_hex(data["utxoId"]),
            owner=normalize_hex(data["owner"]),
            amount=_u64(data["amount"]),
            asset_id=normalize_hex(data["assetId"]),
        )
    if typename == "InputContract":
        contract = data.get("contractId") or data.get("contract", {}).get("id", "")
        return ContractInput(contract_id=normalize_hex(contract))
    if typename == "InputMessage":
        return MessageInput(
            sender=normalize_hex(data["sender"]),
            recipient=normalize_hex(data["recipient"]),
            amount=_u64(data["amount"]),
            nonce=normalize_hex(data["nonce"]),
        )
    raise ValueError(f"Unknown input type {typename!r}")


@dataclass(frozen=True)
class CoinOutput:
    kind: str
    to: str
    amount: int
    asset_id: str


@dataclass(frozen=True)
class ContractOutput:
    input_index: int


@dataclass(frozen=True)
class ContractCreated:
    contract_id: str


TxOutput = Union[CoinOutput, ContractOutput, ContractCreated]

_COIN_OUTPUT_KINDS = {
    "CoinOutput": OUTPUT_COIN,
    "ChangeOutput": OUTPUT_CHANGE,
    "VariableOutput": OUTPUT_VARIABLE,
}


def output_from_dict(data: dict[str, Any]) -> TxOutput:
    typename = data.get("__typename", "")
    if typename in _COIN_OUTPUT_KINDS:
        return CoinOutput(
            kind=_COIN_OUTPUT_KINDS[typename],
            to=normalize_hex(data["to"]),
            amount=_u64(data["amount"]),
            asset_id=normalize_hex(data["assetId"]),
        )
    if typename == "ContractOutput":
        return ContractOutput(input_index=int(data.get("inputIndex", 0)))
    if typename == "ContractCreated":
        contract = data.get("contract")
        if isinstance(contract, dict):
            contract = contract.get("id", "")
        return ContractCreated(contract_id=normalize_hex(contract))
    raise ValueError(f"Unknown output type {typename!r}")


@dataclass(frozen=True)
class Receipt:
    kind: str
    amount: int = 0
    asset_id: str = ""
    contract_id: str = ""
    # Contract id for TRANSFER, address for TRANSFER_OUT.
    to: str = ""
    sender: str = ""
    recipient: str = ""
    nonce: str = ""
    data: bytes = b""

    def message_id(self) -> str:
        if self.kind != RECEIPT_MESSAGE_OUT:
            raise ValueError(f"Receipt {self.kind} carries no message")
        return compute_message_id(self.sender, self.recipient, self.nonce, self.amount, self.data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Receipt":
        kind = str(data.get("receiptType", "")).upper()
        if kind == RECEIPT_TRANSFER:
            to = data.get("to") or ""
        elif kind == RECEIPT_TRANSFER_OUT:
            to = data.get("toAddress") or ""
        else:
            to = ""
        asset_id = data.get("assetId")
        return cls(
            kind=kind,
            amount=_u64(data.get("amount")),
            asset_id=normalize_hex(asset_id) if asset_id else "",
            contract_id=normalize_hex(data["id"]) if data.get("id") else "",
            to=normalize_hex(to) if to else "",
            sender=normalize_hex(data["sender"]) if data.get("sender") else "",
            recipient=normalize_hex(data["recipient"]) if data.get("recipient") else "",
            nonce=normalize_hex(data["nonce"]) if data.get("nonce") else "",
            data=hex_to_bytes(data["data"]) if data.get("data") else b"",
        )


_STATUS_KINDS = {
    "SuccessStatus": STATUS_SUCCESS,
    "FailureStatus": STATUS_FAILURE,
    "SubmittedStatus": STATUS_SUBMITTED,
    "SqueezedOutStatus": STATUS_SQUEEZED_OUT,
}


@dataclass
class TransactionStatus:
    kind: str
    block_height: Optional[int] = None
    receipts: list[Receipt] = field(default_factory=list)
    reason: str = ""

    @property
    def executed(self) -> bool:
        return self.kind in (STATUS_SUCCESS, STATUS_FAILURE)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransactionStatus":
        typename = data.get("__typename", "")
        if typename not in _STATUS_KINDS:
            raise ValueError(f"Unknown transaction status {typename!r}")
        height = data.get("blockHeight")
        if height is None and isinstance(data.get("block"), dict):
            height = data["block"].get("height")
        return cls(
            kind=_STATUS_KINDS[typename],
            block_height=None if height is None else int(height),
            receipts=[Receipt.from_dict(item) for item in data.get("receipts") or []],
            reason=str(data.get("reason") or ""),
        )


def _kind_from_flags(data: dict[str, Any]) -> str:
    if data.get("kind"):
        return str(data["kind"])
    for kind in TX_KINDS:
        if data.get(f"is{kind.capitalize()}"):
            return kind
    raise ValueError(f"Transaction {data.get('id')} has no recognised kind")


@dataclass
class Transaction:
    tx_id: str
    kind: str
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.tx_id = normalize_hex(self.tx_id)
        if self.kind not in TX_KINDS:
            raise ValueError(f"Unknown transaction kind {self.kind!r}")

    def _require_coin_io(self) -> None:
        if self.kind in ("script", "create", "upgrade", "upload", "blob"):
            return
        if self.kind == "mint":
            raise MintTransactionError(f"Mint transaction {self.tx_id} has no coin inputs or outputs")
        raise ValueError(f"Unknown transaction kind {self.kind!r}")

    def coin_inputs(self) -> list[CoinInput]:
        self._require_coin_io()
        return [tx_in for tx_in in self.inputs if isinstance(tx_in, CoinInput)]

    def coin_outputs(self, status: TransactionStatus | None = None) -> list[tuple[int, CoinOutput]]:
        """Coin outputs that exist on chain, paired with their output index.

        A reverted transaction only materializes its change outputs.
        """
        self._require_coin_io()
        failed = status is not None and status.kind == STATUS_FAILURE
        result: list[tuple[int, CoinOutput]] = []
        for index, tx_out in enumerate(self.outputs):
            if not isinstance(tx_out, CoinOutput):
                continue
            if failed and tx_out.kind != OUTPUT_CHANGE:
                continue
            result.append((index, tx_out))
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transaction":
        return cls(
            tx_id=data["id"],
            kind=_kind_from_flags(data),
            inputs=[input_from_dict(item) for item in data.get("inputs") or []],
            outputs=[output_from_dict(item) for item in data.get("outputs") or []],
        )


@dataclass
class BlockHeader:
    id: str
    height: int
    time: str = ""
    da_height: int = 0
    transactions_count: int = 0
    prev_root: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BlockHeader":
        return cls(
            id=normalize_hex(data["id"]),
            height=int(data["height"]),
            time=str(data.get("time") or ""),
            da_height=_u64(data.get("daHeight")),
            transactions_count=int(data.get("transactionsCount") or 0),
            prev_root=str(data.get("prevRoot") or ""),
        )


@dataclass
class Consensus:
    kind: str
    signature: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Consensus":
        typename = (data or {}).get("__typename", "")
        if typename == "Genesis":
            return cls(kind=CONSENSUS_GENESIS)
        if typename == "PoAConsensus":
            return cls(kind=CONSENSUS_POA, signature=normalize_hex(data["signature"], size=64))
        return cls(kind=CONSENSUS_UNKNOWN)


@dataclass
class OpaqueTransaction:
    tx_id: str
    raw_payload: str = ""
    status: TransactionStatus | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OpaqueTransaction":
        status = data.get("status")
        return cls(
            tx_id=normalize_hex(data["id"]),
            raw_payload=str(data.get("rawPayload") or ""),
            status=TransactionStatus.from_dict(status) if status else None,
        )


@dataclass
class FullBlock:
    id: str
    header: BlockHeader
    consensus: Consensus
    transactions: list[OpaqueTransaction] = field(default_factory=list)

    def signing_message(self) -> bytes:
        # The producer signs the 32-byte header id directly.
        return hex_to_bytes(self.header.id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FullBlock":
        return cls(
            id=normalize_hex(data["id"]),
            header=BlockHeader.from_dict(data["header"]),
            consensus=Consensus.from_dict(data.get("consensus")),
            transactions=[OpaqueTransaction.from_dict(item) for item in data.get("transactions") or []],
        )


@dataclass
class DaCompressedBlock:
    data: bytes

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DaCompressedBlock":
        return cls(data=hex_to_bytes(data.get("bytes") or ""))


@dataclass
class DaCompressedBlockWithBlockId:
    da_compressed_block: DaCompressedBlock
    block: FullBlock
