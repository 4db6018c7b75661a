from __future__ import annotations

import http.client
import json
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from .config import CONFIG, TracerConfig
from .models import (
    DaCompressedBlock,
    DaCompressedBlockWithBlockId,
    FullBlock,
    Transaction,
    TransactionStatus,
    normalize_hex,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

FORWARD = "forward"
BACKWARD = "backward"


class DataSourceError(Exception):
    pass


RECEIPT_FIELDS = """
receiptType
id
to
toAddress
amount
assetId
sender
recipient
nonce
data
"""

STATUS_FIELDS = f"""
__typename
... on SuccessStatus {{
  blockHeight
  receipts {{ {RECEIPT_FIELDS} }}
}}
... on FailureStatus {{
  blockHeight
  reason
  receipts {{ {RECEIPT_FIELDS} }}
}}
"""

TRANSACTION_FIELDS = f"""
id
isScript
isCreate
isMint
isUpgrade
isUpload
isBlob
inputs {{
  __typename
  ... on InputCoin {{ utxoId owner amount assetId }}
  ... on InputContract {{ contractId }}
  ... on InputMessage {{ sender recipient amount nonce }}
}}
outputs {{
  __typename
  ... on CoinOutput {{ to amount assetId }}
  ... on ChangeOutput {{ to amount assetId }}
  ... on VariableOutput {{ to amount assetId }}
  ... on ContractOutput {{ inputIndex }}
  ... on ContractCreated {{ contract }}
}}
status {{ {STATUS_FIELDS} }}
"""

BLOCK_FIELDS = f"""
id
header {{ id height time daHeight transactionsCount prevRoot }}
consensus {{
  __typename
  ... on PoAConsensus {{ signature }}
}}
transactions {{ id rawPayload status {{ {STATUS_FIELDS} }} }}
"""

PAGE_INFO_FIELDS = "pageInfo { endCursor startCursor hasNextPage hasPreviousPage }"

TRANSACTIONS_BY_OWNER_QUERY = f"""
query TransactionsByOwner($owner: Address!, $first: Int, $after: String, $last: Int, $before: String) {{
  transactionsByOwner(owner: $owner, first: $first, after: $after, last: $last, before: $before) {{
    {PAGE_INFO_FIELDS}
    edges {{ cursor node {{ {TRANSACTION_FIELDS} }} }}
  }}
}}
"""

BLOCK_BY_HEIGHT_QUERY = f"""
query BlockByHeight($height: U32) {{
  block(height: $height) {{ {BLOCK_FIELDS} }}
}}
"""

FULL_BLOCKS_QUERY = f"""
query FullBlocks($first: Int, $after: String, $last: Int, $before: String) {{
  blocks(first: $first, after: $after, last: $last, before: $before) {{
    {PAGE_INFO_FIELDS}
    edges {{ cursor node {{ {BLOCK_FIELDS} }} }}
  }}
}}
"""

DA_COMPRESSED_BLOCK_QUERY = f"""
query DaCompressedBlockWithBlockId($height: U32!, $blockHeight: U32) {{
  daCompressedBlock(height: $height) {{ bytes }}
  block(height: $blockHeight) {{ {BLOCK_FIELDS} }}
}}
"""


@dataclass
class PaginationRequest:
    cursor: Optional[str] = None
    results: int = CONFIG.page_size
    direction: str = FORWARD

    def to_variables(self) -> dict[str, Any]:
        if self.results <= 0:
            raise ValueError("Page size must be positive")
        if self.direction == FORWARD:
            return {"first": int(self.results), "after": self.cursor}
        if self.direction == BACKWARD:
            return {"last": int(self.results), "before": self.cursor}
        raise ValueError(f"Unknown page direction {self.direction!r}")


@dataclass
class PaginatedResult(Generic[T]):
    cursor: Optional[str]
    results: list[T] = field(default_factory=list)
    has_next_page: bool = False
    has_previous_page: bool = False


def iter_pages(fetch: Callable[[PaginationRequest], PaginatedResult[T]], page_size: int) -> list[T]:
    """Drain a forward paged query starting from the first page."""
    collected: list[T] = []
    cursor: Optional[str] = None
    while True:
        page = fetch(PaginationRequest(cursor=cursor, results=page_size, direction=FORWARD))
        collected.extend(page.results)
        if not page.has_next_page:
            return collected
        if page.cursor is None or page.cursor == cursor:
            raise DataSourceError("Paged query reported more results without advancing its cursor")
        cursor = page.cursor


def normalize_node_url(node_url: str) -> str:
    raw = node_url.strip()
    if not raw:
        raise ValueError("Node URL must not be empty")
    if "://" not in raw:
        raw = f"http://{raw}"
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("Node URL scheme must be http or https")
    if not parsed.netloc:
        raise ValueError("Node URL must include a host")
    path = parsed.path.rstrip("/")
    if not path.endswith("/graphql"):
        path = f"{path}/v1/graphql"
    return f"{parsed.scheme}://{parsed.netloc}{path}"


def _post_json(url: str, payload: dict[str, Any], timeout: float | None) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8")
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    req = Request(url=url, data=data, method="POST", headers=headers)

    try:
        with urlopen(req, timeout=timeout) as response:
            raw = response.read()
            decoded = json.loads(raw.decode("utf-8")) if raw else {}
            if not isinstance(decoded, dict):
                raise DataSourceError(f"Expected JSON object response from {url}")
            return decoded
    except HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        raise DataSourceError(f"HTTP {exc.code} calling {url}: {body}") from exc
    except URLError as exc:
        if isinstance(getattr(exc, "reason", None), (TimeoutError, socket.timeout)):
            raise DataSourceError(f"Timeout calling {url}") from exc
        raise DataSourceError(f"Network error calling {url}: {exc}") from exc
    except (TimeoutError, socket.timeout) as exc:
        raise DataSourceError(f"Timeout calling {url}") from exc
    except (OSError, http.client.HTTPException) as exc:
        raise DataSourceError(f"Connection error calling {url}: {exc!r}") from exc
    except UnicodeDecodeError as exc:
        raise DataSourceError(f"Response from {url} is not valid UTF-8") from exc
    except json.JSONDecodeError as exc:
        raise DataSourceError(f"Invalid JSON response from {url}") from exc


def _connection_to_result(connection: Any, parse: Callable[[dict[str, Any]], T]) -> PaginatedResult[T]:
    if not isinstance(connection, dict):
        raise DataSourceError("Connection payload must be an object")
    page_info = connection.get("pageInfo") or {}
    if not isinstance(page_info, dict):
        raise DataSourceError("Connection pageInfo must be an object")
    try:
        results = [parse(edge["node"]) for edge in connection.get("edges") or []]
    except (KeyError, TypeError, ValueError) as exc:
        raise DataSourceError(f"Malformed connection node: {exc}") from exc
    return PaginatedResult(
        cursor=page_info.get("endCursor"),
        results=results,
        has_next_page=bool(page_info.get("hasNextPage")),
        has_previous_page=bool(page_info.get("hasPreviousPage")),
    )


def _parse_transaction_node(node: dict[str, Any]) -> tuple[Transaction, TransactionStatus | None]:
    status = node.get("status")
    return Transaction.from_dict(node), TransactionStatus.from_dict(status) if status else None


def _parse_block(node: Any) -> FullBlock:
    try:
        return FullBlock.from_dict(node)
    except (KeyError, TypeError, ValueError) as exc:
        raise DataSourceError(f"Malformed block payload: {exc}") from exc


class FuelGraphQLClient:
    """Chain data source backed by a node's GraphQL endpoint."""

    def __init__(
        self,
        node_url: str = CONFIG.node_url,
        timeout: float = CONFIG.request_timeout,
        retries: int = CONFIG.fetch_retries,
        retry_backoff: float = CONFIG.retry_backoff,
    ) -> None:
        self.url = normalize_node_url(node_url)
        self.timeout = max(0.5, float(timeout))
        self.retries = max(0, int(retries))
        self.retry_backoff = max(0.0, float(retry_backoff))

    @classmethod
    def from_config(cls, config: TracerConfig) -> "FuelGraphQLClient":
        return cls(
            node_url=config.node_url,
            timeout=config.request_timeout,
            retries=config.fetch_retries,
            retry_backoff=config.retry_backoff,
        )

    def query(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        payload = {"query": query, "variables": variables or {}}
        attempt = 0
        while True:
            try:
                response = _post_json(self.url, payload, timeout=self.timeout)
                break
            except DataSourceError as exc:
                if attempt >= self.retries:
                    raise
                attempt += 1
                delay = self.retry_backoff * attempt
                logger.warning("query failed (%s), retry %d/%d in %.1fs", exc, attempt, self.retries, delay)
                time.sleep(delay)

        errors = response.get("errors")
        if errors:
            messages = "; ".join(str(item.get("message", item)) for item in errors if isinstance(item, dict))
            raise DataSourceError(f"GraphQL error from {self.url}: {messages or errors}")
        data = response.get("data")
        if not isinstance(data, dict):
            raise DataSourceError(f"GraphQL response from {self.url} has no data")
        return data

    def fetch_transactions_by_owner(
        self, owner: str, request: PaginationRequest
    ) -> PaginatedResult[tuple[Transaction, TransactionStatus | None]]:
        variables = {"owner": normalize_hex(owner), **request.to_variables()}
        logger.debug("transactionsByOwner %s cursor=%s", owner, request.cursor)
        data = self.query(TRANSACTIONS_BY_OWNER_QUERY, variables)
        return _connection_to_result(data.get("transactionsByOwner"), _parse_transaction_node)

    def fetch_block_by_height(self, height: int) -> FullBlock | None:
        data = self.query(BLOCK_BY_HEIGHT_QUERY, {"height": str(int(height))})
        block = data.get("block")
        return _parse_block(block) if block else None

    def full_blocks(self, request: PaginationRequest) -> PaginatedResult[FullBlock]:
        data = self.query(FULL_BLOCKS_QUERY, request.to_variables())
        return _connection_to_result(data.get("blocks"), FullBlock.from_dict)

    def da_compressed_block_with_id(self, height: int) -> DaCompressedBlockWithBlockId | None:
        variables = {"height": str(int(height)), "blockHeight": str(int(height))}
        data = self.query(DA_COMPRESSED_BLOCK_QUERY, variables)
        compressed = data.get("daCompressedBlock")
        block = data.get("block")
        if not compressed or not block:
            return None
        return DaCompressedBlockWithBlockId(
            da_compressed_block=DaCompressedBlock.from_dict(compressed),
            block=_parse_block(block),
        )
