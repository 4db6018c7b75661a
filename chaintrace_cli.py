from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace

from chaintrace.client import BACKWARD, DataSourceError, FuelGraphQLClient, PaginationRequest
from chaintrace.config import CONFIG, TracerConfig
from chaintrace.crypto import SignatureError
from chaintrace.models import MintTransactionError, UtxoId
from chaintrace.recovery import (
    AmbiguousRecoveryFailure,
    ReducedFormAssertionFailure,
    block_producer,
    normalize_public_key,
    resolve_block_producer,
)
from chaintrace.tracer import ProvenanceTracer


def _config_from_args(args: argparse.Namespace) -> TracerConfig:
    overrides = {
        "node_url": args.node,
        "request_timeout": args.timeout,
        "fetch_retries": args.retries,
    }
    if getattr(args, "threshold", None) is not None:
        overrides["threshold"] = args.threshold
    if getattr(args, "asset", None):
        overrides["base_asset_id"] = args.asset
    if getattr(args, "page_size", None):
        overrides["page_size"] = args.page_size
    return replace(CONFIG, **overrides)


def _parse_coin(raw: str) -> tuple[str, UtxoId, int]:
    # owner:utxo_id:amount
    parts = raw.split(":")
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"Coin must be owner:utxo_id:amount, got {raw!r}")
    owner, utxo_hex, amount = parts
    try:
        return owner, UtxoId.from_hex(utxo_hex), int(amount)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def cmd_trace(args: argparse.Namespace) -> None:
    config = _config_from_args(args)
    tracer = ProvenanceTracer(FuelGraphQLClient.from_config(config), config=config)

    if args.snapshot:
        tracer.seed_from_snapshot(args.snapshot)
    for owner, utxo_id, amount in args.coin or []:
        tracer.seed_coin(owner, utxo_id, amount)
    for address in args.address or []:
        tracer.seed_address(address)
    if tracer.state.drained():
        raise ValueError("Nothing to trace: pass --address, --coin or --snapshot")

    report = tracer.run()
    payload = report.to_dict()
    if args.out:
        with open(args.out, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        print(f"Report written: {args.out}")
        print(json.dumps(payload["stats"], indent=2))
        return
    print(json.dumps(payload, indent=2))


def cmd_block_producer(args: argparse.Namespace) -> None:
    client = FuelGraphQLClient.from_config(_config_from_args(args))
    block = client.fetch_block_by_height(args.height)
    if block is None:
        raise ValueError(f"Block {args.height} not found")

    flag = resolve_block_producer(block, args.expected_key)
    print(
        json.dumps(
            {
                "height": block.header.height,
                "block_id": block.id,
                "recovery_flag": flag,
                "producer": "0x" + normalize_public_key(args.expected_key).hex(),
            },
            indent=2,
        )
    )


def cmd_blocks(args: argparse.Namespace) -> None:
    client = FuelGraphQLClient.from_config(_config_from_args(args))
    page = client.full_blocks(PaginationRequest(cursor=None, results=args.limit, direction=BACKWARD))
    rows = []
    for block in page.results:
        producer = block_producer(block)
        rows.append(
            {
                "height": block.header.height,
                "id": block.id,
                "consensus": block.consensus.kind,
                "transactions": len(block.transactions),
                "producer": "0x" + producer.hex() if producer is not None else None,
            }
        )
    print(json.dumps(rows, indent=2))


def cmd_da_block(args: argparse.Namespace) -> None:
    client = FuelGraphQLClient.from_config(_config_from_args(args))
    result = client.da_compressed_block_with_id(args.height)
    if result is None:
        print(json.dumps({"height": args.height, "found": False}, indent=2))
        return
    print(
        json.dumps(
            {
                "height": result.block.header.height,
                "found": True,
                "block_id": result.block.id,
                "compressed_bytes": len(result.da_compressed_block.data),
            },
            indent=2,
        )
    )


def _add_node_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--node", default=CONFIG.node_url, help="Node GraphQL URL")
    parser.add_argument("--timeout", type=float, default=CONFIG.request_timeout, help="Request timeout in seconds")
    parser.add_argument("--retries", type=int, default=CONFIG.fetch_retries, help="Retries per failed request")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chaintrace",
        description="Trace large funds through the chain and recover block producer keys.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    trace = subparsers.add_parser("trace", help="Follow funds from seed addresses and coins")
    _add_node_args(trace)
    trace.add_argument("--address", action="append", help="Seed address (repeatable)")
    trace.add_argument("--coin", action="append", type=_parse_coin, help="Seed coin as owner:utxo_id:amount")
    trace.add_argument("--snapshot", help="Chain state snapshot JSON with initial coins")
    trace.add_argument("--threshold", type=int, help="Minimum tracked amount (exclusive)")
    trace.add_argument("--asset", help="Base asset id")
    trace.add_argument("--page-size", type=int, help="Transactions per page")
    trace.add_argument("--out", help="Write report JSON to this file")
    trace.set_defaults(func=cmd_trace)

    producer = subparsers.add_parser("block-producer", help="Resolve the recovery flag of a block signature")
    _add_node_args(producer)
    producer.add_argument("--height", type=int, required=True, help="Block height")
    producer.add_argument("--expected-key", required=True, help="Known producer public key (64-byte hex)")
    producer.set_defaults(func=cmd_block_producer)

    blocks = subparsers.add_parser("blocks", help="List latest blocks with recovered producer")
    _add_node_args(blocks)
    blocks.add_argument("--limit", type=int, default=10, help="Number of blocks")
    blocks.set_defaults(func=cmd_blocks)

    da_block = subparsers.add_parser("da-block", help="Fetch a DA-compressed block together with its id")
    _add_node_args(da_block)
    da_block.add_argument("--height", type=int, required=True, help="Block height")
    da_block.set_defaults(func=cmd_da_block)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        args.func(args)
    except (DataSourceError, AmbiguousRecoveryFailure, MintTransactionError, SignatureError, ValueError) as exc:
        print(f"error: {exc}")
        raise SystemExit(1) from exc
    except ReducedFormAssertionFailure as exc:
        print(f"fatal: {exc}")
        raise SystemExit(2) from exc


if __name__ == "__main__":
    main()
