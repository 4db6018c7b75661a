from __future__ import annotations

import http.client
import io
import json
import unittest
from unittest import mock
from urllib.error import HTTPError, URLError

from chaintrace.client import (
    BACKWARD,
    DataSourceError,
    FuelGraphQLClient,
    PaginatedResult,
    PaginationRequest,
    iter_pages,
    normalize_node_url,
)


OWNER = "0x" + "aa" * 32
ASSET = "0x" + "f8" * 32
TX_ID = "0x" + "12" * 32


def _response(payload: dict) -> mock.MagicMock:
    response = mock.MagicMock()
    response.__enter__.return_value.read.return_value = json.dumps(payload).encode("utf-8")
    return response


def _block_node(height: int) -> dict:
    block_id = "0x" + f"{height:064x}"
    return {
        "id": block_id,
        "header": {"id": block_id, "height": str(height)},
        "consensus": {"__typename": "Genesis"} if height == 0 else {"__typename": "PoAConsensus", "signature": "0x" + "11" * 64},
        "transactions": [],
    }


def _owner_page(has_next: bool) -> dict:
    return {
        "data": {
            "transactionsByOwner": {
                "pageInfo": {"endCursor": "c1", "startCursor": "c0", "hasNextPage": has_next, "hasPreviousPage": False},
                "edges": [
                    {
                        "cursor": "c1",
                        "node": {
                            "id": TX_ID,
                            "isScript": True,
                            "inputs": [
                                {
                                    "__typename": "InputCoin",
                                    "utxoId": "0x" + "34" * 32 + "0000",
                                    "owner": OWNER,
                                    "amount": "10",
                                    "assetId": ASSET,
                                }
                            ],
                            "outputs": [{"__typename": "ChangeOutput", "to": OWNER, "amount": "9", "assetId": ASSET}],
                            "status": {"__typename": "SuccessStatus", "blockHeight": "5", "receipts": []},
                        },
                    }
                ],
            }
        }
    }


class NodeUrlTest(unittest.TestCase):
    def test_normalize_node_url(self) -> None:
        self.assertEqual(normalize_node_url("127.0.0.1:4000"), "http://127.0.0.1:4000/v1/graphql")
        self.assertEqual(normalize_node_url("https://node.example/v1/graphql/"), "https://node.example/v1/graphql")
        with self.assertRaises(ValueError):
            normalize_node_url("ftp://node.example")
        with self.assertRaises(ValueError):
            normalize_node_url("  ")


class PaginationTest(unittest.TestCase):
    def test_request_variables(self) -> None:
        self.assertEqual(PaginationRequest(cursor=None, results=5).to_variables(), {"first": 5, "after": None})
        self.assertEqual(
            PaginationRequest(cursor="x", results=3, direction=BACKWARD).to_variables(),
            {"last": 3, "before": "x"},
        )
        with self.assertRaises(ValueError):
            PaginationRequest(results=0).to_variables()

    def test_iter_pages_requires_advancing_cursor(self) -> None:
        def stuck(request: PaginationRequest) -> PaginatedResult:
            return PaginatedResult(cursor=request.cursor, results=[1], has_next_page=True)

        with self.assertRaises(DataSourceError):
            iter_pages(stuck, page_size=1)


class FuelGraphQLClientTest(unittest.TestCase):
    def test_transactions_by_owner_parses_page(self) -> None:
        client = FuelGraphQLClient("http://127.0.0.1:4000")
        with mock.patch("chaintrace.client.urlopen", return_value=_response(_owner_page(True))) as urlopen:
            page = client.fetch_transactions_by_owner(OWNER, PaginationRequest(cursor=None, results=10))

        request = urlopen.call_args.args[0]
        body = json.loads(request.data.decode("utf-8"))
        self.assertEqual(request.full_url, "http://127.0.0.1:4000/v1/graphql")
        self.assertEqual(body["variables"], {"owner": OWNER, "first": 10, "after": None})
        self.assertIn("transactionsByOwner", body["query"])

        self.assertTrue(page.has_next_page)
        self.assertEqual(page.cursor, "c1")
        tx, status = page.results[0]
        self.assertEqual(tx.tx_id, TX_ID)
        self.assertEqual(tx.coin_inputs()[0].owner, OWNER)
        self.assertEqual(status.block_height, 5)

    def test_graphql_errors_raise(self) -> None:
        client = FuelGraphQLClient("http://127.0.0.1:4000")
        payload = {"errors": [{"message": "Invalid owner"}]}
        with mock.patch("chaintrace.client.urlopen", return_value=_response(payload)):
            with self.assertRaisesRegex(DataSourceError, "Invalid owner"):
                client.fetch_transactions_by_owner(OWNER, PaginationRequest())

    def test_transport_errors_raise(self) -> None:
        client = FuelGraphQLClient("http://127.0.0.1:4000")
        http_error = HTTPError(client.url, 502, "Bad Gateway", hdrs=None, fp=io.BytesIO(b"upstream down"))
        with mock.patch("chaintrace.client.urlopen", side_effect=http_error):
            with self.assertRaisesRegex(DataSourceError, "HTTP 502.*upstream down"):
                client.fetch_block_by_height(1)
        with mock.patch("chaintrace.client.urlopen", side_effect=URLError("refused")):
            with self.assertRaisesRegex(DataSourceError, "Network error"):
                client.fetch_block_by_height(1)
        with mock.patch("chaintrace.client.urlopen", side_effect=TimeoutError()):
            with self.assertRaisesRegex(DataSourceError, "Timeout"):
                client.fetch_block_by_height(1)

    def test_retries_then_succeeds(self) -> None:
        client = FuelGraphQLClient("http://127.0.0.1:4000", retries=2, retry_backoff=0.0)
        responses = [URLError("reset"), _response({"data": {"block": _block_node(3)}})]
        with mock.patch("chaintrace.client.urlopen", side_effect=responses) as urlopen, mock.patch(
            "chaintrace.client.time.sleep"
        ) as sleep:
            block = client.fetch_block_by_height(3)

        self.assertEqual(urlopen.call_count, 2)
        sleep.assert_called_once()
        self.assertEqual(block.header.height, 3)
        self.assertEqual(block.consensus.kind, "poa")

    def test_connection_level_errors_raise(self) -> None:
        client = FuelGraphQLClient("http://127.0.0.1:4000", retries=0)
        failures = [
            ConnectionResetError("reset by peer"),
            ConnectionRefusedError("refused"),
            http.client.RemoteDisconnected("closed without response"),
            http.client.IncompleteRead(b""),
        ]
        for failure in failures:
            with self.subTest(failure=type(failure).__name__):
                with mock.patch("chaintrace.client.urlopen", side_effect=failure):
                    with self.assertRaisesRegex(DataSourceError, "Connection error"):
                        client.fetch_block_by_height(1)

    def test_reset_connection_is_retried(self) -> None:
        client = FuelGraphQLClient("http://127.0.0.1:4000", retries=1, retry_backoff=0.0)
        responses = [ConnectionResetError("reset by peer"), _response({"data": {"block": _block_node(3)}})]
        with mock.patch("chaintrace.client.urlopen", side_effect=responses) as urlopen, mock.patch(
            "chaintrace.client.time.sleep"
        ):
            block = client.fetch_block_by_height(3)

        self.assertEqual(urlopen.call_count, 2)
        self.assertEqual(block.header.height, 3)

    def test_invalid_utf8_body_raises(self) -> None:
        client = FuelGraphQLClient("http://127.0.0.1:4000", retries=0)
        response = mock.MagicMock()
        response.__enter__.return_value.read.return_value = b"\xff\xfe{"
        with mock.patch("chaintrace.client.urlopen", return_value=response):
            with self.assertRaisesRegex(DataSourceError, "not valid UTF-8"):
                client.fetch_block_by_height(1)

    def test_non_object_page_info_raises(self) -> None:
        client = FuelGraphQLClient("http://127.0.0.1:4000", retries=0)
        payload = _owner_page(False)
        payload["data"]["transactionsByOwner"]["pageInfo"] = "bad"
        with mock.patch("chaintrace.client.urlopen", return_value=_response(payload)):
            with self.assertRaisesRegex(DataSourceError, "pageInfo must be an object"):
                client.fetch_transactions_by_owner(OWNER, PaginationRequest())

    def test_missing_block_is_none(self) -> None:
        client = FuelGraphQLClient("http://127.0.0.1:4000")
        with mock.patch("chaintrace.client.urlopen", return_value=_response({"data": {"block": None}})):
            self.assertIsNone(client.fetch_block_by_height(99))

    def test_full_blocks_backward(self) -> None:
        client = FuelGraphQLClient("http://127.0.0.1:4000")
        payload = {
            "data": {
                "blocks": {
                    "pageInfo": {"endCursor": "0", "hasNextPage": False, "hasPreviousPage": True},
                    "edges": [{"cursor": "1", "node": _block_node(1)}, {"cursor": "0", "node": _block_node(0)}],
                }
            }
        }
        with mock.patch("chaintrace.client.urlopen", return_value=_response(payload)) as urlopen:
            page = client.full_blocks(PaginationRequest(cursor=None, results=2, direction=BACKWARD))

        body = json.loads(urlopen.call_args.args[0].data.decode("utf-8"))
        self.assertEqual(body["variables"], {"last": 2, "before": None})
        self.assertEqual([block.header.height for block in page.results], [1, 0])
        self.assertEqual(page.results[1].consensus.kind, "genesis")
        self.assertTrue(page.has_previous_page)

    def test_da_compressed_block_requires_both_parts(self) -> None:
        client = FuelGraphQLClient("http://127.0.0.1:4000")
        both = {"data": {"daCompressedBlock": {"bytes": "0x0102"}, "block": _block_node(1)}}
        missing = {"data": {"daCompressedBlock": None, "block": _block_node(1)}}

        with mock.patch("chaintrace.client.urlopen", return_value=_response(both)):
            result = client.da_compressed_block_with_id(1)
        self.assertEqual(result.da_compressed_block.data, b"\x01\x02")
        self.assertEqual(result.block.header.height, 1)

        with mock.patch("chaintrace.client.urlopen", return_value=_response(missing)):
            self.assertIsNone(client.da_compressed_block_with_id(1))


if __name__ == "__main__":
    unittest.main()
