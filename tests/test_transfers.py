"""Tests for transfer executors."""

import json

import httpx
import pytest

from standing.errors import TransferError
from standing.transfers import HttpTransferExecutor, RecordingTransferExecutor


def _executor(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpTransferExecutor("https://settle.example/", client=client)


class TestRecordingTransferExecutor:
    def test_records_instructions(self):
        executor = RecordingTransferExecutor()
        first = executor.transfer("shop.near", 5)
        second = executor.token_transfer("usdc.near", "shop.near", 7, "subscription:sub-1")

        assert first != second
        assert [i.to_dict() for i in executor.instructions] == [
            {"payee": "shop.near", "amount": "5"},
            {"payee": "shop.near", "amount": "7", "token_id": "usdc.near", "memo": "subscription:sub-1"},
        ]


class TestHttpTransferExecutor:
    def test_native_transfer(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, json={"transfer_id": "tx-1"})

        assert _executor(handler).transfer("shop.near", 2**100) == "tx-1"
        assert seen["url"] == "https://settle.example/transfers/native"
        assert seen["body"] == {"payee": "shop.near", "amount": str(2**100)}

    def test_token_transfer(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={})

        result = _executor(handler).token_transfer("usdc.near", "shop.near", 3, "subscription:sub-9")
        assert result is None
        assert seen["url"].endswith("/transfers/token")
        assert seen["body"]["memo"] == "subscription:sub-9"

    def test_rejected_transfer(self):
        executor = _executor(lambda request: httpx.Response(409, text="insufficient balance"))
        with pytest.raises(TransferError, match="409"):
            executor.transfer("shop.near", 1)

    def test_connection_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransferError, match="ConnectError"):
            _executor(handler).transfer("shop.near", 1)

    def test_non_json_body(self):
        executor = _executor(lambda request: httpx.Response(200, text="ok"))
        assert executor.transfer("shop.near", 1) is None
