"""
Tests for the bundler JSON-RPC client and its failure mapping.
"""
from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from gasless_transfer.erc4337.bundler_client import BundlerClient, BundlerConfig
from gasless_transfer.erc4337.user_operation import FeeLevels, GasEnvelope, UserOperation
from gasless_transfer.exceptions import (
    EstimationRejected,
    RelayUnavailable,
    SubmissionRejected,
)
from gasless_transfer.logging_utils import TransferLogger
from gasless_transfer.config import LoggingConfig

from .conftest import PAYMASTER, SENDER

ENTRYPOINT = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
URL = "http://bundler.test/rpc?apikey=secret"


def _sample_user_op() -> UserOperation:
    return UserOperation(
        sender=SENDER,
        nonce=0,
        call_data=b"\x01\x02",
        gas=GasEnvelope(1, 1, 0, 0, 0, 0, 50_000),
        paymaster=PAYMASTER,
        paymaster_data=b"\x00" * 60,
        signature=b"\x03" * 65,
    )


def _client(handler: Callable[[httpx.Request], httpx.Response], tlog=None) -> BundlerClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BundlerClient(BundlerConfig(url=URL), http_client=http_client, transfer_logger=tlog)


def _result(value) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": value})
    return handler


def _rpc_error(code: int, message: str, status: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(
            status,
            json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": code, "message": message}},
        )
    return handler


class TestSuccessfulCalls:
    @pytest.mark.asyncio
    async def test_fee_levels(self) -> None:
        client = _client(_result({
            "slow": {"maxFeePerGas": "0x64", "maxPriorityFeePerGas": "0xa"},
            "standard": {"maxFeePerGas": "0xc8", "maxPriorityFeePerGas": "0x14"},
            "fast": {"maxFeePerGas": "0x12c", "maxPriorityFeePerGas": "0x1e"},
        }))

        levels = await client.get_fee_levels()

        assert levels["fast"] == FeeLevels(300, 30)
        assert set(levels) == {"slow", "standard", "fast"}

    @pytest.mark.asyncio
    async def test_estimate(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            seen.update(body)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {
                "callGasLimit": "0x13880",
                "verificationGasLimit": "0x249f0",
                "preVerificationGas": "0xc350",
                "paymasterVerificationGasLimit": "0xea60",
                "paymasterPostOpGasLimit": "0x7530",
            }})

        limits = await _client(handler).estimate_user_operation_gas(_sample_user_op(), ENTRYPOINT)

        assert seen["method"] == "eth_estimateUserOperationGas"
        assert seen["params"][1] == ENTRYPOINT
        assert seen["params"][0]["paymaster"] == PAYMASTER
        assert limits.call_gas_limit == 80_000
        assert limits.paymaster_post_op_gas_limit == 30_000

    @pytest.mark.asyncio
    async def test_send_returns_hash(self) -> None:
        op_hash = "0x" + "ab" * 32

        assert await _client(_result(op_hash)).send_user_operation(_sample_user_op(), ENTRYPOINT) == op_hash

    @pytest.mark.asyncio
    async def test_missing_receipt_is_none(self) -> None:
        assert await _client(_result(None)).get_user_operation_receipt("0x" + "ab" * 32) is None

    @pytest.mark.asyncio
    async def test_relay_calls_are_logged(self) -> None:
        tlog = TransferLogger(config=LoggingConfig(audit_log_enabled=False))
        client = _client(_result(None), tlog)

        await client.get_user_operation_receipt("0x" + "ab" * 32)

        metrics = tlog.get_relay_metrics()
        assert metrics["total_calls"] == 1
        assert metrics["successful_calls"] == 1


class TestFailureMapping:
    """Relay failures map to RelayUnavailable or a rejection."""

    @pytest.mark.asyncio
    async def test_estimate_rpc_error_is_rejection(self) -> None:
        client = _client(_rpc_error(-32500, "AA23 reverted: invalid signature"))

        with pytest.raises(EstimationRejected) as exc_info:
            await client.estimate_user_operation_gas(_sample_user_op(), ENTRYPOINT)
        assert exc_info.value.details["rpc_code"] == -32500

    @pytest.mark.asyncio
    async def test_send_rpc_error_is_rejection(self) -> None:
        client = _client(_rpc_error(-32602, "AA25 invalid account nonce"))

        with pytest.raises(SubmissionRejected):
            await client.send_user_operation(_sample_user_op(), ENTRYPOINT)

    @pytest.mark.asyncio
    async def test_transient_rpc_code_is_unavailable(self) -> None:
        client = _client(_rpc_error(-32603, "internal error"))

        with pytest.raises(RelayUnavailable):
            await client.estimate_user_operation_gas(_sample_user_op(), ENTRYPOINT)

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self) -> None:
        client = _client(lambda request: httpx.Response(503, text="upstream down"))

        with pytest.raises(RelayUnavailable) as exc_info:
            await client.send_user_operation(_sample_user_op(), ENTRYPOINT)
        assert exc_info.value.details["http_status"] == 503
        assert exc_info.value.details["may_have_reached_relay"] is False

    @pytest.mark.asyncio
    async def test_rate_limit_is_unavailable(self) -> None:
        client = _client(lambda request: httpx.Response(429, json={"error": "slow down"}))

        with pytest.raises(RelayUnavailable):
            await client.get_fee_levels()

    @pytest.mark.asyncio
    async def test_connect_error_never_reached_relay(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RelayUnavailable) as exc_info:
            await _client(handler).send_user_operation(_sample_user_op(), ENTRYPOINT)
        assert exc_info.value.details["may_have_reached_relay"] is False

    @pytest.mark.asyncio
    async def test_read_timeout_may_have_reached_relay(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(RelayUnavailable) as exc_info:
            await _client(handler).send_user_operation(_sample_user_op(), ENTRYPOINT)
        assert exc_info.value.details["may_have_reached_relay"] is True

    @pytest.mark.asyncio
    async def test_malformed_fee_payload_is_unavailable(self) -> None:
        client = _client(_result({"fast": {"maxFeePerGas": "0x1"}}))

        with pytest.raises(RelayUnavailable):
            await client.get_fee_levels()

    @pytest.mark.asyncio
    async def test_non_string_hash_is_rejection(self) -> None:
        with pytest.raises(SubmissionRejected):
            await _client(_result(42)).send_user_operation(_sample_user_op(), ENTRYPOINT)

    @pytest.mark.asyncio
    async def test_api_key_is_masked_in_details(self) -> None:
        client = _client(_rpc_error(-32500, "bad"))

        with pytest.raises(EstimationRejected) as exc_info:
            await client.estimate_user_operation_gas(_sample_user_op(), ENTRYPOINT)
        assert "secret" not in exc_info.value.details["relay"]
