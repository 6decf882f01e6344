"""
Tests for transfer logging: stage contexts, audit trail and masking.
"""
from __future__ import annotations

import json
import logging

import pytest

from gasless_transfer.config import LoggingConfig
from gasless_transfer.logging_utils import (
    TransferLogger,
    TransferStage,
    mask_address,
    mask_url,
    setup_logging,
)

from .conftest import RECIPIENT, SENDER


class TestMasking:
    def test_url_query_masked(self):
        assert mask_url("https://api.pimlico.io/v2/84532/rpc?apikey=pim_1") == (
            "https://api.pimlico.io/v2/84532/rpc?<params_masked>"
        )
        assert mask_url("http://bundler.test") == "http://bundler.test"

    def test_address_masked(self):
        assert mask_address(SENDER) == f"{SENDER[:6]}...{SENDER[-4:]}"
        assert mask_address("0x12") == "0x12"


class TestTransferLogger:
    """Test TransferLogger."""

    @pytest.mark.asyncio
    async def test_stage_context_records_success(self, caplog):
        tlog = TransferLogger()

        with caplog.at_level(logging.INFO, logger="gasless_transfer"):
            async with tlog.operation_context(TransferStage.PERMIT, "base_sepolia", amount=1) as ctx:
                pass

        assert ctx.success
        assert ctx.duration_ms is not None
        assert ctx.metadata == {"amount": 1}
        assert "Completed permit on base_sepolia" in caplog.text

    @pytest.mark.asyncio
    async def test_stage_context_records_failure(self, caplog):
        tlog = TransferLogger()

        with caplog.at_level(logging.ERROR, logger="gasless_transfer"):
            with pytest.raises(RuntimeError):
                async with tlog.operation_context(TransferStage.SUBMISSION, "base_sepolia") as ctx:
                    raise RuntimeError("relay gone")

        assert not ctx.success
        assert ctx.error == "relay gone"
        assert "success=False" in caplog.text

    def test_audit_entries_appended_to_file(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        tlog = TransferLogger(config=LoggingConfig(audit_log_path=str(path), mask_addresses=True))

        tlog.log_operation_submitted("0xop", "base_sepolia", SENDER, 0, 100, 10)
        tlog.log_reconciliation(SENDER, RECIPIENT, 2_500_000, 12_345)

        entries = [json.loads(line) for line in path.read_text().splitlines()]
        assert [e["event_type"] for e in entries] == ["operation_submitted", "transfer_reconciled"]
        assert entries[0]["data"]["sender"] == mask_address(SENDER)
        assert entries[1]["data"]["fee_charged"] == 12_345

    def test_audit_disabled(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        tlog = TransferLogger(config=LoggingConfig(audit_log_enabled=False, audit_log_path=str(path)))

        tlog.log_operation_failed("0xop", "reverted", revert_reason="AA33")

        assert not path.exists()

    def test_relay_metrics(self):
        tlog = TransferLogger()
        assert tlog.get_relay_metrics() == {"total_calls": 0}

        tlog.log_relay_call("eth_sendUserOperation", "http://bundler.test", 1, 20.0, True)
        tlog.log_relay_call("eth_sendUserOperation", "http://bundler.test", 2, 40.0, False, -32602, "bad")

        metrics = tlog.get_relay_metrics()
        assert metrics["total_calls"] == 2
        assert metrics["failed_calls"] == 1
        assert metrics["avg_latency_ms"] == 20.0


class TestSetupLogging:
    def test_sets_package_level_and_quiets_http(self):
        package_logger = logging.getLogger("gasless_transfer")
        httpx_logger = logging.getLogger("httpx")
        saved = (package_logger.level, httpx_logger.level)
        try:
            setup_logging(level="debug")

            assert package_logger.level == logging.DEBUG
            assert httpx_logger.level == logging.WARNING
        finally:
            package_logger.setLevel(saved[0])
            httpx_logger.setLevel(saved[1])
