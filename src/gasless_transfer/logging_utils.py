"""
Structured logging for gasless transfer attempts.

Features:
- Per-stage operation context with durations
- Relay call logging with URL masking (bundler URLs carry API keys)
- UserOperation lifecycle logging (submitted, included, reverted)
- Gas negotiation and reconciliation logging
- Audit trail support
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import LoggingConfig


class TransferStage(str, Enum):
    """Stages of one transfer attempt."""
    PERMIT = "permit"
    PAYMASTER_DATA = "paymaster_data"
    FEE_FETCH = "fee_fetch"
    GAS_ESTIMATION = "gas_estimation"
    ASSEMBLY = "assembly"
    SUBMISSION = "submission"
    INCLUSION = "inclusion"
    RECONCILIATION = "reconciliation"
    TRANSFER = "transfer"


@dataclass
class StageContext:
    """Context for one stage of an attempt."""
    operation_id: str
    stage: TransferStage
    chain: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "stage": self.stage.value,
            "chain": self.chain,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass
class RelayCallLog:
    """Log entry for a relay JSON-RPC call."""
    method: str
    endpoint_url: str
    request_id: int
    duration_ms: float
    success: bool
    error_code: Optional[int] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "endpoint_url": mask_url(self.endpoint_url),
            "request_id": self.request_id,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


def mask_url(url: str) -> str:
    """Mask query parameters (API keys) in a URL."""
    if "?" in url:
        return f"{url.split('?')[0]}?<params_masked>"
    return url


def mask_address(address: str) -> str:
    """Mask middle portion of an address for privacy."""
    if len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


class TransferLogger:
    """
    Logger for gasless transfer attempts.

    Usage:
        tlog = TransferLogger(config=engine_config.logging)
        async with tlog.operation_context(TransferStage.GAS_ESTIMATION, "base_sepolia") as ctx:
            limits = await negotiator.estimate_limits(draft)
            ctx.metadata["post_op"] = limits.paymaster_post_op_gas_limit
    """

    def __init__(
        self,
        name: str = "gasless_transfer",
        config: Optional[LoggingConfig] = None,
    ):
        self._logger = logging.getLogger(name)
        self._config = config or LoggingConfig()
        self._operation_counter = 0
        self._relay_calls: List[RelayCallLog] = []
        self._max_history = 1000

    @property
    def config(self) -> LoggingConfig:
        return self._config

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        return f"op_{int(time.time() * 1000)}_{self._operation_counter}"

    def _get_level(self, level_str: str) -> int:
        return getattr(logging, level_str.upper(), logging.INFO)

    def _addr(self, address: str) -> str:
        return mask_address(address) if self._config.mask_addresses else address

    @asynccontextmanager
    async def operation_context(
        self,
        stage: TransferStage,
        chain: str,
        **metadata,
    ):
        """
        Context manager tracking one stage.

        Usage:
            async with tlog.operation_context(TransferStage.SUBMISSION, "base_sepolia") as ctx:
                ctx.metadata["operation_hash"] = op_hash
        """
        ctx = StageContext(
            operation_id=self._generate_operation_id(),
            stage=stage,
            chain=chain,
            metadata=metadata,
        )

        self._logger.debug(
            f"Starting {stage.value} on {chain}",
            extra={"stage": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)
        except BaseException as e:
            ctx.complete(success=False, error=str(e) or type(e).__name__)
            raise
        finally:
            level = (
                self._get_level(self._config.transaction_level)
                if ctx.success
                else self._get_level(self._config.error_level)
            )
            self._logger.log(
                level,
                f"Completed {stage.value} on {chain} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"stage": ctx.to_dict()},
            )

    def log_relay_call(
        self,
        method: str,
        endpoint_url: str,
        request_id: int,
        duration_ms: float,
        success: bool,
        error_code: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Log a relay call."""
        if not self._config.log_relay_latency:
            return

        entry = RelayCallLog(
            method=method,
            endpoint_url=endpoint_url,
            request_id=request_id,
            duration_ms=duration_ms,
            success=success,
            error_code=error_code,
            error_message=error_message,
        )
        self._relay_calls.append(entry)
        if len(self._relay_calls) > self._max_history:
            self._relay_calls = self._relay_calls[-self._max_history:]

        level = (
            self._get_level(self._config.relay_call_level)
            if success
            else self._get_level(self._config.error_level)
        )
        self._logger.log(
            level,
            f"Relay {method} in {duration_ms:.0f}ms (success={success})",
            extra={"relay_call": entry.to_dict()},
        )

    def log_gas_negotiation(
        self,
        chain: str,
        limits: Dict[str, int],
        relay_post_op: int,
        floor: int,
    ) -> None:
        """Log negotiated gas limits and whether the post-op floor applied."""
        if not self._config.log_gas_prices:
            return

        floored = relay_post_op < floor
        self._logger.debug(
            f"Gas limits for {chain}: call={limits.get('call_gas_limit')}, "
            f"verification={limits.get('verification_gas_limit')}, "
            f"pre_verification={limits.get('pre_verification_gas')}, "
            f"post_op={limits.get('paymaster_post_op_gas_limit')}"
            + (f" (relay {relay_post_op} raised to floor {floor})" if floored else ""),
            extra={"gas_negotiation": {**limits, "relay_post_op": relay_post_op, "floor": floor}},
        )

    def log_operation_submitted(
        self,
        operation_hash: str,
        chain: str,
        sender: str,
        nonce: int,
        max_fee_per_gas: int,
        max_priority_fee_per_gas: int,
    ) -> None:
        """Log UserOperation submission."""
        data = {
            "operation_hash": operation_hash,
            "chain": chain,
            "sender": self._addr(sender),
            "nonce": nonce,
            "max_fee_per_gas": max_fee_per_gas,
            "max_priority_fee_per_gas": max_priority_fee_per_gas,
        }
        self._logger.log(
            self._get_level(self._config.transaction_level),
            f"UserOperation submitted: {operation_hash} on {chain}",
            extra={"user_operation": data},
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("operation_submitted", data)

    def log_operation_included(
        self,
        operation_hash: str,
        tx_hash: str,
        actual_gas_cost: Optional[int] = None,
    ) -> None:
        """Log UserOperation inclusion."""
        self._logger.log(
            self._get_level(self._config.transaction_level),
            f"UserOperation included: {operation_hash} in tx {tx_hash}",
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("operation_included", {
                "operation_hash": operation_hash,
                "tx_hash": tx_hash,
                "actual_gas_cost": actual_gas_cost,
            })

    def log_operation_failed(
        self,
        operation_hash: str,
        error: str,
        tx_hash: Optional[str] = None,
        revert_reason: Optional[str] = None,
    ) -> None:
        """Log a reverted or unresolved UserOperation."""
        self._logger.log(
            self._get_level(self._config.error_level),
            f"UserOperation failed: {operation_hash} - {error}"
            + (f" (revert: {revert_reason})" if revert_reason else ""),
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("operation_failed", {
                "operation_hash": operation_hash,
                "tx_hash": tx_hash,
                "error": error,
                "revert_reason": revert_reason,
            })

    def log_reconciliation(
        self,
        sender: str,
        recipient: str,
        transferred: int,
        fee_charged: int,
    ) -> None:
        """Log reconciled balance deltas."""
        data = {
            "sender": self._addr(sender),
            "recipient": self._addr(recipient),
            "transferred": transferred,
            "fee_charged": fee_charged,
        }
        self._logger.info(
            f"Reconciled transfer of {transferred} with fee {fee_charged}",
            extra={"reconciliation": data},
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("transfer_reconciled", data)

    def _write_audit_log(self, event_type: str, data: Dict[str, Any]) -> None:
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "data": data,
        }

        if self._config.audit_log_path:
            try:
                with open(self._config.audit_log_path, "a") as f:
                    f.write(json.dumps(audit_entry, default=str) + "\n")
            except OSError as e:
                self._logger.error(f"Failed to write audit log: {e}")
        else:
            self._logger.info(f"AUDIT: {event_type}", extra={"audit": audit_entry})

    def get_relay_metrics(self) -> Dict[str, Any]:
        """Relay call metrics."""
        if not self._relay_calls:
            return {"total_calls": 0}

        successful = [c for c in self._relay_calls if c.success]
        latencies = [c.duration_ms for c in successful]

        return {
            "total_calls": len(self._relay_calls),
            "successful_calls": len(successful),
            "failed_calls": len(self._relay_calls) - len(successful),
            "avg_latency_ms": sum(latencies) / len(latencies) if latencies else 0,
            "max_latency_ms": max(latencies) if latencies else 0,
        }


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level
        format_string: Custom format string
        json_format: Use JSON formatting
    """
    if format_string is None:
        if json_format:
            format_string = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=format_string,
    )

    logging.getLogger("gasless_transfer").setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
