"""ERC-4337 bundler (relay) client for Pimlico-compatible endpoints."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

import httpx

from ..exceptions import (
    EstimationRejected,
    GaslessTransferError,
    RelayUnavailable,
    SubmissionRejected,
)
from ..logging_utils import TransferLogger, mask_url
from .user_operation import FeeLevels, GasLimits, UserOperation

logger = logging.getLogger(__name__)

# JSON-RPC codes that describe the relay, not the request
TRANSIENT_RPC_CODES = (-32603, -32005)

# Relay-side verdicts on the operation itself
REJECTION_BY_METHOD: Dict[str, Type[GaslessTransferError]] = {
    "eth_estimateUserOperationGas": EstimationRejected,
    "eth_sendUserOperation": SubmissionRejected,
}


@dataclass(frozen=True)
class BundlerConfig:
    url: str
    timeout_seconds: float = 30.0


class BundlerClient:
    """
    JSON-RPC client for a bundler.

    Failure mapping:
    - connection failures, timeouts, HTTP 429/5xx and transient JSON-RPC
      codes raise RelayUnavailable; ``details["may_have_reached_relay"]`` is
      True when the request may have been delivered before the failure
    - JSON-RPC errors from eth_estimateUserOperationGas raise
      EstimationRejected, from eth_sendUserOperation SubmissionRejected
    """

    def __init__(
        self,
        config: BundlerConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        transfer_logger: Optional[TransferLogger] = None,
    ):
        self._config = config
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_client = http_client is None
        self._tlog = transfer_logger
        self._request_id = 0

    def _record(self, method: str, request_id: int, started: float, success: bool,
                error_code: Optional[int] = None, error_message: Optional[str] = None) -> None:
        if self._tlog is None:
            return
        self._tlog.log_relay_call(
            method=method,
            endpoint_url=self._config.url,
            request_id=request_id,
            duration_ms=(time.time() - started) * 1000,
            success=success,
            error_code=error_code,
            error_message=error_message,
        )

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        request_id = self._request_id
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        details: Dict[str, Any] = {"method": method, "relay": mask_url(self._config.url)}
        started = time.time()

        try:
            response = await self._client.post(self._config.url, json=payload)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            self._record(method, request_id, started, False, error_message=str(e))
            raise RelayUnavailable(
                f"Relay unreachable ({method}): {type(e).__name__}",
                details={**details, "may_have_reached_relay": False},
            ) from e
        except httpx.TransportError as e:
            self._record(method, request_id, started, False, error_message=str(e))
            raise RelayUnavailable(
                f"Relay transport failure ({method}): {type(e).__name__}",
                details={**details, "may_have_reached_relay": True},
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and data.get("error"):
            error = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            code = error.get("code")
            message = error.get("message", str(error))
            self._record(method, request_id, started, False, error_code=code, error_message=message)
            details.update({"rpc_code": code, "rpc_message": message, "rpc_data": error.get("data")})

            if code in TRANSIENT_RPC_CODES or response.status_code == 429 or response.status_code >= 500:
                raise RelayUnavailable(
                    f"Relay temporarily failed ({method}): {message}",
                    details={**details, "may_have_reached_relay": False},
                )
            rejection = REJECTION_BY_METHOD.get(method)
            if rejection is not None:
                raise rejection(f"Relay rejected {method}: {message}", details=details)
            raise RelayUnavailable(
                f"Relay error ({method}): {message}",
                details={**details, "may_have_reached_relay": False},
            )

        if response.status_code == 429 or response.status_code >= 500:
            self._record(method, request_id, started, False, error_code=response.status_code)
            raise RelayUnavailable(
                f"Relay returned HTTP {response.status_code} ({method})",
                details={**details, "http_status": response.status_code, "may_have_reached_relay": False},
            )

        if response.status_code >= 400 or not isinstance(data, dict):
            self._record(method, request_id, started, False, error_code=response.status_code)
            rejection = REJECTION_BY_METHOD.get(method, RelayUnavailable)
            raise rejection(
                f"Relay returned an unusable response to {method} (HTTP {response.status_code})",
                details={**details, "http_status": response.status_code, "may_have_reached_relay": False},
            )

        self._record(method, request_id, started, True)
        return data.get("result")

    async def get_fee_levels(self) -> Dict[str, FeeLevels]:
        """Tiered fee quotes (slow / standard / fast)."""
        result = await self._rpc("pimlico_getUserOperationGasPrice", [])
        if not isinstance(result, dict):
            raise RelayUnavailable(
                "Bundler returned invalid gas price payload",
                details={"method": "pimlico_getUserOperationGasPrice", "may_have_reached_relay": False},
            )
        try:
            return {tier: FeeLevels.from_rpc(quote) for tier, quote in result.items()}
        except (KeyError, TypeError, ValueError) as e:
            raise RelayUnavailable(
                f"Bundler returned malformed gas price tiers: {e}",
                details={"method": "pimlico_getUserOperationGasPrice", "may_have_reached_relay": False},
            ) from e

    async def estimate_user_operation_gas(self, user_op: UserOperation, entrypoint: str) -> GasLimits:
        result = await self._rpc("eth_estimateUserOperationGas", [user_op.to_rpc(), entrypoint])
        if not isinstance(result, dict):
            raise EstimationRejected(
                "Bundler returned invalid gas estimate payload",
                details={"sender": user_op.sender},
            )
        try:
            return GasLimits.from_rpc(result)
        except (TypeError, ValueError) as e:
            raise EstimationRejected(
                f"Bundler returned malformed gas estimate: {e}",
                details={"sender": user_op.sender, "estimate": result},
            ) from e

    async def send_user_operation(self, user_op: UserOperation, entrypoint: str) -> str:
        result = await self._rpc("eth_sendUserOperation", [user_op.to_rpc(), entrypoint])
        if not isinstance(result, str):
            raise SubmissionRejected(
                "Bundler returned invalid user op hash",
                details={"sender": user_op.sender, "nonce": user_op.nonce},
            )
        return result

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[Dict[str, Any]]:
        result = await self._rpc("eth_getUserOperationReceipt", [user_op_hash])
        if result is None:
            return None
        if not isinstance(result, dict):
            raise RelayUnavailable(
                "Bundler returned invalid receipt payload",
                details={"operation_hash": user_op_hash, "may_have_reached_relay": False},
            )
        return result

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
