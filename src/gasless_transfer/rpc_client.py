"""
Chain JSON-RPC client for the reads a transfer needs.

Token balances, permit nonces, EntryPoint nonces and deployment checks all go
through ``eth_call`` / ``eth_getCode``. Endpoints are tried in priority order;
an endpoint that keeps failing is moved behind the healthy ones until it
answers again.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import ChainContext, RPCEndpointConfig
from .exceptions import ChainRPCError, InvalidParameters

logger = logging.getLogger(__name__)

# Server errors and rate limits move on to the next endpoint
_FAILOVER_ERROR_CODES = (-32000, -32005)


@dataclass
class EndpointState:
    """Running failure counters for one endpoint."""
    endpoint: RPCEndpointConfig
    requests: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_latency_ms: float = 0.0
    last_error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.consecutive_failures >= self.endpoint.max_consecutive_failures

    def ok(self, latency_ms: float) -> None:
        self.requests += 1
        self.consecutive_failures = 0
        self.last_latency_ms = latency_ms

    def failed(self, error: str) -> None:
        self.requests += 1
        self.failures += 1
        self.consecutive_failures += 1
        self.last_error = error
        if self.degraded:
            logger.warning(
                f"RPC endpoint {self.endpoint.url} degraded after "
                f"{self.consecutive_failures} consecutive failures"
            )


class ChainIDMismatchError(ChainRPCError):
    """Raised when the node reports a different chain than configured."""

    error_code = "CHAIN_ID_MISMATCH"

    def __init__(self, chain: str, expected: int, received: int):
        super().__init__(
            f"Chain ID mismatch for {chain}: expected {expected}, got {received}",
            details={"chain": chain, "expected": expected, "received": received},
        )
        self.chain = chain
        self.expected = expected
        self.received = received


class AllEndpointsFailedError(ChainRPCError):
    """Raised when no endpoint produced an answer."""

    error_code = "ALL_ENDPOINTS_FAILED"

    def __init__(self, chain: str, errors: List[Tuple[str, str]]):
        summary = "; ".join(f"{url}: {err}" for url, err in errors[:3])
        super().__init__(
            f"All RPC endpoints failed for {chain}: {summary}",
            details={"chain": chain, "errors": [err for _, err in errors]},
        )
        self.chain = chain
        self.errors = errors


class _TryNext(Exception):
    """One endpoint failed in a way the next one may not."""


class ChainRPCClient:
    """
    JSON-RPC client for chain reads with failover and chain-id validation.

    The first call checks ``eth_chainId`` against the configured chain unless
    ``validate_chain_id_on_connect`` is off.
    """

    def __init__(
        self,
        chain: ChainContext,
        validate_chain_id_on_connect: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not chain.rpc_endpoints:
            raise InvalidParameters(f"No RPC endpoints configured for chain {chain.name}", field="rpc_url")

        self._chain = chain
        self._validate_chain_id = validate_chain_id_on_connect
        self._http_client = http_client
        self._owns_client = http_client is None
        self._connected = False
        self._request_id = 0
        self._states = [EndpointState(endpoint) for endpoint in chain.rpc_endpoints]

        logger.info(f"RPC client for {chain.name} using {len(self._states)} endpoint(s)")

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._chain.rpc_endpoints[0].timeout_seconds, connect=10.0),
            )
        return self._http_client

    def _candidates(self) -> List[EndpointState]:
        # Healthy endpoints first, each group in configured priority order
        return sorted(self._states, key=lambda s: (s.degraded, s.endpoint.priority))

    async def connect(self) -> None:
        """Validate the chain ID once."""
        if self._connected:
            return
        if self._validate_chain_id:
            chain_id = int(await self._request("eth_chainId", []), 16)
            if chain_id != self._chain.chain_id:
                raise ChainIDMismatchError(self._chain.name, self._chain.chain_id, chain_id)
            logger.info(f"Chain ID validated for {self._chain.name}: {chain_id}")
        self._connected = True

    async def _request(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        errors: List[Tuple[str, str]] = []

        for state in self._candidates():
            url = state.endpoint.url
            started = time.monotonic()
            try:
                result = await self._post(state.endpoint, payload, method)
            except _TryNext as e:
                state.failed(str(e))
                errors.append((url, str(e)))
                logger.warning(f"RPC {method} via {url} failed: {e}")
                continue
            except ChainRPCError as e:
                state.failed(str(e))
                raise
            state.ok((time.monotonic() - started) * 1000)
            return result

        raise AllEndpointsFailedError(chain=self._chain.name, errors=errors)

    async def _post(self, endpoint: RPCEndpointConfig, payload: Dict[str, Any], method: str) -> Any:
        try:
            response = await self._client().post(endpoint.url, json=payload, timeout=endpoint.timeout_seconds)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise _TryNext(str(e) or type(e).__name__) from e

        if not isinstance(body, dict):
            raise _TryNext(f"Unexpected JSON-RPC response: {body!r}")

        error = body.get("error")
        if not error:
            return body.get("result")
        if not isinstance(error, dict):
            error = {"message": str(error)}
        code = error.get("code", 0)
        if code in _FAILOVER_ERROR_CODES:
            raise _TryNext(f"{code}: {error.get('message')}")
        raise ChainRPCError(
            f"RPC {method} failed: {error.get('message', error)}",
            code=code,
            data=error.get("data"),
        )

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Make a JSON-RPC call with automatic failover."""
        if self._validate_chain_id and not self._connected:
            await self.connect()
        return await self._request(method, params or [])

    async def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        return await self.call("eth_call", [tx, block])

    async def get_code(self, address: str, block: str = "latest") -> str:
        return await self.call("eth_getCode", [address, block])

    async def get_chain_id(self) -> int:
        return int(await self.call("eth_chainId"), 16)

    def endpoint_stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "url": s.endpoint.url,
                "priority": s.endpoint.priority,
                "degraded": s.degraded,
                "requests": s.requests,
                "failures": s.failures,
                "last_latency_ms": s.last_latency_ms,
                "last_error": s.last_error,
            }
            for s in self._states
        ]

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
        self._connected = False

    async def __aenter__(self) -> "ChainRPCClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
