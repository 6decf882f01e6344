"""
Configuration management for gasless transfers.

Provides:
- Environment-driven settings (GASLESS_ prefix, optional .env file)
- Frozen per-attempt configuration passed explicitly to every component
- Circle paymaster / USDC defaults for the supported testnets
- Logging configuration
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional, Tuple

from eth_utils import is_address, to_checksum_address
from pydantic import field_validator
from pydantic_settings import BaseSettings

from .exceptions import InvalidParameters
from .retry import RetryConfig

logger = logging.getLogger(__name__)

ENTRYPOINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"

# ZeroDev Kernel v3.1 (EntryPoint v0.7) with the ECDSA root validator
KERNEL_VERSION = "0.3.1"
KERNEL_V3_1_FACTORY = to_checksum_address("0xaac5d4240af87249b3f71bc8e4a2cae074a3e419")
KERNEL_FACTORY_STAKER = to_checksum_address("0xd703aae79538628d27099b8c4f621be4ccd142d5")
ECDSA_VALIDATOR = to_checksum_address("0x845adb2c711129d4f3966735ed98a9f09fc4ce57")

CHAIN_ID_MAP: dict[str, int] = {
    "base_sepolia": 84532,
    "arbitrum_sepolia": 421614,
}

DEFAULT_RPC_URLS: dict[str, str] = {
    "base_sepolia": "https://sepolia.base.org",
    "arbitrum_sepolia": "https://sepolia-rollup.arbitrum.io/rpc",
}

# Circle Paymaster (EntryPoint v0.7) testnet deployments
CIRCLE_PAYMASTER_V07_ADDRESSES: dict[str, str] = {
    "base_sepolia": "0x31BE08D380A21fc740883c0BC434FcFc88740b58",
    "arbitrum_sepolia": "0x31BE08D380A21fc740883c0BC434FcFc88740b58",
}

USDC_ADDRESSES: dict[str, str] = {
    "base_sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
    "arbitrum_sepolia": "0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
}

EXPLORER_URLS: dict[str, str] = {
    "base_sepolia": "https://sepolia.basescan.org",
    "arbitrum_sepolia": "https://sepolia.arbiscan.io",
}

FeeTier = Literal["slow", "standard", "fast"]


@dataclass(frozen=True)
class RPCEndpointConfig:
    """Configuration for a single chain RPC endpoint."""
    url: str
    priority: int = 0  # Lower is higher priority
    timeout_seconds: float = 30.0
    max_consecutive_failures: int = 3


@dataclass(frozen=True)
class LoggingConfig:
    """Configuration for transfer logging."""
    relay_call_level: str = "DEBUG"
    transaction_level: str = "INFO"
    error_level: str = "ERROR"

    mask_addresses: bool = False
    log_gas_prices: bool = True
    log_relay_latency: bool = True

    audit_log_enabled: bool = True
    audit_log_path: Optional[str] = None  # None = use default logger


@dataclass(frozen=True)
class KernelDeployment:
    """Contracts a Kernel smart account is deployed from.

    ``factory_staker`` is the factory named in the first UserOperation; it
    forwards to ``factory``, which also answers counterfactual addresses.
    """
    factory: str = KERNEL_V3_1_FACTORY
    factory_staker: str = KERNEL_FACTORY_STAKER
    validator: str = ECDSA_VALIDATOR
    version: str = KERNEL_VERSION


@dataclass(frozen=True)
class ChainContext:
    """Read-only view of the target chain."""
    name: str
    chain_id: int
    rpc_endpoints: Tuple[RPCEndpointConfig, ...]
    entrypoint: str = ENTRYPOINT_V07
    explorer_url: str = ""

    def get_primary_rpc_url(self) -> str:
        if not self.rpc_endpoints:
            raise InvalidParameters(f"No RPC endpoints configured for {self.name}", field="rpc_url")
        return sorted(self.rpc_endpoints, key=lambda e: e.priority)[0].url


@dataclass(frozen=True)
class EngineConfig:
    """
    Immutable configuration for transfer attempts.

    Built once at startup and shared read-only between attempts, so
    concurrent senders never see each other's state.
    """
    chain: ChainContext
    bundler_url: str
    paymaster: str
    token: str
    token_decimals: int = 6

    # Paymaster policy
    permit_max_spend: int = 1_000_000  # 1 USDC
    paymaster_format_tag: int = 0
    min_post_op_gas: int = 50_000

    # Relay interaction
    fee_tier: FeeTier = "fast"
    relay_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 2.0
    max_polls: int = 90
    retry: RetryConfig = field(default_factory=RetryConfig)

    # Reconciliation
    balance_settle_seconds: float = 3.0

    account: KernelDeployment = field(default_factory=KernelDeployment)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def supports_gasless(self) -> bool:
        """Whether both a relay and a paymaster are available."""
        return bool(self.bundler_url and self.paymaster)

    def explorer_tx_url(self, tx_hash: str) -> str:
        """Block explorer link for an inclusion transaction."""
        if not self.chain.explorer_url:
            return f"Transaction hash: {tx_hash}"
        return f"{self.chain.explorer_url.rstrip('/')}/tx/{tx_hash}"


def _checksum(value: str, field_name: str) -> str:
    if not is_address(value):
        raise InvalidParameters(f"Invalid address for {field_name}: {value!r}", field=field_name)
    return to_checksum_address(value)


class TransferSettings(BaseSettings):
    """Environment settings for the gasless transfer engine."""

    chain: str = "base_sepolia"
    chain_id: Optional[int] = None

    # Chain access
    rpc_url: str = ""
    fallback_rpc_urls: str = ""  # comma-separated
    rpc_timeout_seconds: float = 30.0

    # Relay (Pimlico-compatible bundler)
    bundler_url: str = ""
    pimlico_api_key: str = ""
    relay_timeout_seconds: float = 30.0

    # Contracts
    entrypoint: str = ENTRYPOINT_V07
    paymaster_address: str = ""
    token_address: str = ""
    token_decimals: int = 6
    kernel_factory: str = KERNEL_V3_1_FACTORY
    kernel_factory_staker: str = KERNEL_FACTORY_STAKER
    kernel_validator: str = ECDSA_VALIDATOR

    # Paymaster policy
    permit_max_spend: int = 1_000_000
    paymaster_format_tag: int = 0
    min_post_op_gas: int = 50_000
    fee_tier: FeeTier = "fast"

    # Polling / reconciliation
    poll_interval_seconds: float = 2.0
    max_polls: int = 90
    balance_settle_seconds: float = 3.0

    # Retry policy for transient relay failures
    retry_max_retries: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0

    explorer_url: str = ""

    # Logging
    log_level: str = "INFO"
    mask_addresses: bool = False
    audit_log_enabled: bool = True
    audit_log_path: Optional[str] = None

    class Config:
        env_prefix = "GASLESS_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @property
    def fallback_urls(self) -> List[str]:
        return [url.strip() for url in self.fallback_rpc_urls.split(",") if url.strip()]

    @field_validator("permit_max_spend", "min_post_op_gas", "max_polls")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @field_validator("paymaster_format_tag")
    @classmethod
    def single_byte(cls, v: int) -> int:
        if not 0 <= v <= 0xFF:
            raise ValueError("format tag must fit in one byte")
        return v

    @field_validator("log_level")
    @classmethod
    def known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return level

    def configure_logging(self) -> None:
        """Apply ``log_level`` to the package loggers."""
        from .logging_utils import setup_logging

        setup_logging(level=self.log_level)

    def resolve_bundler_url(self) -> str:
        if self.bundler_url:
            return self.bundler_url
        if self.pimlico_api_key:
            chain_id = self.chain_id or CHAIN_ID_MAP.get(self.chain)
            return f"https://api.pimlico.io/v2/{chain_id}/rpc?apikey={self.pimlico_api_key}"
        return ""

    def to_engine_config(self) -> EngineConfig:
        """Freeze settings into the configuration handed to components."""
        chain_id = self.chain_id or CHAIN_ID_MAP.get(self.chain)
        if chain_id is None:
            raise InvalidParameters(
                f"Unknown chain '{self.chain}' and no chain_id configured", field="chain_id"
            )

        primary = self.rpc_url or DEFAULT_RPC_URLS.get(self.chain, "")
        urls = [primary, *self.fallback_urls] if primary else self.fallback_urls
        endpoints = tuple(
            RPCEndpointConfig(url=url, priority=i, timeout_seconds=self.rpc_timeout_seconds)
            for i, url in enumerate(urls)
        )

        token = self.token_address or USDC_ADDRESSES.get(self.chain, "")
        if not token:
            raise InvalidParameters(f"No token contract configured for {self.chain}", field="token_address")
        paymaster = self.paymaster_address or CIRCLE_PAYMASTER_V07_ADDRESSES.get(self.chain, "")

        chain = ChainContext(
            name=self.chain,
            chain_id=chain_id,
            rpc_endpoints=endpoints,
            entrypoint=_checksum(self.entrypoint, "entrypoint"),
            explorer_url=self.explorer_url or EXPLORER_URLS.get(self.chain, ""),
        )

        return EngineConfig(
            chain=chain,
            bundler_url=self.resolve_bundler_url(),
            paymaster=_checksum(paymaster, "paymaster_address") if paymaster else "",
            token=_checksum(token, "token_address"),
            token_decimals=self.token_decimals,
            permit_max_spend=self.permit_max_spend,
            paymaster_format_tag=self.paymaster_format_tag,
            min_post_op_gas=self.min_post_op_gas,
            fee_tier=self.fee_tier,
            relay_timeout_seconds=self.relay_timeout_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            max_polls=self.max_polls,
            retry=RetryConfig(
                max_retries=self.retry_max_retries,
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
            ),
            balance_settle_seconds=self.balance_settle_seconds,
            account=KernelDeployment(
                factory=_checksum(self.kernel_factory, "kernel_factory"),
                factory_staker=_checksum(self.kernel_factory_staker, "kernel_factory_staker"),
                validator=_checksum(self.kernel_validator, "kernel_validator"),
            ),
            logging=LoggingConfig(
                mask_addresses=self.mask_addresses,
                audit_log_enabled=self.audit_log_enabled,
                audit_log_path=self.audit_log_path,
            ),
        )


@lru_cache
def load_settings(env_file: str | None = None) -> TransferSettings:
    """Load TransferSettings once per process."""
    env_path = Path(env_file) if env_file else None
    return TransferSettings(_env_file=env_path)
