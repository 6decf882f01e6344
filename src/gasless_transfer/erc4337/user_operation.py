"""UserOperation primitives for ERC-4337 (EntryPoint v0.7)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from eth_abi import encode
from eth_utils import decode_hex, to_checksum_address
from web3 import Web3

from ..exceptions import InvalidParameters


def _to_hex_int(value: int) -> str:
    return hex(max(0, int(value)))


def _to_hex_bytes(value: bytes) -> str:
    return "0x" + value.hex()


def _uint128(value: int) -> bytes:
    return int(value).to_bytes(16, "big")


@dataclass(frozen=True)
class Call:
    """One call executed by the smart account."""
    to: str
    value: int = 0
    data: bytes = b""


@dataclass(frozen=True)
class FeeLevels:
    """Per-gas fee quote for one tier."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "FeeLevels":
        return cls(
            max_fee_per_gas=int(data["maxFeePerGas"], 16),
            max_priority_fee_per_gas=int(data["maxPriorityFeePerGas"], 16),
        )


# Fees used for the estimation draft only
UNIT_FEES = FeeLevels(max_fee_per_gas=1, max_priority_fee_per_gas=1)


@dataclass(frozen=True)
class GasLimits:
    """Per-phase gas limits returned by eth_estimateUserOperationGas."""
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    paymaster_verification_gas_limit: int = 0
    paymaster_post_op_gas_limit: int = 0

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "GasLimits":
        def parse_hex(key: str) -> int:
            value = data.get(key)
            return int(value, 16) if value is not None else 0

        return cls(
            call_gas_limit=parse_hex("callGasLimit"),
            verification_gas_limit=parse_hex("verificationGasLimit"),
            pre_verification_gas=parse_hex("preVerificationGas"),
            paymaster_verification_gas_limit=parse_hex("paymasterVerificationGasLimit"),
            paymaster_post_op_gas_limit=parse_hex("paymasterPostOpGasLimit"),
        )

    def merge_max(self, other: "GasLimits") -> "GasLimits":
        """Field-wise maximum of two estimates."""
        return GasLimits(
            call_gas_limit=max(self.call_gas_limit, other.call_gas_limit),
            verification_gas_limit=max(self.verification_gas_limit, other.verification_gas_limit),
            pre_verification_gas=max(self.pre_verification_gas, other.pre_verification_gas),
            paymaster_verification_gas_limit=max(
                self.paymaster_verification_gas_limit, other.paymaster_verification_gas_limit
            ),
            paymaster_post_op_gas_limit=max(
                self.paymaster_post_op_gas_limit, other.paymaster_post_op_gas_limit
            ),
        )

    def as_dict(self) -> Dict[str, int]:
        return {
            "call_gas_limit": self.call_gas_limit,
            "verification_gas_limit": self.verification_gas_limit,
            "pre_verification_gas": self.pre_verification_gas,
            "paymaster_verification_gas_limit": self.paymaster_verification_gas_limit,
            "paymaster_post_op_gas_limit": self.paymaster_post_op_gas_limit,
        }


@dataclass(frozen=True)
class GasEnvelope:
    """Fees and limits carried by a UserOperation."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    call_gas_limit: int
    pre_verification_gas: int
    verification_gas_limit: int
    paymaster_verification_gas_limit: int
    paymaster_post_op_gas_limit: int

    def __post_init__(self) -> None:
        for name, value in self.__dict__.items():
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidParameters(f"{name} must be a non-negative integer, got {value!r}", field=name)
            if value >= 2**128:
                raise InvalidParameters(f"{name} does not fit in uint128", field=name)

    @classmethod
    def combine(cls, fees: FeeLevels, limits: GasLimits) -> "GasEnvelope":
        return cls(
            max_fee_per_gas=fees.max_fee_per_gas,
            max_priority_fee_per_gas=fees.max_priority_fee_per_gas,
            call_gas_limit=limits.call_gas_limit,
            pre_verification_gas=limits.pre_verification_gas,
            verification_gas_limit=limits.verification_gas_limit,
            paymaster_verification_gas_limit=limits.paymaster_verification_gas_limit,
            paymaster_post_op_gas_limit=limits.paymaster_post_op_gas_limit,
        )


@dataclass(frozen=True)
class UserOperation:
    """
    ERC-4337 v0.7 UserOperation.

    Frozen: a signed or submitted operation is never modified. Use
    dataclasses.replace to derive a new one.
    """
    sender: str
    nonce: int
    call_data: bytes
    gas: GasEnvelope
    factory: Optional[str] = None
    factory_data: bytes = b""
    paymaster: Optional[str] = None
    paymaster_data: bytes = b""
    signature: bytes = field(default=b"", repr=False)

    @property
    def init_code(self) -> bytes:
        if not self.factory:
            return b""
        return decode_hex(self.factory) + self.factory_data

    @property
    def paymaster_and_data(self) -> bytes:
        if not self.paymaster:
            return b""
        return (
            decode_hex(self.paymaster)
            + _uint128(self.gas.paymaster_verification_gas_limit)
            + _uint128(self.gas.paymaster_post_op_gas_limit)
            + self.paymaster_data
        )

    @property
    def account_gas_limits(self) -> bytes:
        return _uint128(self.gas.verification_gas_limit) + _uint128(self.gas.call_gas_limit)

    @property
    def gas_fees(self) -> bytes:
        return _uint128(self.gas.max_priority_fee_per_gas) + _uint128(self.gas.max_fee_per_gas)

    def pack(self) -> bytes:
        """ABI encoding of the packed operation, without the signature."""
        return encode(
            ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
            [
                to_checksum_address(self.sender),
                self.nonce,
                Web3.keccak(self.init_code),
                Web3.keccak(self.call_data),
                self.account_gas_limits,
                self.gas.pre_verification_gas,
                self.gas_fees,
                Web3.keccak(self.paymaster_and_data),
            ],
        )

    def hash(self, entrypoint: str, chain_id: int) -> bytes:
        """userOpHash as computed by EntryPoint.getUserOpHash."""
        inner = Web3.keccak(self.pack())
        return bytes(
            Web3.keccak(
                encode(
                    ["bytes32", "address", "uint256"],
                    [inner, to_checksum_address(entrypoint), chain_id],
                )
            )
        )

    def to_rpc(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sender": self.sender,
            "nonce": _to_hex_int(self.nonce),
            "callData": _to_hex_bytes(self.call_data),
            "callGasLimit": _to_hex_int(self.gas.call_gas_limit),
            "verificationGasLimit": _to_hex_int(self.gas.verification_gas_limit),
            "preVerificationGas": _to_hex_int(self.gas.pre_verification_gas),
            "maxFeePerGas": _to_hex_int(self.gas.max_fee_per_gas),
            "maxPriorityFeePerGas": _to_hex_int(self.gas.max_priority_fee_per_gas),
            "signature": _to_hex_bytes(self.signature),
        }
        if self.factory:
            payload["factory"] = self.factory
            payload["factoryData"] = _to_hex_bytes(self.factory_data)
        if self.paymaster:
            payload["paymaster"] = self.paymaster
            payload["paymasterVerificationGasLimit"] = _to_hex_int(self.gas.paymaster_verification_gas_limit)
            payload["paymasterPostOpGasLimit"] = _to_hex_int(self.gas.paymaster_post_op_gas_limit)
            payload["paymasterData"] = _to_hex_bytes(self.paymaster_data)
        return payload
