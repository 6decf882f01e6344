"""ERC-20 / EIP-2612 token reads and call encoding."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation as DecimalInvalidOperation
from typing import Any

from eth_abi import decode, encode
from eth_utils import decode_hex, is_address, to_checksum_address
from web3 import Web3

from .exceptions import ChainRPCError, InvalidParameters
from .rpc_client import ChainRPCClient

MAX_UINT256 = 2**256 - 1


def _selector(signature: str) -> bytes:
    return Web3.keccak(text=signature)[:4]


BALANCE_OF_SELECTOR = _selector("balanceOf(address)")
TRANSFER_SELECTOR = _selector("transfer(address,uint256)")
DECIMALS_SELECTOR = _selector("decimals()")
NAME_SELECTOR = _selector("name()")
VERSION_SELECTOR = _selector("version()")
NONCES_SELECTOR = _selector("nonces(address)")


def encode_transfer(to: str, amount: int) -> bytes:
    """Encode ERC-20 transfer(address,uint256) calldata."""
    if not is_address(to):
        raise InvalidParameters(f"Invalid recipient address: {to!r}", field="recipient")
    if amount < 0 or amount > MAX_UINT256:
        raise InvalidParameters(f"Transfer amount out of range: {amount}", field="amount")
    return TRANSFER_SELECTOR + encode(["address", "uint256"], [to_checksum_address(to), amount])


def parse_units(value: str | int | Decimal, decimals: int) -> int:
    """Convert a human amount ("2.50") into raw token units."""
    try:
        amount = Decimal(str(value))
    except DecimalInvalidOperation:
        raise InvalidParameters(f"Not a number: {value!r}", field="amount") from None

    if not amount.is_finite() or amount < 0:
        raise InvalidParameters(f"Amount must be a non-negative number: {value!r}", field="amount")

    raw = amount.scaleb(decimals)
    if raw != raw.to_integral_value():
        raise InvalidParameters(
            f"Amount {value!r} has more than {decimals} decimal places", field="amount"
        )
    return int(raw)


def format_units(raw: int, decimals: int) -> str:
    """Convert raw token units into a human-readable string."""
    text = format(Decimal(raw).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


class StablecoinToken:
    """Read-only view of an EIP-2612 capable stablecoin contract."""

    def __init__(self, rpc: ChainRPCClient, address: str):
        if not is_address(address):
            raise InvalidParameters(f"Invalid token address: {address!r}", field="token")
        self.address = to_checksum_address(address)
        self._rpc = rpc

    async def _call(self, data: bytes, output_types: list[str]) -> tuple[Any, ...]:
        result = await self._rpc.eth_call({"to": self.address, "data": "0x" + data.hex()})
        raw = decode_hex(result or "0x")
        if not raw:
            raise ChainRPCError(
                f"Empty eth_call result from token {self.address}",
                details={"token": self.address, "selector": "0x" + data[:4].hex()},
            )
        return decode(output_types, raw)

    async def balance_of(self, account: str) -> int:
        (balance,) = await self._call(
            BALANCE_OF_SELECTOR + encode(["address"], [to_checksum_address(account)]),
            ["uint256"],
        )
        return balance

    async def decimals(self) -> int:
        (value,) = await self._call(DECIMALS_SELECTOR, ["uint8"])
        return value

    async def name(self) -> str:
        (value,) = await self._call(NAME_SELECTOR, ["string"])
        return value

    async def version(self) -> str:
        (value,) = await self._call(VERSION_SELECTOR, ["string"])
        return value

    async def nonces(self, owner: str) -> int:
        (value,) = await self._call(
            NONCES_SELECTOR + encode(["address"], [to_checksum_address(owner)]),
            ["uint256"],
        )
        return value
