"""
Paymaster data codec for token-paying paymasters (Circle Paymaster).

Layout (abi.encodePacked(uint8, address, uint256, bytes)):

    | format tag | token    | max spend            | permit signature |
    | 1 byte     | 20 bytes | 32 bytes, big-endian | variable         |

The paymaster contract owns this format. Only widths and types are checked
here; a semantically wrong payload reverts on-chain.
"""
from __future__ import annotations

from dataclasses import dataclass

from eth_abi.packed import encode_packed
from eth_utils import is_address, to_checksum_address

from .exceptions import InvalidParameters

TAG_LENGTH = 1
TOKEN_LENGTH = 20
MAX_SPEND_LENGTH = 32
HEADER_LENGTH = TAG_LENGTH + TOKEN_LENGTH + MAX_SPEND_LENGTH


@dataclass(frozen=True)
class PaymasterData:
    format_tag: int
    token: str
    max_spend: int
    signature: bytes


def encode_paymaster_data(
    format_tag: int,
    token: str,
    max_spend: int,
    raw_signature: bytes,
) -> bytes:
    if isinstance(format_tag, bool) or not isinstance(format_tag, int) or not 0 <= format_tag <= 0xFF:
        raise InvalidParameters(f"format_tag must fit in one byte, got {format_tag!r}", field="format_tag")
    if not isinstance(token, str) or not is_address(token):
        raise InvalidParameters(f"Invalid token address: {token!r}", field="token")
    if isinstance(max_spend, bool) or not isinstance(max_spend, int) or not 0 <= max_spend < 2**256:
        raise InvalidParameters(f"max_spend must be a uint256, got {max_spend!r}", field="max_spend")
    if not isinstance(raw_signature, (bytes, bytearray)) or not raw_signature:
        raise InvalidParameters("raw_signature must be non-empty bytes", field="raw_signature")

    return encode_packed(
        ["uint8", "address", "uint256", "bytes"],
        [format_tag, to_checksum_address(token), max_spend, bytes(raw_signature)],
    )


def decode_paymaster_data(data: bytes) -> PaymasterData:
    if len(data) <= HEADER_LENGTH:
        raise InvalidParameters(
            f"Paymaster data too short: {len(data)} bytes, need more than {HEADER_LENGTH}",
            field="paymaster_data",
        )
    token_end = TAG_LENGTH + TOKEN_LENGTH
    return PaymasterData(
        format_tag=data[0],
        token=to_checksum_address("0x" + data[TAG_LENGTH:token_end].hex()),
        max_spend=int.from_bytes(data[token_end:HEADER_LENGTH], "big"),
        signature=bytes(data[HEADER_LENGTH:]),
    )
