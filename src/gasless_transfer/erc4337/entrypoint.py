"""EntryPoint v0.7 reads."""

from __future__ import annotations

from eth_abi import decode, encode
from eth_utils import decode_hex, to_checksum_address
from web3 import Web3

from ..config import ENTRYPOINT_V07
from ..rpc_client import ChainRPCClient

GET_NONCE_SELECTOR = Web3.keccak(text="getNonce(address,uint192)")[:4]


async def get_nonce(
    rpc: ChainRPCClient,
    sender: str,
    key: int = 0,
    entrypoint: str = ENTRYPOINT_V07,
) -> int:
    """Next nonce for ``sender`` in the given nonce key space."""
    data = GET_NONCE_SELECTOR + encode(["address", "uint192"], [to_checksum_address(sender), key])
    result = await rpc.eth_call({"to": entrypoint, "data": "0x" + data.hex()})
    (nonce,) = decode(["uint256"], decode_hex(result))
    return nonce
