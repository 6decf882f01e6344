"""
Kernel v3.1 smart account with an ECDSA root validator (EntryPoint v0.7).

Handles:
- Counterfactual address resolution through the Kernel factory
- Deployment detection (eth_getCode)
- Factory data for the first operation (deployed through the factory staker)
- ERC-7579 ``execute`` call encoding, single and batch
- ERC-1271 signatures: Kernel only accepts a signature over its replay-safe
  wrapping of the hash, prefixed with the validator that produced it
"""
from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import decode_hex, is_address, to_checksum_address
from web3 import Web3

from ..config import ENTRYPOINT_V07, KernelDeployment
from ..exceptions import InvalidOperation, InvalidParameters
from ..rpc_client import ChainRPCClient
from .entrypoint import get_nonce
from .user_operation import Call

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

INITIALIZE_SELECTOR = Web3.keccak(text="initialize(bytes21,address,bytes,bytes,bytes[])")[:4]
DEPLOY_WITH_FACTORY_SELECTOR = Web3.keccak(text="deployWithFactory(address,bytes,bytes32)")[:4]
GET_ADDRESS_SELECTOR = Web3.keccak(text="getAddress(bytes,bytes32)")[:4]
EXECUTE_SELECTOR = Web3.keccak(text="execute(bytes32,bytes)")[:4]

# ERC-7579 execution modes: call type in the first byte, default exec type
EXEC_MODE_SINGLE = bytes(32)
EXEC_MODE_BATCH = b"\x01" + bytes(31)

# Validation type prefixes understood by Kernel's signature decoding
VALIDATION_TYPE_ROOT = 0x00
VALIDATION_TYPE_VALIDATOR = 0x01

EIP712_DOMAIN_TYPEHASH = Web3.keccak(
    text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)
KERNEL_WRAPPER_TYPEHASH = Web3.keccak(text="Kernel(bytes32 hash)")

# Validator prefix (1 + 20 bytes) followed by a 65-byte ECDSA signature
KERNEL_SIGNATURE_LENGTH = 86

# Well-formed ECDSA signature used while the operation is estimated
DUMMY_SIGNATURE = bytes.fromhex(
    "fffffffffffffffffffffffffffffff0000000000000000000000000000000007"
    "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1c"
)


def encode_calls(calls: Sequence[Call]) -> bytes:
    """Encode account calldata: ``execute`` in single mode for one call, batch mode otherwise."""
    if not calls:
        raise InvalidOperation("At least one call is required")

    if len(calls) == 1:
        call = calls[0]
        execution = decode_hex(to_checksum_address(call.to)) + call.value.to_bytes(32, "big") + call.data
        return EXECUTE_SELECTOR + encode(["bytes32", "bytes"], [EXEC_MODE_SINGLE, execution])

    execution = encode(
        ["(address,uint256,bytes)[]"],
        [[(to_checksum_address(c.to), c.value, c.data) for c in calls]],
    )
    return EXECUTE_SELECTOR + encode(["bytes32", "bytes"], [EXEC_MODE_BATCH, execution])


def encode_initialize(owner: str, validator: str) -> bytes:
    """Kernel ``initialize`` calldata installing the ECDSA validator as root."""
    root_validator = bytes([VALIDATION_TYPE_VALIDATOR]) + decode_hex(validator)
    return INITIALIZE_SELECTOR + encode(
        ["bytes21", "address", "bytes", "bytes", "bytes[]"],
        [root_validator, ZERO_ADDRESS, decode_hex(owner), b"", []],
    )


class SmartAccount:
    """
    Kernel smart account owned by a single ECDSA key holder.

    Use ``SmartAccount.create`` to resolve the counterfactual address before
    the account is used as a sender. The chain id is part of the account's
    signing domain.
    """

    def __init__(
        self,
        rpc: ChainRPCClient,
        owner: str,
        address: str,
        chain_id: int,
        deployment: Optional[KernelDeployment] = None,
        salt: int = 0,
        entrypoint: str = ENTRYPOINT_V07,
    ):
        if not is_address(owner):
            raise InvalidParameters(f"Invalid owner address: {owner!r}", field="owner")
        if not is_address(address):
            raise InvalidParameters(f"Invalid account address: {address!r}", field="address")
        self._rpc = rpc
        self.owner = to_checksum_address(owner)
        self.address = to_checksum_address(address)
        self.chain_id = chain_id
        self.deployment = deployment or KernelDeployment()
        self.salt = salt
        self.entrypoint = entrypoint
        self._deployed: Optional[bool] = None

    @classmethod
    async def create(
        cls,
        rpc: ChainRPCClient,
        owner: str,
        chain_id: int,
        deployment: Optional[KernelDeployment] = None,
        salt: int = 0,
        entrypoint: str = ENTRYPOINT_V07,
    ) -> "SmartAccount":
        """Resolve the account address via the Kernel factory's getAddress."""
        if not is_address(owner):
            raise InvalidParameters(f"Invalid owner address: {owner!r}", field="owner")
        deployment = deployment or KernelDeployment()
        init = encode_initialize(to_checksum_address(owner), deployment.validator)
        data = GET_ADDRESS_SELECTOR + encode(["bytes", "bytes32"], [init, salt.to_bytes(32, "big")])
        result = await rpc.eth_call({"to": to_checksum_address(deployment.factory), "data": "0x" + data.hex()})
        (address,) = decode(["address"], decode_hex(result))
        logger.info(f"Resolved Kernel account {address} for owner {owner} (salt={salt})")
        return cls(rpc, owner, address, chain_id, deployment=deployment, salt=salt, entrypoint=entrypoint)

    @property
    def factory(self) -> str:
        return to_checksum_address(self.deployment.factory_staker)

    @property
    def factory_data(self) -> bytes:
        return DEPLOY_WITH_FACTORY_SELECTOR + encode(
            ["address", "bytes", "bytes32"],
            [
                to_checksum_address(self.deployment.factory),
                encode_initialize(self.owner, self.deployment.validator),
                self.salt.to_bytes(32, "big"),
            ],
        )

    async def is_deployed(self) -> bool:
        # Deployment is one-way, so a positive answer is cached
        if self._deployed:
            return True
        code = await self._rpc.get_code(self.address)
        self._deployed = bool(code) and code not in ("0x", "0x0")
        return self._deployed

    async def init_parts(self) -> Tuple[Optional[str], bytes]:
        """(factory, factory_data) for the next operation, empty once deployed."""
        if await self.is_deployed():
            return None, b""
        return self.factory, self.factory_data

    async def get_nonce(self, key: int = 0) -> int:
        # Key 0 selects the root validator
        return await get_nonce(self._rpc, self.address, key=key, entrypoint=self.entrypoint)

    def domain_separator(self) -> bytes:
        return Web3.keccak(
            encode(
                ["bytes32", "bytes32", "bytes32", "uint256", "address"],
                [
                    EIP712_DOMAIN_TYPEHASH,
                    Web3.keccak(text="Kernel"),
                    Web3.keccak(text=self.deployment.version),
                    self.chain_id,
                    self.address,
                ],
            )
        )

    def replay_safe_hash(self, message_hash: bytes) -> bytes:
        """The hash the validator checks when ``isValidSignature(message_hash, ...)`` is called."""
        struct_hash = Web3.keccak(encode(["bytes32", "bytes32"], [KERNEL_WRAPPER_TYPEHASH, message_hash]))
        return bytes(Web3.keccak(b"\x19\x01" + self.domain_separator() + struct_hash))

    def encode_signature(self, validator_signature: bytes) -> bytes:
        """Prefix a validator signature with the validator that checks it."""
        return bytes([VALIDATION_TYPE_VALIDATOR]) + decode_hex(self.deployment.validator) + validator_signature

    def verify_signature(self, message_hash: bytes, signature: bytes) -> bool:
        """Evaluate ``isValidSignature`` the way the deployed account does.

        The root ECDSA validator accepts the owner's EIP-191 signature over
        the replay-safe hash.
        """
        if not signature:
            return False
        if signature[0] == VALIDATION_TYPE_ROOT:
            inner = signature[1:]
        elif signature[0] == VALIDATION_TYPE_VALIDATOR:
            if signature[1:21] != decode_hex(self.deployment.validator):
                return False
            inner = signature[21:]
        else:
            return False

        wrapped = self.replay_safe_hash(message_hash)
        try:
            recovered = Account.recover_message(encode_defunct(primitive=wrapped), signature=inner)
        except Exception as e:
            logger.debug(f"Signature for {self.address} did not recover: {e}")
            return False
        return recovered == self.owner
