"""
Signer variants for permits and UserOperations.

Two variants share one typed-data capability:
- KeyHolderSigner: a plain ECDSA key (eth_account LocalAccount)
- SmartWalletSigner: a Kernel account whose owner signs on its behalf. The
  owner signs the account's replay-safe hash so that ERC-1271 checks pass;
  while the account is not deployed the result is ERC-6492 wrapped
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Protocol, Sequence, runtime_checkable

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .erc4337.smart_account import KERNEL_SIGNATURE_LENGTH, SmartAccount
from .exceptions import InvalidParameters, SigningFailed

logger = logging.getLogger(__name__)

ECDSA_SIGNATURE_LENGTH = 65

ERC6492_MAGIC_SUFFIX = bytes.fromhex(
    "6492649264926492649264926492649264926492649264926492649264926492"
)


@runtime_checkable
class TypedDataSigner(Protocol):
    """Anything that can sign EIP-712 typed data for an address."""

    @property
    def address(self) -> str: ...

    async def sign_typed_data(self, typed_data: Dict[str, Any]) -> bytes: ...


def typed_data_digest(typed_data: Dict[str, Any]) -> bytes:
    """EIP-712 digest of a full typed-data payload."""
    signable = encode_typed_data(full_message=typed_data)
    return bytes(Web3.keccak(b"\x19" + signable.version + signable.header + signable.body))


def wrap_erc6492(factory: str, factory_data: bytes, signature: bytes) -> bytes:
    """Wrap a signature for a not-yet-deployed contract signer (ERC-6492)."""
    return encode(["address", "bytes", "bytes"], [factory, factory_data, signature]) + ERC6492_MAGIC_SUFFIX


class KeyHolderSigner:
    """Signer backed by a local private key."""

    signature_length = ECDSA_SIGNATURE_LENGTH

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_key(cls, private_key: str | bytes) -> "KeyHolderSigner":
        try:
            return cls(Account.from_key(private_key))
        except Exception as e:
            raise InvalidParameters("Invalid private key", field="private_key") from e

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_typed_data(self, typed_data: Dict[str, Any]) -> bytes:
        try:
            signed = self._account.sign_typed_data(full_message=typed_data)
        except Exception as e:
            raise SigningFailed(
                f"Key holder could not sign typed data: {e}",
                details={"signer": self.address},
            ) from e
        return bytes(signed.signature)

    async def sign_message_hash(self, message_hash: bytes) -> bytes:
        """EIP-191 personal signature over a 32-byte hash."""
        if len(message_hash) != 32:
            raise SigningFailed(
                f"Expected a 32-byte hash, got {len(message_hash)} bytes",
                details={"signer": self.address},
            )
        signed = self._account.sign_message(encode_defunct(primitive=message_hash))
        return bytes(signed.signature)


class SmartWalletSigner:
    """Signs on behalf of a smart account through its owner key holder."""

    signature_length = KERNEL_SIGNATURE_LENGTH

    def __init__(self, account: SmartAccount, owners: Sequence[KeyHolderSigner]):
        if not owners:
            raise InvalidParameters("A smart wallet needs at least one owner", field="owners")
        if owners[0].address != account.owner:
            raise InvalidParameters(
                f"Owner {owners[0].address} does not control account {account.address}",
                field="owners",
            )
        self.account = account
        self._owners = tuple(owners)

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def owner(self) -> KeyHolderSigner:
        return self._owners[0]

    async def sign_typed_data(self, typed_data: Dict[str, Any]) -> bytes:
        """Signature the account accepts through ERC-1271 for this payload."""
        try:
            digest = typed_data_digest(typed_data)
        except Exception as e:
            raise SigningFailed(f"Cannot hash typed data: {e}", details={"signer": self.address}) from e
        owner_signature = await self.owner.sign_message_hash(self.account.replay_safe_hash(digest))
        signature = self.account.encode_signature(owner_signature)
        if await self.account.is_deployed():
            return signature
        logger.debug(f"Account {self.address} not deployed, wrapping signature (ERC-6492)")
        return wrap_erc6492(self.account.factory, self.account.factory_data, signature)

    async def sign_user_operation_hash(self, op_hash: bytes) -> bytes:
        """UserOperation signature as validated by the account."""
        return await self.owner.sign_message_hash(op_hash)
