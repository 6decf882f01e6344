"""
EIP-2612 permit construction, signing and signature normalization.

The permit authorizes the paymaster to pull at most ``value`` tokens from the
sender to cover gas. Messages are frozen: a different value or nonce requires
a new message.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Union

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import is_address, to_checksum_address

from .exceptions import InvalidParameters, MalformedSignature, SigningFailed
from .signers import ECDSA_SIGNATURE_LENGTH, ERC6492_MAGIC_SUFFIX, TypedDataSigner, typed_data_digest
from .token import MAX_UINT256, StablecoinToken

logger = logging.getLogger(__name__)

PERMIT_TYPES: Dict[str, list] = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Permit": [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}


@dataclass(frozen=True)
class PermitChainContext:
    """Chain-side inputs of a permit: domain, owner nonce and deadline.

    The deadline is always supplied by the caller; nothing here reads a clock.
    """
    chain_id: int
    nonce: int
    deadline: int = MAX_UINT256
    domain_name: str = "USDC"
    domain_version: str = "2"


@dataclass(frozen=True)
class PermitMessage:
    """An EIP-2612 Permit bound to one token domain."""
    token: str
    owner: str
    spender: str
    value: int
    nonce: int
    deadline: int
    chain_id: int
    domain_name: str
    domain_version: str

    def domain(self) -> Dict[str, Any]:
        return {
            "name": self.domain_name,
            "version": self.domain_version,
            "chainId": self.chain_id,
            "verifyingContract": self.token,
        }

    def typed_data(self) -> Dict[str, Any]:
        """Full EIP-712 payload, as accepted by eth_signTypedData_v4."""
        return {
            "types": PERMIT_TYPES,
            "primaryType": "Permit",
            "domain": self.domain(),
            "message": {
                "owner": self.owner,
                "spender": self.spender,
                "value": self.value,
                "nonce": self.nonce,
                "deadline": self.deadline,
            },
        }

    def digest(self) -> bytes:
        """EIP-712 digest the token verifies the signature against."""
        return typed_data_digest(self.typed_data())


@dataclass(frozen=True)
class PermitSignature:
    """Signature over exactly one PermitMessage, possibly ERC-6492 wrapped."""
    message: PermitMessage
    signature: bytes

    @property
    def is_wrapped(self) -> bool:
        return self.signature.endswith(ERC6492_MAGIC_SUFFIX)


def _require_address(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not is_address(value):
        raise InvalidParameters(f"Invalid {field_name} address: {value!r}", field=field_name)
    return to_checksum_address(value)


def _require_uint256(value: int, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameters(f"{field_name} must be an integer, got {type(value).__name__}", field=field_name)
    if value < 0:
        raise InvalidParameters(f"{field_name} must be non-negative, got {value}", field=field_name)
    if value > MAX_UINT256:
        raise InvalidParameters(f"{field_name} exceeds uint256", field=field_name)
    return value


def build_permit(
    token: str,
    owner: str,
    spender: str,
    max_value: int,
    chain_context: PermitChainContext,
) -> PermitMessage:
    """Build a Permit message. Pure and deterministic.

    Raises:
        InvalidParameters: malformed address or out-of-range integer
    """
    return PermitMessage(
        token=_require_address(token, "token"),
        owner=_require_address(owner, "owner"),
        spender=_require_address(spender, "spender"),
        value=_require_uint256(max_value, "max_value"),
        nonce=_require_uint256(chain_context.nonce, "nonce"),
        deadline=_require_uint256(chain_context.deadline, "deadline"),
        chain_id=_require_uint256(chain_context.chain_id, "chain_id"),
        domain_name=chain_context.domain_name,
        domain_version=chain_context.domain_version,
    )


async def sign_permit(message: PermitMessage, signer: TypedDataSigner) -> PermitSignature:
    """Have the owning account sign the permit.

    Raises:
        SigningFailed: signer is not the owner, lacks typed-data support,
            or returned nothing
    """
    if not callable(getattr(signer, "sign_typed_data", None)):
        raise SigningFailed(
            f"{type(signer).__name__} cannot sign typed data",
            details={"owner": message.owner},
        )

    signer_address = getattr(signer, "address", None)
    if not is_address(signer_address) or to_checksum_address(signer_address) != message.owner:
        raise SigningFailed(
            "Signer does not control the permit owner",
            details={"owner": message.owner, "signer": signer_address},
        )

    signature = await signer.sign_typed_data(message.typed_data())
    if not signature:
        raise SigningFailed("Signer returned an empty signature", details={"owner": message.owner})

    logger.debug(f"Permit signed for owner {message.owner} (value={message.value}, nonce={message.nonce})")
    return PermitSignature(message=message, signature=bytes(signature))


def normalize_signature(
    signature: Union[PermitSignature, bytes, str],
    expected_length: int = ECDSA_SIGNATURE_LENGTH,
) -> bytes:
    """Strip an ERC-6492 envelope and return the raw signature bytes.

    Raises:
        MalformedSignature: envelope cannot be decoded or the inner
            signature is not ``expected_length`` bytes
    """
    if isinstance(signature, PermitSignature):
        raw = signature.signature
    elif isinstance(signature, str):
        try:
            raw = bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)
        except ValueError as e:
            raise MalformedSignature(f"Signature is not valid hex: {e}") from e
    else:
        raw = bytes(signature)

    if raw.endswith(ERC6492_MAGIC_SUFFIX):
        try:
            _factory, _factory_calldata, inner = decode(
                ["address", "bytes", "bytes"], raw[: -len(ERC6492_MAGIC_SUFFIX)]
            )
        except DecodingError as e:
            raise MalformedSignature(
                f"Cannot decode ERC-6492 envelope: {e}",
                details={"length": len(raw)},
            ) from e
        raw = inner

    if len(raw) != expected_length:
        raise MalformedSignature(
            f"Expected a {expected_length}-byte signature, got {len(raw)} bytes",
            details={"length": len(raw), "expected_length": expected_length},
        )
    return raw


async def fetch_permit_context(
    token: StablecoinToken,
    owner: str,
    chain_id: int,
    deadline: int = MAX_UINT256,
) -> PermitChainContext:
    """Read the EIP-712 domain and the owner's permit nonce from the token."""
    name = await token.name()
    version = await token.version()
    nonce = await token.nonces(owner)
    return PermitChainContext(
        chain_id=chain_id,
        nonce=nonce,
        deadline=deadline,
        domain_name=name,
        domain_version=version,
    )
