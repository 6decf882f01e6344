"""ERC-4337 helpers: UserOperation v0.7, bundler client, smart account."""

from .bundler_client import BundlerClient, BundlerConfig
from .entrypoint import get_nonce
from .smart_account import DUMMY_SIGNATURE, SmartAccount, encode_calls
from .user_operation import (
    UNIT_FEES,
    Call,
    FeeLevels,
    GasEnvelope,
    GasLimits,
    UserOperation,
)

__all__ = [
    "BundlerClient",
    "BundlerConfig",
    "get_nonce",
    "DUMMY_SIGNATURE",
    "SmartAccount",
    "encode_calls",
    "UNIT_FEES",
    "Call",
    "FeeLevels",
    "GasEnvelope",
    "GasLimits",
    "UserOperation",
]
