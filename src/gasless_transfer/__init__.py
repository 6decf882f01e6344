"""
Gasless stablecoin transfers over ERC-4337.

A smart account pays gas in the transferred token: an EIP-2612 permit lets a
token paymaster (Circle Paymaster) charge the fee, the relay estimates and
bundles the UserOperation, and balances are reconciled after inclusion.

Usage:
    from gasless_transfer import GaslessTransferEngine, load_settings

    config = load_settings().to_engine_config()
    engine = GaslessTransferEngine.from_config(config)
    result = await engine.transfer(signer, recipient, parse_units("2.50", 6))
"""

from .exceptions import (
    AccountingAnomaly,
    ChainRPCError,
    DeadlineExceeded,
    EstimationRejected,
    GaslessTransferError,
    InvalidOperation,
    InvalidParameters,
    MalformedSignature,
    OperationTimedOut,
    RelayUnavailable,
    SigningFailed,
    SubmissionRejected,
)
from .retry import RetryConfig, retry_async
from .config import (
    ChainContext,
    EngineConfig,
    KernelDeployment,
    LoggingConfig,
    RPCEndpointConfig,
    TransferSettings,
    load_settings,
)
from .logging_utils import TransferLogger, TransferStage, setup_logging
from .rpc_client import ChainRPCClient
from .token import StablecoinToken, encode_transfer, format_units, parse_units
from .erc4337 import (
    BundlerClient,
    BundlerConfig,
    Call,
    FeeLevels,
    GasEnvelope,
    GasLimits,
    SmartAccount,
    UserOperation,
)
from .signers import KeyHolderSigner, SmartWalletSigner, TypedDataSigner
from .permit import (
    PermitChainContext,
    PermitMessage,
    PermitSignature,
    build_permit,
    fetch_permit_context,
    normalize_signature,
    sign_permit,
)
from .paymaster_data import PaymasterData, decode_paymaster_data, encode_paymaster_data
from .gas import GasNegotiator
from .assembler import OperationAssembler
from .tracker import (
    AttemptState,
    BalanceSnapshot,
    OperationReceipt,
    Reconciliation,
    SubmissionTracker,
    reconcile,
)
from .engine import (
    GaslessStrategy,
    GaslessTransferEngine,
    TransferResult,
    TransferStrategy,
    select_strategy,
)

__version__ = "0.1.0"

__all__ = [
    # Errors
    "GaslessTransferError",
    "InvalidParameters",
    "InvalidOperation",
    "SigningFailed",
    "MalformedSignature",
    "RelayUnavailable",
    "EstimationRejected",
    "SubmissionRejected",
    "OperationTimedOut",
    "AccountingAnomaly",
    "DeadlineExceeded",
    "ChainRPCError",
    # Config / ambient
    "RetryConfig",
    "retry_async",
    "ChainContext",
    "EngineConfig",
    "KernelDeployment",
    "LoggingConfig",
    "RPCEndpointConfig",
    "TransferSettings",
    "load_settings",
    "TransferLogger",
    "TransferStage",
    "setup_logging",
    # Chain access
    "ChainRPCClient",
    "StablecoinToken",
    "encode_transfer",
    "format_units",
    "parse_units",
    # ERC-4337
    "BundlerClient",
    "BundlerConfig",
    "Call",
    "FeeLevels",
    "GasEnvelope",
    "GasLimits",
    "SmartAccount",
    "UserOperation",
    # Signers / permit
    "KeyHolderSigner",
    "SmartWalletSigner",
    "TypedDataSigner",
    "PermitChainContext",
    "PermitMessage",
    "PermitSignature",
    "build_permit",
    "fetch_permit_context",
    "normalize_signature",
    "sign_permit",
    # Pipeline
    "PaymasterData",
    "encode_paymaster_data",
    "decode_paymaster_data",
    "GasNegotiator",
    "OperationAssembler",
    "AttemptState",
    "BalanceSnapshot",
    "OperationReceipt",
    "Reconciliation",
    "SubmissionTracker",
    "reconcile",
    "GaslessStrategy",
    "GaslessTransferEngine",
    "TransferResult",
    "TransferStrategy",
    "select_strategy",
]
