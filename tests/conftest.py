"""
Pytest configuration for gasless transfer tests.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest
from eth_abi import encode
from eth_utils import to_checksum_address

from gasless_transfer.config import (
    ChainContext,
    EngineConfig,
    KernelDeployment,
    LoggingConfig,
    RPCEndpointConfig,
)
from gasless_transfer.erc4337.entrypoint import GET_NONCE_SELECTOR
from gasless_transfer.erc4337.smart_account import GET_ADDRESS_SELECTOR, SmartAccount
from gasless_transfer.erc4337.user_operation import FeeLevels, GasLimits, UserOperation
from gasless_transfer.exceptions import RelayUnavailable
from gasless_transfer.retry import RetryConfig
from gasless_transfer.signers import KeyHolderSigner, SmartWalletSigner

# Well-known development key (hardhat account #0)
OWNER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
OTHER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"

SENDER = "0x1111111111111111111111111111111111111111"
RECIPIENT = "0x2222222222222222222222222222222222222222"
FACTORY = "0x3333333333333333333333333333333333333333"
PAYMASTER = to_checksum_address("0x31be08d380a21fc740883c0bc434fcfc88740b58")
USDC = to_checksum_address("0x036cbd53842c5426634e7929541ec2318f3dcf7e")
TX_HASH = "0x" + "ab" * 32
CHAIN_ID = 84532
DEPLOYMENT = KernelDeployment(factory=FACTORY)


@pytest.fixture
def engine_config() -> EngineConfig:
    """Engine configuration with instant retries and polling."""
    return EngineConfig(
        chain=ChainContext(
            name="base_sepolia",
            chain_id=CHAIN_ID,
            rpc_endpoints=(RPCEndpointConfig(url="http://rpc.test"),),
            explorer_url="https://sepolia.basescan.org",
        ),
        bundler_url="http://bundler.test/rpc?apikey=secret",
        paymaster=PAYMASTER,
        token=USDC,
        permit_max_spend=1_000_000,
        min_post_op_gas=50_000,
        poll_interval_seconds=0,
        max_polls=5,
        retry=RetryConfig(max_retries=3, base_delay=0, jitter=0),
        balance_settle_seconds=0,
        account=DEPLOYMENT,
        logging=LoggingConfig(audit_log_enabled=False),
    )


class FakeChainRPC:
    """Answers the chain reads a smart account makes."""

    def __init__(self, deployed: bool = True, nonce: int = 0, account: str = SENDER):
        self.deployed = deployed
        self.nonce = nonce
        self.account = account
        self.calls: List[Dict[str, Any]] = []

    async def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        self.calls.append(tx)
        selector = bytes.fromhex(tx["data"][2:10])
        if selector == bytes(GET_NONCE_SELECTOR):
            return "0x" + encode(["uint256"], [self.nonce]).hex()
        if selector == bytes(GET_ADDRESS_SELECTOR):
            return "0x" + encode(["address"], [self.account]).hex()
        raise AssertionError(f"unexpected eth_call {tx}")

    async def get_code(self, address: str, block: str = "latest") -> str:
        return "0x6080604052" if self.deployed else "0x"


class FakeToken:
    """In-memory EIP-2612 token."""

    def __init__(self, balances: Optional[Dict[str, int]] = None, address: str = USDC):
        self.address = address
        self.balances: Dict[str, int] = dict(balances or {})
        self.permit_nonce = 0

    async def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    async def name(self) -> str:
        return "USDC"

    async def version(self) -> str:
        return "2"

    async def nonces(self, owner: str) -> int:
        return self.permit_nonce

    async def decimals(self) -> int:
        return 6


class FakeBundler:
    """Scripted relay.

    ``on_send`` runs when an operation is accepted, so tests can move token
    balances the way an included operation would.
    """

    def __init__(
        self,
        config: EngineConfig,
        fee_failures: int = 0,
        limits: Optional[GasLimits] = None,
        include: bool = True,
        success: bool = True,
        on_send: Optional[Callable[[UserOperation], None]] = None,
        poll_delay: float = 0.0,
        fee_delay: float = 0.0,
    ):
        self._config = config
        self.fee_failures = fee_failures
        self.fee_calls = 0
        self.limits = limits or GasLimits(
            call_gas_limit=80_000,
            verification_gas_limit=150_000,
            pre_verification_gas=50_000,
            paymaster_verification_gas_limit=60_000,
            paymaster_post_op_gas_limit=30_000,
        )
        self.include = include
        self.success = success
        self.on_send = on_send
        self.poll_delay = poll_delay
        self.fee_delay = fee_delay
        self.estimated: List[UserOperation] = []
        self.sent: List[UserOperation] = []
        self.polls = 0

    async def get_fee_levels(self) -> Dict[str, FeeLevels]:
        self.fee_calls += 1
        if self.fee_delay:
            await asyncio.sleep(self.fee_delay)
        if self.fee_failures > 0:
            self.fee_failures -= 1
            raise RelayUnavailable("relay busy", details={"may_have_reached_relay": False})
        return {
            "slow": FeeLevels(1_000_000, 100_000),
            "standard": FeeLevels(1_500_000, 150_000),
            "fast": FeeLevels(2_000_000, 200_000),
        }

    async def estimate_user_operation_gas(self, user_op: UserOperation, entrypoint: str) -> GasLimits:
        self.estimated.append(user_op)
        return self.limits

    async def send_user_operation(self, user_op: UserOperation, entrypoint: str) -> str:
        self.sent.append(user_op)
        if self.on_send is not None:
            self.on_send(user_op)
        return "0x" + user_op.hash(entrypoint, self._config.chain.chain_id).hex()

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[Dict[str, Any]]:
        self.polls += 1
        if self.poll_delay:
            await asyncio.sleep(self.poll_delay)
        if not self.include:
            return None
        return {
            "userOpHash": user_op_hash,
            "success": self.success,
            "actualGasCost": "0x3039",
            "reason": "" if self.success else "AA50 postOp reverted",
            "receipt": {"transactionHash": TX_HASH},
        }

    async def close(self) -> None:
        return None


@pytest.fixture
def owner() -> KeyHolderSigner:
    return KeyHolderSigner.from_key(OWNER_KEY)


@pytest.fixture
def chain_rpc() -> FakeChainRPC:
    return FakeChainRPC()


@pytest.fixture
def smart_account(chain_rpc: FakeChainRPC, owner: KeyHolderSigner) -> SmartAccount:
    return SmartAccount(chain_rpc, owner.address, SENDER, CHAIN_ID, deployment=DEPLOYMENT)


@pytest.fixture
def wallet(smart_account: SmartAccount, owner: KeyHolderSigner) -> SmartWalletSigner:
    return SmartWalletSigner(smart_account, [owner])
