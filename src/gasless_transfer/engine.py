"""
Gasless transfer engine.

Runs one attempt through the pipeline, strictly in order:

    permit -> paymaster data -> fee levels -> gas limits -> assembly
    -> submission -> inclusion -> reconciliation

Attempts for the same sender are serialized. Attempts for different senders
share only the frozen EngineConfig.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Protocol, Union, runtime_checkable

from eth_utils import is_address, to_checksum_address

from .assembler import OperationAssembler
from .config import EngineConfig
from .erc4337.bundler_client import BundlerClient, BundlerConfig
from .erc4337.user_operation import Call, GasEnvelope
from .exceptions import ChainRPCError, DeadlineExceeded, InvalidParameters
from .gas import GasNegotiator
from .logging_utils import TransferLogger, TransferStage
from .paymaster_data import encode_paymaster_data
from .permit import build_permit, fetch_permit_context, normalize_signature, sign_permit
from .rpc_client import ChainRPCClient
from .signers import SmartWalletSigner
from .token import MAX_UINT256, StablecoinToken, encode_transfer, parse_units
from .tracker import (
    AttemptState,
    BalanceSnapshot,
    OperationReceipt,
    Reconciliation,
    SubmissionTracker,
    reconcile,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferResult:
    """Terminal outcome of an attempt that reached the chain."""
    state: AttemptState
    operation_hash: str
    receipt: OperationReceipt
    reconciliation: Optional[Reconciliation]
    explorer_url: str

    @property
    def fee_charged(self) -> Optional[int]:
        return self.reconciliation.fee_charged if self.reconciliation else None


@dataclass
class _SenderLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class GaslessTransferEngine:
    """Sends stablecoin transfers as paymaster-sponsored UserOperations."""

    def __init__(
        self,
        config: EngineConfig,
        bundler: BundlerClient,
        token: StablecoinToken,
        transfer_logger: Optional[TransferLogger] = None,
    ):
        self._config = config
        self._bundler = bundler
        self._token = token
        self._tlog = transfer_logger or TransferLogger(config=config.logging)
        self._negotiator = GasNegotiator(bundler, config, self._tlog)
        self._assembler = OperationAssembler(config)
        self._locks: Dict[str, _SenderLock] = {}
        self._rpc: Optional[ChainRPCClient] = None

    @classmethod
    def from_config(cls, config: EngineConfig) -> "GaslessTransferEngine":
        """Build an engine with its own chain and relay clients."""
        if not config.bundler_url:
            raise InvalidParameters("No bundler URL configured", field="bundler_url")
        tlog = TransferLogger(config=config.logging)
        rpc = ChainRPCClient(config.chain)
        bundler = BundlerClient(
            BundlerConfig(url=config.bundler_url, timeout_seconds=config.relay_timeout_seconds),
            transfer_logger=tlog,
        )
        engine = cls(config, bundler, StablecoinToken(rpc, config.token), transfer_logger=tlog)
        engine._rpc = rpc
        return engine

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def rpc(self) -> Optional[ChainRPCClient]:
        return self._rpc

    async def close(self) -> None:
        await self._bundler.close()
        if self._rpc is not None:
            await self._rpc.close()

    def parse_amount(self, value: Union[str, int, Decimal]) -> int:
        """Human token amount ("2.50") to raw units at the configured decimals."""
        return parse_units(value, self._config.token_decimals)

    @asynccontextmanager
    async def _sender_lock(self, sender: str) -> AsyncIterator[None]:
        # Dropped once no attempt holds or awaits it
        slot = self._locks.setdefault(sender, _SenderLock())
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._locks[sender]

    async def transfer(
        self,
        signer: SmartWalletSigner,
        recipient: str,
        amount: int,
        deadline_seconds: Optional[float] = None,
    ) -> TransferResult:
        """Transfer ``amount`` raw token units from the signer's smart account.

        Raises:
            InvalidParameters: bad recipient or amount
            DeadlineExceeded: ``deadline_seconds`` elapsed first; the error
                says whether a submitted operation may still be included
            OperationTimedOut: no receipt within the polling budget
            AccountingAnomaly: balance deltas contradict the transfer
            plus any error from the pipeline stages
        """
        if not is_address(recipient):
            raise InvalidParameters(f"Invalid recipient address: {recipient!r}", field="recipient")
        recipient = to_checksum_address(recipient)
        if isinstance(amount, bool) or not isinstance(amount, int) or not 0 < amount <= MAX_UINT256:
            raise InvalidParameters(f"Amount must be a positive integer, got {amount!r}", field="amount")
        if recipient == signer.address:
            raise InvalidParameters("Sender and recipient are the same account", field="recipient")

        async with self._sender_lock(signer.address):
            tracker = SubmissionTracker(self._bundler, self._config, self._tlog)
            attempt = self._run_attempt(signer, recipient, amount, tracker)
            if deadline_seconds is None:
                return await attempt
            try:
                return await asyncio.wait_for(attempt, timeout=deadline_seconds)
            except asyncio.TimeoutError:
                submitted = tracker.state is not AttemptState.BUILT
                unresolved = tracker.state in (AttemptState.PENDING, AttemptState.TIMED_OUT)
                raise DeadlineExceeded(
                    f"Transfer deadline of {deadline_seconds}s exceeded in state {tracker.state.value}"
                    + ("; the operation may still be included" if unresolved else ""),
                    state=tracker.state.value,
                    operation_hash=tracker.operation_hash if submitted else None,
                    may_still_be_included=unresolved,
                    details={"sender": signer.address, "recipient": recipient, "amount": amount},
                ) from None

    async def _snapshot(self, account: str) -> BalanceSnapshot:
        return BalanceSnapshot(account=account, amount=await self._token.balance_of(account))

    async def _run_attempt(
        self,
        signer: SmartWalletSigner,
        recipient: str,
        amount: int,
        tracker: SubmissionTracker,
    ) -> TransferResult:
        config = self._config
        chain = config.chain.name
        sender = signer.address
        token = self._token.address

        async with self._tlog.operation_context(
            TransferStage.TRANSFER, chain, sender=sender, recipient=recipient, amount=amount
        ):
            sender_before = await self._snapshot(sender)
            recipient_before = await self._snapshot(recipient)

            async with self._tlog.operation_context(TransferStage.PERMIT, chain):
                permit_context = await fetch_permit_context(self._token, sender, config.chain.chain_id)
                message = build_permit(token, sender, config.paymaster, config.permit_max_spend, permit_context)
                permit_signature = await sign_permit(message, signer)
                raw_signature = normalize_signature(permit_signature, expected_length=signer.signature_length)

            async with self._tlog.operation_context(TransferStage.PAYMASTER_DATA, chain):
                paymaster_data = encode_paymaster_data(
                    config.paymaster_format_tag, token, config.permit_max_spend, raw_signature
                )

            async with self._tlog.operation_context(TransferStage.FEE_FETCH, chain):
                fees = await self._negotiator.fetch_fee_levels()

            calls = [Call(to=token, data=encode_transfer(recipient, amount))]
            nonce = await signer.account.get_nonce()
            factory, factory_data = await signer.account.init_parts()

            async with self._tlog.operation_context(TransferStage.GAS_ESTIMATION, chain):
                draft = self._assembler.build_draft(
                    sender, calls, paymaster_data,
                    nonce=nonce, factory=factory, factory_data=factory_data,
                )
                limits = await self._negotiator.estimate_limits(draft)

            async with self._tlog.operation_context(TransferStage.ASSEMBLY, chain):
                op = self._assembler.assemble(
                    sender, calls, paymaster_data, GasEnvelope.combine(fees, limits),
                    nonce=nonce, factory=factory, factory_data=factory_data,
                )
                op = await self._assembler.sign(op, signer)

            async with self._tlog.operation_context(TransferStage.SUBMISSION, chain):
                op_hash = await tracker.submit(op)

            async with self._tlog.operation_context(TransferStage.INCLUSION, chain, operation_hash=op_hash):
                receipt = await tracker.wait_for_receipt()

            explorer_url = config.explorer_tx_url(receipt.transaction_hash or op_hash)
            if tracker.state is AttemptState.REVERTED:
                logger.error(f"Transfer {op_hash} reverted: {receipt.reason}")
                return TransferResult(tracker.state, op_hash, receipt, None, explorer_url)

            async with self._tlog.operation_context(TransferStage.RECONCILIATION, chain):
                # Balance reads can lag inclusion on the RPC node
                await asyncio.sleep(config.balance_settle_seconds)
                reconciliation = reconcile(
                    sender_before,
                    await self._snapshot(sender),
                    recipient_before,
                    await self._snapshot(recipient),
                    requested=amount,
                    max_fee=config.permit_max_spend,
                )
                self._tlog.log_reconciliation(sender, recipient, reconciliation.transferred, reconciliation.fee_charged)

            return TransferResult(tracker.state, op_hash, receipt, reconciliation, explorer_url)


@runtime_checkable
class TransferStrategy(Protocol):
    """A way of moving tokens from one bound sender."""

    name: str

    async def transfer(self, recipient: str, amount: int, deadline_seconds: Optional[float] = None): ...


class GaslessStrategy:
    """Transfers through the engine with gas paid in the token."""

    name = "gasless"

    def __init__(self, engine: GaslessTransferEngine, signer: SmartWalletSigner):
        self.engine = engine
        self.signer = signer

    async def transfer(
        self,
        recipient: str,
        amount: int,
        deadline_seconds: Optional[float] = None,
    ) -> TransferResult:
        return await self.engine.transfer(self.signer, recipient, amount, deadline_seconds)


async def select_strategy(
    config: EngineConfig,
    build_gasless: Callable[[], Awaitable[TransferStrategy]],
    fallback: Optional[TransferStrategy] = None,
) -> TransferStrategy:
    """Choose the transfer strategy up front.

    The gasless strategy is used when a relay and paymaster are configured
    and the smart account can be set up. Otherwise ``fallback`` (an ordinary
    fee-paying transfer supplied by the caller) is returned.

    Raises:
        InvalidParameters: gasless is unavailable and there is no fallback
        ChainRPCError: smart account setup failed and there is no fallback
    """
    if not config.supports_gasless:
        if fallback is None:
            raise InvalidParameters(
                "Gasless transfers need a bundler URL and a paymaster, and no fallback was given",
                field="bundler_url",
            )
        logger.info(f"Gasless path not configured on {config.chain.name}, using {fallback.name}")
        return fallback

    try:
        return await build_gasless()
    except ChainRPCError as e:
        if fallback is None:
            raise
        logger.warning(f"Smart account setup failed ({e}); falling back to {fallback.name}")
        return fallback
