"""
Submission tracking and balance reconciliation for one transfer attempt.

State machine:

    BUILT --submit--> PENDING --poll--> INCLUDED | REVERTED | TIMED_OUT

An operation is sent at most once. A send that may have reached the relay is
never repeated; the attempt moves to PENDING under the locally computed
operation hash and polling decides the outcome.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from .config import EngineConfig
from .erc4337.bundler_client import BundlerClient
from .erc4337.user_operation import UserOperation
from .exceptions import (
    AccountingAnomaly,
    InvalidOperation,
    OperationTimedOut,
    RelayUnavailable,
)
from .logging_utils import TransferLogger
from .retry import retry_async

logger = logging.getLogger(__name__)


class AttemptState(str, Enum):
    BUILT = "built"
    PENDING = "pending"
    INCLUDED = "included"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class OperationReceipt:
    """Relay receipt for an included operation."""
    operation_hash: str
    transaction_hash: Optional[str]
    success: bool
    actual_gas_cost: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def from_rpc(cls, operation_hash: str, data: Dict[str, Any]) -> "OperationReceipt":
        receipt = data.get("receipt") or {}
        gas_cost = data.get("actualGasCost")
        return cls(
            operation_hash=data.get("userOpHash", operation_hash),
            transaction_hash=receipt.get("transactionHash"),
            success=bool(data.get("success")),
            actual_gas_cost=int(gas_cost, 16) if isinstance(gas_cost, str) else gas_cost,
            reason=data.get("reason") or None,
        )


@dataclass(frozen=True)
class BalanceSnapshot:
    account: str
    amount: int


@dataclass(frozen=True)
class Reconciliation:
    """Balance deltas of an included transfer."""
    sender: str
    recipient: str
    requested: int
    transferred: int
    fee_charged: int
    sender_before: int
    sender_after: int


def reconcile(
    sender_before: BalanceSnapshot,
    sender_after: BalanceSnapshot,
    recipient_before: BalanceSnapshot,
    recipient_after: BalanceSnapshot,
    requested: int,
    max_fee: Optional[int] = None,
) -> Reconciliation:
    """Check the balance deltas of an included transfer.

    Raises:
        AccountingAnomaly: the recipient did not receive exactly ``requested``,
            the derived fee is negative, or it exceeds ``max_fee``
    """
    transferred = recipient_after.amount - recipient_before.amount
    fee_charged = sender_before.amount - sender_after.amount - transferred
    details = {
        "sender": sender_before.account,
        "recipient": recipient_before.account,
        "requested": requested,
        "transferred": transferred,
        "fee_charged": fee_charged,
        "sender_before": sender_before.amount,
        "sender_after": sender_after.amount,
        "recipient_before": recipient_before.amount,
        "recipient_after": recipient_after.amount,
    }

    if transferred != requested:
        raise AccountingAnomaly(
            f"Recipient received {transferred}, expected exactly {requested}",
            details=details,
        )
    if fee_charged < 0:
        raise AccountingAnomaly(
            f"Negative fee derived from balances: {fee_charged}",
            details=details,
        )
    if max_fee is not None and fee_charged > max_fee:
        raise AccountingAnomaly(
            f"Fee {fee_charged} exceeds the permitted maximum {max_fee}",
            details={**details, "max_fee": max_fee},
        )

    return Reconciliation(
        sender=sender_before.account,
        recipient=recipient_before.account,
        requested=requested,
        transferred=transferred,
        fee_charged=fee_charged,
        sender_before=sender_before.amount,
        sender_after=sender_after.amount,
    )


def _not_delivered(error: BaseException) -> bool:
    return isinstance(error, RelayUnavailable) and not error.details.get("may_have_reached_relay", False)


class SubmissionTracker:
    """Submits one operation and follows it to a terminal state."""

    def __init__(
        self,
        bundler: BundlerClient,
        config: EngineConfig,
        transfer_logger: Optional[TransferLogger] = None,
    ):
        self._bundler = bundler
        self._config = config
        self._tlog = transfer_logger
        self._state = AttemptState.BUILT
        self._operation_hash: Optional[str] = None
        self._receipt: Optional[OperationReceipt] = None

    @property
    def state(self) -> AttemptState:
        return self._state

    @property
    def operation_hash(self) -> Optional[str]:
        return self._operation_hash

    @property
    def receipt(self) -> Optional[OperationReceipt]:
        return self._receipt

    async def submit(self, op: UserOperation) -> str:
        """Send ``op`` to the relay and move to PENDING.

        Raises:
            InvalidOperation: this tracker already submitted an operation
            SubmissionRejected: the relay refused the operation
            RelayUnavailable: the relay could not be reached within the
                retry budget and the operation was never delivered
        """
        if self._state is not AttemptState.BUILT:
            raise InvalidOperation(
                "Operation already submitted for this attempt",
                details={"state": self._state.value, "operation_hash": self._operation_hash},
            )

        chain = self._config.chain
        local_hash = "0x" + op.hash(chain.entrypoint, chain.chain_id).hex()
        send_retry = replace(self._config.retry, retry_condition=_not_delivered)

        try:
            op_hash = await retry_async(
                self._bundler.send_user_operation,
                op,
                chain.entrypoint,
                config=send_retry,
            )
        except RelayUnavailable as e:
            if _not_delivered(e):
                raise
            logger.warning(
                f"Send of {local_hash} may have reached the relay ({e}); "
                f"tracking it instead of resending"
            )
            op_hash = local_hash

        if op_hash.lower() != local_hash.lower():
            logger.warning(f"Relay returned operation hash {op_hash}, computed {local_hash}")

        self._operation_hash = op_hash
        self._state = AttemptState.PENDING

        if self._tlog is not None:
            self._tlog.log_operation_submitted(
                operation_hash=op_hash,
                chain=chain.name,
                sender=op.sender,
                nonce=op.nonce,
                max_fee_per_gas=op.gas.max_fee_per_gas,
                max_priority_fee_per_gas=op.gas.max_priority_fee_per_gas,
            )
        return op_hash

    async def wait_for_receipt(self) -> OperationReceipt:
        """Poll for the receipt at a fixed interval.

        Raises:
            OperationTimedOut: no receipt within ``max_polls`` polls; the
                operation may still be included later
        """
        if self._state is not AttemptState.PENDING or self._operation_hash is None:
            raise InvalidOperation(
                "No pending operation to poll",
                details={"state": self._state.value},
            )

        op_hash = self._operation_hash
        max_polls = self._config.max_polls

        for poll in range(1, max_polls + 1):
            try:
                data = await self._bundler.get_user_operation_receipt(op_hash)
            except RelayUnavailable as e:
                logger.warning(f"Receipt poll {poll}/{max_polls} for {op_hash} failed: {e}")
                data = None

            if data:
                receipt = OperationReceipt.from_rpc(op_hash, data)
                self._receipt = receipt
                if receipt.success:
                    self._state = AttemptState.INCLUDED
                    if self._tlog is not None:
                        self._tlog.log_operation_included(
                            op_hash, receipt.transaction_hash or "", receipt.actual_gas_cost
                        )
                else:
                    self._state = AttemptState.REVERTED
                    if self._tlog is not None:
                        self._tlog.log_operation_failed(
                            op_hash, "reverted", receipt.transaction_hash, receipt.reason
                        )
                return receipt

            if poll < max_polls:
                await asyncio.sleep(self._config.poll_interval_seconds)

        self._state = AttemptState.TIMED_OUT
        if self._tlog is not None:
            self._tlog.log_operation_failed(op_hash, f"no receipt after {max_polls} polls")
        raise OperationTimedOut(
            f"UserOperation {op_hash} not observed after {max_polls} polls; outcome unresolved",
            operation_hash=op_hash,
            polls=max_polls,
        )
