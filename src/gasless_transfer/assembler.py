"""UserOperation assembly: calls, paymaster data and gas into one operation."""

from __future__ import annotations

from dataclasses import replace
from typing import Optional, Sequence

from eth_utils import is_address, to_checksum_address

from .config import EngineConfig
from .erc4337.smart_account import DUMMY_SIGNATURE, encode_calls
from .erc4337.user_operation import UNIT_FEES, Call, GasEnvelope, UserOperation
from .exceptions import InvalidOperation
from .signers import SmartWalletSigner


class OperationAssembler:
    """
    Builds UserOperations for one chain configuration.

    Operations are frozen. The estimation draft and the final operation are
    separate instances; nothing built here is modified afterwards.
    """

    def __init__(self, config: EngineConfig):
        self._config = config

    def assemble(
        self,
        sender: str,
        calls: Sequence[Call],
        paymaster_data: bytes,
        gas_envelope: GasEnvelope,
        *,
        nonce: int = 0,
        factory: Optional[str] = None,
        factory_data: bytes = b"",
        paymaster: Optional[str] = None,
        signature: bytes = b"",
    ) -> UserOperation:
        """Compose an unsigned (or dummy-signed) operation.

        Raises:
            InvalidOperation: missing sender, calls, paymaster or paymaster
                data, or a post-op limit under the configured floor
        """
        if not sender or not is_address(sender):
            raise InvalidOperation(f"Missing or invalid sender: {sender!r}")
        if not calls:
            raise InvalidOperation("UserOperation needs at least one call", details={"sender": sender})
        if not paymaster_data:
            raise InvalidOperation("Paymaster data is empty", details={"sender": sender})

        paymaster = paymaster or self._config.paymaster
        if not paymaster:
            raise InvalidOperation("No paymaster configured", details={"sender": sender})
        if gas_envelope.paymaster_post_op_gas_limit < self._config.min_post_op_gas:
            raise InvalidOperation(
                "Paymaster post-op gas limit is below the configured floor",
                details={
                    "post_op": gas_envelope.paymaster_post_op_gas_limit,
                    "floor": self._config.min_post_op_gas,
                },
            )

        return UserOperation(
            sender=to_checksum_address(sender),
            nonce=nonce,
            call_data=encode_calls(calls),
            gas=gas_envelope,
            factory=factory,
            factory_data=factory_data if factory else b"",
            paymaster=to_checksum_address(paymaster),
            paymaster_data=bytes(paymaster_data),
            signature=signature,
        )

    def build_draft(
        self,
        sender: str,
        calls: Sequence[Call],
        paymaster_data: bytes,
        *,
        nonce: int = 0,
        factory: Optional[str] = None,
        factory_data: bytes = b"",
    ) -> UserOperation:
        """Estimation draft: unit fees, zero limits and a dummy signature."""
        gas = GasEnvelope(
            max_fee_per_gas=UNIT_FEES.max_fee_per_gas,
            max_priority_fee_per_gas=UNIT_FEES.max_priority_fee_per_gas,
            call_gas_limit=0,
            pre_verification_gas=0,
            verification_gas_limit=0,
            paymaster_verification_gas_limit=0,
            paymaster_post_op_gas_limit=self._config.min_post_op_gas,
        )
        return self.assemble(
            sender,
            calls,
            paymaster_data,
            gas,
            nonce=nonce,
            factory=factory,
            factory_data=factory_data,
            signature=DUMMY_SIGNATURE,
        )

    def operation_hash(self, op: UserOperation) -> bytes:
        chain = self._config.chain
        return op.hash(chain.entrypoint, chain.chain_id)

    async def sign(self, op: UserOperation, signer: SmartWalletSigner) -> UserOperation:
        """Return a signed copy of ``op``."""
        if signer.address != op.sender:
            raise InvalidOperation(
                "Signer is not the operation sender",
                details={"sender": op.sender, "signer": signer.address},
            )
        signature = await signer.sign_user_operation_hash(self.operation_hash(op))
        return replace(op, signature=signature)
