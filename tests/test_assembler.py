"""
Tests for UserOperation assembly and signing.
"""
from __future__ import annotations

from dataclasses import replace

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from gasless_transfer.assembler import OperationAssembler
from gasless_transfer.erc4337.smart_account import (
    DUMMY_SIGNATURE,
    EXEC_MODE_BATCH,
    EXECUTE_SELECTOR,
)
from gasless_transfer.erc4337.user_operation import Call, FeeLevels, GasEnvelope, GasLimits
from gasless_transfer.exceptions import InvalidOperation, InvalidParameters
from gasless_transfer.token import encode_transfer

from .conftest import FACTORY, PAYMASTER, RECIPIENT, SENDER, USDC

PAYMASTER_DATA = b"\x00" * 53 + b"\x01" * 65


def _calls(amount: int = 2_500_000) -> list[Call]:
    return [Call(to=USDC, data=encode_transfer(RECIPIENT, amount))]


def _envelope(post_op: int = 50_000) -> GasEnvelope:
    return GasEnvelope.combine(
        FeeLevels(2_000_000, 200_000),
        GasLimits(
            call_gas_limit=80_000,
            verification_gas_limit=150_000,
            pre_verification_gas=50_000,
            paymaster_verification_gas_limit=60_000,
            paymaster_post_op_gas_limit=post_op,
        ),
    )


class TestAssemble:
    """Test OperationAssembler.assemble."""

    def test_composes_operation(self, engine_config) -> None:
        op = OperationAssembler(engine_config).assemble(SENDER, _calls(), PAYMASTER_DATA, _envelope(), nonce=3)

        assert op.sender == SENDER
        assert op.nonce == 3
        assert op.call_data[:4] == bytes(EXECUTE_SELECTOR)
        assert op.paymaster == PAYMASTER
        assert op.paymaster_data == PAYMASTER_DATA
        assert op.factory is None
        assert op.init_code == b""
        assert op.signature == b""

    def test_batch_calls_use_batch_mode(self, engine_config) -> None:
        calls = _calls(1) + _calls(2)

        op = OperationAssembler(engine_config).assemble(SENDER, calls, PAYMASTER_DATA, _envelope())

        assert op.call_data[:4] == bytes(EXECUTE_SELECTOR)
        assert op.call_data[4:36] == EXEC_MODE_BATCH

    def test_paymaster_and_data_layout(self, engine_config) -> None:
        op = OperationAssembler(engine_config).assemble(SENDER, _calls(), PAYMASTER_DATA, _envelope())

        packed = op.paymaster_and_data
        assert len(packed) == 20 + 16 + 16 + len(PAYMASTER_DATA)
        assert packed[:20] == bytes.fromhex(PAYMASTER[2:])
        assert int.from_bytes(packed[20:36], "big") == 60_000
        assert int.from_bytes(packed[36:52], "big") == 50_000
        assert packed[52:] == PAYMASTER_DATA

    def test_gas_words_are_packed_high_low(self, engine_config) -> None:
        op = OperationAssembler(engine_config).assemble(SENDER, _calls(), PAYMASTER_DATA, _envelope())

        assert int.from_bytes(op.account_gas_limits[:16], "big") == 150_000
        assert int.from_bytes(op.account_gas_limits[16:], "big") == 80_000
        assert int.from_bytes(op.gas_fees[:16], "big") == 200_000
        assert int.from_bytes(op.gas_fees[16:], "big") == 2_000_000

    def test_factory_goes_into_init_code(self, engine_config) -> None:
        op = OperationAssembler(engine_config).assemble(
            SENDER, _calls(), PAYMASTER_DATA, _envelope(), factory=FACTORY, factory_data=b"\xca\xfe"
        )

        assert op.init_code == bytes.fromhex(FACTORY[2:]) + b"\xca\xfe"
        assert op.to_rpc()["factory"] == FACTORY
        assert op.to_rpc()["factoryData"] == "0xcafe"

    def test_rpc_payload(self, engine_config) -> None:
        op = OperationAssembler(engine_config).assemble(SENDER, _calls(), PAYMASTER_DATA, _envelope())

        payload = op.to_rpc()

        assert payload["paymaster"] == PAYMASTER
        assert payload["paymasterPostOpGasLimit"] == hex(50_000)
        assert payload["maxFeePerGas"] == hex(2_000_000)
        assert "factory" not in payload

    def test_rejects_missing_sender(self, engine_config) -> None:
        with pytest.raises(InvalidOperation):
            OperationAssembler(engine_config).assemble("", _calls(), PAYMASTER_DATA, _envelope())

    def test_rejects_empty_calls(self, engine_config) -> None:
        with pytest.raises(InvalidOperation):
            OperationAssembler(engine_config).assemble(SENDER, [], PAYMASTER_DATA, _envelope())

    def test_rejects_empty_paymaster_data(self, engine_config) -> None:
        with pytest.raises(InvalidOperation):
            OperationAssembler(engine_config).assemble(SENDER, _calls(), b"", _envelope())

    def test_rejects_missing_paymaster(self, engine_config) -> None:
        assembler = OperationAssembler(replace(engine_config, paymaster=""))

        with pytest.raises(InvalidOperation):
            assembler.assemble(SENDER, _calls(), PAYMASTER_DATA, _envelope())

    def test_rejects_post_op_below_floor(self, engine_config) -> None:
        with pytest.raises(InvalidOperation) as exc_info:
            OperationAssembler(engine_config).assemble(SENDER, _calls(), PAYMASTER_DATA, _envelope(post_op=30_000))
        assert exc_info.value.details["floor"] == 50_000

    def test_gas_fields_must_fit_uint128(self) -> None:
        with pytest.raises(InvalidParameters):
            replace(_envelope(), call_gas_limit=2**128)


class TestBuildDraft:
    def test_draft_shape(self, engine_config) -> None:
        draft = OperationAssembler(engine_config).build_draft(SENDER, _calls(), PAYMASTER_DATA, nonce=1)

        assert draft.gas.max_fee_per_gas == 1
        assert draft.gas.max_priority_fee_per_gas == 1
        assert draft.gas.call_gas_limit == 0
        assert draft.gas.paymaster_post_op_gas_limit == engine_config.min_post_op_gas
        assert draft.signature == DUMMY_SIGNATURE
        assert len(DUMMY_SIGNATURE) == 65


class TestOperationHash:
    def test_signature_is_not_hashed(self, engine_config) -> None:
        assembler = OperationAssembler(engine_config)
        op = assembler.assemble(SENDER, _calls(), PAYMASTER_DATA, _envelope())

        assert assembler.operation_hash(op) == assembler.operation_hash(replace(op, signature=b"\x01" * 65))

    def test_hash_binds_chain(self, engine_config) -> None:
        op = OperationAssembler(engine_config).assemble(SENDER, _calls(), PAYMASTER_DATA, _envelope())
        entrypoint = engine_config.chain.entrypoint

        assert op.hash(entrypoint, 84532) != op.hash(entrypoint, 421614)

    def test_hash_binds_gas(self, engine_config) -> None:
        assembler = OperationAssembler(engine_config)
        op = assembler.assemble(SENDER, _calls(), PAYMASTER_DATA, _envelope())
        bumped = assembler.assemble(SENDER, _calls(), PAYMASTER_DATA, _envelope(post_op=60_000))

        assert assembler.operation_hash(op) != assembler.operation_hash(bumped)


class TestSign:
    @pytest.mark.asyncio
    async def test_returns_signed_copy(self, engine_config, wallet, owner) -> None:
        assembler = OperationAssembler(engine_config)
        op = assembler.assemble(wallet.address, _calls(), PAYMASTER_DATA, _envelope())

        signed = await assembler.sign(op, wallet)

        assert op.signature == b""
        assert signed is not op
        assert len(signed.signature) == 65
        recovered = Account.recover_message(
            encode_defunct(primitive=assembler.operation_hash(op)),
            signature=signed.signature,
        )
        assert recovered == owner.address

    @pytest.mark.asyncio
    async def test_rejects_foreign_sender(self, engine_config, wallet) -> None:
        assembler = OperationAssembler(engine_config)
        op = assembler.assemble(RECIPIENT, _calls(), PAYMASTER_DATA, _envelope())

        with pytest.raises(InvalidOperation):
            await assembler.sign(op, wallet)
