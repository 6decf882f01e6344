"""
Gas negotiation with the relay.

Fee tiers and per-phase limits come from the bundler. Transient relay
failures are retried here; a relay verdict that the draft is invalid
(EstimationRejected) is not.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import replace
from typing import Optional, get_args

from .config import EngineConfig, FeeTier
from .erc4337.bundler_client import BundlerClient
from .erc4337.user_operation import FeeLevels, GasLimits, UserOperation
from .exceptions import InvalidParameters, RelayUnavailable
from .logging_utils import TransferLogger
from .retry import retry_async

logger = logging.getLogger(__name__)

FEE_TIERS = get_args(FeeTier)


class GasNegotiator:
    """Queries fee levels and gas limits, applying the post-op floor."""

    def __init__(
        self,
        bundler: BundlerClient,
        config: EngineConfig,
        transfer_logger: Optional[TransferLogger] = None,
        max_remembered: int = 256,
    ):
        self._bundler = bundler
        self._config = config
        self._tlog = transfer_logger
        self._accepted: "OrderedDict[bytes, GasLimits]" = OrderedDict()
        self._max_remembered = max_remembered

    async def _fetch_tier(self, tier: str) -> FeeLevels:
        levels = await self._bundler.get_fee_levels()
        if tier not in levels:
            raise RelayUnavailable(
                f"Relay did not quote the '{tier}' fee tier",
                details={"tier": tier, "quoted": sorted(levels), "may_have_reached_relay": False},
            )
        return levels[tier]

    async def fetch_fee_levels(self, tier: Optional[str] = None) -> FeeLevels:
        """Current fees for ``tier`` (configured tier by default)."""
        tier = tier or self._config.fee_tier
        if tier not in FEE_TIERS:
            raise InvalidParameters(f"Unknown fee tier '{tier}', expected one of {FEE_TIERS}", field="fee_tier")

        fees = await retry_async(self._fetch_tier, tier, config=self._config.retry)
        logger.debug(
            f"Fee tier '{tier}': max_fee={fees.max_fee_per_gas}, "
            f"max_priority_fee={fees.max_priority_fee_per_gas}"
        )
        return fees

    def apply_floor(self, limits: GasLimits) -> GasLimits:
        floor = self._config.min_post_op_gas
        if limits.paymaster_post_op_gas_limit >= floor:
            return limits
        return replace(limits, paymaster_post_op_gas_limit=floor)

    async def estimate_limits(self, draft: UserOperation) -> GasLimits:
        """Gas limits for ``draft`` with the post-op floor applied.

        Repeated estimates of the same draft never drop below a value that was
        already returned for it.
        """
        chain = self._config.chain
        relay_limits = await retry_async(
            self._bundler.estimate_user_operation_gas,
            draft,
            chain.entrypoint,
            config=self._config.retry,
        )
        limits = self.apply_floor(relay_limits)

        key = draft.hash(chain.entrypoint, chain.chain_id)
        previous = self._accepted.get(key)
        if previous is not None:
            limits = limits.merge_max(previous)
        self._accepted[key] = limits
        self._accepted.move_to_end(key)
        while len(self._accepted) > self._max_remembered:
            self._accepted.popitem(last=False)

        if self._tlog is not None:
            self._tlog.log_gas_negotiation(
                chain=chain.name,
                limits=limits.as_dict(),
                relay_post_op=relay_limits.paymaster_post_op_gas_limit,
                floor=self._config.min_post_op_gas,
            )
        return limits
