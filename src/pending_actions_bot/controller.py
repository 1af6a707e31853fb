from __future__ import annotations

from dataclasses import dataclass
import logging

from pending_actions_bot.batch_sizer import size_batch
from pending_actions_bot.config import KeeperConfig
from pending_actions_bot.gas_price import GasPriceOracle
from pending_actions_bot.ledger import PENDING_ACTIONS_PROCESSED_EVENT, BaseLedgerClient
from pending_actions_bot.models import (
    CycleOutcome,
    CycleStatus,
    DrainState,
    KeeperError,
    PriceLevel,
)

LOGGER = logging.getLogger("pending_actions_bot")

PRICE_CEILING_EXCEEDED = "price ceiling exceeded"


@dataclass(frozen=True)
class ControllerSettings:
    default_iterations: int
    max_cost: int
    max_price: int | None = None
    cost_margin_pct: int = 10
    price_level: PriceLevel = PriceLevel.ABOVE_STANDARD

    @classmethod
    def from_config(cls, config: KeeperConfig) -> "ControllerSettings":
        return cls(
            default_iterations=config.default_iterations,
            max_cost=config.max_gas,
            max_price=config.max_gas_price_wei,
            cost_margin_pct=config.gas_limit_margin_pct,
            price_level=config.gas_price_level,
        )


def apply_cost_margin(estimated_cost: int, margin_pct: int) -> int:
    return estimated_cost * (100 + margin_pct) // 100


class SubmissionController:
    def __init__(
        self,
        ledger: BaseLedgerClient,
        oracle: GasPriceOracle,
        settings: ControllerSettings,
    ) -> None:
        self.ledger = ledger
        self.oracle = oracle
        self.settings = settings

    def run_cycle(self, state: DrainState) -> CycleOutcome:
        try:
            return self._drain(state)
        except KeeperError as exc:
            LOGGER.error("Failed to handle pending actions: %s", exc, exc_info=exc)
            return CycleOutcome.failed(exc)

    def _drain(self, state: DrainState) -> CycleOutcome:
        if state.has_pending_work is not True and not self.ledger.has_pending_work():
            return CycleOutcome.idle()

        LOGGER.info("Has pending actions. Processing..")
        batch = size_batch(
            self.settings.default_iterations,
            self.settings.max_cost,
            lambda iterations: self.ledger.estimate_cost(iterations, self.settings.max_cost),
        )
        quote = self.oracle.fetch_price(self.settings.price_level)

        max_price = self.settings.max_price
        if max_price is not None and quote.amount_wei > max_price:
            LOGGER.info(
                "gas price %s wei above ceiling %s wei; deferring",
                quote.amount_wei,
                max_price,
            )
            return CycleOutcome.skipped(PRICE_CEILING_EXCEEDED)

        cost_limit = apply_cost_margin(batch.estimated_cost, self.settings.cost_margin_pct)
        nonce = self.ledger.get_next_sequence_number()
        LOGGER.info(
            "gasEstimate: %s, gasLimit: %s, gasPrice: %s, iterations: %s, nonce: %s",
            batch.estimated_cost,
            cost_limit,
            quote.amount_wei,
            batch.iterations,
            nonce,
        )
        receipt = self.ledger.submit(
            iterations=batch.iterations,
            cost_limit=cost_limit,
            price=quote.amount_wei,
            sequence_number=nonce,
        )

        if receipt.completion is None:
            LOGGER.error(
                "Unexpected: %s event could not be found in tx=%s",
                PENDING_ACTIONS_PROCESSED_EVENT,
                receipt.tx_hash,
            )
            next_state = DrainState()
        else:
            LOGGER.info(
                "%s.finished = %s",
                PENDING_ACTIONS_PROCESSED_EVENT,
                receipt.completion.finished,
            )
            # finished=True is not trusted as "no work": the predicate is re-queried after the sleep.
            next_state = DrainState(has_pending_work=True) if not receipt.completion.finished else DrainState()

        continues = receipt.completion is None or not receipt.completion.finished
        return CycleOutcome(
            status=CycleStatus.SUBMITTED,
            next_state=next_state,
            cost_used=receipt.gas_used,
            price_used=quote.amount_wei,
            continues=continues,
        )
