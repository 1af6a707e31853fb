from __future__ import annotations

import logging
from typing import Callable

from pending_actions_bot.models import (
    BatchUnsizable,
    BudgetedBatch,
    BudgetExceeded,
    CostEstimate,
    EstimateFailed,
    EstimateResult,
    EstimationError,
)

LOGGER = logging.getLogger("pending_actions_bot")


def size_batch(
    start_iterations: int,
    max_cost: int,
    estimate: Callable[[int], EstimateResult],
) -> BudgetedBatch:
    """
    Find an iteration count whose estimated cost fits under max_cost.

    Starts at start_iterations and halves on every budget-exceeded estimate,
    so at most log2(start_iterations) + 1 estimates are made. The first
    successful estimate wins; the estimator owns the feasibility decision.
    """
    if start_iterations < 1:
        raise ValueError(f"start_iterations must be >= 1, got {start_iterations}")
    if max_cost <= 0:
        raise ValueError(f"max_cost must be > 0, got {max_cost}")

    iterations = start_iterations
    while iterations > 0:
        result = estimate(iterations)
        if isinstance(result, CostEstimate) and result.cost > max_cost:
            result = BudgetExceeded(iterations=iterations, detail=f"estimate {result.cost} above ceiling")
        if isinstance(result, CostEstimate):
            return BudgetedBatch(iterations=iterations, estimated_cost=result.cost)
        if isinstance(result, BudgetExceeded):
            next_iterations = iterations // 2
            LOGGER.info(
                "batch_budget_exceeded iterations=%s max_cost=%s next=%s detail=%s",
                iterations,
                max_cost,
                next_iterations,
                result.detail,
            )
            iterations = next_iterations
            continue
        if isinstance(result, EstimateFailed):
            raise EstimationError(f"cost estimation failed for iterations={iterations}: {result.detail}")
        raise TypeError(f"unexpected estimate result {result!r}")

    raise BatchUnsizable(
        f"no iteration count fits max_cost={max_cost} (started at {start_iterations})"
    )
