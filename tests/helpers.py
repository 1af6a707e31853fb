from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import sys
from typing import Any, Callable
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from pending_actions_bot.config import load_config  # noqa: E402
from pending_actions_bot.ledger import BaseLedgerClient  # noqa: E402
from pending_actions_bot.models import (  # noqa: E402
    CompletionSignal,
    CostEstimate,
    EstimateResult,
    PriceLevel,
    SubmissionReceipt,
)

TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"

BASE_ENV = {
    "PRIVATE_KEY": TEST_PRIVATE_KEY,
    "PROVIDER_URL": "http://127.0.0.1:8545",
}


def test_config(**kwargs):
    with patch.dict("os.environ", BASE_ENV, clear=True):
        cfg = load_config()
    return replace(cfg, **kwargs)


test_config.__test__ = False


class FakeLedger(BaseLedgerClient):
    def __init__(
        self,
        pending: list[bool] | bool = True,
        estimate: Callable[[int], EstimateResult] | None = None,
        completion: CompletionSignal | None = CompletionSignal(finished=True),
        gas_used: int = 450_000,
        nonce: int = 7,
    ) -> None:
        self.address = "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"
        self._pending = pending
        self._estimate = estimate or (lambda iterations: CostEstimate(cost=5_000 * iterations))
        self.completion = completion
        self.gas_used = gas_used
        self.nonce = nonce
        self.pending_calls = 0
        self.estimate_calls: list[tuple[int, int]] = []
        self.nonce_calls = 0
        self.submissions: list[dict[str, int]] = []
        self.pending_error: Exception | None = None
        self.submit_error: Exception | None = None

    def has_pending_work(self) -> bool:
        self.pending_calls += 1
        if self.pending_error is not None:
            raise self.pending_error
        if isinstance(self._pending, list):
            return self._pending.pop(0) if self._pending else False
        return self._pending

    def estimate_cost(self, iterations: int, cost_ceiling: int) -> EstimateResult:
        self.estimate_calls.append((iterations, cost_ceiling))
        return self._estimate(iterations)

    def get_next_sequence_number(self) -> int:
        self.nonce_calls += 1
        return self.nonce

    def submit(self, *, iterations: int, cost_limit: int, price: int, sequence_number: int) -> SubmissionReceipt:
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append(
            {
                "iterations": iterations,
                "cost_limit": cost_limit,
                "price": price,
                "sequence_number": sequence_number,
            }
        )
        return SubmissionReceipt(tx_hash="0xabc", gas_used=self.gas_used, completion=self.completion)


class FakePriceSource:
    def __init__(self, name: str, wei: int | None = None, error: Exception | None = None) -> None:
        self.name = name
        self.wei = wei
        self.error = error
        self.fetch_calls = 0

    def fetch(self) -> Any:
        self.fetch_calls += 1
        if self.error is not None:
            raise self.error
        return self.wei

    def prices(self, payload: Any) -> dict[PriceLevel, int]:
        return {level: int(payload) for level in PriceLevel}
