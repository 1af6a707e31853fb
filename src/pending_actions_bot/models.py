from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeAlias


class PriceLevel(str, Enum):
    SAFE_LOW = "safe_low"
    STANDARD = "standard"
    ABOVE_STANDARD = "above_standard"
    FAST = "fast"
    FASTEST = "fastest"

    @staticmethod
    def parse(raw: str) -> "PriceLevel":
        value = str(raw or "").strip().lower().replace("-", "_")
        aliases = {"safelow": "safe_low", "average": "standard", "abovestandard": "above_standard"}
        value = aliases.get(value, value)
        for level in PriceLevel:
            if level.value == value:
                return level
        raise ValueError(f"unsupported price level={raw!r}")


class PriceSource(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


class CycleStatus(str, Enum):
    IDLE = "idle"
    SKIPPED = "skipped"
    SUBMITTED = "submitted"
    FAILED = "failed"


class KeeperError(RuntimeError):
    """Base class for failures the submission controller recovers from."""


class ConfigError(KeeperError):
    pass


class PriceFetchFailed(KeeperError):
    pass


class BatchUnsizable(KeeperError):
    pass


class EstimationError(KeeperError):
    pass


class SubmissionError(KeeperError):
    pass


class PredicateQueryError(KeeperError):
    pass


class DiscoveryError(KeeperError):
    pass


@dataclass(frozen=True)
class PriceQuote:
    amount_wei: int
    source: PriceSource
    level: PriceLevel = PriceLevel.ABOVE_STANDARD
    source_name: str = ""

    @property
    def amount_gwei(self) -> float:
        return self.amount_wei / 1e9


@dataclass(frozen=True)
class BudgetedBatch:
    iterations: int
    estimated_cost: int


@dataclass(frozen=True)
class CostEstimate:
    cost: int


@dataclass(frozen=True)
class BudgetExceeded:
    iterations: int
    detail: str = ""


@dataclass(frozen=True)
class EstimateFailed:
    detail: str


EstimateResult: TypeAlias = CostEstimate | BudgetExceeded | EstimateFailed


@dataclass(frozen=True)
class CompletionSignal:
    finished: bool


@dataclass(frozen=True)
class SubmissionReceipt:
    tx_hash: str
    gas_used: int
    completion: CompletionSignal | None = None


@dataclass(frozen=True)
class DrainState:
    # None: unknown, the remote predicate decides.
    has_pending_work: bool | None = None


@dataclass(frozen=True)
class CycleOutcome:
    status: CycleStatus
    next_state: DrainState
    reason: str = ""
    cost_used: int | None = None
    price_used: int | None = None
    continues: bool = False
    error: Exception | None = None

    @property
    def should_sleep(self) -> bool:
        return not (self.status == CycleStatus.SUBMITTED and self.continues)

    @classmethod
    def idle(cls) -> "CycleOutcome":
        return cls(status=CycleStatus.IDLE, next_state=DrainState())

    @classmethod
    def skipped(cls, reason: str) -> "CycleOutcome":
        return cls(status=CycleStatus.SKIPPED, next_state=DrainState(), reason=reason)

    @classmethod
    def failed(cls, error: Exception) -> "CycleOutcome":
        return cls(status=CycleStatus.FAILED, next_state=DrainState(), reason=str(error), error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "cost_used": self.cost_used,
            "price_used": self.price_used,
            "continues": self.continues,
            "has_pending_work": self.next_state.has_pending_work,
        }


def parse_int(raw: Any, default: int = 0) -> int:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return default
        try:
            return int(text, 16) if text.startswith("0x") else int(text)
        except ValueError:
            return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default
