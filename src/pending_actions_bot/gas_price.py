from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import logging
from typing import Any, Callable, Protocol

from pending_actions_bot.http_utils import get_json
from pending_actions_bot.models import PriceFetchFailed, PriceLevel, PriceQuote, PriceSource

LOGGER = logging.getLogger("pending_actions_bot")

GWEI = Decimal(10**9)


class GasPriceSource(Protocol):
    name: str

    def fetch(self) -> Any: ...

    def prices(self, payload: Any) -> dict[PriceLevel, int]: ...


def _to_wei(raw: Any, scale: Decimal, *, field: str) -> int:
    if raw is None or isinstance(raw, bool):
        raise ValueError(f"missing gas price field {field!r}")
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValueError(f"gas price field {field!r} is not numeric: {raw!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"gas price field {field!r} is not finite: {raw!r}")
    wei = int(amount * scale)
    if wei <= 0:
        raise ValueError(f"gas price field {field!r} must be > 0, got {raw!r}")
    return wei


def above_standard_price(prices: dict[PriceLevel, int]) -> int:
    return (prices[PriceLevel.FAST] + prices[PriceLevel.STANDARD]) // 2


def _with_derived_levels(prices: dict[PriceLevel, int]) -> dict[PriceLevel, int]:
    out = dict(prices)
    out[PriceLevel.ABOVE_STANDARD] = above_standard_price(out)
    return out


@dataclass
class EthGasStationSource:
    """ethgasstation.info oracle. Reports prices in tenths of a gwei."""

    url: str
    timeout_seconds: float = 10.0
    name: str = "ethgasstation"

    _FIELDS = (
        (PriceLevel.SAFE_LOW, "safeLow"),
        (PriceLevel.STANDARD, "average"),
        (PriceLevel.FAST, "fast"),
        (PriceLevel.FASTEST, "fastest"),
    )

    def fetch(self) -> Any:
        return get_json(self.url, timeout=self.timeout_seconds)

    def prices(self, payload: Any) -> dict[PriceLevel, int]:
        if not isinstance(payload, dict):
            raise ValueError("ethgasstation response must be a JSON object")
        scale = GWEI / 10
        return _with_derived_levels(
            {level: _to_wei(payload.get(key), scale, field=key) for level, key in self._FIELDS}
        )


@dataclass
class EtherchainSource:
    """etherchain.org oracle. Reports prices in gwei, usually as strings."""

    url: str
    timeout_seconds: float = 10.0
    name: str = "etherchain"

    _FIELDS = (
        (PriceLevel.SAFE_LOW, "safeLow"),
        (PriceLevel.STANDARD, "standard"),
        (PriceLevel.FAST, "fast"),
        (PriceLevel.FASTEST, "fastest"),
    )

    def fetch(self) -> Any:
        return get_json(self.url, timeout=self.timeout_seconds)

    def prices(self, payload: Any) -> dict[PriceLevel, int]:
        if not isinstance(payload, dict):
            raise ValueError("etherchain response must be a JSON object")
        return _with_derived_levels(
            {level: _to_wei(payload.get(key), GWEI, field=key) for level, key in self._FIELDS}
        )


@dataclass
class NodeGasPriceSource:
    """The connected node's eth_gasPrice, already in wei, used for every level."""

    read_gas_price: Callable[[], int]
    name: str = "node"

    def fetch(self) -> Any:
        return self.read_gas_price()

    def prices(self, payload: Any) -> dict[PriceLevel, int]:
        wei = _to_wei(payload, Decimal(1), field="gasPrice")
        return {level: wei for level in PriceLevel}


def build_source(
    name: str,
    *,
    ethgasstation_url: str,
    etherchain_url: str,
    timeout_seconds: float,
    read_node_gas_price: Callable[[], int] | None = None,
) -> GasPriceSource:
    normalized = str(name or "").strip().lower()
    if normalized == "ethgasstation":
        return EthGasStationSource(url=ethgasstation_url, timeout_seconds=timeout_seconds)
    if normalized == "etherchain":
        return EtherchainSource(url=etherchain_url, timeout_seconds=timeout_seconds)
    if normalized == "node":
        if read_node_gas_price is None:
            raise ValueError("node gas price source requires a web3 connection")
        return NodeGasPriceSource(read_gas_price=read_node_gas_price)
    raise ValueError(f"unsupported gas price source={name!r}")


class GasPriceOracle:
    def __init__(self, primary: GasPriceSource, fallback: GasPriceSource | None = None) -> None:
        self.primary = primary
        self.fallback = fallback

    @staticmethod
    def _quote(source: GasPriceSource, level: PriceLevel, tag: PriceSource) -> PriceQuote:
        prices = source.prices(source.fetch())
        return PriceQuote(amount_wei=int(prices[level]), source=tag, level=level, source_name=source.name)

    def fetch_price(self, level: PriceLevel = PriceLevel.ABOVE_STANDARD) -> PriceQuote:
        try:
            quote = self._quote(self.primary, level, PriceSource.PRIMARY)
        except Exception as exc:
            if self.fallback is None:
                raise PriceFetchFailed(f"gas price source {self.primary.name} failed: {exc}") from exc
            LOGGER.warning(
                "gas_price_fallback primary=%s error=%s; using %s",
                self.primary.name,
                exc,
                self.fallback.name,
            )
            try:
                quote = self._quote(self.fallback, level, PriceSource.FALLBACK)
            except Exception as fallback_exc:
                raise PriceFetchFailed(
                    f"gas price sources failed: {self.primary.name}: {exc}; "
                    f"{self.fallback.name}: {fallback_exc}"
                ) from fallback_exc
        LOGGER.info(
            "gas_price level=%s wei=%s gwei=%.3f source=%s tag=%s",
            level.value,
            quote.amount_wei,
            quote.amount_gwei,
            quote.source_name,
            quote.source.value,
        )
        return quote
