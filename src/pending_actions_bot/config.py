from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import os

from pending_actions_bot.models import ConfigError, PriceLevel

GWEI_IN_WEI = 10**9

DEFAULT_VERSION_DATA_URL = "https://api.nexusmutual.io/version-data/data.json"
DEFAULT_ETHGASSTATION_URL = "https://ethgasstation.info/json/ethgasAPI.json"
DEFAULT_ETHERCHAIN_URL = "https://www.etherchain.org/api/gasPriceOracle"

PRICE_SOURCE_NAMES = ("ethgasstation", "etherchain", "node")


@dataclass(frozen=True)
class KeeperConfig:
    mode: str
    private_key: str
    provider_url: str
    chain_id: int
    master_address: str
    pooled_staking_abi: str
    version_data_url: str

    poll_interval_seconds: float
    default_iterations: int
    max_gas: int
    max_gas_price_wei: int | None
    gas_limit_margin_pct: int

    gas_price_level: PriceLevel
    gas_price_primary: str
    gas_price_fallback: str | None
    ethgasstation_url: str
    etherchain_url: str

    api_timeout_seconds: float
    receipt_timeout_seconds: float
    log_level: str

    @property
    def live_mode(self) -> bool:
        return self.mode.lower() == "live"

    @property
    def dry_run(self) -> bool:
        return not self.live_mode

    @property
    def price_ceiling_enabled(self) -> bool:
        return self.max_gas_price_wei is not None


def _require_env(key: str) -> str:
    value = os.getenv(key, "").strip()
    if not value:
        raise ConfigError(f"Missing env var: {key}")
    return value


def _env_int(key: str, default: int, minimum: int | None = None) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    if minimum is not None and value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _env_float(key: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def gwei_to_wei(raw: str | int | float | Decimal) -> int:
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValueError(f"invalid gwei amount {raw!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"invalid gwei amount {raw!r}")
    return int(amount * GWEI_IN_WEI)


def _parse_price_ceiling() -> int | None:
    raw = os.getenv("MAX_GAS_PRICE_GWEI", "").strip()
    if not raw:
        return None
    try:
        wei = gwei_to_wei(raw)
    except ValueError as exc:
        raise ConfigError(f"MAX_GAS_PRICE_GWEI must be a number, got {raw!r}") from exc
    if wei <= 0:
        raise ConfigError("MAX_GAS_PRICE_GWEI must be > 0")
    return wei


def _parse_source_name(key: str, default: str, *, allow_none: bool) -> str | None:
    value = os.getenv(key, default).strip().lower() or default
    if allow_none and value in {"none", "off", "disabled"}:
        return None
    if value not in PRICE_SOURCE_NAMES:
        raise ConfigError(f"{key} must be one of {', '.join(PRICE_SOURCE_NAMES)}, got {value!r}")
    return value


def load_config() -> KeeperConfig:
    mode = os.getenv("KEEPER_MODE", "live").strip().lower() or "live"
    if mode not in {"live", "dry-run"}:
        raise ConfigError(f"KEEPER_MODE must be live or dry-run, got {mode!r}")
    try:
        level = PriceLevel.parse(os.getenv("GAS_PRICE_LEVEL", PriceLevel.ABOVE_STANDARD.value))
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    primary = _parse_source_name("GAS_PRICE_PRIMARY", "ethgasstation", allow_none=False)
    fallback = _parse_source_name("GAS_PRICE_FALLBACK", "etherchain", allow_none=True)
    if fallback == primary:
        fallback = None

    return KeeperConfig(
        mode=mode,
        private_key=_require_env("PRIVATE_KEY"),
        provider_url=_require_env("PROVIDER_URL"),
        chain_id=_env_int("CHAIN_ID", 1, minimum=1),
        master_address=os.getenv("MASTER_ADDRESS", "").strip(),
        pooled_staking_abi=os.getenv("POOLED_STAKING_ABI", "").strip(),
        version_data_url=os.getenv("VERSION_DATA_URL", DEFAULT_VERSION_DATA_URL).strip(),
        poll_interval_seconds=_env_int("POLL_INTERVAL_MILLIS", 60_000, minimum=0) / 1000.0,
        default_iterations=_env_int("DEFAULT_ITERATIONS", 100, minimum=1),
        max_gas=_env_int("MAX_GAS", 6_000_000, minimum=1),
        max_gas_price_wei=_parse_price_ceiling(),
        gas_limit_margin_pct=_env_int("GAS_LIMIT_MARGIN_PCT", 10, minimum=0),
        gas_price_level=level,
        gas_price_primary=str(primary),
        gas_price_fallback=fallback,
        ethgasstation_url=os.getenv("ETHGASSTATION_URL", DEFAULT_ETHGASSTATION_URL).strip(),
        etherchain_url=os.getenv("ETHERCHAIN_URL", DEFAULT_ETHERCHAIN_URL).strip(),
        api_timeout_seconds=_env_float("API_TIMEOUT_SECONDS", 10.0, minimum=0.1),
        receipt_timeout_seconds=_env_float("RECEIPT_TIMEOUT_SECONDS", 600.0, minimum=1.0),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
