from __future__ import annotations

import argparse
from dataclasses import replace
import json
import logging
import signal
import time
from typing import Callable, Iterable

from pending_actions_bot.config import KeeperConfig, load_config
from pending_actions_bot.controller import ControllerSettings, SubmissionController
from pending_actions_bot.discovery import fetch_version_data, resolve_contracts
from pending_actions_bot.gas_price import GasPriceOracle, build_source
from pending_actions_bot.ledger import (
    BaseLedgerClient,
    DryRunLedgerClient,
    PooledStakingClient,
    build_web3,
)
from pending_actions_bot.models import CycleOutcome, CycleStatus, DrainState, KeeperError

LOGGER = logging.getLogger("pending_actions_bot")


class KeeperRuntime:
    def __init__(
        self,
        config: KeeperConfig,
        controller: SubmissionController,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.controller = controller
        self._sleep = sleep
        self._state = DrainState()
        self._cycle_counter = 0
        self._keep_running = True

    @property
    def state(self) -> DrainState:
        return self._state

    def stop(self) -> None:
        self._keep_running = False

    def preflight(self) -> None:
        self.controller.ledger.preflight()

    def run(self) -> None:
        while self._keep_running:
            outcome = self.run_once()
            if self._keep_running and outcome.should_sleep:
                self._sleep(self.config.poll_interval_seconds)

    def run_once(self) -> CycleOutcome:
        self._cycle_counter += 1
        started = time.time()
        outcome = self.controller.run_cycle(self._state)
        self._state = outcome.next_state
        self._log_outcome(outcome, elapsed=time.time() - started)
        return outcome

    def _log_outcome(self, outcome: CycleOutcome, *, elapsed: float) -> None:
        if outcome.status == CycleStatus.IDLE:
            LOGGER.info(
                "cycle=%s status=idle No pending actions present. Sleeping for %sms before checking again.",
                self._cycle_counter,
                int(self.config.poll_interval_seconds * 1000),
            )
        elif outcome.status == CycleStatus.SKIPPED:
            LOGGER.info(
                "cycle=%s status=skipped reason=%s elapsed=%.2fs",
                self._cycle_counter,
                outcome.reason,
                elapsed,
            )
        elif outcome.status == CycleStatus.SUBMITTED:
            LOGGER.info(
                "cycle=%s status=submitted gas_used=%s gas_price=%s continues=%s elapsed=%.2fs",
                self._cycle_counter,
                outcome.cost_used,
                outcome.price_used,
                outcome.continues,
                elapsed,
            )
        else:
            LOGGER.warning(
                "cycle=%s status=failed error=%s elapsed=%.2fs",
                self._cycle_counter,
                outcome.reason,
                elapsed,
            )


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("urllib3", "web3", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def build_oracle(config: KeeperConfig, w3=None) -> GasPriceOracle:
    read_node_gas_price = (lambda: int(w3.eth.gas_price)) if w3 is not None else None

    def _source(name: str):
        return build_source(
            name,
            ethgasstation_url=config.ethgasstation_url,
            etherchain_url=config.etherchain_url,
            timeout_seconds=config.api_timeout_seconds,
            read_node_gas_price=read_node_gas_price,
        )

    fallback = _source(config.gas_price_fallback) if config.gas_price_fallback else None
    return GasPriceOracle(_source(config.gas_price_primary), fallback)


def build_ledger(config: KeeperConfig, w3) -> tuple[BaseLedgerClient, str]:
    version_data = fetch_version_data(config.version_data_url, timeout_seconds=config.api_timeout_seconds)
    target = resolve_contracts(
        w3,
        version_data=version_data,
        master_address_override=config.master_address,
        abi_override=config.pooled_staking_abi,
    )
    contract = w3.eth.contract(address=target.pooled_staking_address, abi=target.pooled_staking_abi)
    ledger: BaseLedgerClient = PooledStakingClient(
        w3,
        contract,
        config.private_key,
        chain_id=config.chain_id,
        receipt_timeout_seconds=config.receipt_timeout_seconds,
    )
    if config.dry_run:
        ledger = DryRunLedgerClient(ledger)
    return ledger, target.pooled_staking_address


def build_controller(config: KeeperConfig) -> tuple[SubmissionController, str]:
    w3 = build_web3(config.provider_url, timeout_seconds=config.api_timeout_seconds)
    ledger, contract_address = build_ledger(config, w3)
    LOGGER.info("Public address: %s", ledger.address)
    controller = SubmissionController(
        ledger=ledger,
        oracle=build_oracle(config, w3),
        settings=ControllerSettings.from_config(config),
    )
    return controller, contract_address


def _load_command_config(args: argparse.Namespace) -> KeeperConfig:
    config = load_config()
    if getattr(args, "mode", None):
        config = replace(config, mode=args.mode.lower())
    iterations = getattr(args, "iterations", None)
    if iterations is not None:
        if iterations < 1:
            raise KeeperError("--iterations must be >= 1")
        config = replace(config, default_iterations=int(iterations))
    return config


def _run_command(args: argparse.Namespace) -> int:
    try:
        config = _load_command_config(args)
    except KeeperError as exc:
        _setup_logging("INFO")
        LOGGER.error(str(exc))
        return 2
    _setup_logging(config.log_level)

    try:
        controller, contract_address = build_controller(config)
        runtime = KeeperRuntime(config, controller)
        runtime.preflight()
    except Exception as exc:
        LOGGER.error("Startup failed: %s", exc)
        return 2
    LOGGER.info(
        "Starting keeper mode=%s contract=%s iterations=%s max_gas=%s max_gas_price=%s",
        config.mode,
        contract_address,
        config.default_iterations,
        config.max_gas,
        config.max_gas_price_wei,
    )
    signal_count = {"count": 0}

    def _handle_signal(signum: int, _frame: object) -> None:
        signal_count["count"] += 1
        if signal_count["count"] >= 2:
            LOGGER.error("Received signal %s again, forcing exit now", signum)
            raise SystemExit(130)
        LOGGER.warning(
            "Received signal %s, stopping after the current cycle (press Ctrl+C again to force-exit)",
            signum,
        )
        runtime.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    try:
        runtime.run()
        return 0
    except Exception:
        LOGGER.exception("Unhandled app error")
        return 2


def _check_command(args: argparse.Namespace) -> int:
    try:
        config = _load_command_config(args)
    except KeeperError as exc:
        _setup_logging("INFO")
        LOGGER.error(str(exc))
        return 2
    _setup_logging(config.log_level)
    try:
        controller, contract_address = build_controller(config)
        controller.ledger.preflight()
        has_pending = controller.ledger.has_pending_work()
        quote = controller.oracle.fetch_price(config.gas_price_level)
    except Exception as exc:
        LOGGER.error("check failed: %s", exc)
        return 2
    report = {
        "contract": contract_address,
        "address": controller.ledger.address,
        "has_pending_actions": has_pending,
        "gas_price_level": quote.level.value,
        "gas_price_wei": quote.amount_wei,
        "gas_price_source": quote.source_name,
        "gas_price_tag": quote.source.value,
        "max_gas_price_wei": config.max_gas_price_wei,
        "within_price_ceiling": (
            config.max_gas_price_wei is None or quote.amount_wei <= config.max_gas_price_wei
        ),
    }
    print(json.dumps(report, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pending_actions_bot",
        description="Keeps the PooledStaking pending-actions queue drained",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the drain loop")
    run.add_argument("--mode", choices=("live", "dry-run"), default=None)
    run.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="Starting iteration count per submission before halving (e.g. 100)",
    )
    run.set_defaults(func=_run_command)

    check = sub.add_parser("check", help="Print pending state and current gas quote as JSON")
    check.set_defaults(func=_check_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
