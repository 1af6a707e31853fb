from __future__ import annotations

import unittest
from unittest.mock import patch

from tests.helpers import FakeLedger, FakePriceSource, test_config

from pending_actions_bot.controller import ControllerSettings, SubmissionController
from pending_actions_bot.gas_price import GasPriceOracle
from pending_actions_bot.main import KeeperRuntime, build_parser, cli
from pending_actions_bot.models import (
    BudgetExceeded,
    CompletionSignal,
    ConfigError,
    CycleOutcome,
    CycleStatus,
    DrainState,
)


class _ScriptedController:
    def __init__(self, outcomes: list[CycleOutcome | Exception]) -> None:
        self.outcomes = outcomes
        self.states: list[DrainState] = []
        self.ledger = FakeLedger()

    def run_cycle(self, state: DrainState) -> CycleOutcome:
        self.states.append(state)
        item = self.outcomes.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class _StopAfter:
    def __init__(self, runtime_ref: list[KeeperRuntime], stop_after: int) -> None:
        self.runtime_ref = runtime_ref
        self.stop_after = stop_after
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if len(self.calls) >= self.stop_after:
            self.runtime_ref[0].stop()


def _submitted(continues: bool) -> CycleOutcome:
    return CycleOutcome(
        status=CycleStatus.SUBMITTED,
        next_state=DrainState(has_pending_work=True) if continues else DrainState(),
        cost_used=1,
        price_used=1,
        continues=continues,
    )


class KeeperRuntimeTests(unittest.TestCase):
    def _runtime(self, controller, stop_after: int) -> tuple[KeeperRuntime, _StopAfter]:
        ref: list[KeeperRuntime] = []
        sleeper = _StopAfter(ref, stop_after)
        runtime = KeeperRuntime(test_config(poll_interval_seconds=5.0), controller, sleep=sleeper)
        ref.append(runtime)
        return runtime, sleeper

    def test_idle_cycle_sleeps_poll_interval(self) -> None:
        controller = _ScriptedController([CycleOutcome.idle()])
        runtime, sleeper = self._runtime(controller, stop_after=1)
        runtime.run()
        self.assertEqual(sleeper.calls, [5.0])
        self.assertEqual(len(controller.states), 1)

    def test_continuing_submission_does_not_sleep(self) -> None:
        controller = _ScriptedController(
            [_submitted(True), _submitted(True), _submitted(False), CycleOutcome.idle()]
        )
        runtime, sleeper = self._runtime(controller, stop_after=1)
        runtime.run()
        self.assertEqual(sleeper.calls, [5.0])
        self.assertEqual(len(controller.states), 3)
        self.assertIsNone(controller.states[0].has_pending_work)
        self.assertIs(controller.states[1].has_pending_work, True)
        self.assertIs(controller.states[2].has_pending_work, True)

    def test_failed_and_skipped_cycles_sleep(self) -> None:
        controller = _ScriptedController(
            [
                CycleOutcome.failed(RuntimeError("rpc down")),
                CycleOutcome.skipped("price ceiling exceeded"),
            ]
        )
        runtime, sleeper = self._runtime(controller, stop_after=2)
        runtime.run()
        self.assertEqual(sleeper.calls, [5.0, 5.0])
        self.assertEqual(runtime.state, DrainState())

    def test_escaped_error_propagates_out_of_run(self) -> None:
        controller = _ScriptedController([RuntimeError("unexpected")])
        runtime, _ = self._runtime(controller, stop_after=10)
        with self.assertRaises(RuntimeError):
            runtime.run()

    def test_end_to_end_unsizable_batch_sleeps_then_retries(self) -> None:
        ledger = FakeLedger(
            pending=True,
            estimate=lambda iterations: BudgetExceeded(iterations=iterations),
            completion=CompletionSignal(finished=True),
        )
        controller = SubmissionController(
            ledger=ledger,
            oracle=GasPriceOracle(FakePriceSource("primary", wei=20)),
            settings=ControllerSettings(default_iterations=4, max_cost=100, max_price=30),
        )
        runtime, sleeper = self._runtime(controller, stop_after=2)
        with self.assertLogs("pending_actions_bot", level="ERROR"):
            runtime.run()
        self.assertEqual(sleeper.calls, [5.0, 5.0])
        self.assertEqual(ledger.pending_calls, 2)
        self.assertEqual([n for n, _ in ledger.estimate_calls], [4, 2, 1, 4, 2, 1])
        self.assertEqual(ledger.submissions, [])


class CliTests(unittest.TestCase):
    def test_parser_accepts_run_options(self) -> None:
        args = build_parser().parse_args(["run", "--mode", "dry-run", "--iterations", "25"])
        self.assertEqual(args.command, "run")
        self.assertEqual(args.mode, "dry-run")
        self.assertEqual(args.iterations, 25)

    def test_run_exits_non_zero_on_missing_config(self) -> None:
        with patch.dict("os.environ", {}, clear=True):
            with self.assertLogs("pending_actions_bot", level="ERROR"):
                code = cli(["run"])
        self.assertEqual(code, 2)

    def test_run_exits_non_zero_when_startup_fails(self) -> None:
        env = {"PRIVATE_KEY": "0x" + "11" * 32, "PROVIDER_URL": "http://127.0.0.1:1"}
        with patch.dict("os.environ", env, clear=True):
            with patch("pending_actions_bot.main.build_controller", side_effect=OSError("connection refused")):
                with self.assertLogs("pending_actions_bot", level="ERROR"):
                    code = cli(["run"])
        self.assertEqual(code, 2)

    def test_run_exits_non_zero_on_escaped_error(self) -> None:
        env = {"PRIVATE_KEY": "0x" + "11" * 32, "PROVIDER_URL": "http://127.0.0.1:1"}
        controller = _ScriptedController([ZeroDivisionError("bug")])
        with patch.dict("os.environ", env, clear=True):
            with patch("pending_actions_bot.main.build_controller", return_value=(controller, "0xps")):
                with patch("pending_actions_bot.main.signal.signal"):
                    with self.assertLogs("pending_actions_bot", level="ERROR") as logs:
                        code = cli(["run"])
        self.assertEqual(code, 2)
        self.assertTrue(any("Unhandled app error" in line for line in logs.output))

    def test_check_runs_preflight_before_reads(self) -> None:
        env = {"PRIVATE_KEY": "0x" + "11" * 32, "PROVIDER_URL": "http://127.0.0.1:1"}
        controller = _ScriptedController([])
        wrong_chain = ConfigError("provider chain_id=5 does not match CHAIN_ID=1")
        with patch.dict("os.environ", env, clear=True):
            with patch("pending_actions_bot.main.build_controller", return_value=(controller, "0xps")):
                with patch.object(controller.ledger, "preflight", side_effect=wrong_chain):
                    with self.assertLogs("pending_actions_bot", level="ERROR") as logs:
                        code = cli(["check"])
        self.assertEqual(code, 2)
        self.assertEqual(controller.ledger.pending_calls, 0)
        self.assertTrue(any("chain_id=5" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
