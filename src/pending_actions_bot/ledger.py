from __future__ import annotations

import logging
from typing import Any

from eth_account import Account
from web3 import Web3
from web3.logs import DISCARD

from pending_actions_bot.models import (
    BudgetExceeded,
    CompletionSignal,
    ConfigError,
    CostEstimate,
    EstimateFailed,
    EstimateResult,
    PredicateQueryError,
    SubmissionError,
    SubmissionReceipt,
    parse_int,
)

LOGGER = logging.getLogger("pending_actions_bot")

PENDING_ACTIONS_PROCESSED_EVENT = "PendingActionsProcessed"

POOLED_STAKING_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "hasPendingActions",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "maxIterations", "type": "uint256"}],
        "name": "processPendingActions",
        "outputs": [{"internalType": "bool", "name": "finished", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": False, "internalType": "bool", "name": "finished", "type": "bool"}],
        "name": PENDING_ACTIONS_PROCESSED_EVENT,
        "type": "event",
    },
]

# Node error fragments meaning "this much work does not fit in the gas allowance".
_BUDGET_EXCEEDED_MARKERS = (
    "gas required exceeds",
    "exceeds allowance",
    "out of gas",
    "exceeds block gas limit",
)


def build_web3(provider_url: str, timeout_seconds: float = 10.0) -> Web3:
    provider = Web3.HTTPProvider(
        provider_url,
        request_kwargs={"timeout": max(5.0, float(timeout_seconds))},
    )
    return Web3(provider)


def is_budget_exceeded_error(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _BUDGET_EXCEEDED_MARKERS)


def _receipt_field(receipt: Any, key: str) -> Any:
    if isinstance(receipt, dict):
        return receipt.get(key)
    getter = getattr(receipt, "get", None)
    if callable(getter):
        return getter(key)
    return getattr(receipt, key, None)


def _as_hex(value: Any) -> str:
    if isinstance(value, bytes):
        return "0x" + value.hex()
    if hasattr(value, "hex"):
        text = str(value.hex())
        return text if text.startswith("0x") else "0x" + text
    return str(value)


class BaseLedgerClient:
    address: str = ""

    def preflight(self) -> None:
        return

    def has_pending_work(self) -> bool:
        raise NotImplementedError

    def estimate_cost(self, iterations: int, cost_ceiling: int) -> EstimateResult:
        raise NotImplementedError

    def submit(self, *, iterations: int, cost_limit: int, price: int, sequence_number: int) -> SubmissionReceipt:
        raise NotImplementedError

    def get_next_sequence_number(self) -> int:
        raise NotImplementedError


class PooledStakingClient(BaseLedgerClient):
    def __init__(
        self,
        w3: Any,
        contract: Any,
        private_key: str,
        *,
        chain_id: int = 1,
        receipt_timeout_seconds: float = 600.0,
    ) -> None:
        self.w3 = w3
        self.contract = contract
        self.chain_id = int(chain_id)
        self.receipt_timeout_seconds = float(receipt_timeout_seconds)
        self._private_key = private_key
        self.address = Account.from_key(private_key).address

    def preflight(self) -> None:
        try:
            remote_chain_id = int(self.w3.eth.chain_id)
        except Exception as exc:
            raise ConfigError(f"unable to reach provider: {exc}") from exc
        if remote_chain_id != self.chain_id:
            raise ConfigError(f"provider chain_id={remote_chain_id} does not match CHAIN_ID={self.chain_id}")

    def has_pending_work(self) -> bool:
        try:
            return bool(self.contract.functions.hasPendingActions().call())
        except Exception as exc:
            raise PredicateQueryError(f"hasPendingActions call failed: {exc}") from exc

    def estimate_cost(self, iterations: int, cost_ceiling: int) -> EstimateResult:
        try:
            fn = self.contract.functions.processPendingActions(int(iterations))
            gas = int(fn.estimate_gas({"from": self.address, "gas": int(cost_ceiling)}))
        except Exception as exc:
            if is_budget_exceeded_error(exc):
                return BudgetExceeded(iterations=int(iterations), detail=str(exc))
            return EstimateFailed(detail=f"{exc.__class__.__name__}: {exc}")
        if gas > cost_ceiling:
            return BudgetExceeded(iterations=int(iterations), detail=f"estimate {gas} > ceiling {cost_ceiling}")
        return CostEstimate(cost=gas)

    def get_next_sequence_number(self) -> int:
        try:
            return int(self.w3.eth.get_transaction_count(self.address, "pending"))
        except Exception as exc:
            raise SubmissionError(f"unable to read nonce for {self.address}: {exc}") from exc

    def _sign(self, tx: dict[str, Any]) -> bytes:
        signed = Account.sign_transaction(tx, self._private_key)
        raw_tx = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise RuntimeError("unable to access signed raw transaction")
        return raw_tx

    def submit(self, *, iterations: int, cost_limit: int, price: int, sequence_number: int) -> SubmissionReceipt:
        try:
            fn = self.contract.functions.processPendingActions(int(iterations))
            tx = fn.build_transaction(
                {
                    "from": self.address,
                    "nonce": int(sequence_number),
                    "chainId": self.chain_id,
                    "gas": int(cost_limit),
                    "gasPrice": int(price),
                }
            )
            tx_hash = self.w3.eth.send_raw_transaction(self._sign(tx))
        except Exception as exc:
            raise SubmissionError(f"processPendingActions send failed: {exc}") from exc

        tx_hex = _as_hex(tx_hash)
        LOGGER.info(
            "tx_sent hash=%s nonce=%s iterations=%s gas_limit=%s gas_price=%s",
            tx_hex,
            sequence_number,
            iterations,
            cost_limit,
            price,
        )
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout_seconds)
        except Exception as exc:
            raise SubmissionError(f"no receipt for tx={tx_hex}: {exc}") from exc

        if parse_int(_receipt_field(receipt, "status")) != 1:
            raise SubmissionError(f"tx={tx_hex} reverted")
        return SubmissionReceipt(
            tx_hash=tx_hex,
            gas_used=parse_int(_receipt_field(receipt, "gasUsed")),
            completion=self._completion_signal(receipt),
        )

    def _completion_signal(self, receipt: Any) -> CompletionSignal | None:
        try:
            event = getattr(self.contract.events, PENDING_ACTIONS_PROCESSED_EVENT)()
            logs = event.process_receipt(receipt, errors=DISCARD)
        except Exception as exc:
            LOGGER.warning("completion_signal_decode_failed error=%s", exc)
            return None
        for log in logs:
            args = log["args"]
            if "finished" in args:
                return CompletionSignal(finished=bool(args["finished"]))
        return None


class DryRunLedgerClient(BaseLedgerClient):
    """Reads from the live contract but never broadcasts a transaction."""

    def __init__(self, live: BaseLedgerClient) -> None:
        self.live = live
        self.address = live.address
        self.submissions: list[dict[str, int]] = []

    def preflight(self) -> None:
        self.live.preflight()

    def has_pending_work(self) -> bool:
        return self.live.has_pending_work()

    def estimate_cost(self, iterations: int, cost_ceiling: int) -> EstimateResult:
        return self.live.estimate_cost(iterations, cost_ceiling)

    def get_next_sequence_number(self) -> int:
        return self.live.get_next_sequence_number()

    def submit(self, *, iterations: int, cost_limit: int, price: int, sequence_number: int) -> SubmissionReceipt:
        payload = {
            "iterations": int(iterations),
            "cost_limit": int(cost_limit),
            "price": int(price),
            "sequence_number": int(sequence_number),
        }
        self.submissions.append(payload)
        LOGGER.info(
            "dry_run_submit iterations=%s gas_limit=%s gas_price=%s nonce=%s",
            iterations,
            cost_limit,
            price,
            sequence_number,
        )
        # Report the queue as drained so the driver idles instead of resubmitting.
        return SubmissionReceipt(tx_hash="dry-run", gas_used=0, completion=CompletionSignal(finished=True))
