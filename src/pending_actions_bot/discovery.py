from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any

from web3 import Web3

from pending_actions_bot.http_utils import get_json
from pending_actions_bot.ledger import POOLED_STAKING_ABI
from pending_actions_bot.models import DiscoveryError

LOGGER = logging.getLogger("pending_actions_bot")

MASTER_CODE = "NXMASTER"
POOLED_STAKING_CODE = "PS"

KEEPER_FUNCTIONS = (
    ("hasPendingActions", ()),
    ("processPendingActions", ("uint256",)),
)

NXMASTER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"internalType": "bytes2", "name": "_contractName", "type": "bytes2"}],
        "name": "getLatestAddress",
        "outputs": [{"internalType": "address payable", "name": "contractAddress", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    }
]


@dataclass(frozen=True)
class ContractTarget:
    master_address: str
    pooled_staking_address: str
    pooled_staking_abi: list[dict[str, Any]]


def find_contract_entry(version_data: Any, code: str, network: str = "mainnet") -> dict[str, Any] | None:
    if not isinstance(version_data, dict):
        return None
    section = version_data.get(network)
    abis = section.get("abis") if isinstance(section, dict) else None
    if not isinstance(abis, list):
        return None
    for entry in abis:
        if isinstance(entry, dict) and entry.get("code") == code:
            return entry
    return None


def _parse_abi(raw: Any, label: str) -> list[dict[str, Any]]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DiscoveryError(f"{label} ABI is not valid JSON") from exc
    if not isinstance(raw, list):
        raise DiscoveryError(f"{label} ABI must be a JSON array")
    return raw


def entry_abi(entry: dict[str, Any] | None) -> list[dict[str, Any]] | None:
    """Version data spells the key either contractAbi or contractABI, as a JSON string."""
    if not entry:
        return None
    raw = entry.get("contractAbi") or entry.get("contractABI")
    if raw is None:
        return None
    return _parse_abi(raw, str(entry.get("code")))


def missing_keeper_functions(abi: list[dict[str, Any]]) -> list[str]:
    """Signatures from KEEPER_FUNCTIONS that the ABI does not declare."""
    declared = set()
    for item in abi:
        if not isinstance(item, dict) or item.get("type", "function") != "function":
            continue
        inputs = tuple(str(arg.get("type")) for arg in item.get("inputs") or [] if isinstance(arg, dict))
        declared.add((item.get("name"), inputs))
    return [f"{name}({','.join(inputs)})" for name, inputs in KEEPER_FUNCTIONS if (name, inputs) not in declared]


def select_pooled_staking_abi(version_data: Any, abi_override: str = "") -> list[dict[str, Any]]:
    candidates: list[tuple[str, list[dict[str, Any]] | None]] = [
        ("version_data", entry_abi(find_contract_entry(version_data, POOLED_STAKING_CODE))),
        ("env", _parse_abi(abi_override, "POOLED_STAKING_ABI") if abi_override else None),
    ]
    for source, abi in candidates:
        if abi is None:
            continue
        missing = missing_keeper_functions(abi)
        if missing:
            LOGGER.warning("pooled_staking_abi_rejected source=%s missing=%s", source, ",".join(missing))
            continue
        LOGGER.info("pooled_staking_abi source=%s", source)
        return abi
    LOGGER.info("pooled_staking_abi source=builtin")
    return POOLED_STAKING_ABI


def fetch_version_data(url: str, timeout_seconds: float = 10.0) -> Any:
    LOGGER.info("Loading latest master address from %s", url)
    try:
        return get_json(url, timeout=timeout_seconds)
    except Exception as exc:
        raise DiscoveryError(f"unable to load version data from {url}: {exc}") from exc


def resolve_contracts(
    w3: Any,
    *,
    version_data: Any,
    master_address_override: str = "",
    abi_override: str = "",
) -> ContractTarget:
    master_entry = find_contract_entry(version_data, MASTER_CODE)
    master_address = master_address_override or str((master_entry or {}).get("address") or "")
    if not master_address:
        raise DiscoveryError("NXMaster address not found in version data and MASTER_ADDRESS not set")
    try:
        master_address = Web3.to_checksum_address(master_address)
    except ValueError as exc:
        raise DiscoveryError(f"invalid NXMaster address {master_address!r}") from exc
    LOGGER.info("Using NXMaster at address: %s", master_address)

    master_abi = entry_abi(master_entry) or NXMASTER_ABI
    master = w3.eth.contract(address=master_address, abi=master_abi)
    try:
        ps_address = master.functions.getLatestAddress(POOLED_STAKING_CODE.encode("ascii")).call()
    except Exception as exc:
        raise DiscoveryError(f"getLatestAddress(PS) failed: {exc}") from exc
    ps_address = Web3.to_checksum_address(ps_address)
    LOGGER.info("Using PooledStaking at: %s", ps_address)

    ps_abi = select_pooled_staking_abi(version_data, abi_override)
    return ContractTarget(
        master_address=master_address,
        pooled_staking_address=ps_address,
        pooled_staking_abi=ps_abi,
    )
