"""
Minimal ABI fragments for the router proxy and the access-control contract.

Only the functions the keeper and feeder call are listed. Struct outputs are
declared with named components; the adapter decodes them by name, so a
deployment with a different field order only needs a different ABI file
(KB_ROUTER_ABI_PATH), not code changes.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

ORDER_COMPONENTS: List[Dict[str, str]] = [
    {"name": "user", "type": "address"},
    {"name": "tokenIn", "type": "address"},
    {"name": "tokenOut", "type": "address"},
    {"name": "amountIn", "type": "uint256"},
    {"name": "targetPrice", "type": "uint256"},
    {"name": "minAmountOut", "type": "uint256"},
    {"name": "orderType", "type": "uint8"},
    {"name": "isLong", "type": "bool"},
    {"name": "executed", "type": "bool"},
    {"name": "createdAt", "type": "uint256"},
    {"name": "triggeredAt", "type": "uint256"},
    {"name": "slippage", "type": "uint256"},
]

POSITION_COMPONENTS: List[Dict[str, str]] = [
    {"name": "user", "type": "address"},
    {"name": "token", "type": "address"},
    {"name": "collateral", "type": "uint256"},
    {"name": "leverage", "type": "uint256"},
    {"name": "entryPrice", "type": "uint256"},
    {"name": "positionType", "type": "uint8"},
    {"name": "isOpen", "type": "bool"},
]


def _view(name: str, inputs: List[Dict[str, str]], outputs: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": inputs,
        "outputs": outputs,
    }


def _write(name: str, inputs: List[Dict[str, str]]) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "nonpayable",
        "inputs": inputs,
        "outputs": [],
    }


_ID = [{"name": "id", "type": "uint256"}]

ROUTER_ABI: List[Dict[str, Any]] = [
    _view("getOrder", _ID, [{"name": "", "type": "tuple", "components": ORDER_COMPONENTS}]),
    _view("getPosition", _ID, [{"name": "", "type": "tuple", "components": POSITION_COMPONENTS}]),
    _view("getNextOrderId", [], [{"name": "", "type": "uint256"}]),
    _view("getNextPositionId", [], [{"name": "", "type": "uint256"}]),
    _view("getPrice", [{"name": "token", "type": "address"}], [{"name": "", "type": "uint256"}]),
    _view("shouldExecuteOrder", _ID, [{"name": "", "type": "bool"}]),
    _write("selfExecuteOrder", _ID),
    _write("liquidatePosition", _ID),
    _write("updateOraclePrice", [
        {"name": "token", "type": "address"},
        {"name": "price", "type": "uint256"},
    ]),
]

ACCESS_CONTROL_ABI: List[Dict[str, Any]] = [
    _view("emergencyStop", [], [{"name": "", "type": "bool"}]),
]


def load_abi(path: Optional[str], default: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Load an ABI from a JSON file (bare list or Hardhat artifact), else return `default`."""
    if not path:
        return default
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict) and "abi" in data:
        data = data["abi"]
    if not isinstance(data, list):
        raise ValueError(f"ABI file {path} does not contain a list")
    return data


def output_names(abi: List[Dict[str, Any]], fn_name: str) -> List[str]:
    """Component names of a function's single struct output."""
    for entry in abi:
        if entry.get("type") == "function" and entry.get("name") == fn_name:
            outputs = entry.get("outputs") or []
            if len(outputs) == 1 and outputs[0].get("components"):
                return [c["name"] for c in outputs[0]["components"]]
            return [o.get("name", "") for o in outputs]
    raise KeyError(fn_name)
