"""Load the deployment file: contract addresses, tokens and seed prices.

The file is JSON or YAML (chosen by extension). An explicit path (from
`KB_DEPLOYMENT_FILE`) wins; otherwise the first existing default candidate
is used. Layout:

    contracts: {Router: 0x.., AccessControl: 0x..}
    tokens: {TKN: {address: 0x.., decimals: 18}}
    initialPrices: {ETH: "2000", TKN: "1.5"}

ETH always maps to the zero address.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import yaml

from keeperbot.ledger.errors import StartupError
from keeperbot.ledger.models import ZERO_ADDRESS

DEFAULT_CANDIDATES = (
    "config/anvil_upgradeable-config.json",
    "config/anvil_final-config.json",
    "config/upgradeable-config.json",
    "config/deployment.yaml",
)

NATIVE_SYMBOL = "ETH"


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    address: str
    decimals: int = 18


@dataclass(frozen=True)
class DeploymentConfig:
    source: str
    router: str
    access_control: Optional[str]
    tokens: Dict[str, TokenInfo] = field(default_factory=dict)
    initial_prices: Dict[str, Decimal] = field(default_factory=dict)

    def asset_addresses(self) -> Dict[str, str]:
        """symbol -> address, native asset included."""
        out = {NATIVE_SYMBOL: ZERO_ADDRESS}
        out.update({s: t.address for s, t in self.tokens.items()})
        return out

    def token_decimals(self) -> Dict[str, int]:
        return {t.address.lower(): t.decimals for t in self.tokens.values()}

    def seed_prices(self) -> Dict[str, Decimal]:
        """Seed price for every tracked symbol; unlisted symbols start at 1."""
        return {s: self.initial_prices.get(s, Decimal("1")) for s in self.asset_addresses()}


def find_deployment_file(explicit: Optional[str] = None, candidates: Sequence[str] = DEFAULT_CANDIDATES) -> Path:
    if explicit:
        p = Path(explicit)
        if not p.exists():
            raise StartupError(f"Deployment file not found: {explicit}")
        return p
    for candidate in candidates:
        p = Path(candidate)
        if p.exists():
            return p
    raise StartupError(f"No deployment file found (tried {', '.join(candidates)}); set KB_DEPLOYMENT_FILE")


def _read(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        try:
            if path.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(fh)
            else:
                data = json.load(fh)
        except (ValueError, yaml.YAMLError) as exc:
            raise StartupError(f"Cannot parse deployment file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise StartupError(f"Deployment file {path} must contain a mapping")
    return data


def load_deployment(explicit: Optional[str] = None, candidates: Sequence[str] = DEFAULT_CANDIDATES) -> DeploymentConfig:
    path = find_deployment_file(explicit, candidates)
    data = _read(path)

    contracts = data.get("contracts") or {}
    router = contracts.get("Router")
    if not router:
        raise StartupError(f"{path}: contracts.Router is required")

    tokens: Dict[str, TokenInfo] = {}
    for symbol, info in (data.get("tokens") or {}).items():
        if symbol == NATIVE_SYMBOL:
            continue
        if isinstance(info, str):
            info = {"address": info}
        if not isinstance(info, dict) or not info.get("address"):
            raise StartupError(f"{path}: token {symbol} has no address")
        tokens[symbol] = TokenInfo(symbol, info["address"], int(info.get("decimals", 18)))

    prices: Dict[str, Decimal] = {}
    for symbol, raw in (data.get("initialPrices") or {}).items():
        try:
            prices[symbol] = Decimal(str(raw))
        except InvalidOperation as exc:
            raise StartupError(f"{path}: initial price for {symbol} is not a number: {raw!r}") from exc

    return DeploymentConfig(
        source=str(path),
        router=router,
        access_control=contracts.get("AccessControl") or None,
        tokens=tokens,
        initial_prices=prices,
    )
