"""
Genesis allocation for a harness fleet.

The allocation assigns an initial balance to every participant address. It is
written once into the trust-delegate's working directory before that process
starts, and the trust-delegate only reads it at startup, so the object is
immutable once built.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple

from XT_Harness.crypto import KeyPair

GENESIS_FILENAME = "genesis.json"


@dataclass(frozen=True)
class GenesisAllocation:
    balances: Tuple[Tuple[str, int], ...]

    def __post_init__(self) -> None:
        seen = set()
        for address, amount in self.balances:
            if address in seen:
                raise ValueError(f"duplicate genesis address: {address}")
            if amount < 0:
                raise ValueError(f"negative genesis balance for {address}")
            seen.add(address)

    @property
    def supply(self) -> int:
        return sum(amount for _, amount in self.balances)

    def balance_of(self, address: str) -> int:
        for addr, amount in self.balances:
            if addr == address:
                return amount
        raise KeyError(address)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "supply": self.supply,
            "balances": [[address, amount] for address, amount in self.balances],
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "GenesisAllocation":
        return GenesisAllocation(
            balances=tuple((str(address), int(amount)) for address, amount in data.get("balances", []))
        )


def build_allocation(keypairs: Iterable[KeyPair], initial_balance: int) -> GenesisAllocation:
    return GenesisAllocation(balances=tuple((kp.address, int(initial_balance)) for kp in keypairs))


def save_genesis(allocation: GenesisAllocation, directory: str | Path) -> Path:
    path = Path(directory) / GENESIS_FILENAME
    path.write_text(json.dumps(allocation.to_dict(), indent=2), encoding="utf-8")
    return path


def load_genesis(path: str | Path) -> GenesisAllocation:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return GenesisAllocation.from_dict(data)
