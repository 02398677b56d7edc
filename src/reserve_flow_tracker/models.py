"""Domain models shared by the chain adapters and the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from reserve_flow_tracker.flows import units

UNKNOWN_ENTITY = "unknown"


class ChainKind(str, Enum):
    """Closed set of supported ledger protocols."""

    BITCOIN = "bitcoin"
    EVM = "evm"
    SOLANA = "solana"
    TRON = "tron"


@dataclass(frozen=True)
class AddressRow:
    """One address an entity claims to control on one chain."""

    entity: str
    chain: str
    address: str

    @property
    def entity_or_unknown(self) -> str:
        return self.entity.strip() or UNKNOWN_ENTITY


@dataclass(frozen=True)
class Asset:
    """A trackable asset on a chain.

    ``contract`` is the token contract / mint for token assets and ``None``
    for the chain's native coin. ``decimals`` is only set where the exponent
    is fixed by the chain; token exponents are discovered per call.
    """

    symbol: str
    contract: str | None = None
    decimals: int | None = None

    @property
    def is_native(self) -> bool:
        return self.contract is None


@dataclass(frozen=True)
class Snapshot:
    """A balance of one asset, already converted from base units."""

    chain: str
    symbol: str
    amount: Decimal
    decimals: int


@dataclass
class Portfolio:
    """Balance snapshot of one entity: holdings summed per (chain, symbol)."""

    entity: str
    holdings: dict[tuple[str, str], Snapshot] = field(default_factory=dict)

    def add(self, snapshot: Snapshot) -> None:
        key = (snapshot.chain, snapshot.symbol)
        current = self.holdings.get(key)
        if current is None:
            self.holdings[key] = snapshot
            return
        self.holdings[key] = Snapshot(
            chain=snapshot.chain,
            symbol=snapshot.symbol,
            amount=units.add(current.amount, snapshot.amount),
            decimals=max(current.decimals, snapshot.decimals),
        )
