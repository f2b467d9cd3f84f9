"""
positions.py - Read-side position snapshots for the leaderboard

A PositionSnapshot is one user's position in one source, as fetched for a
single leaderboard build. Snapshots come from two places:

1. The local entry store (positions_from_store), with the real accrual
   rule and boost window attached, so projections equal estimate() exactly
2. External indexer records (snapshot_from_record), which only carry a
   marks-per-day rate; projection then uses the implied per-dollar rate

Adapter functions translate between representations; project_snapshot is
the pure calculation.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .core import (
    AccrualRule, BoostWindow, ContractType, LedgerEntry,
    Address, Timestamp,
    ZERO,
    from_e18, normalize_address, to_decimal,
)
from .estimator import estimate


class PositionCategory(Enum):
    """The four position sources merged by the leaderboard."""
    GENESIS = "genesis"
    HA_TOKEN = "haToken"
    STABILITY_POOL = "stabilityPool"
    SAIL_TOKEN = "sailToken"


# Stability pool types as reported by the indexer.
POOL_COLLATERAL = "collateral"
POOL_ANCHOR = "anchor"
POOL_SAIL = "sail"
POOL_LEVERAGED = "leveraged"

ANCHOR_POOL_TYPES = frozenset({POOL_COLLATERAL, POOL_ANCHOR})
SAIL_POOL_TYPES = frozenset({POOL_SAIL, POOL_LEVERAGED})


@dataclass(frozen=True, slots=True)
class PositionSnapshot:
    """
    Immutable view of one position at fetch time.

    Attributes:
        category: Source the position came from
        user_address: Holder (lowercased)
        contract_address: Genesis contract, pool or token (lowercased)
        balance_usd: Deposit or balance in USD
        marks_per_day: Current daily accrual
        accumulated_marks: Marks accrued up to last_updated
        last_updated: Time accumulated_marks refers to
        genesis_ended: Period closed; no further projection
        pool_type: Stability pool type (collateral/anchor/sail/leveraged)
        rule: Accrual rule, when known
        boost: Market boost window, when known
        period_start: Entry's copied period start
        period_end: Entry's copied period end
    """
    category: PositionCategory
    user_address: Address
    contract_address: Address
    balance_usd: Decimal = ZERO
    marks_per_day: Decimal = ZERO
    accumulated_marks: Decimal = ZERO
    last_updated: Timestamp = 0
    genesis_ended: bool = False
    pool_type: Optional[str] = None
    rule: Optional[AccrualRule] = field(default=None, compare=False)
    boost: Optional[BoostWindow] = field(default=None, compare=False)
    period_start: Optional[Timestamp] = None
    period_end: Optional[Timestamp] = None

    def __post_init__(self):
        object.__setattr__(self, 'category', PositionCategory(self.category))
        object.__setattr__(self, 'user_address', normalize_address(self.user_address))
        object.__setattr__(self, 'contract_address', normalize_address(self.contract_address))
        for name in ('balance_usd', 'marks_per_day', 'accumulated_marks'):
            value = to_decimal(getattr(self, name))
            if value < 0:
                raise ValueError(f"PositionSnapshot.{name} must be >= 0, got {value}")
            object.__setattr__(self, name, value)
        if self.pool_type is not None:
            object.__setattr__(self, 'pool_type', str(self.pool_type).strip().lower())


@dataclass(frozen=True, slots=True)
class LeaderboardSources:
    """
    The four source lists of one leaderboard build.

    Missing categories are empty lists; a build never fails on absent data.
    """
    genesis: tuple = ()
    ha_balances: tuple = ()
    pool_deposits: tuple = ()
    sail_balances: tuple = ()

    def __post_init__(self):
        for name in ('genesis', 'ha_balances', 'pool_deposits', 'sail_balances'):
            object.__setattr__(self, name, tuple(getattr(self, name) or ()))

    @classmethod
    def from_mapping(cls, sources: Optional[Mapping[str, Any]]) -> 'LeaderboardSources':
        """
        Build from a dict keyed like the indexer API.

        Accepts camelCase (haBalances, poolDeposits, sailBalances) or
        snake_case keys. None values and missing keys become empty lists.
        """
        sources = sources or {}

        def pick(*keys):
            for key in keys:
                if sources.get(key) is not None:
                    return sources[key]
            return ()

        return cls(
            genesis=pick('genesis'),
            ha_balances=pick('haBalances', 'ha_balances'),
            pool_deposits=pick('poolDeposits', 'pool_deposits'),
            sail_balances=pick('sailBalances', 'sail_balances'),
        )

    def __len__(self) -> int:
        return len(self.genesis) + len(self.ha_balances) + len(self.pool_deposits) + len(self.sail_balances)


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def category_for(contract_type: ContractType) -> PositionCategory:
    """Leaderboard category of a contract type. UNKNOWN counts as a pool deposit."""
    if contract_type == ContractType.GENESIS:
        return PositionCategory.GENESIS
    if contract_type == ContractType.HA_TOKEN_HOLDING:
        return PositionCategory.HA_TOKEN
    if contract_type == ContractType.SAIL_TOKEN_HOLDING:
        return PositionCategory.SAIL_TOKEN
    return PositionCategory.STABILITY_POOL


def _pool_type_for(contract_type: ContractType) -> Optional[str]:
    if contract_type == ContractType.STABILITY_POOL_COLLATERAL:
        return POOL_COLLATERAL
    if contract_type == ContractType.STABILITY_POOL_SAIL:
        return POOL_SAIL
    return None


def _contract_type_for(snapshot: PositionSnapshot) -> ContractType:
    if snapshot.category == PositionCategory.GENESIS:
        return ContractType.GENESIS
    if snapshot.category == PositionCategory.HA_TOKEN:
        return ContractType.HA_TOKEN_HOLDING
    if snapshot.category == PositionCategory.SAIL_TOKEN:
        return ContractType.SAIL_TOKEN_HOLDING
    if snapshot.pool_type in SAIL_POOL_TYPES:
        return ContractType.STABILITY_POOL_SAIL
    return ContractType.STABILITY_POOL_COLLATERAL


def snapshot_entry(
    entry: LedgerEntry,
    rule: Optional[AccrualRule] = None,
    boost: Optional[BoostWindow] = None,
) -> PositionSnapshot:
    """Snapshot of a stored ledger entry, carrying its rule and boost window."""
    return PositionSnapshot(
        category=category_for(entry.contract_type),
        user_address=entry.user_address,
        contract_address=entry.contract_address,
        balance_usd=entry.current_deposit_usd,
        marks_per_day=entry.marks_per_day,
        accumulated_marks=entry.current_marks,
        last_updated=entry.last_updated,
        genesis_ended=entry.period_ended,
        pool_type=_pool_type_for(entry.contract_type),
        rule=rule,
        boost=boost,
        period_start=entry.period_start,
        period_end=entry.period_end,
    )


def snapshot_rule(snapshot: PositionSnapshot) -> AccrualRule:
    """
    Rule used to project a snapshot.

    The attached rule when there is one; otherwise a linear rule at the
    implied rate marks_per_day / balance_usd (zero for an empty balance).
    """
    if snapshot.rule is not None:
        return snapshot.rule
    rate = ZERO
    if snapshot.balance_usd > 0:
        rate = snapshot.marks_per_day / snapshot.balance_usd
    return AccrualRule(
        contract_type=_contract_type_for(snapshot),
        rate_per_dollar_per_day=rate,
        contract_address=snapshot.contract_address,
    )


def _as_entry(snapshot: PositionSnapshot, rule: AccrualRule) -> LedgerEntry:
    return LedgerEntry(
        contract_address=snapshot.contract_address,
        user_address=snapshot.user_address,
        contract_type=rule.contract_type,
        current_deposit_usd=snapshot.balance_usd,
        current_marks=snapshot.accumulated_marks,
        marks_per_day=snapshot.marks_per_day,
        period_start=snapshot.period_start,
        period_end=snapshot.period_end,
        period_ended=snapshot.genesis_ended,
        last_updated=snapshot.last_updated,
        created_at=snapshot.last_updated,
    )


# ============================================================================
# PURE CALCULATION
# ============================================================================

def project_snapshot(snapshot: PositionSnapshot, as_of: Optional[Timestamp]) -> Decimal:
    """
    Marks of a snapshot projected to as_of.

    PURE FUNCTION. as_of=None returns the accumulated marks unprojected.
    Closed genesis positions are never projected.
    """
    if as_of is None:
        return snapshot.accumulated_marks
    rule = snapshot_rule(snapshot)
    return estimate(_as_entry(snapshot, rule), rule, as_of, snapshot.boost)


# ============================================================================
# SOURCES
# ============================================================================

def snapshot_from_record(
    record: Mapping[str, Any],
    category: PositionCategory,
    pool_type: Optional[str] = None,
    e18: bool = False,
) -> PositionSnapshot:
    """
    Snapshot from an indexer record.

    Reads user/userAddress, contractAddress, currentMarks, marksPerDay,
    currentDepositUSD (or balanceUSD), lastUpdated, genesisEnded and
    poolType. Missing numbers are zero.

    Args:
        record: Indexer record
        category: Source category of the record
        pool_type: Pool type, overriding the record's poolType
        e18: Numbers are 18-decimal fixed-point integers
    """
    def number(*keys) -> Decimal:
        for key in keys:
            value = record.get(key)
            if value is not None and value != "":
                return from_e18(int(value)) if e18 else to_decimal(value)
        return ZERO

    last_updated = record.get('lastUpdated') or 0
    return PositionSnapshot(
        category=category,
        user_address=record.get('user') or record.get('userAddress'),
        contract_address=record.get('contractAddress') or record.get('tokenAddress') or record.get('poolAddress'),
        balance_usd=number('currentDepositUSD', 'balanceUSD', 'depositUSD'),
        marks_per_day=number('marksPerDay'),
        accumulated_marks=number('currentMarks', 'accumulatedMarks'),
        last_updated=int(last_updated),
        genesis_ended=bool(record.get('genesisEnded', False)),
        pool_type=pool_type if pool_type is not None else record.get('poolType'),
    )


def positions_from_store(view, registry) -> LeaderboardSources:
    """
    Leaderboard sources built from a store view.

    Each entry carries the rule from registry.resolve_rule() (never creates
    rules) and its market boost window, so project_snapshot(s, t) equals
    estimate(entry, rule, t, boost).
    """
    buckets: Dict[PositionCategory, List[PositionSnapshot]] = {category: [] for category in PositionCategory}
    for entry in view.list_entries():
        rule = registry.resolve_rule(entry.contract_address, entry.contract_type)
        boost = registry.boost_window_for(entry.contract_type, entry.contract_address)
        snapshot = snapshot_entry(entry, rule, boost)
        buckets[snapshot.category].append(snapshot)
    return LeaderboardSources(
        genesis=buckets[PositionCategory.GENESIS],
        ha_balances=buckets[PositionCategory.HA_TOKEN],
        pool_deposits=buckets[PositionCategory.STABILITY_POOL],
        sail_balances=buckets[PositionCategory.SAIL_TOKEN],
    )
