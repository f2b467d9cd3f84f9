"""
leaderboard.py - Cross-source marks aggregator

Merges the four position sources (genesis deposits, ha token balances,
stability pool deposits, sail token balances) into one ranked row per user.

Algorithm:
    1. Accumulate per lowercased address; the accumulator map is the
       deduplication step
    2. Skip protocol-owned contracts (known_contract_addresses)
    3. Skip positions whose projected marks and daily rate are both zero
    4. Route marks into the genesis / anchor / sail buckets
    5. Stable sort on the requested key; ties keep first-seen order
    6. Assign 1-based ranks by position

Pure and read-only: safe to call concurrently on snapshots.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .core import Address, Timestamp, ZERO, normalize_address
from .positions import (
    ANCHOR_POOL_TYPES, SAIL_POOL_TYPES,
    LeaderboardSources, PositionSnapshot,
    project_snapshot,
)


class SortKey(Enum):
    """Leaderboard sort columns."""
    TOTAL = "total"
    GENESIS = "genesis"
    ANCHOR = "anchor"
    SAIL = "sail"
    PER_DAY = "perDay"

    @classmethod
    def parse(cls, value: Union['SortKey', str]) -> 'SortKey':
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if member.value.lower() == text.lower() or member.name.lower() == text.lower():
                return member
        raise ValueError(f"Unknown sort key: {value!r}")


class SortDirection(Enum):
    DESC = "desc"
    ASC = "asc"

    @classmethod
    def parse(cls, value: Union['SortDirection', str]) -> 'SortDirection':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown sort direction: {value!r}")


BUCKET_ANCHOR = "anchor"
BUCKET_SAIL = "sail"


@dataclass(frozen=True, slots=True)
class LeaderboardRow:
    """One user's aggregated marks. Built fresh on every call, never stored."""
    address: Address
    rank: int
    total_marks: Decimal
    genesis_marks: Decimal
    anchor_marks: Decimal
    sail_marks: Decimal
    marks_per_day: Decimal

    def value(self, sort_by: SortKey) -> Decimal:
        """The column a SortKey refers to."""
        return {
            SortKey.TOTAL: self.total_marks,
            SortKey.GENESIS: self.genesis_marks,
            SortKey.ANCHOR: self.anchor_marks,
            SortKey.SAIL: self.sail_marks,
            SortKey.PER_DAY: self.marks_per_day,
        }[sort_by]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rank': self.rank,
            'address': self.address,
            'totalMarks': str(self.total_marks),
            'genesisMarks': str(self.genesis_marks),
            'anchorMarks': str(self.anchor_marks),
            'sailMarks': str(self.sail_marks),
            'marksPerDay': str(self.marks_per_day),
        }


def is_contract_address(address: str, known_contract_addresses: Iterable[str]) -> bool:
    """True if address is a protocol-owned contract (case-insensitive)."""
    normalized = normalize_address(address)
    return any(normalized == normalize_address(known) for known in known_contract_addresses)


def pool_bucket(pool_type: Optional[str]) -> str:
    """Bucket of a stability pool deposit. Unrecognized pool types count as anchor."""
    if pool_type is not None:
        kind = pool_type.strip().lower()
        if kind in ANCHOR_POOL_TYPES:
            return BUCKET_ANCHOR
        if kind in SAIL_POOL_TYPES:
            return BUCKET_SAIL
    return BUCKET_ANCHOR


class _Accumulator:
    __slots__ = ('address', 'total', 'genesis', 'anchor', 'sail', 'per_day')

    def __init__(self, address: Address):
        self.address = address
        self.total = ZERO
        self.genesis = ZERO
        self.anchor = ZERO
        self.sail = ZERO
        self.per_day = ZERO


def build_leaderboard(
    sources: Union[LeaderboardSources, Mapping[str, Any], None],
    known_contract_addresses: Iterable[str] = (),
    sort_by: Union[SortKey, str] = SortKey.TOTAL,
    sort_direction: Union[SortDirection, str] = SortDirection.DESC,
    as_of: Optional[Timestamp] = None,
) -> List[LeaderboardRow]:
    """
    Aggregate position snapshots into ranked leaderboard rows.

    Args:
        sources: LeaderboardSources, or a mapping with genesis / haBalances /
                 poolDeposits / sailBalances lists (absent means empty)
        known_contract_addresses: Protocol-owned addresses to exclude
        sort_by: total, genesis, anchor, sail or perDay
        sort_direction: desc or asc
        as_of: Projection time; None uses the snapshots' accumulated marks

    Returns:
        One row per unique user address, ranked from 1.
    """
    if not isinstance(sources, LeaderboardSources):
        sources = LeaderboardSources.from_mapping(sources)
    sort_by = SortKey.parse(sort_by)
    sort_direction = SortDirection.parse(sort_direction)
    known = frozenset(normalize_address(address) for address in known_contract_addresses)

    users: Dict[Address, _Accumulator] = {}

    def add(snapshot: PositionSnapshot, bucket: str) -> None:
        address = normalize_address(snapshot.user_address)
        if address in known:
            return
        marks = project_snapshot(snapshot, as_of)
        if marks == 0 and snapshot.marks_per_day == 0:
            return
        acc = users.get(address)
        if acc is None:
            acc = users[address] = _Accumulator(address)
        acc.total += marks
        acc.per_day += snapshot.marks_per_day
        setattr(acc, bucket, getattr(acc, bucket) + marks)

    for snapshot in sources.genesis:
        add(snapshot, 'genesis')
    for snapshot in sources.ha_balances:
        add(snapshot, BUCKET_ANCHOR)
    for snapshot in sources.pool_deposits:
        add(snapshot, pool_bucket(snapshot.pool_type))
    for snapshot in sources.sail_balances:
        add(snapshot, BUCKET_SAIL)

    column = {
        SortKey.TOTAL: 'total',
        SortKey.GENESIS: 'genesis',
        SortKey.ANCHOR: 'anchor',
        SortKey.SAIL: 'sail',
        SortKey.PER_DAY: 'per_day',
    }[sort_by]
    # sorted() is stable with reverse=True too, so ties keep first-seen order
    ordered = sorted(
        users.values(),
        key=lambda acc: getattr(acc, column),
        reverse=sort_direction == SortDirection.DESC,
    )

    return [
        LeaderboardRow(
            address=acc.address,
            rank=rank,
            total_marks=acc.total,
            genesis_marks=acc.genesis,
            anchor_marks=acc.anchor,
            sail_marks=acc.sail,
            marks_per_day=acc.per_day,
        )
        for rank, acc in enumerate(ordered, start=1)
    ]
