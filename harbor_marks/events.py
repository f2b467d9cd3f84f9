"""
events.py - Inbound event parsing and stream partitioning

Indexer records arrive as JSON-like mappings with camelCase keys:

    {"kind": "Deposit", "contractAddress": "0x...", "userAddress": "0x...",
     "usdAmount": "125.5", "timestamp": 1700000000,
     "contractType": "stabilityPoolCollateral", "eventId": "0xtx-3"}

Amounts must already be priced in USD; a missing usdAmount raises
UnpricedEvent instead of guessing a price.
"""

from __future__ import annotations
import hashlib
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from .core import (
    ContractType, EventKind, IndexerEvent,
    EntryKey,
    UnpricedEvent,
    normalize_address,
)


_KIND_KEYS = ('kind', 'type', 'event')
_AMOUNT_KEYS = ('usdAmount', 'usd_amount', 'amountUSD')


def _first(record: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if key in record:
            return record[key]
    return None


def parse_event(record: Mapping[str, Any]) -> IndexerEvent:
    """
    Build an IndexerEvent from an indexer record.

    Raises:
        UnpricedEvent: if the record carries no USD amount (PeriodEnd excepted)
        ValueError: if the kind, timestamp or addresses are malformed
    """
    kind = EventKind.parse(_first(record, _KIND_KEYS))
    usd_amount = _first(record, _AMOUNT_KEYS)
    if usd_amount is None:
        if kind != EventKind.PERIOD_END:
            raise UnpricedEvent(f"{kind.value} record has no usdAmount: {dict(record)!r}")
        usd_amount = 0

    timestamp = record.get('timestamp')
    if isinstance(timestamp, str) and timestamp.isdigit():
        timestamp = int(timestamp)

    return IndexerEvent(
        contract_address=record.get('contractAddress') or record.get('contract_address'),
        user_address=record.get('userAddress') or record.get('user_address'),
        kind=kind,
        usd_amount=usd_amount,
        timestamp=timestamp,
        contract_type=ContractType.parse(record.get('contractType') or record.get('contract_type')),
        event_id=record.get('eventId') or record.get('event_id'),
    )


def parse_events(records: Iterable[Mapping[str, Any]]) -> List[IndexerEvent]:
    return [parse_event(record) for record in records]


def shard_for(contract_address: str, user_address: str, shards: int) -> int:
    """
    Stable shard index of a (contract, user) key.

    Uses sha256 rather than hash() so the assignment survives restarts.
    """
    if shards < 1:
        raise ValueError(f"shards must be >= 1, got {shards}")
    key = f"{normalize_address(contract_address)}:{normalize_address(user_address)}"
    digest = hashlib.sha256(key.encode()).digest()
    return int.from_bytes(digest[:8], 'big') % shards


def partition_events(events: Iterable[IndexerEvent], shards: int) -> List[List[IndexerEvent]]:
    """
    Split an ordered stream into independent per-shard streams.

    Events for one key always land in the same shard, in their original
    order. PeriodEnd events touch every user of a contract, so they are
    copied into every shard.
    """
    if shards < 1:
        raise ValueError(f"shards must be >= 1, got {shards}")
    partitions: List[List[IndexerEvent]] = [[] for _ in range(shards)]
    for event in events:
        if event.kind == EventKind.PERIOD_END:
            for partition in partitions:
                partition.append(event)
        else:
            partitions[shard_for(event.contract_address, event.user_address, shards)].append(event)
    return partitions


def ordering_violations(events: Iterable[IndexerEvent]) -> List[Tuple[int, IndexerEvent]]:
    """
    Find events older than an earlier event for the same key.

    Returns:
        (position, event) pairs for every event the processor would reject.
    """
    latest: Dict[EntryKey, int] = defaultdict(lambda: -1)
    violations = []
    for position, event in enumerate(events):
        if event.kind == EventKind.PERIOD_END:
            continue
        key = event.key
        if event.timestamp < latest[key]:
            violations.append((position, event))
        else:
            latest[key] = event.timestamp
    return violations
