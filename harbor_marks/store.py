"""
store.py - Keyed store of marks ledger entries

The EntryStore is the only object that holds mutable marks state. Entries
themselves are frozen; "mutation" means replacing the entry stored under a
(contract, user) key. Only the EventProcessor writes to a store.

Key responsibilities:
    - Implements the EntryStoreView protocol for read-only access
    - Keeps an inverted index contract -> users and user -> contracts
    - Appends every applied event to the audit log (MarksEvent)
    - Enforces non-decreasing last_updated per entry
    - Hands out immutable snapshots for concurrent readers
"""

from __future__ import annotations
from collections import defaultdict
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Set, runtime_checkable

from .core import (
    LedgerEntry, MarksEvent,
    Address, EntryKey,
    ZERO,
    EntryNotFound, MarksError,
    entry_key, normalize_address,
)


# ============================================================================
# PROTOCOL
# ============================================================================

@runtime_checkable
class EntryStoreView(Protocol):
    """
    Read-only interface to ledger entries.

    The estimator, the leaderboard adapters and the engine's read API take
    an EntryStoreView, declaring they never write. EntryStore and
    StoreSnapshot both implement it.
    """

    def get_entry(self, contract_address: str, user_address: str) -> Optional[LedgerEntry]:
        """Return the entry for a (contract, user) pair, or None."""
        ...

    def list_entries(self) -> List[LedgerEntry]:
        """Return every entry, ordered by key."""
        ...

    def entries_for_contract(self, contract_address: str) -> List[LedgerEntry]:
        """Return the entries of one contract, ordered by user."""
        ...

    def entries_for_user(self, user_address: str) -> List[LedgerEntry]:
        """Return the entries of one user, ordered by contract."""
        ...


# ============================================================================
# SNAPSHOT
# ============================================================================

class StoreSnapshot:
    """
    Immutable point-in-time view of a store.

    Entries are frozen dataclasses, so copying the key map is enough to
    isolate readers from later writes.
    """

    def __init__(self, entries: Mapping[EntryKey, LedgerEntry]):
        self._entries = MappingProxyType(dict(entries))

    def get_entry(self, contract_address: str, user_address: str) -> Optional[LedgerEntry]:
        return self._entries.get(entry_key(contract_address, user_address))

    def list_entries(self) -> List[LedgerEntry]:
        return [self._entries[key] for key in sorted(self._entries)]

    def entries_for_contract(self, contract_address: str) -> List[LedgerEntry]:
        contract = normalize_address(contract_address)
        return [self._entries[key] for key in sorted(self._entries) if key[0] == contract]

    def entries_for_user(self, user_address: str) -> List[LedgerEntry]:
        user = normalize_address(user_address)
        return [self._entries[key] for key in sorted(self._entries) if key[1] == user]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(self.list_entries())


# ============================================================================
# STORE
# ============================================================================

class EntryStore:
    """
    In-memory keyed store of LedgerEntry values with an audit log.

    Thread Safety:
        Not thread-safe. Use one writer per store (or per shard) and give
        readers a snapshot().

    Example:
        store = EntryStore()
        processor = EventProcessor(RuleRegistry(), store)
        processor.on_deposit("0xpool", "0xalice", Decimal("100"), 0,
                             ContractType.STABILITY_POOL_COLLATERAL)
        store.get_entry("0xpool", "0xalice").current_deposit_usd  # Decimal("100")
    """

    def __init__(self, name: str = "marks"):
        self.name = name
        self._entries: Dict[EntryKey, LedgerEntry] = {}
        self._users_by_contract: Dict[Address, Set[Address]] = defaultdict(set)
        self._contracts_by_user: Dict[Address, Set[Address]] = defaultdict(set)
        self.event_log: List[MarksEvent] = []
        self.seen_event_ids: Set[str] = set()
        self._next_sequence: int = 0

    # ========================================================================
    # EntryStoreView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    def get_entry(self, contract_address: str, user_address: str) -> Optional[LedgerEntry]:
        return self._entries.get(entry_key(contract_address, user_address))

    def require_entry(self, contract_address: str, user_address: str) -> LedgerEntry:
        """
        Return an existing entry.

        Raises:
            EntryNotFound: if no event was ever recorded for the pair
        """
        entry = self.get_entry(contract_address, user_address)
        if entry is None:
            raise EntryNotFound(
                f"No ledger entry for contract {contract_address} and user {user_address}"
            )
        return entry

    def list_entries(self) -> List[LedgerEntry]:
        return [self._entries[key] for key in sorted(self._entries)]

    def entries_for_contract(self, contract_address: str) -> List[LedgerEntry]:
        contract = normalize_address(contract_address)
        return [
            self._entries[(contract, user)]
            for user in sorted(self._users_by_contract.get(contract, ()))
        ]

    def entries_for_user(self, user_address: str) -> List[LedgerEntry]:
        user = normalize_address(user_address)
        return [
            self._entries[(contract, user)]
            for contract in sorted(self._contracts_by_user.get(user, ()))
        ]

    def list_contracts(self) -> List[Address]:
        return sorted(c for c, users in self._users_by_contract.items() if users)

    def list_users(self) -> List[Address]:
        return sorted(u for u, contracts in self._contracts_by_user.items() if contracts)

    def __contains__(self, key: EntryKey) -> bool:
        return entry_key(*key) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ========================================================================
    # WRITES (EventProcessor only)
    # ========================================================================

    def put_entry(self, entry: LedgerEntry) -> None:
        """
        Store an entry, replacing any previous value for its key.

        Raises:
            MarksError: if the new entry's last_updated is older than the
                        stored one
        """
        key = entry.key
        existing = self._entries.get(key)
        if existing is not None and entry.last_updated < existing.last_updated:
            raise MarksError(
                f"Entry {key} cannot move back in time: "
                f"{entry.last_updated} < {existing.last_updated}"
            )
        self._entries[key] = entry
        self._users_by_contract[key[0]].add(key[1])
        self._contracts_by_user[key[1]].add(key[0])

    def next_sequence(self) -> int:
        """Reserve the next audit sequence number."""
        sequence = self._next_sequence
        self._next_sequence += 1
        return sequence

    def append_event(self, event: MarksEvent) -> None:
        """Append an applied event to the audit log."""
        self.event_log.append(event)
        if event.event_id:
            self.seen_event_ids.add(event.event_id)

    # ========================================================================
    # SNAPSHOTS AND COPIES
    # ========================================================================

    def snapshot(self) -> StoreSnapshot:
        """Immutable view of the current entries for concurrent readers."""
        return StoreSnapshot(self._entries)

    def clone(self) -> 'EntryStore':
        """
        Create an independent copy of this store.

        Entries and audit records are immutable, so copying the containers
        is enough.
        """
        cloned = EntryStore.__new__(EntryStore)
        cloned.name = self.name
        cloned._entries = dict(self._entries)
        cloned._users_by_contract = defaultdict(set, {k: set(v) for k, v in self._users_by_contract.items()})
        cloned._contracts_by_user = defaultdict(set, {k: set(v) for k, v in self._contracts_by_user.items()})
        cloned.event_log = list(self.event_log)
        cloned.seen_event_ids = set(self.seen_event_ids)
        cloned._next_sequence = self._next_sequence
        return cloned

    # ========================================================================
    # AUDIT
    # ========================================================================

    def verify_invariants(self) -> Dict[str, Any]:
        """
        Check every entry and the audit log against the ledger invariants.

        Checks performed:
        1. Balances and marks are non-negative (guaranteed by LedgerEntry,
           rechecked here for entries built elsewhere)
        2. total_marks_earned and total_marks_forfeited never decrease
           across an entry's audit history
        3. last_updated never decreases across an entry's audit history
        4. The stored entry equals the last audit record for its key

        Returns:
            Dict with keys:
            - 'valid': bool - True if every check passes
            - 'entries': int - Number of entries checked
            - 'violations': List[Dict] - Details of each failed check

        Example:
            result = store.verify_invariants()
            assert result['valid'], result['violations']
        """
        violations = []

        for entry in self.list_entries():
            for name in ('current_marks', 'current_deposit_usd'):
                value = getattr(entry, name)
                if value < ZERO:
                    violations.append({'key': entry.key, 'check': f'{name} >= 0', 'value': value})

        last_seen: Dict[EntryKey, LedgerEntry] = {}
        for event in self.event_log:
            new = event.new_entry
            prev = last_seen.get(new.key)
            if prev is not None:
                for name in ('total_marks_earned', 'total_marks_forfeited', 'last_updated'):
                    if getattr(new, name) < getattr(prev, name):
                        violations.append({
                            'key': new.key,
                            'check': f'{name} non-decreasing',
                            'sequence': event.sequence_number,
                            'before': getattr(prev, name),
                            'after': getattr(new, name),
                        })
            last_seen[new.key] = new

        for key, entry in last_seen.items():
            if self._entries.get(key) != entry:
                violations.append({'key': key, 'check': 'store matches audit log'})

        return {
            'valid': len(violations) == 0,
            'entries': len(self._entries),
            'violations': violations,
        }

    def total_marks(self, user_address: Optional[str] = None) -> Decimal:
        """
        Sum of stored current_marks, for one user or for the whole store.

        Entries are summed in key order for deterministic accumulation.
        """
        entries = self.entries_for_user(user_address) if user_address else self.list_entries()
        return sum((e.current_marks for e in entries), ZERO)
