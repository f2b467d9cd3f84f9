"""
test_store.py - Unit tests for EntryStore and StoreSnapshot

Tests:
- Lookup by key, require_entry, contract/user indexes
- put_entry refuses to move an entry back in time
- Snapshots are isolated from later writes
- clone() independence
- verify_invariants and total_marks
"""

import pytest
from dataclasses import replace
from decimal import Decimal

from harbor_marks import (
    ContractType, EntryNotFound, EntryStore, EntryStoreView, LedgerEntry, MarksError,
)
from tests.fake_store import FakeStore, POOL, SAIL_POOL, ALICE, BOB, DAY


def entry(contract=POOL, user=ALICE, marks="0", last_updated=0) -> LedgerEntry:
    return LedgerEntry(contract, user, ContractType.STABILITY_POOL_COLLATERAL,
                       current_deposit_usd=Decimal("100"),
                       current_marks=Decimal(marks),
                       total_marks_earned=Decimal(marks),
                       last_updated=last_updated)


@pytest.fixture
def store():
    s = EntryStore()
    s.put_entry(entry(POOL, ALICE, "10"))
    s.put_entry(entry(POOL, BOB, "20"))
    s.put_entry(entry(SAIL_POOL, ALICE, "5"))
    return s


class TestLookup:

    def test_get_entry_normalizes_addresses(self, store):
        assert store.get_entry("0xPOOL", "0xALICE").current_marks == Decimal("10")
        assert store.get_entry(POOL, "0xnobody") is None

    def test_require_entry(self, store):
        assert store.require_entry(POOL, BOB).current_marks == Decimal("20")
        with pytest.raises(EntryNotFound):
            store.require_entry(SAIL_POOL, BOB)

    def test_indexes(self, store):
        assert [e.user_address for e in store.entries_for_contract(POOL)] == [ALICE, BOB]
        assert [e.contract_address for e in store.entries_for_user(ALICE)] == [POOL, SAIL_POOL]
        assert store.list_contracts() == [POOL, SAIL_POOL]
        assert store.list_users() == [ALICE, BOB]
        assert len(store) == 3
        assert (POOL, "0xBOB") in store

    def test_list_entries_in_key_order(self, store):
        keys = [e.key for e in store.list_entries()]
        assert keys == sorted(keys)

    def test_implements_view(self, store):
        assert isinstance(store, EntryStoreView)
        assert isinstance(store.snapshot(), EntryStoreView)
        assert isinstance(FakeStore(), EntryStoreView)


class TestWrites:

    def test_put_replaces_value(self, store):
        store.put_entry(entry(POOL, ALICE, "15", last_updated=DAY))
        assert store.get_entry(POOL, ALICE).current_marks == Decimal("15")
        assert len(store) == 3

    def test_put_rejects_regression(self, store):
        store.put_entry(entry(POOL, ALICE, "15", last_updated=DAY))
        with pytest.raises(MarksError):
            store.put_entry(entry(POOL, ALICE, "16", last_updated=DAY - 1))
        assert store.get_entry(POOL, ALICE).current_marks == Decimal("15")

    def test_sequence_numbers(self):
        s = EntryStore()
        assert [s.next_sequence() for _ in range(3)] == [0, 1, 2]


class TestSnapshotAndClone:

    def test_snapshot_is_isolated(self, store):
        snap = store.snapshot()
        store.put_entry(entry(POOL, ALICE, "99", last_updated=DAY))
        store.put_entry(entry("0xnew", BOB, "1"))
        assert snap.get_entry(POOL, ALICE).current_marks == Decimal("10")
        assert snap.get_entry("0xnew", BOB) is None
        assert len(snap) == 3
        assert [e.key for e in snap.entries_for_user(BOB)] == [(POOL, BOB)]

    def test_clone_is_independent(self, store):
        cloned = store.clone()
        cloned.put_entry(entry(POOL, ALICE, "50", last_updated=DAY))
        cloned.put_entry(entry("0xnew", ALICE, "1"))
        assert store.get_entry(POOL, ALICE).current_marks == Decimal("10")
        assert len(store.entries_for_user(ALICE)) == 2
        assert len(cloned.entries_for_user(ALICE)) == 3


class TestAudit:

    def test_processed_store_is_valid(self, processor):
        processor.on_deposit(POOL, ALICE, Decimal("100"), 0, ContractType.STABILITY_POOL_COLLATERAL)
        processor.on_deposit(POOL, ALICE, Decimal("50"), DAY, ContractType.STABILITY_POOL_COLLATERAL)
        processor.on_withdrawal(POOL, ALICE, Decimal("25"), 2 * DAY, ContractType.STABILITY_POOL_COLLATERAL)
        result = processor.store.verify_invariants()
        assert result['valid'], result['violations']
        assert result['entries'] == 1

    def test_detects_store_drift(self, processor):
        processor.on_deposit(POOL, ALICE, Decimal("100"), 0, ContractType.STABILITY_POOL_COLLATERAL)
        stored = processor.store.get_entry(POOL, ALICE)
        processor.store.put_entry(replace(stored, current_marks=Decimal("7")))
        result = processor.store.verify_invariants()
        assert not result['valid']
        assert result['violations'][0]['check'] == 'store matches audit log'

    def test_total_marks(self, store):
        assert store.total_marks() == Decimal("35")
        assert store.total_marks(ALICE) == Decimal("15")
        assert EntryStore().total_marks() == Decimal("0")
