"""
test_events.py - Unit tests for indexer record parsing and partitioning

Tests:
- camelCase and snake_case records
- Missing USD amounts raise UnpricedEvent
- Stable shard assignment and per-shard ordering
- Out-of-order detection
"""

import pytest
from decimal import Decimal

from harbor_marks import (
    ContractType, EventKind, IndexerEvent, UnpricedEvent,
    parse_event, parse_events, shard_for, partition_events, ordering_violations,
)
from tests.fake_store import POOL, GENESIS, ALICE, BOB, CAROL, DAY


def deposit(user, ts, amount="10", contract=POOL) -> IndexerEvent:
    return IndexerEvent(contract, user, EventKind.DEPOSIT, Decimal(amount), ts,
                        ContractType.STABILITY_POOL_COLLATERAL)


class TestParseEvent:

    def test_camel_case_record(self):
        event = parse_event({
            "kind": "Deposit",
            "contractAddress": "0xPOOL",
            "userAddress": "0xAlice",
            "usdAmount": "125.5",
            "timestamp": 1700000000,
            "contractType": "stabilityPoolCollateral",
            "eventId": "0xtx-3",
        })
        assert event.kind is EventKind.DEPOSIT
        assert event.key == (POOL, ALICE)
        assert event.usd_amount == Decimal("125.5")
        assert event.contract_type is ContractType.STABILITY_POOL_COLLATERAL
        assert event.event_id == "0xtx-3"

    def test_snake_case_record(self):
        event = parse_event({
            "type": "balance_changed",
            "contract_address": "0xhatoken",
            "user_address": ALICE,
            "usd_amount": 0,
            "timestamp": "86400",
            "contract_type": "HA_TOKEN_HOLDING",
        })
        assert event.kind is EventKind.BALANCE_CHANGED
        assert event.timestamp == DAY
        assert event.usd_amount == Decimal("0")
        assert event.contract_type is ContractType.HA_TOKEN_HOLDING

    def test_unknown_contract_type(self):
        event = parse_event({"kind": "Deposit", "contractAddress": POOL, "userAddress": ALICE,
                             "usdAmount": 1, "timestamp": 0, "contractType": "vault"})
        assert event.contract_type is ContractType.UNKNOWN

    def test_missing_amount_is_unpriced(self):
        with pytest.raises(UnpricedEvent):
            parse_event({"kind": "Withdrawal", "contractAddress": POOL,
                         "userAddress": ALICE, "timestamp": 0})

    def test_period_end_needs_no_amount_or_user(self):
        event = parse_event({"kind": "PeriodEnd", "contractAddress": GENESIS,
                             "timestamp": DAY, "contractType": "genesis"})
        assert event.kind is EventKind.PERIOD_END
        assert event.user_address is None
        assert event.usd_amount == Decimal("0")

    @pytest.mark.parametrize("record", [
        {"kind": "Mint", "contractAddress": POOL, "userAddress": ALICE, "usdAmount": 1, "timestamp": 0},
        {"kind": "Deposit", "contractAddress": POOL, "usdAmount": 1, "timestamp": 0},
        {"kind": "Deposit", "contractAddress": POOL, "userAddress": ALICE, "usdAmount": -1, "timestamp": 0},
        {"kind": "Deposit", "contractAddress": POOL, "userAddress": ALICE, "usdAmount": 1, "timestamp": 1.5},
    ])
    def test_malformed_records(self, record):
        with pytest.raises(ValueError):
            parse_event(record)

    def test_parse_events_keeps_order(self):
        records = [
            {"kind": "Deposit", "contractAddress": POOL, "userAddress": ALICE, "usdAmount": 1, "timestamp": 5},
            {"kind": "Deposit", "contractAddress": POOL, "userAddress": BOB, "usdAmount": 2, "timestamp": 3},
        ]
        assert [e.user_address for e in parse_events(records)] == [ALICE, BOB]


class TestPartitioning:

    def test_shard_is_stable_and_case_insensitive(self):
        assert shard_for(POOL, ALICE, 8) == shard_for("0xPOOL", "0xALICE", 8)
        assert 0 <= shard_for(POOL, ALICE, 8) < 8
        assert shard_for(POOL, ALICE, 1) == 0

    def test_invalid_shard_count(self):
        with pytest.raises(ValueError):
            shard_for(POOL, ALICE, 0)
        with pytest.raises(ValueError):
            partition_events([], 0)

    def test_partition_keeps_key_order(self):
        events = [deposit(ALICE, 0), deposit(BOB, 1), deposit(ALICE, 2), deposit(CAROL, 3), deposit(BOB, 4)]
        partitions = partition_events(events, 4)

        assert sum(len(p) for p in partitions) == len(events)
        for user in (ALICE, BOB, CAROL):
            shard = partitions[shard_for(POOL, user, 4)]
            assert [e.timestamp for e in shard if e.user_address == user] == \
                [e.timestamp for e in events if e.user_address == user]

    def test_period_end_reaches_every_shard(self):
        end = IndexerEvent(GENESIS, None, EventKind.PERIOD_END, 0, DAY, ContractType.GENESIS)
        partitions = partition_events([deposit(ALICE, 0, contract=GENESIS), end], 3)
        assert all(p[-1] is end for p in partitions)


class TestOrderingViolations:

    def test_detects_stale_events_per_key(self):
        events = [deposit(ALICE, 10), deposit(BOB, 5), deposit(ALICE, 7), deposit(ALICE, 10)]
        violations = ordering_violations(events)
        assert [(pos, e.timestamp) for pos, e in violations] == [(2, 7)]

    def test_equal_timestamps_are_in_order(self):
        assert ordering_violations([deposit(ALICE, 5), deposit(ALICE, 5)]) == []
