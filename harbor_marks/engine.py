"""
engine.py - Marks engine facade

Wires the rule registry, entry store, event processor and configuration
into one object for services and exports.

Processing order for each inbound record in ingest():
1. Parse the record into an IndexerEvent
2. Resolve the contract type from the market config when the indexer
   did not supply one
3. Apply the event through the EventProcessor
4. When the event was applied, open the market's boost window on first
   activity (anchor and sail sources, only if the config enables boosts)

The store's event log is the audit trail; no separate status tracking.
"""

from __future__ import annotations
from dataclasses import replace
from decimal import Decimal
import logging
import time
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union

from .core import (
    ApplyResult, ContractType, EventKind, IndexerEvent, LedgerEntry,
    Timestamp,
    ZERO,
)
from .config import MarksConfig
from .estimator import estimate, potential_forfeiture, project_to_period_end
from .events import parse_event
from .leaderboard import LeaderboardRow, SortDirection, SortKey, build_leaderboard
from .positions import LeaderboardSources, positions_from_store
from .processor import EventProcessor
from .rules import RuleRegistry
from .store import EntryStore

logger = logging.getLogger(__name__)

Record = Union[IndexerEvent, Mapping[str, Any]]


def _system_clock() -> Timestamp:
    return int(time.time())


class MarksEngine:
    """
    Marks engine: write path (ingest, end_period) and read API
    (get_entry, estimate_now, build_leaderboard).

    Example:
        engine = MarksEngine(load_config("marks-config.json"))
        engine.ingest(records)
        engine.estimate_now("0xpool", "0xalice")
        engine.build_leaderboard(sort_by="perDay")
    """

    def __init__(
        self,
        config: Optional[MarksConfig] = None,
        registry: Optional[RuleRegistry] = None,
        store: Optional[EntryStore] = None,
        clock: Optional[Callable[[], Timestamp]] = None,
        verbose: bool = False,
        strict: bool = False,
    ):
        """
        Initialize the engine.

        Args:
            config: Market registry and rule overrides (empty if not provided)
            registry: Rule registry (built from config if not provided)
            store: Entry store (new empty store if not provided)
            clock: Returns "now" in seconds for estimate_now (system time by default)
            verbose: Print each applied event
            strict: Raise on out-of-order events instead of rejecting them
        """
        self.config = config or MarksConfig()
        self.registry = registry or RuleRegistry.from_config(self.config)
        self.store = store if store is not None else EntryStore()
        self.processor = EventProcessor(self.registry, self.store, verbose=verbose, strict=strict)
        self.clock = clock or _system_clock

    # ========================================================================
    # WRITE PATH
    # ========================================================================

    def _resolve(self, event: IndexerEvent) -> IndexerEvent:
        if event.contract_type is ContractType.UNKNOWN:
            contract_type = self.config.contract_type_for(event.contract_address)
            if contract_type is not ContractType.UNKNOWN:
                return replace(event, contract_type=contract_type)
        return event

    def _open_boost_window(self, event: IndexerEvent) -> None:
        if event.kind not in (EventKind.DEPOSIT, EventKind.BALANCE_CHANGED):
            return
        rule = self.registry.resolve_rule(event.contract_address, event.contract_type)
        multiplier = self.config.boost.multiplier_for(rule.contract_type)
        if multiplier is None:
            return
        self.registry.get_or_create_boost_window(
            rule.contract_type, event.contract_address, event.timestamp, multiplier
        )

    def apply(self, record: Record) -> ApplyResult:
        """Apply one record (IndexerEvent or raw indexer mapping)."""
        event = record if isinstance(record, IndexerEvent) else parse_event(record)
        event = self._resolve(event)
        result = self.processor.apply(event)
        if result == ApplyResult.APPLIED:
            # the opening event itself accrues over a zero-length interval
            self._open_boost_window(event)
        return result

    def ingest(self, records: Iterable[Record]) -> List[ApplyResult]:
        """
        Apply records in order.

        Returns:
            One ApplyResult per record.
        """
        results = [self.apply(record) for record in records]
        rejected = sum(1 for r in results if r == ApplyResult.REJECTED)
        if rejected:
            logger.warning("Ingested %d records, %d rejected as out of order", len(results), rejected)
        return results

    def end_period(
        self,
        contract_address: str,
        timestamp: Optional[Timestamp] = None,
        contract_type: ContractType = ContractType.GENESIS,
    ) -> List[LedgerEntry]:
        """Close a contract's accrual period at timestamp (now by default)."""
        if timestamp is None:
            timestamp = self.clock()
        return self.processor.end_period(contract_address, timestamp, contract_type)

    # ========================================================================
    # READ API
    # ========================================================================

    def get_entry(self, contract_address: str, user_address: str) -> Optional[LedgerEntry]:
        """Stored entry for a (contract, user) pair, or None."""
        return self.store.get_entry(contract_address, user_address)

    def _rule_and_boost(self, entry: LedgerEntry):
        rule = self.registry.resolve_rule(entry.contract_address, entry.contract_type)
        boost = self.registry.boost_window_for(entry.contract_type, entry.contract_address)
        return rule, boost

    def estimate_now(
        self,
        contract_address: str,
        user_address: str,
        as_of: Optional[Timestamp] = None,
    ) -> Decimal:
        """Live marks of one position; zero if the pair has no entry."""
        entry = self.store.get_entry(contract_address, user_address)
        if entry is None:
            return ZERO
        rule, boost = self._rule_and_boost(entry)
        return estimate(entry, rule, self.clock() if as_of is None else as_of, boost)

    def estimate_user(self, user_address: str, as_of: Optional[Timestamp] = None) -> Decimal:
        """Live marks of one user across every contract."""
        as_of = self.clock() if as_of is None else as_of
        total = ZERO
        for entry in self.store.entries_for_user(user_address):
            rule, boost = self._rule_and_boost(entry)
            total += estimate(entry, rule, as_of, boost)
        return total

    def projected_total(self, contract_address: str, user_address: str) -> Optional[Decimal]:
        """Marks at period end if the current deposit is held; None without a bounded period."""
        entry = self.store.require_entry(contract_address, user_address)
        rule, boost = self._rule_and_boost(entry)
        return project_to_period_end(entry, rule, boost)

    def forfeiture_if_withdrawn(
        self,
        contract_address: str,
        user_address: str,
        as_of: Optional[Timestamp] = None,
    ) -> Decimal:
        """Marks a withdrawal at as_of would forfeit."""
        entry = self.store.require_entry(contract_address, user_address)
        rule, boost = self._rule_and_boost(entry)
        return potential_forfeiture(entry, rule, self.clock() if as_of is None else as_of, boost)

    def build_leaderboard(
        self,
        sort_by: Union[SortKey, str] = SortKey.TOTAL,
        sort_direction: Union[SortDirection, str] = SortDirection.DESC,
        as_of: Optional[Timestamp] = None,
        sources: Union[LeaderboardSources, Mapping[str, Any], None] = None,
    ) -> List[LeaderboardRow]:
        """
        Ranked leaderboard at as_of (now by default).

        Sources default to a snapshot of the engine's own store; the
        exclusion list is every address the config knows.
        """
        as_of = self.clock() if as_of is None else as_of
        if sources is None:
            sources = positions_from_store(self.store.snapshot(), self.registry)
        return build_leaderboard(
            sources,
            known_contract_addresses=self.config.known_addresses(),
            sort_by=sort_by,
            sort_direction=sort_direction,
            as_of=as_of,
        )
