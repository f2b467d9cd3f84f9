"""
harbor_marks - Harbor Marks Accrual Engine

A rule-driven, event-sourced points ledger converting time-weighted USD
deposits into marks, with bounded genesis periods, one-time bonuses,
forfeiture on withdrawal, market boost windows and a cross-source
leaderboard.

Usage:
    from harbor_marks import EventProcessor, RuleRegistry, ContractType, estimate

    registry = RuleRegistry()
    processor = EventProcessor(registry)

    processor.on_deposit("0xpool", "0xalice", Decimal("100"), 0,
                         ContractType.STABILITY_POOL_COLLATERAL)

    entry = processor.store.get_entry("0xpool", "0xalice")
    rule = registry.get_rule("0xpool", ContractType.STABILITY_POOL_COLLATERAL)
    estimate(entry, rule, 86400)   # Decimal("100")
"""

# Core types
from .core import (
    ContractType,
    EventKind,
    ApplyResult,
    AccrualRule,
    BoostWindow,
    LedgerEntry,
    IndexerEvent,
    MarksEvent,
    MarksError,
    InvalidRule,
    OutOfOrderEvent,
    EntryNotFound,
    UnpricedEvent,
    ConfigError,
    to_decimal,
    to_e18,
    from_e18,
    normalize_address,
    entry_key,
    entry_fingerprint,
    SECONDS_PER_DAY,
    E18,
    DEFAULT_BOOST_DURATION_SECONDS,
    ANCHOR_BOOST_MULTIPLIER,
    SAIL_BOOST_MULTIPLIER,
)

# Accrual
from .accrual import (
    accrue,
    marks_per_day,
    period_bonus,
    crosses_period_end,
    rule_for_entry,
    period_has_closed,
)

# Rules
from .rules import (
    RuleRegistry,
    default_rule,
    rule_key,
    apply_overrides,
)

# Store
from .store import (
    EntryStoreView,
    EntryStore,
    StoreSnapshot,
)

# Processing
from .processor import EventProcessor
from .events import (
    parse_event,
    parse_events,
    partition_events,
    shard_for,
    ordering_violations,
)

# Read path
from .estimator import (
    estimate,
    pending_bonus,
    project_to_period_end,
    potential_forfeiture,
    estimate_store,
)
from .positions import (
    PositionCategory,
    PositionSnapshot,
    LeaderboardSources,
    snapshot_entry,
    snapshot_from_record,
    project_snapshot,
    positions_from_store,
)
from .leaderboard import (
    SortKey,
    SortDirection,
    LeaderboardRow,
    build_leaderboard,
    is_contract_address,
    pool_bucket,
)

# Configuration and facade
from .config import (
    MarksConfig,
    MarketAddresses,
    BoostSettings,
    load_config,
)
from .engine import MarksEngine


__all__ = [
    # Core
    'ContractType', 'EventKind', 'ApplyResult',
    'AccrualRule', 'BoostWindow', 'LedgerEntry', 'IndexerEvent', 'MarksEvent',
    'MarksError', 'InvalidRule', 'OutOfOrderEvent', 'EntryNotFound',
    'UnpricedEvent', 'ConfigError',
    'to_decimal', 'to_e18', 'from_e18', 'normalize_address', 'entry_key',
    'entry_fingerprint',
    'SECONDS_PER_DAY', 'E18', 'DEFAULT_BOOST_DURATION_SECONDS',
    'ANCHOR_BOOST_MULTIPLIER', 'SAIL_BOOST_MULTIPLIER',
    # Accrual
    'accrue', 'marks_per_day', 'period_bonus', 'crosses_period_end',
    'rule_for_entry', 'period_has_closed',
    # Rules
    'RuleRegistry', 'default_rule', 'rule_key', 'apply_overrides',
    # Store
    'EntryStoreView', 'EntryStore', 'StoreSnapshot',
    # Processing
    'EventProcessor',
    'parse_event', 'parse_events', 'partition_events', 'shard_for',
    'ordering_violations',
    # Read path
    'estimate', 'pending_bonus', 'project_to_period_end',
    'potential_forfeiture', 'estimate_store',
    'PositionCategory', 'PositionSnapshot', 'LeaderboardSources',
    'snapshot_entry', 'snapshot_from_record', 'project_snapshot',
    'positions_from_store',
    'SortKey', 'SortDirection', 'LeaderboardRow', 'build_leaderboard',
    'is_contract_address', 'pool_bucket',
    # Configuration and facade
    'MarksConfig', 'MarketAddresses', 'BoostSettings', 'load_config',
    'MarksEngine',
]

__version__ = '1.0.0'
