"""
Core types and pure helpers for the Harbor Marks accrual engine.

This module provides the foundational data structures for the marks ledger:
1. Enums: ContractType, EventKind, ApplyResult
2. Immutable data structures: AccrualRule, BoostWindow, LedgerEntry,
   IndexerEvent, MarksEvent
3. Exceptions: MarksError and domain-specific error types
4. Type aliases: Address, Timestamp, EntryKey
5. Conversions: to_decimal, to_e18, normalize_address
6. Canonical hashing: entry_fingerprint

Nothing in this module mutates state. Entries and rules are values; every
change produces a new instance via dataclasses.replace().
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, getcontext
from enum import Enum
import hashlib
from typing import Any, Dict, Optional, Tuple, Union


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Marks accrual requires deterministic Decimal arithmetic so that the event
# processor and the estimator produce identical values for identical inputs.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
# Context parameters:
#   - prec=50: enough for 18-decimal USD amounts multiplied by rates and days
#   - rounding=ROUND_HALF_EVEN: Banker's rounding (unbiased)
#
_MARKS_DECIMAL_CONTEXT = getcontext()
_MARKS_DECIMAL_CONTEXT.prec = 50
_MARKS_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

SECONDS_PER_DAY = 86400
SECONDS_PER_DAY_D = Decimal(SECONDS_PER_DAY)

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")

# 18-decimal fixed point, the on-chain representation of marks amounts.
E18 = Decimal("1000000000000000000")

# Market boost windows open on first activity and last 8 days.
DEFAULT_BOOST_DURATION_SECONDS = 8 * SECONDS_PER_DAY
ANCHOR_BOOST_MULTIPLIER = Decimal("10")
SAIL_BOOST_MULTIPLIER = Decimal("2")

# Synthetic rule key prefix used when no contract address is known.
DEFAULT_RULE_PREFIX = "default-"


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Lowercased 0x-prefixed hex address.
Address = str

# Chain time in whole seconds.
Timestamp = int

# (contract_address, user_address), both normalized.
EntryKey = Tuple[Address, Address]

DecimalLike = Union[Decimal, int, str, float]


# ============================================================================
# ENUMS
# ============================================================================

class ContractType(Enum):
    """
    Source category of a marks-earning contract.

    Values match the identifiers used by the upstream indexer.
    """
    GENESIS = "genesis"
    STABILITY_POOL_COLLATERAL = "stabilityPoolCollateral"
    STABILITY_POOL_SAIL = "stabilityPoolSail"
    SAIL_TOKEN_HOLDING = "sailToken"
    HA_TOKEN_HOLDING = "haToken"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Union['ContractType', str, None]) -> 'ContractType':
        """
        Resolve a ContractType from an enum, value or member name.

        Matching is case-insensitive. Unrecognized values map to UNKNOWN.
        """
        if isinstance(value, ContractType):
            return value
        if not value:
            return cls.UNKNOWN
        text = str(value).strip()
        lowered = text.lower()
        for member in cls:
            if member.value.lower() == lowered or member.name.lower() == lowered:
                return member
        return cls.UNKNOWN


class EventKind(Enum):
    """Kind of an inbound ledger event."""
    DEPOSIT = "Deposit"
    WITHDRAWAL = "Withdrawal"
    BALANCE_CHANGED = "BalanceChanged"
    PERIOD_END = "PeriodEnd"

    @classmethod
    def parse(cls, value: Union['EventKind', str]) -> 'EventKind':
        """Resolve an EventKind from an enum, value or member name (case-insensitive)."""
        if isinstance(value, EventKind):
            return value
        lowered = str(value).strip().lower().replace("_", "")
        for member in cls:
            if member.value.lower() == lowered or member.name.lower().replace("_", "") == lowered:
                return member
        raise ValueError(f"Unknown event kind: {value!r}")


class ApplyResult(Enum):
    """
    Outcome of applying an event to the marks ledger.

    APPLIED: Event was validated and applied.
    ALREADY_APPLIED: An event with the same event_id was processed before.
    REJECTED: Event was older than the entry's last update and was dropped.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class MarksError(Exception):
    """Base exception for all marks-ledger errors."""
    pass


class InvalidRule(MarksError):
    """Raised when an accrual rule violates its own invariants."""
    pass


class OutOfOrderEvent(MarksError):
    """Raised when an event is older than the entry's last update (strict mode only)."""
    pass


class EntryNotFound(MarksError):
    """Raised when an operation needs a ledger entry that was never recorded."""
    pass


class UnpricedEvent(MarksError):
    """Raised when an event arrives without a resolved USD amount."""
    pass


class ConfigError(MarksError):
    """Raised when a marks configuration file is missing or malformed."""
    pass


# ============================================================================
# CONVERSIONS
# ============================================================================

def to_decimal(value: DecimalLike) -> Decimal:
    """
    Convert a number to Decimal without binary floating point drift.

    Floats are converted through str(), so 0.1 becomes Decimal("0.1").

    Raises:
        ValueError: if the value is NaN or infinite, or not numeric.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Expected a number, got {value!r}")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except ArithmeticError:
            raise ValueError(f"Not a decimal number: {value!r}")
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise ValueError(f"Expected a number, got {type(value).__name__}")
    if result.is_nan() or result.is_infinite():
        raise ValueError(f"Amount must be finite, got {result}")
    return result


def _optional_decimal(value: Optional[DecimalLike]) -> Optional[Decimal]:
    return None if value is None else to_decimal(value)


def to_e18(value: Decimal) -> int:
    """Scale a Decimal to an 18-decimal fixed-point integer, truncating."""
    return int((to_decimal(value) * E18).to_integral_value(rounding=ROUND_DOWN))


def from_e18(value: int) -> Decimal:
    """Inverse of to_e18 for integers read from chain storage."""
    return Decimal(int(value)) / E18


def normalize_address(address: str) -> Address:
    """
    Normalize an address for use as a key: stripped, lowercased, 0x-prefixed.

    Raises:
        ValueError: if the address is empty.
    """
    if address is None or not str(address).strip():
        raise ValueError("Address cannot be empty")
    text = str(address).strip().lower()
    if not text.startswith("0x"):
        text = "0x" + text
    return text


def entry_key(contract_address: str, user_address: str) -> EntryKey:
    """Build the normalized (contract, user) key of a ledger entry."""
    return normalize_address(contract_address), normalize_address(user_address)


# ============================================================================
# ACCRUAL RULE
# ============================================================================

@dataclass(frozen=True, slots=True)
class AccrualRule:
    """
    Immutable marks accrual rule for one contract or one contract type.

    Rules are never edited in place; RuleRegistry.update_rule() builds a new
    instance and replaces the stored one.

    Attributes:
        contract_type: Source category the rule applies to
        rate_per_dollar_per_day: Marks per USD per day of deposit
        bonus_multiplier: One-time marks per USD paid when the period closes
        has_period: If True, accrual and bonus are bounded by the period
        period_start: Period start (seconds), None means "from deposit"
        period_end: Period end (seconds), None means still open
        forfeit_on_withdrawal: Whether a withdrawal forfeits marks
        forfeit_percentage: Percentage of the marks balance forfeited (0-100)
        is_active: Inactive rules accrue nothing
        contract_address: Contract the rule is pinned to, None for defaults
        created_at: Timestamp of creation
        updated_at: Timestamp of the last replacement
    """
    contract_type: ContractType
    rate_per_dollar_per_day: Decimal
    bonus_multiplier: Optional[Decimal] = None
    has_period: bool = False
    period_start: Optional[Timestamp] = None
    period_end: Optional[Timestamp] = None
    forfeit_on_withdrawal: bool = False
    forfeit_percentage: Optional[Decimal] = None
    is_active: bool = True
    contract_address: Optional[Address] = None
    created_at: Timestamp = 0
    updated_at: Timestamp = 0

    def __post_init__(self):
        object.__setattr__(self, 'contract_type', ContractType.parse(self.contract_type))
        object.__setattr__(self, 'rate_per_dollar_per_day', to_decimal(self.rate_per_dollar_per_day))
        object.__setattr__(self, 'bonus_multiplier', _optional_decimal(self.bonus_multiplier))
        object.__setattr__(self, 'forfeit_percentage', _optional_decimal(self.forfeit_percentage))

        if self.rate_per_dollar_per_day < 0:
            raise InvalidRule(f"rate_per_dollar_per_day must be >= 0, got {self.rate_per_dollar_per_day}")
        if self.bonus_multiplier is not None and self.bonus_multiplier < 0:
            raise InvalidRule(f"bonus_multiplier must be >= 0, got {self.bonus_multiplier}")
        if self.forfeit_percentage is not None and not (ZERO <= self.forfeit_percentage <= HUNDRED):
            raise InvalidRule(f"forfeit_percentage must be within [0, 100], got {self.forfeit_percentage}")
        if (
            self.period_start is not None
            and self.period_end is not None
            and self.period_end <= self.period_start
        ):
            raise InvalidRule(
                f"period_end ({self.period_end}) must be after period_start ({self.period_start})"
            )

    @property
    def effective_forfeit_percentage(self) -> Decimal:
        """Percentage forfeited on withdrawal: 0 if no forfeiture, 100 when unspecified."""
        if not self.forfeit_on_withdrawal:
            return ZERO
        if self.forfeit_percentage is None:
            return HUNDRED
        return self.forfeit_percentage

    @property
    def is_bounded(self) -> bool:
        """True if the rule has a period with a known end."""
        return self.has_period and self.period_end is not None


# ============================================================================
# BOOST WINDOW
# ============================================================================

@dataclass(frozen=True, slots=True)
class BoostWindow:
    """
    Market-level accrual boost over the half-open interval [start, end).

    Time inside the window accrues at rate * multiplier, time outside at the
    plain rate. Boosts never apply to the one-time period bonus.
    """
    start: Timestamp
    end: Timestamp
    multiplier: Decimal = ONE

    def __post_init__(self):
        object.__setattr__(self, 'multiplier', to_decimal(self.multiplier))
        if self.end <= self.start:
            raise ValueError(f"Boost window end ({self.end}) must be after start ({self.start})")
        if self.multiplier < 0:
            raise ValueError(f"Boost multiplier must be >= 0, got {self.multiplier}")

    def is_active(self, timestamp: Timestamp) -> bool:
        return self.start <= timestamp < self.end

    def overlap_seconds(self, start: Timestamp, end: Timestamp) -> int:
        """Seconds of [start, end) that fall inside the window."""
        boosted_start = max(start, self.start)
        boosted_end = min(end, self.end)
        return max(0, boosted_end - boosted_start)


# ============================================================================
# LEDGER ENTRY
# ============================================================================

_ENTRY_DECIMAL_FIELDS = (
    'current_deposit_usd', 'current_marks', 'marks_per_day',
    'total_marks_earned', 'total_marks_forfeited',
    'total_deposited_usd', 'total_withdrawn_usd', 'bonus_marks',
)


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """
    Marks state of one user in one contract, as of last_updated.

    current_marks excludes anything earned after last_updated; use
    estimator.estimate() for a live value. Entries are never deleted: a
    fully withdrawn position keeps its history with current_deposit_usd == 0.

    Period fields are copied from the rule when the entry is opened, so a
    later rule change does not move an existing entry's period.
    """
    contract_address: Address
    user_address: Address
    contract_type: ContractType = ContractType.UNKNOWN
    current_deposit_usd: Decimal = ZERO
    current_marks: Decimal = ZERO
    marks_per_day: Decimal = ZERO
    total_marks_earned: Decimal = ZERO
    total_marks_forfeited: Decimal = ZERO
    total_deposited_usd: Decimal = ZERO
    total_withdrawn_usd: Decimal = ZERO
    bonus_marks: Decimal = ZERO
    period_start: Optional[Timestamp] = None
    period_end: Optional[Timestamp] = None
    period_ended: bool = False
    last_updated: Timestamp = 0
    created_at: Timestamp = 0

    def __post_init__(self):
        object.__setattr__(self, 'contract_address', normalize_address(self.contract_address))
        object.__setattr__(self, 'user_address', normalize_address(self.user_address))
        object.__setattr__(self, 'contract_type', ContractType.parse(self.contract_type))
        for name in _ENTRY_DECIMAL_FIELDS:
            value = to_decimal(getattr(self, name))
            if value < 0:
                raise ValueError(f"LedgerEntry.{name} must be >= 0, got {value}")
            object.__setattr__(self, name, value)

    @classmethod
    def open(
        cls,
        contract_address: str,
        user_address: str,
        rule: AccrualRule,
        timestamp: Timestamp,
    ) -> 'LedgerEntry':
        """Create a zero-state entry, copying the rule's period."""
        return cls(
            contract_address=contract_address,
            user_address=user_address,
            contract_type=rule.contract_type,
            period_start=rule.period_start if rule.has_period else None,
            period_end=rule.period_end if rule.has_period else None,
            period_ended=rule.is_bounded and timestamp >= rule.period_end,
            last_updated=timestamp,
            created_at=timestamp,
        )

    @property
    def key(self) -> EntryKey:
        return self.contract_address, self.user_address

    def __repr__(self) -> str:
        return (
            f"LedgerEntry({self.contract_address}/{self.user_address}: "
            f"deposit={self.current_deposit_usd} marks={self.current_marks} "
            f"@{self.last_updated})"
        )


# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class IndexerEvent:
    """
    One record of the inbound event stream, as delivered by the indexer.

    usd_amount is the deposit/withdrawal size, or the new balance for
    BALANCE_CHANGED. None means the upstream could not price the event yet.

    Attributes:
        contract_address: Contract (pool, genesis or token) emitting the event
        user_address: Account whose position changed
        kind: Deposit, Withdrawal, BalanceChanged or PeriodEnd
        usd_amount: USD value of the event, None when unpriced
        timestamp: Chain time in seconds
        contract_type: Source category resolved by the indexer
        event_id: Upstream identifier (e.g. tx hash + log index), if any
    """
    contract_address: Address
    user_address: Optional[Address]
    kind: EventKind
    usd_amount: Optional[Decimal]
    timestamp: Timestamp
    contract_type: ContractType = ContractType.UNKNOWN
    event_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'kind', EventKind.parse(self.kind))
        object.__setattr__(self, 'contract_address', normalize_address(self.contract_address))
        if self.user_address is not None:
            object.__setattr__(self, 'user_address', normalize_address(self.user_address))
        elif self.kind != EventKind.PERIOD_END:
            raise ValueError(f"{self.kind.value} event requires a user_address")
        object.__setattr__(self, 'contract_type', ContractType.parse(self.contract_type))
        object.__setattr__(self, 'usd_amount', _optional_decimal(self.usd_amount))
        if self.usd_amount is not None and self.usd_amount < 0:
            raise ValueError(f"usd_amount must be >= 0, got {self.usd_amount}")
        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, int):
            raise ValueError(f"timestamp must be int seconds, got {self.timestamp!r}")

    @property
    def key(self) -> EntryKey:
        return self.contract_address, self.user_address


@dataclass(frozen=True, slots=True)
class MarksEvent:
    """
    Executed, immutable audit record of one ledger mutation.

    The store's event log is the audit trail: old_entry/new_entry snapshots
    support forward replay and field-level diffs, and rule/boost capture the
    exact terms the accrual ran under.

    Attributes:
        sequence_number: Monotonic sequence within the store
        kind: Event kind that produced the mutation
        contract_address: Contract of the mutated entry
        user_address: User of the mutated entry
        timestamp: Event timestamp the entry was advanced to
        usd_amount: USD amount carried by the event
        marks_delta: Marks accrued between the previous update and timestamp
        marks_forfeited: Marks removed by forfeiture in this event
        old_entry: Entry before the event (None if the event opened it)
        new_entry: Entry after the event
        rule: Rule the accrual was computed with
        boost: Boost window in effect, if any
        event_id: Upstream identifier, if any
    """
    sequence_number: int
    kind: EventKind
    contract_address: Address
    user_address: Address
    timestamp: Timestamp
    usd_amount: Decimal
    marks_delta: Decimal
    marks_forfeited: Decimal
    old_entry: Optional[LedgerEntry]
    new_entry: LedgerEntry
    rule: AccrualRule
    boost: Optional[BoostWindow] = None
    event_id: Optional[str] = None

    @property
    def amount_e18(self) -> int:
        return to_e18(self.usd_amount)

    @property
    def marks_delta_e18(self) -> int:
        return to_e18(self.marks_delta)

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """
        Fields that differ between old_entry and new_entry.

        Returns:
            Dict mapping field name to (old_value, new_value) tuples.
        """
        changes = {}
        for f in fields(LedgerEntry):
            old_val = getattr(self.old_entry, f.name) if self.old_entry is not None else None
            new_val = getattr(self.new_entry, f.name)
            if old_val != new_val:
                changes[f.name] = (old_val, new_val)
        return changes

    def __repr__(self) -> str:
        w = 100

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        bar = "─" * w
        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' MarksEvent #' + str(self.sequence_number) + ': ' + self.kind.value)}│",
            f"├{bar}┤",
            f"│{pad('   contract     : ' + self.contract_address)}│",
            f"│{pad('   user         : ' + self.user_address)}│",
            f"│{pad('   timestamp    : ' + str(self.timestamp))}│",
            f"│{pad('   usd_amount   : ' + str(self.usd_amount))}│",
            f"│{pad('   marks_delta  : ' + str(self.marks_delta))}│",
            f"│{pad('   forfeited    : ' + str(self.marks_forfeited))}│",
        ]
        if self.event_id:
            lines.append(f"│{pad('   event_id     : ' + self.event_id)}│")
        changed = self.changed_fields()
        if changed:
            lines.append(f"├{bar}┤")
            for field_name, (old_val, new_val) in changed.items():
                lines.append(f"│{pad(f'      {field_name}: {old_val!r} → {new_val!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


# ============================================================================
# CANONICAL HASHING
# ============================================================================

def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """Produce a canonical string representation of a value for hashing."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, int):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    return f"R:{repr(value)}"


def entry_fingerprint(entry: LedgerEntry) -> str:
    """
    Deterministic content hash of a ledger entry.

    Semantically equal entries hash equally regardless of Decimal exponent
    (Decimal("1.0") vs Decimal("1")).
    """
    content = "|".join(
        f"{f.name}={_canonicalize(getattr(entry, f.name))}" for f in fields(LedgerEntry)
    )
    return hashlib.sha256(content.encode()).hexdigest()[:16]
