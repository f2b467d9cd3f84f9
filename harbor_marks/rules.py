"""
rules.py - Accrual rule registry and market boost windows

The registry maps a (contract address, contract type) pair to an immutable
AccrualRule. Lookups use the contract address when one is known, otherwise
a synthetic "default-<type>" key. The first call for a key creates the rule
from the per-type defaults (plus any configured overrides); later calls
return that rule unchanged, whatever type they pass.

Rules are replaced, never mutated: update_rule() and set_rule_active()
store a new AccrualRule built with dataclasses.replace().

Default rules by type:

    type                       rate/$/day  bonus/$  period  forfeit  forfeit%
    GENESIS                        10        100     yes      yes      100
    STABILITY_POOL_COLLATERAL       1         -      no       yes      100
    STABILITY_POOL_SAIL             2         -      no       yes      100
    SAIL_TOKEN_HOLDING              5         -      no       no        -
    HA_TOKEN_HOLDING                1         -      no       no        -
    UNKNOWN                         1         -      no       yes      100
"""

from __future__ import annotations
from dataclasses import replace
from decimal import Decimal
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .core import (
    AccrualRule, BoostWindow, ContractType,
    Address, Timestamp,
    DEFAULT_BOOST_DURATION_SECONDS, DEFAULT_RULE_PREFIX, ONE,
    InvalidRule,
    normalize_address, to_decimal,
)

logger = logging.getLogger(__name__)


# (rate, bonus, has_period, forfeit_on_withdrawal, forfeit_percentage)
_DEFAULTS: Dict[ContractType, Tuple[str, Optional[str], bool, bool, Optional[str]]] = {
    ContractType.GENESIS: ("10", "100", True, True, "100"),
    ContractType.STABILITY_POOL_COLLATERAL: ("1", None, False, True, "100"),
    ContractType.STABILITY_POOL_SAIL: ("2", None, False, True, "100"),
    ContractType.SAIL_TOKEN_HOLDING: ("5", None, False, False, None),
    ContractType.HA_TOKEN_HOLDING: ("1", None, False, False, None),
    ContractType.UNKNOWN: ("1", None, False, True, "100"),
}

# Fields a configuration override or update_rule() may replace.
RULE_OVERRIDE_FIELDS = (
    'rate_per_dollar_per_day', 'bonus_multiplier', 'has_period',
    'period_start', 'period_end', 'forfeit_on_withdrawal',
    'forfeit_percentage', 'is_active',
)

_UNSET: Any = object()

BoostKey = Tuple[ContractType, Address]


def default_rule(
    contract_type: ContractType,
    contract_address: Optional[str] = None,
    timestamp: Timestamp = 0,
) -> AccrualRule:
    """
    Build the default rule for a contract type.

    Args:
        contract_type: Source category
        contract_address: Contract the rule is pinned to, if any
        timestamp: Creation time recorded on the rule

    Returns:
        A new AccrualRule with the per-type defaults.
    """
    contract_type = ContractType.parse(contract_type)
    rate, bonus, has_period, forfeit, forfeit_pct = _DEFAULTS[contract_type]
    return AccrualRule(
        contract_type=contract_type,
        rate_per_dollar_per_day=Decimal(rate),
        bonus_multiplier=Decimal(bonus) if bonus is not None else None,
        has_period=has_period,
        forfeit_on_withdrawal=forfeit,
        forfeit_percentage=Decimal(forfeit_pct) if forfeit_pct is not None else None,
        contract_address=normalize_address(contract_address) if contract_address else None,
        created_at=timestamp,
        updated_at=timestamp,
    )


def rule_key(contract_address: Optional[str], contract_type: ContractType) -> str:
    """Registry key: the normalized address if known, else default-<type>."""
    if contract_address:
        return normalize_address(contract_address)
    return f"{DEFAULT_RULE_PREFIX}{ContractType.parse(contract_type).value}"


def apply_overrides(rule: AccrualRule, overrides: Mapping[str, Any]) -> AccrualRule:
    """
    Return a copy of rule with the given fields replaced.

    Raises:
        InvalidRule: if an override names an unknown field or breaks the
                     rule's invariants.
    """
    unknown = set(overrides) - set(RULE_OVERRIDE_FIELDS)
    if unknown:
        raise InvalidRule(f"Unknown rule fields: {sorted(unknown)}")
    if not overrides:
        return rule
    return replace(rule, **dict(overrides))


class RuleRegistry:
    """
    Registry of accrual rules and market boost windows.

    Example:
        registry = RuleRegistry()
        rule = registry.get_or_create_rule("0xPool", ContractType.STABILITY_POOL_COLLATERAL)
        rule.rate_per_dollar_per_day   # Decimal("1")

        registry.update_rule("0xPool", ContractType.STABILITY_POOL_COLLATERAL,
                             timestamp=1_700_000_000,
                             rate_per_dollar_per_day=Decimal("1.5"))
    """

    def __init__(
        self,
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
        boost_duration_seconds: int = DEFAULT_BOOST_DURATION_SECONDS,
    ):
        """
        Create a registry.

        Args:
            overrides: Field overrides applied at rule creation, keyed by
                       contract address or contract type value
                       (e.g. {"genesis": {"period_end": 1_700_000_000}})
            boost_duration_seconds: Length of windows opened on first activity
        """
        self._rules: Dict[str, AccrualRule] = {}
        self._boost_windows: Dict[BoostKey, BoostWindow] = {}
        self._overrides: Dict[str, Dict[str, Any]] = {}
        self.boost_duration_seconds = boost_duration_seconds
        for key, values in (overrides or {}).items():
            self._overrides[self._override_key(key)] = dict(values)

    @classmethod
    def from_config(cls, config) -> 'RuleRegistry':
        """Build a registry from a MarksConfig (rule overrides and boost settings)."""
        return cls(
            overrides=config.rule_overrides,
            boost_duration_seconds=config.boost.duration_seconds,
        )

    @staticmethod
    def _override_key(key: str) -> str:
        contract_type = ContractType.parse(key)
        if contract_type is not ContractType.UNKNOWN or key.strip().lower() == "unknown":
            return contract_type.value
        return normalize_address(key)

    # ========================================================================
    # RULES
    # ========================================================================

    def _build_rule(
        self,
        contract_address: Optional[str],
        contract_type: ContractType,
        timestamp: Timestamp,
    ) -> AccrualRule:
        rule = default_rule(contract_type, contract_address, timestamp)
        type_overrides = self._overrides.get(contract_type.value)
        if type_overrides:
            rule = apply_overrides(rule, type_overrides)
        if contract_address:
            address_overrides = self._overrides.get(normalize_address(contract_address))
            if address_overrides:
                rule = apply_overrides(rule, address_overrides)
        return rule

    def get_or_create_rule(
        self,
        contract_address: Optional[str],
        contract_type: ContractType,
        timestamp: Timestamp = 0,
    ) -> AccrualRule:
        """
        Look up the rule for a contract, creating it on first use.

        Args:
            contract_address: Specific contract, or None for the type default
            contract_type: Source category (used only when creating)
            timestamp: Creation time recorded on a new rule

        Returns:
            The stored AccrualRule.
        """
        contract_type = ContractType.parse(contract_type)
        key = rule_key(contract_address, contract_type)
        rule = self._rules.get(key)
        if rule is None:
            rule = self._build_rule(contract_address, contract_type, timestamp)
            self._rules[key] = rule
            logger.debug("Created %s rule for %s", contract_type.value, key)
        elif rule.contract_type is not contract_type:
            logger.warning(
                "Rule %s was created as %s; ignoring requested type %s",
                key, rule.contract_type.value, contract_type.value,
            )
        return rule

    def get_rule(
        self,
        contract_address: Optional[str],
        contract_type: ContractType,
    ) -> Optional[AccrualRule]:
        """Return the stored rule for a key, or None if it was never created."""
        return self._rules.get(rule_key(contract_address, ContractType.parse(contract_type)))

    def resolve_rule(
        self,
        contract_address: Optional[str],
        contract_type: ContractType,
    ) -> AccrualRule:
        """
        Read-only lookup: the stored rule, or the rule that would be created.

        Never stores anything, so read paths can call it freely.
        """
        contract_type = ContractType.parse(contract_type)
        rule = self.get_rule(contract_address, contract_type)
        if rule is not None:
            return rule
        return self._build_rule(contract_address, contract_type, 0)

    def update_rule(
        self,
        contract_address: Optional[str],
        contract_type: ContractType,
        timestamp: Timestamp,
        rate_per_dollar_per_day: Any = _UNSET,
        bonus_multiplier: Any = _UNSET,
        has_period: Any = _UNSET,
        period_start: Any = _UNSET,
        period_end: Any = _UNSET,
        forfeit_on_withdrawal: Any = _UNSET,
        forfeit_percentage: Any = _UNSET,
    ) -> AccrualRule:
        """
        Replace rate, bonus, period or forfeit fields of a rule.

        Fields left unset keep their current value; passing None clears an
        optional field. Existing LedgerEntry period fields are not touched.

        Returns:
            The new stored rule.

        Raises:
            InvalidRule: if the updated rule breaks its invariants.
        """
        current = self.get_or_create_rule(contract_address, contract_type, timestamp)
        changes = {
            name: value for name, value in (
                ('rate_per_dollar_per_day', rate_per_dollar_per_day),
                ('bonus_multiplier', bonus_multiplier),
                ('has_period', has_period),
                ('period_start', period_start),
                ('period_end', period_end),
                ('forfeit_on_withdrawal', forfeit_on_withdrawal),
                ('forfeit_percentage', forfeit_percentage),
            )
            if value is not _UNSET
        }
        updated = replace(current, updated_at=max(timestamp, current.updated_at), **changes)
        self._rules[rule_key(contract_address, current.contract_type)] = updated
        logger.info("Updated rule %s: %s", rule_key(contract_address, current.contract_type), sorted(changes))
        return updated

    def set_rule_active(
        self,
        contract_address: Optional[str],
        contract_type: ContractType,
        active: bool,
        timestamp: Timestamp,
    ) -> AccrualRule:
        """Activate or deactivate a rule. Inactive rules accrue nothing."""
        current = self.get_or_create_rule(contract_address, contract_type, timestamp)
        updated = replace(current, is_active=active, updated_at=max(timestamp, current.updated_at))
        self._rules[rule_key(contract_address, current.contract_type)] = updated
        return updated

    def list_rules(self) -> List[AccrualRule]:
        """All stored rules, sorted by key for deterministic iteration."""
        return [self._rules[key] for key in sorted(self._rules)]

    # ========================================================================
    # BOOST WINDOWS
    # ========================================================================

    def set_boost_window(
        self,
        source_type: ContractType,
        market_address: str,
        start: Timestamp,
        end: Timestamp,
        multiplier: Decimal,
    ) -> BoostWindow:
        """Create or replace the boost window of a market."""
        window = BoostWindow(start=start, end=end, multiplier=to_decimal(multiplier))
        self._boost_windows[(ContractType.parse(source_type), normalize_address(market_address))] = window
        return window

    def get_or_create_boost_window(
        self,
        source_type: ContractType,
        market_address: str,
        timestamp: Timestamp,
        multiplier: Decimal,
    ) -> BoostWindow:
        """
        Return a market's boost window, opening one at timestamp on first activity.

        Windows are market-level (one per token or pool), not per user.
        """
        key = (ContractType.parse(source_type), normalize_address(market_address))
        window = self._boost_windows.get(key)
        if window is None:
            window = BoostWindow(
                start=timestamp,
                end=timestamp + self.boost_duration_seconds,
                multiplier=to_decimal(multiplier),
            )
            self._boost_windows[key] = window
            logger.info(
                "Opened %sx boost window for %s %s until %s",
                window.multiplier, key[0].value, key[1], window.end,
            )
        return window

    def boost_window_for(
        self,
        source_type: ContractType,
        market_address: str,
    ) -> Optional[BoostWindow]:
        """The market's boost window, or None."""
        return self._boost_windows.get(
            (ContractType.parse(source_type), normalize_address(market_address))
        )

    def active_boost_multiplier(
        self,
        source_type: ContractType,
        market_address: str,
        timestamp: Timestamp,
    ) -> Decimal:
        """Multiplier in effect at timestamp, or 1 when no window is active."""
        window = self.boost_window_for(source_type, market_address)
        if window is None or not window.is_active(timestamp):
            return ONE
        return window.multiplier

    # ========================================================================
    # COPYING
    # ========================================================================

    def clone(self) -> 'RuleRegistry':
        """Independent copy. Rules and windows are immutable, so a shallow copy suffices."""
        cloned = RuleRegistry.__new__(RuleRegistry)
        cloned._rules = dict(self._rules)
        cloned._boost_windows = dict(self._boost_windows)
        cloned._overrides = {k: dict(v) for k, v in self._overrides.items()}
        cloned.boost_duration_seconds = self.boost_duration_seconds
        return cloned
