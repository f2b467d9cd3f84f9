"""
estimator.py - Real-time marks projection

Pure, side-effect-free projection of stored ledger entries to an arbitrary
as-of time. The read path (dashboards, leaderboards, exports) calls these
functions instead of keeping its own copy of rates.

Continuity:
    estimate(entry, rule, entry.last_updated) == entry.current_marks

The estimator computes exactly what the event processor would store if an
event with no principal change arrived at as_of: both call accrue() with
the same arguments.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Dict, Optional

from .core import (
    AccrualRule, BoostWindow, LedgerEntry,
    EntryKey, Timestamp,
    HUNDRED, ZERO,
)
from .accrual import accrue, period_has_closed, rule_for_entry, period_bonus


def estimate(
    entry: LedgerEntry,
    rule: AccrualRule,
    as_of: Timestamp,
    boost: Optional[BoostWindow] = None,
) -> Decimal:
    """
    Project an entry's marks to as_of without mutating it.

    PURE FUNCTION - All inputs explicit, no hidden state.

    Args:
        entry: Stored ledger entry
        rule: Rule of the entry's contract (period taken from the entry)
        as_of: Projection time in seconds
        boost: Market boost window, if any

    Returns:
        current_marks plus marks accrued since last_updated. Entries whose
        period already closed, and as_of values at or before last_updated,
        return current_marks unchanged.
    """
    if as_of <= entry.last_updated:
        return entry.current_marks
    if period_has_closed(entry, rule):
        return entry.current_marks
    effective = rule_for_entry(rule, entry)
    return entry.current_marks + accrue(
        entry.current_deposit_usd, effective, entry.last_updated, as_of, boost
    )


def pending_bonus(entry: LedgerEntry, rule: AccrualRule) -> Decimal:
    """
    Bonus the entry will receive when its period closes, at the current deposit.

    Zero for rules without a bounded period, and once the period has closed.
    """
    if period_has_closed(entry, rule):
        return ZERO
    effective = rule_for_entry(rule, entry)
    if not effective.is_bounded:
        return ZERO
    return period_bonus(entry.current_deposit_usd, effective, entry.last_updated, effective.period_end)


def project_to_period_end(
    entry: LedgerEntry,
    rule: AccrualRule,
    boost: Optional[BoostWindow] = None,
) -> Optional[Decimal]:
    """
    Estimated final marks if the current deposit is held to the period end.

    Includes future accrual and the pending bonus. Returns None when the
    entry has no bounded period (there is no end to project to).
    """
    if period_has_closed(entry, rule):
        return entry.current_marks
    effective = rule_for_entry(rule, entry)
    if not effective.is_bounded:
        return None
    return estimate(entry, rule, effective.period_end, boost)


def potential_forfeiture(
    entry: LedgerEntry,
    rule: AccrualRule,
    as_of: Timestamp,
    boost: Optional[BoostWindow] = None,
) -> Decimal:
    """
    Marks a withdrawal at as_of would forfeit.

    Mirrors EventProcessor.on_withdrawal: the configured percentage of the
    whole projected balance, regardless of the amount withdrawn.
    """
    if not rule.forfeit_on_withdrawal:
        return ZERO
    projected = estimate(entry, rule, as_of, boost)
    return projected * rule.effective_forfeit_percentage / HUNDRED


def estimate_store(view, registry, as_of: Timestamp) -> Dict[EntryKey, Decimal]:
    """
    Estimate every entry of a store view at as_of.

    Rules are looked up with registry.resolve_rule(), which never creates
    rules, so this stays read-only.
    """
    results: Dict[EntryKey, Decimal] = {}
    for entry in view.list_entries():
        rule = registry.resolve_rule(entry.contract_address, entry.contract_type)
        boost = registry.boost_window_for(entry.contract_type, entry.contract_address)
        results[entry.key] = estimate(entry, rule, as_of, boost)
    return results
