"""
accrual.py - The shared marks accrual function

Pure functions only. The event processor (write path) and the estimator
(read path) both call accrue(); no other code computes marks from time.

Key Formulas:
    marks = principal_usd * rate_per_dollar_per_day * seconds / 86400
    bounded period: seconds counted over [max(from, start), min(to, end)]
    period bonus:   principal_usd * bonus_multiplier, once, when [from, to]
                    crosses period_end
    boost window:   seconds inside [boost.start, boost.end) count
                    multiplier times
"""

from __future__ import annotations
from dataclasses import replace
from decimal import Decimal
from typing import Optional

from .core import (
    AccrualRule, BoostWindow, LedgerEntry,
    Timestamp, DecimalLike,
    SECONDS_PER_DAY_D, ZERO,
    to_decimal,
)


def _linear_marks(
    principal: Decimal,
    rate: Decimal,
    start: Timestamp,
    end: Timestamp,
    boost: Optional[BoostWindow],
) -> Decimal:
    """Marks for principal held over [start, end), with an optional boost window."""
    if end <= start:
        return ZERO
    seconds = end - start
    if boost is None:
        return principal * rate * Decimal(seconds) / SECONDS_PER_DAY_D
    boosted = boost.overlap_seconds(start, end)
    weighted = Decimal(seconds - boosted) + Decimal(boosted) * boost.multiplier
    return principal * rate * weighted / SECONDS_PER_DAY_D


def crosses_period_end(rule: AccrualRule, from_ts: Timestamp, to_ts: Timestamp) -> bool:
    """True if [from_ts, to_ts] reaches a bounded rule's period_end for the first time."""
    if not rule.is_bounded:
        return False
    return from_ts < rule.period_end <= to_ts


def period_bonus(
    principal_usd: DecimalLike,
    rule: AccrualRule,
    from_ts: Timestamp,
    to_ts: Timestamp,
) -> Decimal:
    """
    One-time bonus owed for [from_ts, to_ts].

    PURE FUNCTION. Non-zero only when the interval crosses period_end and
    the rule is active with a bonus multiplier.
    """
    if not rule.is_active or rule.bonus_multiplier is None:
        return ZERO
    if not crosses_period_end(rule, from_ts, to_ts):
        return ZERO
    return to_decimal(principal_usd) * rule.bonus_multiplier


def accrue(
    principal_usd: DecimalLike,
    rule: AccrualRule,
    from_ts: Timestamp,
    to_ts: Timestamp,
    boost: Optional[BoostWindow] = None,
) -> Decimal:
    """
    Marks earned by principal_usd between from_ts and to_ts under rule.

    PURE FUNCTION - All inputs explicit, no hidden state.

    Clock regressions are clamped: to_ts <= from_ts returns zero. For a
    bounded period, an interval starting at or after period_end returns
    zero because the bonus was already paid when the boundary was crossed.
    Callers must advance last_updated to to_ts right after calling, so the
    same crossing is never accrued twice.

    Args:
        principal_usd: USD basis accruing over the interval
        rule: Accrual rule (period fields already resolved for the entry)
        from_ts: Interval start (usually entry.last_updated)
        to_ts: Interval end (event timestamp or as-of time)
        boost: Optional market boost window

    Returns:
        Marks delta as a Decimal (never negative).
    """
    if to_ts <= from_ts or not rule.is_active:
        return ZERO
    principal = to_decimal(principal_usd)
    if principal <= 0:
        return ZERO
    rate = rule.rate_per_dollar_per_day

    if not rule.has_period:
        return _linear_marks(principal, rate, from_ts, to_ts, boost)

    effective_from = from_ts if rule.period_start is None else max(from_ts, rule.period_start)

    # Period open-ended: accrue from the start with no bonus yet.
    if rule.period_end is None:
        return _linear_marks(principal, rate, effective_from, to_ts, boost)

    if from_ts >= rule.period_end:
        return ZERO

    effective_to = min(to_ts, rule.period_end)
    marks = _linear_marks(principal, rate, effective_from, effective_to, boost)
    return marks + period_bonus(principal, rule, from_ts, to_ts)


def marks_per_day(principal_usd: DecimalLike, rule: AccrualRule) -> Decimal:
    """Daily accrual rate of a position: principal * rate, zero for inactive rules."""
    if not rule.is_active:
        return ZERO
    return to_decimal(principal_usd) * rule.rate_per_dollar_per_day


def rule_for_entry(rule: AccrualRule, entry: LedgerEntry) -> AccrualRule:
    """
    The rule as it applies to one entry.

    The entry's copied period replaces the rule's current period, so a rule
    update after the entry was opened does not move the entry's window.
    """
    if not rule.has_period:
        return rule
    if rule.period_start == entry.period_start and rule.period_end == entry.period_end:
        return rule
    return replace(rule, period_start=entry.period_start, period_end=entry.period_end)


def period_has_closed(entry: LedgerEntry, rule: AccrualRule) -> bool:
    """True if the entry is at or past the close of its bounded period."""
    if entry.period_ended:
        return True
    effective = rule_for_entry(rule, entry)
    return effective.is_bounded and entry.last_updated >= effective.period_end
