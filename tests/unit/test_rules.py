"""
test_rules.py - Unit tests for the rule registry

Tests:
- Default rule values per contract type
- First-call-wins lookup by address and by synthetic default key
- update_rule replaces fields and bumps updated_at
- Configuration overrides at creation
- Rule activation
- Boost window registry
"""

import logging
import pytest
from decimal import Decimal

from harbor_marks import (
    AccrualRule, ContractType, InvalidRule, RuleRegistry,
    default_rule, rule_key, apply_overrides,
    DEFAULT_BOOST_DURATION_SECONDS,
)
from tests.fake_store import POOL, GENESIS, SAIL_TOKEN, DAY, GENESIS_END


class TestDefaultRules:

    @pytest.mark.parametrize("contract_type,rate,bonus,has_period,forfeit,pct", [
        (ContractType.GENESIS, "10", "100", True, True, "100"),
        (ContractType.STABILITY_POOL_COLLATERAL, "1", None, False, True, "100"),
        (ContractType.STABILITY_POOL_SAIL, "2", None, False, True, "100"),
        (ContractType.SAIL_TOKEN_HOLDING, "5", None, False, False, None),
        (ContractType.HA_TOKEN_HOLDING, "1", None, False, False, None),
        (ContractType.UNKNOWN, "1", None, False, True, "100"),
    ])
    def test_defaults(self, contract_type, rate, bonus, has_period, forfeit, pct):
        rule = default_rule(contract_type)
        assert rule.rate_per_dollar_per_day == Decimal(rate)
        assert rule.bonus_multiplier == (Decimal(bonus) if bonus else None)
        assert rule.has_period is has_period
        assert rule.forfeit_on_withdrawal is forfeit
        assert rule.forfeit_percentage == (Decimal(pct) if pct else None)
        assert rule.is_active

    def test_effective_forfeit_percentage(self):
        assert default_rule(ContractType.UNKNOWN).effective_forfeit_percentage == Decimal("100")
        assert default_rule(ContractType.HA_TOKEN_HOLDING).effective_forfeit_percentage == Decimal("0")
        rule = AccrualRule(ContractType.UNKNOWN, Decimal("1"), forfeit_on_withdrawal=True)
        assert rule.effective_forfeit_percentage == Decimal("100")

    def test_rule_key(self):
        assert rule_key("0xPOOL", ContractType.GENESIS) == "0xpool"
        assert rule_key(None, ContractType.GENESIS) == "default-genesis"


class TestRuleValidation:

    def test_negative_rate(self):
        with pytest.raises(InvalidRule):
            AccrualRule(ContractType.UNKNOWN, Decimal("-1"))

    def test_period_end_before_start(self):
        with pytest.raises(InvalidRule):
            AccrualRule(ContractType.GENESIS, Decimal("10"), has_period=True,
                        period_start=DAY, period_end=DAY)

    @pytest.mark.parametrize("pct", ["-1", "100.01"])
    def test_forfeit_percentage_range(self, pct):
        with pytest.raises(InvalidRule):
            AccrualRule(ContractType.UNKNOWN, Decimal("1"), forfeit_on_withdrawal=True,
                        forfeit_percentage=Decimal(pct))

    def test_float_rate_converted_through_str(self):
        rule = AccrualRule(ContractType.UNKNOWN, 0.1)
        assert rule.rate_per_dollar_per_day == Decimal("0.1")


class TestRegistryLookup:

    def test_creates_once(self, registry):
        first = registry.get_or_create_rule(POOL, ContractType.STABILITY_POOL_COLLATERAL, 100)
        second = registry.get_or_create_rule(POOL, ContractType.STABILITY_POOL_COLLATERAL, 200)
        assert first is second
        assert first.created_at == 100
        assert first.contract_address == POOL

    def test_address_is_case_insensitive(self, registry):
        rule = registry.get_or_create_rule("0xPOOL", ContractType.STABILITY_POOL_COLLATERAL)
        assert registry.get_or_create_rule("0xpool", ContractType.STABILITY_POOL_COLLATERAL) is rule

    def test_first_call_wins_on_type_mismatch(self, registry, caplog):
        rule = registry.get_or_create_rule(POOL, ContractType.STABILITY_POOL_COLLATERAL)
        with caplog.at_level(logging.WARNING, logger="harbor_marks.rules"):
            again = registry.get_or_create_rule(POOL, ContractType.SAIL_TOKEN_HOLDING)
        assert again is rule
        assert again.contract_type is ContractType.STABILITY_POOL_COLLATERAL
        assert "ignoring requested type" in caplog.text

    def test_default_key_without_address(self, registry):
        rule = registry.get_or_create_rule(None, ContractType.SAIL_TOKEN_HOLDING)
        assert rule.contract_address is None
        assert registry.get_rule(None, ContractType.SAIL_TOKEN_HOLDING) is rule
        # a specific contract never falls back to the default rule
        specific = registry.get_or_create_rule(SAIL_TOKEN, ContractType.SAIL_TOKEN_HOLDING)
        assert specific is not rule

    def test_resolve_rule_does_not_store(self, registry):
        rule = registry.resolve_rule(POOL, ContractType.STABILITY_POOL_SAIL)
        assert rule.rate_per_dollar_per_day == Decimal("2")
        assert registry.get_rule(POOL, ContractType.STABILITY_POOL_SAIL) is None
        assert registry.list_rules() == []


class TestUpdateRule:

    def test_replaces_fields_and_bumps_updated_at(self, registry):
        original = registry.get_or_create_rule(POOL, ContractType.STABILITY_POOL_COLLATERAL, 10)
        updated = registry.update_rule(POOL, ContractType.STABILITY_POOL_COLLATERAL, 50,
                                       rate_per_dollar_per_day=Decimal("1.5"))
        assert updated.rate_per_dollar_per_day == Decimal("1.5")
        assert updated.updated_at == 50
        assert updated.created_at == 10
        assert original.rate_per_dollar_per_day == Decimal("1")
        assert registry.get_rule(POOL, ContractType.STABILITY_POOL_COLLATERAL) is updated

    def test_unset_fields_are_kept(self, registry):
        updated = registry.update_rule(GENESIS, ContractType.GENESIS, 0, period_end=GENESIS_END)
        assert updated.bonus_multiplier == Decimal("100")
        assert updated.has_period

    def test_invalid_update_raises(self, registry):
        registry.update_rule(GENESIS, ContractType.GENESIS, 0, period_start=DAY, period_end=2 * DAY)
        with pytest.raises(InvalidRule):
            registry.update_rule(GENESIS, ContractType.GENESIS, 0, period_end=DAY)

    def test_set_rule_active(self, registry):
        rule = registry.set_rule_active(POOL, ContractType.STABILITY_POOL_COLLATERAL, False, 5)
        assert not rule.is_active
        assert registry.set_rule_active(POOL, ContractType.STABILITY_POOL_COLLATERAL, True, 6).is_active


class TestOverrides:

    def test_type_override(self):
        registry = RuleRegistry({"genesis": {"period_start": 0, "period_end": GENESIS_END}})
        rule = registry.get_or_create_rule(GENESIS, ContractType.GENESIS)
        assert rule.period_end == GENESIS_END

    def test_address_override_beats_type_override(self):
        registry = RuleRegistry({
            "stabilityPoolCollateral": {"rate_per_dollar_per_day": Decimal("3")},
            "0xPOOL": {"rate_per_dollar_per_day": Decimal("4")},
        })
        assert registry.get_or_create_rule(POOL, ContractType.STABILITY_POOL_COLLATERAL) \
            .rate_per_dollar_per_day == Decimal("4")
        assert registry.get_or_create_rule("0xother", ContractType.STABILITY_POOL_COLLATERAL) \
            .rate_per_dollar_per_day == Decimal("3")

    def test_unknown_override_field(self):
        with pytest.raises(InvalidRule):
            apply_overrides(default_rule(ContractType.GENESIS), {"rate": 1})


class TestBoostWindows:

    def test_first_activity_opens_window(self, registry):
        window = registry.get_or_create_boost_window(
            ContractType.SAIL_TOKEN_HOLDING, SAIL_TOKEN, 1000, Decimal("2"))
        assert window.start == 1000
        assert window.end == 1000 + DEFAULT_BOOST_DURATION_SECONDS
        again = registry.get_or_create_boost_window(
            ContractType.SAIL_TOKEN_HOLDING, SAIL_TOKEN, 5000, Decimal("2"))
        assert again is window

    def test_active_multiplier(self, registry):
        registry.set_boost_window(ContractType.HA_TOKEN_HOLDING, "0xha", 0, DAY, Decimal("10"))
        assert registry.active_boost_multiplier(ContractType.HA_TOKEN_HOLDING, "0xHA", 0) == Decimal("10")
        assert registry.active_boost_multiplier(ContractType.HA_TOKEN_HOLDING, "0xha", DAY) == Decimal("1")
        assert registry.active_boost_multiplier(ContractType.SAIL_TOKEN_HOLDING, "0xha", 0) == Decimal("1")

    def test_clone_is_independent(self, registry):
        registry.get_or_create_rule(POOL, ContractType.STABILITY_POOL_COLLATERAL)
        cloned = registry.clone()
        cloned.update_rule(POOL, ContractType.STABILITY_POOL_COLLATERAL, 1,
                           rate_per_dollar_per_day=Decimal("9"))
        assert registry.get_rule(POOL, ContractType.STABILITY_POOL_COLLATERAL) \
            .rate_per_dollar_per_day == Decimal("1")
