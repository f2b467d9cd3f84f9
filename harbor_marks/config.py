"""
config.py - Marks engine configuration

Loads the market registry and rule overrides from a JSON file:

    {
      "knownContractAddresses": ["0x..."],
      "markets": {
        "eth-fxusd": {
          "genesis": "0x...",
          "stabilityPoolCollateral": "0x...",
          "stabilityPoolLeveraged": "0x...",
          "peggedToken": "0x...",
          "leveragedToken": "0x..."
        }
      },
      "rules": {
        "genesis": {"period_start": 1700000000, "period_end": 1700864000},
        "0xfb97...": {"rate_per_dollar_per_day": "1.5"}
      },
      "boost": {"enabled": true, "durationSeconds": 691200,
                "anchorMultiplier": "10", "sailMultiplier": "2"}
    }

Placeholder zero addresses (not yet deployed contracts) are ignored.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
import json
import logging
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union

from .core import (
    ContractType,
    Address,
    ANCHOR_BOOST_MULTIPLIER, DEFAULT_BOOST_DURATION_SECONDS, SAIL_BOOST_MULTIPLIER,
    ConfigError,
    normalize_address, to_decimal,
)
from .rules import RULE_OVERRIDE_FIELDS

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40

_DECIMAL_RULE_FIELDS = ('rate_per_dollar_per_day', 'bonus_multiplier', 'forfeit_percentage')
_INT_RULE_FIELDS = ('period_start', 'period_end')
_BOOL_RULE_FIELDS = ('has_period', 'forfeit_on_withdrawal', 'is_active')

# camelCase aliases accepted in rule override blocks
_RULE_FIELD_ALIASES = {
    'ratePerDollarPerDay': 'rate_per_dollar_per_day',
    'bonusMultiplier': 'bonus_multiplier',
    'hasPeriod': 'has_period',
    'periodStart': 'period_start',
    'periodEnd': 'period_end',
    'forfeitOnWithdrawal': 'forfeit_on_withdrawal',
    'forfeitPercentage': 'forfeit_percentage',
    'isActive': 'is_active',
}


def _get(data: Mapping[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in data:
        return data[camel]
    return data.get(snake, default)


def _address(value: Any, where: str) -> Optional[Address]:
    if value is None or value == "":
        return None
    try:
        address = normalize_address(value)
    except ValueError as e:
        raise ConfigError(f"{where}: {e}")
    return None if address == ZERO_ADDRESS else address


# ============================================================================
# CONFIG TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class MarketAddresses:
    """Contract addresses of one market. Missing or zero addresses are None."""
    name: str
    genesis: Optional[Address] = None
    stability_pool_collateral: Optional[Address] = None
    stability_pool_leveraged: Optional[Address] = None
    pegged_token: Optional[Address] = None
    leveraged_token: Optional[Address] = None

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> 'MarketAddresses':
        if not isinstance(data, Mapping):
            raise ConfigError(f"markets.{name} must be an object")
        where = f"markets.{name}"
        return cls(
            name=name,
            genesis=_address(data.get('genesis'), where),
            stability_pool_collateral=_address(
                _get(data, 'stabilityPoolCollateral', 'stability_pool_collateral'), where),
            stability_pool_leveraged=_address(
                _get(data, 'stabilityPoolLeveraged', 'stability_pool_leveraged'), where),
            pegged_token=_address(_get(data, 'peggedToken', 'pegged_token'), where),
            leveraged_token=_address(_get(data, 'leveragedToken', 'leveraged_token'), where),
        )

    def typed_addresses(self) -> Dict[Address, ContractType]:
        """Address -> contract type for every deployed contract of the market."""
        pairs = (
            (self.genesis, ContractType.GENESIS),
            (self.stability_pool_collateral, ContractType.STABILITY_POOL_COLLATERAL),
            (self.stability_pool_leveraged, ContractType.STABILITY_POOL_SAIL),
            (self.pegged_token, ContractType.HA_TOKEN_HOLDING),
            (self.leveraged_token, ContractType.SAIL_TOKEN_HOLDING),
        )
        return {address: contract_type for address, contract_type in pairs if address}


@dataclass(frozen=True, slots=True)
class BoostSettings:
    """Market boost windows opened on first activity. Off unless a config turns them on."""
    enabled: bool = False
    duration_seconds: int = DEFAULT_BOOST_DURATION_SECONDS
    anchor_multiplier: Decimal = ANCHOR_BOOST_MULTIPLIER
    sail_multiplier: Decimal = SAIL_BOOST_MULTIPLIER

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'BoostSettings':
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ConfigError("boost must be an object")
        try:
            settings = cls(
                enabled=bool(data.get('enabled', False)),
                duration_seconds=int(_get(data, 'durationSeconds', 'duration_seconds',
                                          DEFAULT_BOOST_DURATION_SECONDS)),
                anchor_multiplier=to_decimal(_get(data, 'anchorMultiplier', 'anchor_multiplier',
                                                  ANCHOR_BOOST_MULTIPLIER)),
                sail_multiplier=to_decimal(_get(data, 'sailMultiplier', 'sail_multiplier',
                                                SAIL_BOOST_MULTIPLIER)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid boost settings: {e}")
        if settings.duration_seconds <= 0:
            raise ConfigError(f"boost.durationSeconds must be > 0, got {settings.duration_seconds}")
        return settings

    def multiplier_for(self, contract_type: ContractType) -> Optional[Decimal]:
        """
        Boost multiplier a source type opens on first activity, or None.

        Anchor sources (ha tokens, collateral pools) and sail sources (sail
        tokens, leveraged pools) are boosted; genesis is not.
        """
        if not self.enabled:
            return None
        if contract_type in (ContractType.HA_TOKEN_HOLDING, ContractType.STABILITY_POOL_COLLATERAL):
            return self.anchor_multiplier
        if contract_type in (ContractType.SAIL_TOKEN_HOLDING, ContractType.STABILITY_POOL_SAIL):
            return self.sail_multiplier
        return None


def _parse_rule_overrides(key: str, data: Any) -> Dict[str, Any]:
    if not isinstance(data, Mapping):
        raise ConfigError(f"rules.{key} must be an object")
    parsed: Dict[str, Any] = {}
    for raw_name, value in data.items():
        name = _RULE_FIELD_ALIASES.get(raw_name, raw_name)
        if name not in RULE_OVERRIDE_FIELDS:
            raise ConfigError(f"rules.{key}: unknown field {raw_name!r}")
        try:
            if value is None:
                parsed[name] = None
            elif name in _DECIMAL_RULE_FIELDS:
                parsed[name] = to_decimal(value)
            elif name in _INT_RULE_FIELDS:
                parsed[name] = int(value)
            elif name in _BOOL_RULE_FIELDS:
                if not isinstance(value, bool):
                    raise ValueError(f"expected true/false, got {value!r}")
                parsed[name] = value
        except (TypeError, ValueError) as e:
            raise ConfigError(f"rules.{key}.{raw_name}: {e}")
    return parsed


@dataclass(frozen=True, slots=True)
class MarksConfig:
    """
    Immutable engine configuration.

    Attributes:
        known_contract_addresses: Explicit protocol-owned addresses
        markets: Market name -> contract addresses
        rule_overrides: Rule field overrides keyed by type value or address
        boost: Boost window settings
    """
    known_contract_addresses: FrozenSet[Address] = frozenset()
    markets: Tuple[MarketAddresses, ...] = ()
    rule_overrides: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    boost: BoostSettings = field(default_factory=BoostSettings)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'MarksConfig':
        """
        Build a config from parsed JSON.

        Raises:
            ConfigError: on any malformed section
        """
        if not isinstance(data, Mapping):
            raise ConfigError("Configuration root must be an object")

        known_raw = _get(data, 'knownContractAddresses', 'known_contract_addresses', [])
        if not isinstance(known_raw, (list, tuple)):
            raise ConfigError("knownContractAddresses must be a list")
        known = frozenset(
            address for address in (_address(a, 'knownContractAddresses') for a in known_raw) if address
        )

        markets_raw = data.get('markets') or {}
        if not isinstance(markets_raw, Mapping):
            raise ConfigError("markets must be an object keyed by market name")
        markets = tuple(MarketAddresses.from_dict(name, markets_raw[name]) for name in sorted(markets_raw))

        rules_raw = data.get('rules') or {}
        if not isinstance(rules_raw, Mapping):
            raise ConfigError("rules must be an object")
        overrides = {key: _parse_rule_overrides(key, value) for key, value in rules_raw.items()}

        return cls(
            known_contract_addresses=known,
            markets=markets,
            rule_overrides=overrides,
            boost=BoostSettings.from_dict(data.get('boost')),
        )

    def known_addresses(self) -> FrozenSet[Address]:
        """Every protocol-owned address: the explicit list plus all market contracts."""
        addresses = set(self.known_contract_addresses)
        for market in self.markets:
            addresses.update(market.typed_addresses())
        return frozenset(addresses)

    def contract_type_for(self, address: str) -> ContractType:
        """Contract type of a market contract, UNKNOWN if it is not configured."""
        normalized = normalize_address(address)
        for market in self.markets:
            contract_type = market.typed_addresses().get(normalized)
            if contract_type is not None:
                return contract_type
        return ContractType.UNKNOWN


def load_config(path: Union[str, Path]) -> MarksConfig:
    """
    Load a MarksConfig from a JSON file.

    Raises:
        ConfigError: if the file is missing, not JSON, or malformed
    """
    path = Path(path)
    try:
        with path.open() as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}")
    config = MarksConfig.from_dict(data)
    logger.info(
        "Loaded marks config from %s: %d markets, %d rule overrides",
        path, len(config.markets), len(config.rule_overrides),
    )
    return config
