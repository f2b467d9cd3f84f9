"""
conftest.py - Shared pytest fixtures for marks tests

Provides common fixtures used across unit, functional and conformance tests:
- Rule registries (defaults, bounded genesis period)
- Event processors over fresh stores
- A configured engine with a fixed clock
"""

import pytest

from harbor_marks import (
    ContractType,
    EventProcessor,
    RuleRegistry,
    MarksConfig,
    MarksEngine,
)

from tests.fake_store import (
    POOL, SAIL_POOL, GENESIS, HA_TOKEN, SAIL_TOKEN, GENESIS_END, FixedClock,
)


# =============================================================================
# REGISTRIES AND PROCESSORS
# =============================================================================

@pytest.fixture
def registry():
    """Registry with per-type defaults only."""
    return RuleRegistry()


@pytest.fixture
def genesis_registry():
    """Registry whose genesis contract has a 10-day period starting at 0."""
    registry = RuleRegistry()
    registry.update_rule(GENESIS, ContractType.GENESIS, timestamp=0,
                         period_start=0, period_end=GENESIS_END)
    return registry


@pytest.fixture
def processor(registry):
    """Processor over a fresh store."""
    return EventProcessor(registry)


@pytest.fixture
def genesis_processor(genesis_registry):
    """Processor whose genesis rule has a bounded 10-day period."""
    return EventProcessor(genesis_registry)


# =============================================================================
# ENGINE
# =============================================================================

@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def market_config():
    """One fully deployed market. Boost windows stay off by default."""
    return MarksConfig.from_dict({
        "knownContractAddresses": ["0xTreasury"],
        "markets": {
            "eth-fxusd": {
                "genesis": GENESIS,
                "stabilityPoolCollateral": POOL,
                "stabilityPoolLeveraged": SAIL_POOL,
                "peggedToken": HA_TOKEN,
                "leveragedToken": SAIL_TOKEN,
            }
        },
        "rules": {
            "genesis": {"period_start": 0, "period_end": GENESIS_END},
        },
    })


@pytest.fixture
def engine(market_config, clock):
    return MarksEngine(market_config, clock=clock)
