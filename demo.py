#!/usr/bin/env python3
"""
demo.py - Interactive walkthrough of the marks engine

Run with --quick to skip the pauses:

    python demo.py --quick

Steps:
    1. An engine over one configured market
    2. Deposits into the stability pool
    3. Live estimates between events
    4. Withdrawal and forfeiture
    5. Genesis period, bonus and early close
    6. Boost windows on pegged token holdings
    7. The leaderboard
    8. Replay of the audit log
"""

import logging
import sys

from harbor_marks import (
    MarksConfig,
    MarksEngine,
    SECONDS_PER_DAY,
)

DAY = SECONDS_PER_DAY

POOL = "0x1111111111111111111111111111111111111111"
SAIL_POOL = "0x2222222222222222222222222222222222222222"
GENESIS = "0x3333333333333333333333333333333333333333"
HA_TOKEN = "0x4444444444444444444444444444444444444444"
SAIL_TOKEN = "0x5555555555555555555555555555555555555555"
ALICE = "0xa11ce00000000000000000000000000000000000"
BOB = "0xb0b0000000000000000000000000000000000000"

QUICK_MODE = "--quick" in sys.argv


class DemoClock:
    """Clock the walkthrough moves by hand."""

    def __init__(self):
        self.now = 0

    def __call__(self) -> int:
        return self.now

    def advance(self, days: int) -> None:
        self.now += days * DAY


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    print(f"\n--- {text} ---\n")


def deposit(contract, user, usd, ts, kind="Deposit"):
    return {"kind": kind, "contractAddress": contract, "userAddress": user,
            "usdAmount": usd, "timestamp": ts}


# ============================================================================
# STEPS
# ============================================================================

def step_01_engine(clock):
    step_header(1, "The Engine",
        "Build an engine from a market config. Contract types come from the config.")

    config = MarksConfig.from_dict({
        "knownContractAddresses": [POOL, SAIL_POOL],
        "markets": {
            "eth-fxusd": {
                "genesis": GENESIS,
                "stabilityPoolCollateral": POOL,
                "stabilityPoolLeveraged": SAIL_POOL,
                "peggedToken": HA_TOKEN,
                "leveragedToken": SAIL_TOKEN,
            }
        },
        "rules": {"genesis": {"period_start": 0, "period_end": 10 * DAY}},
        "boost": {"enabled": True},
    })
    engine = MarksEngine(config, clock=clock, verbose=True)

    for address in (GENESIS, POOL, SAIL_POOL, HA_TOKEN, SAIL_TOKEN):
        print(f"  {address}  {engine.config.contract_type_for(address).value}")
    print(f"\n  Entries: {len(engine.store)}")
    return engine


def step_02_deposits(engine, clock):
    step_header(2, "Deposits",
        "Each event settles accrued marks up to its timestamp, then changes the principal.")

    engine.ingest([
        deposit(POOL, ALICE, "1000", clock()),
        deposit(POOL, BOB, "250", clock()),
    ])
    clock.advance(2)
    engine.apply(deposit(POOL, ALICE, "500", clock()))

    entry = engine.get_entry(POOL, ALICE)
    section_header("Alice after two days")
    print(f"  Deposit:       ${entry.current_deposit_usd}")
    print(f"  Marks:         {entry.current_marks}")
    print(f"  Marks per day: {entry.marks_per_day}")

    section_header("Rules created on first use")
    for rule in engine.registry.list_rules():
        print(f"  {rule.contract_type.value:<28} {rule.rate_per_dollar_per_day} marks/$/day")


def step_03_estimates(engine, clock):
    step_header(3, "Live Estimates",
        "Estimates project accrual forward from the stored entry without writing.")

    clock.advance(3)
    print(f"  Alice now:  {engine.estimate_now(POOL, ALICE)}")
    print(f"  Bob now:    {engine.estimate_now(POOL, BOB)}")
    print(f"  Stored marks for Alice are unchanged: {engine.get_entry(POOL, ALICE).current_marks}")


def step_04_withdrawal(engine, clock):
    step_header(4, "Withdrawal",
        "Withdrawals settle accrual, then forfeit the rule's share of the marks balance.")

    print(f"  Bob would forfeit: {engine.forfeiture_if_withdrawn(POOL, BOB)}")
    engine.apply(deposit(POOL, BOB, "100", clock(), kind="Withdrawal"))
    entry = engine.get_entry(POOL, BOB)
    print(f"  Bob deposit: ${entry.current_deposit_usd}, marks {entry.current_marks}, "
          f"forfeited {entry.total_marks_forfeited}")


def step_05_genesis(engine, clock):
    step_header(5, "Genesis",
        "Genesis accrues inside its period and pays a one-time bonus when the period closes.")

    engine.apply(deposit(GENESIS, ALICE, "2000", clock()))
    print(f"  Projected at period end: {engine.projected_total(GENESIS, ALICE)}")

    clock.advance(2)
    closed = engine.end_period(GENESIS)
    section_header("Closed early")
    for entry in closed:
        print(f"  {entry.user_address}: marks {entry.current_marks}, bonus {entry.bonus_marks}")


def step_06_boosts(engine, clock):
    step_header(6, "Boost Windows",
        "First activity on a pegged token opens a boost window for that market.")

    engine.apply(deposit(HA_TOKEN, BOB, "300", clock(), kind="BalanceChanged"))
    window = engine.registry.boost_window_for(
        engine.get_entry(HA_TOKEN, BOB).contract_type, HA_TOKEN)
    print(f"  Window: x{window.multiplier} from {window.start} to {window.end}")
    clock.advance(1)
    print(f"  Bob's boosted estimate after one day: {engine.estimate_now(HA_TOKEN, BOB)}")


def step_07_leaderboard(engine):
    step_header(7, "Leaderboard",
        "Positions from every source are merged per user and ranked.")

    print(f"  {'#':<3} {'address':<44} {'total':>14} {'per day':>12}")
    for row in engine.build_leaderboard():
        print(f"  {row.rank:<3} {row.address:<44} {row.total_marks:>14.2f} {row.marks_per_day:>12.2f}")


def step_08_replay(engine):
    step_header(8, "Replay",
        "The audit log alone rebuilds identical entries.")

    replayed = engine.processor.replay()
    same = replayed.store.list_entries() == engine.store.list_entries()
    print(f"  Audit records: {len(engine.store.event_log)}")
    print(f"  Replay matches: {same}")
    print(f"  Invariants: {engine.store.verify_invariants()['valid']}")


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    print("=" * 70)
    print("       HARBOR MARKS - INTERACTIVE WALKTHROUGH")
    print("=" * 70)
    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")
    wait_for_enter()

    clock = DemoClock()
    engine = step_01_engine(clock)
    wait_for_enter()
    step_02_deposits(engine, clock)
    wait_for_enter()
    step_03_estimates(engine, clock)
    wait_for_enter()
    step_04_withdrawal(engine, clock)
    wait_for_enter()
    step_05_genesis(engine, clock)
    wait_for_enter()
    step_06_boosts(engine, clock)
    wait_for_enter()
    step_07_leaderboard(engine)
    wait_for_enter()
    step_08_replay(engine)

    print("\n" + "=" * 70)
    print("       WALKTHROUGH COMPLETE")
    print("=" * 70)


if __name__ == "__main__":
    main()
