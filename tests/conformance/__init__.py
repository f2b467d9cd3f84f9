"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the marks ledger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. continuity.py - Stored marks equal the projection at last_updated
2. monotonicity.py - Lifetime earned/forfeited totals never decrease
3. non_negativity.py - Balances and marks never go below zero
4. determinism.py - Batched, one-by-one, sharded and replayed runs agree
5. idempotency.py - Duplicate event ids are applied once
6. ordering.py - Out-of-order events never mutate state

These tests use hypothesis for property-based testing.
"""
