"""
Continuity Conformance Tests

INVARIANT: The read path and the write path agree at every instant.

    ∀ entry e, rule r:
        estimate(e, r, e.last_updated) = e.current_marks

    ∀ applied event at time t on entry e (before forfeiture):
        new.current_marks + forfeited = estimate(e, r, t)

This guarantees a dashboard never shows a value the ledger later
contradicts when the next event lands.
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from harbor_marks import EventKind, estimate, estimate_store
from tests.conformance.strategies import event_streams, run
from tests.fake_store import DAY


class TestContinuityProperties:

    @given(event_streams())
    @settings(max_examples=50, deadline=None)
    def test_estimate_at_last_updated_is_stored_marks(self, events):
        """
        PROPERTY: Projecting a stored entry to its own timestamp changes nothing.
        """
        processor = run(events)
        for entry in processor.store.list_entries():
            rule = processor.registry.resolve_rule(entry.contract_address, entry.contract_type)
            boost = processor.registry.boost_window_for(entry.contract_type, entry.contract_address)
            assert estimate(entry, rule, entry.last_updated, boost) == entry.current_marks

    @given(event_streams())
    @settings(max_examples=50, deadline=None)
    def test_every_event_lands_on_the_projection(self, events):
        """
        PROPERTY: Each stored mutation starts from exactly what estimate() predicted.
        """
        processor = run(events)
        for record in processor.store.event_log:
            if record.old_entry is None or record.kind == EventKind.PERIOD_END:
                continue
            projected = estimate(record.old_entry, record.rule, record.timestamp, record.boost)
            assert record.new_entry.current_marks + record.marks_forfeited == projected

    @given(event_streams(), st.integers(min_value=0, max_value=20 * DAY), st.integers(min_value=0, max_value=20 * DAY))
    @settings(max_examples=50, deadline=None)
    def test_projection_is_monotonic_in_time(self, events, t1, t2):
        """
        PROPERTY: A later as-of time never projects fewer marks.
        """
        processor = run(events)
        early, late = min(t1, t2), max(t1, t2)
        before = estimate_store(processor.store, processor.registry, early)
        after = estimate_store(processor.store, processor.registry, late)
        for key, marks in before.items():
            assert after[key] >= marks
