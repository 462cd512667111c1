"""Tests for window specs, capped distinct sets, selections and aggregates."""

import pytest

from fraud_detector.errors import InvariantViolation
from fraud_detector.events import Event
from fraud_detector.selection import Selection
from fraud_detector.window import (
    AggregateState,
    CappedSet,
    MeasureSpec,
    WindowKey,
    WindowSpec,
)

NOON = 1_699_963_200  # 2023-11-14 12:00:00 UTC


def _txn(i=0, ts=NOON, **payload):
    payload.setdefault("amount", 100.0)
    return Event(f"t{i}", "transaction", ts, {"account_id": "acct_1"}, payload)


# ---------------------------------------------------------------------------
# WindowSpec / WindowKey
# ---------------------------------------------------------------------------

class TestWindowSpec:
    def test_tumbling_bucket(self):
        spec = WindowSpec("tumbling", 60)
        assert spec.bucket(NOON) == NOON // 60
        assert spec.bucket(NOON + 59.9) == NOON // 60
        assert spec.bucket(NOON + 60) == NOON // 60 + 1
        assert spec.bucket_end(spec.bucket(NOON)) == NOON + 60

    def test_session_has_no_bucket(self):
        assert WindowSpec("session", 900).bucket(NOON) is None

    def test_names(self):
        assert WindowSpec("tumbling", 60).name == "tumbling-60s"
        assert WindowSpec("unbounded").name == "unbounded"

    @pytest.mark.parametrize("kind,size", [("tumbling", None), ("session", 0), ("event", 5),
                                           ("hopping", 60)])
    def test_invalid_specs(self, kind, size):
        with pytest.raises(ValueError):
            WindowSpec(kind, size)

    def test_event_window_is_stateless(self):
        assert not WindowSpec("event").stateful

    def test_identity_drops_bucket(self):
        spec = WindowSpec("tumbling", 60)
        a = WindowKey("account_id", "acct_1", spec, 1)
        b = WindowKey("account_id", "acct_1", spec, 2)
        assert a != b
        assert a.identity == b.identity


# ---------------------------------------------------------------------------
# CappedSet
# ---------------------------------------------------------------------------

class TestCappedSet:
    def test_exact_below_cap(self):
        s = CappedSet(cap=4)
        for v in ["a", "b", "a", "c", "b"]:
            s.add(v)
        assert len(s) == 3
        assert not s.saturated
        assert s.sample() == ("a", "b", "c")

    def test_lower_bound_above_cap(self):
        s = CappedSet(cap=8)
        for i in range(100):
            s.add(f"ip-{i}")
        assert s.saturated
        assert 8 < len(s) <= 100

    def test_repeat_of_kept_value_never_counts(self):
        s = CappedSet(cap=2)
        s.add("a")
        s.add("b")
        s.add("a")
        assert len(s) == 2

    def test_invalid_cap(self):
        with pytest.raises(ValueError):
            CappedSet(0)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

class TestSelection:
    def test_equality_and_list(self):
        sel = Selection({"kind": "transaction", "type": ["debit", "cash_withdrawal"]})
        assert sel.match(_txn(type="debit"))
        assert sel.match(_txn(type="cash_withdrawal"))
        assert not sel.match(_txn(type="credit"))

    def test_modifiers(self):
        sel = Selection({"amount|lt": 500})
        assert sel.match(_txn(amount=499.99))
        assert not sel.match(_txn(amount=500))
        assert not sel.match(Event("x", "login", NOON, {}, {}))  # field missing

    def test_ne(self):
        sel = Selection({"status|ne": "success"})
        assert sel.match(_txn(status="failed"))
        assert not sel.match(_txn(status="success"))

    def test_empty_selection_matches_everything(self):
        assert Selection().match(_txn())
        assert Selection().signature == "*"

    def test_signature_is_order_independent(self):
        a = Selection({"kind": "transaction", "type": "debit"})
        b = Selection({"type": "debit", "kind": "transaction"})
        assert a == b
        assert hash(a) == hash(b)

    def test_unknown_modifier(self):
        with pytest.raises(ValueError, match="modifier"):
            Selection({"amount|between": 5})

    def test_modifier_with_list_rejected(self):
        with pytest.raises(ValueError):
            Selection({"amount|gt": [1, 2]})


# ---------------------------------------------------------------------------
# AggregateState
# ---------------------------------------------------------------------------

class TestAggregateState:
    def test_counts_and_measures(self):
        state = AggregateState()
        spec = MeasureSpec("*", sum_fields=("amount",), distinct_fields=("merchant_city",))
        state.add(_txn(0, NOON, amount=10.0, merchant_city="Pune"), [spec], cap=8)
        state.add(_txn(1, NOON + 30, amount=20.0, merchant_city="Delhi"), [spec], cap=8)
        state.add(_txn(2, NOON + 10, amount=30.0, merchant_city="Pune"), [spec], cap=8, late=True)

        snap = state.snapshot()
        assert snap.count == 3
        assert snap.total == 60.0
        assert snap.min_ts == NOON
        assert snap.max_ts == NOON + 30
        assert snap.late_count == 1

        m = snap.measure("*")
        assert m.count == 3
        assert m.sum("amount") == 60.0
        assert m.avg("amount") == 20.0
        assert m.distinct_count("merchant_city") == 2
        assert m.elapsed == 30

    def test_check_rejects_inconsistent_counts(self):
        state = AggregateState()
        state.add(_txn(), [], cap=8)
        state.late_count = 5
        with pytest.raises(InvariantViolation):
            state.check()

    def test_check_rejects_inverted_timestamps(self):
        state = AggregateState()
        state.add(_txn(), [], cap=8)
        state.min_ts = NOON + 10
        with pytest.raises(InvariantViolation):
            state.check()

    def test_merge_measure_specs(self):
        a = MeasureSpec("*", sum_fields=("amount",))
        b = MeasureSpec("*", distinct_fields=("merchant_city",))
        merged = a.merge(b)
        assert merged.sum_fields == ("amount",)
        assert merged.distinct_fields == ("merchant_city",)
