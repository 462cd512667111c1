"""Tests for detection rules: catalog boundaries, loader validation, Python rules."""

import pytest

from fraud_detector.config import EngineConfig
from fraud_detector.errors import ReferenceDataUnavailable
from fraud_detector.events import Event
from fraud_detector.reference import StaticReferenceData
from fraud_detector.rules import default_rules
from fraud_detector.rules.high_risk_location import HighRiskLocation
from fraud_detector.rules.high_risk_merchant import HighRiskMerchant
from fraud_detector.rules.late_night import LateNightActivity
from fraud_detector.rules.loader import CATALOG_DIR, load_rule, load_rules
from fraud_detector.window import MeasureSnapshot

MIDNIGHT = 1_699_920_000  # 2023-11-14 00:00:00 UTC
NOON = MIDNIGHT + 12 * 3600


def _catalog(rule_id):
    return load_rule(CATALOG_DIR / f"{rule_id}.yml")


def _snap(count=0, elapsed=0.0, sums=None, distinct=None):
    return MeasureSnapshot(count=count, min_ts=NOON, max_ts=NOON + elapsed,
                           sums=sums or {}, distinct=distinct or {})


def _txn(ts=NOON, **payload):
    keys = {"account_id": "acct_1", "merchant_id": "m1"}
    return Event("t1", "transaction", ts, keys, payload)


# ---------------------------------------------------------------------------
# Catalog loading
# ---------------------------------------------------------------------------

class TestCatalog:
    def test_default_catalog(self):
        rules = default_rules()
        ids = [r.id for r in rules]
        assert len(rules) == 25
        assert ids == sorted(ids)
        assert "velocity_burst" in ids
        assert "late_night_activity" in ids

    def test_every_yaml_rule_loads(self):
        for path in sorted(CATALOG_DIR.glob("*.yml")):
            rule = load_rule(path)
            assert rule.id == path.stem

    def test_session_windows_get_default_idle(self):
        rule = _catalog("login_failures")
        assert rule.window.kind == "session"
        assert rule.window.size_seconds == 86_400

    def test_explicit_session_size_kept(self):
        assert _catalog("impossible_travel").window.size_seconds == 900

    def test_alert_consumers_flagged(self):
        assert _catalog("repeated_alerts").consumes_alerts
        assert not _catalog("velocity_burst").consumes_alerts


# ---------------------------------------------------------------------------
# Windowed rule boundaries
# ---------------------------------------------------------------------------

class TestVelocityBurst:
    def setup_method(self):
        self.rule = _catalog("velocity_burst")

    def test_10_does_not_fire(self):
        """Boundary: exactly 10 a minute is allowed."""
        assert not self.rule.trigger(_snap(count=10))

    def test_11_fires(self):
        assert self.rule.trigger(_snap(count=11))

    def test_window_and_key(self):
        assert self.rule.dimension == "account_id"
        assert self.rule.window.name == "tumbling-60s"
        assert self.rule.cooldown_seconds == 600


class TestLargeDailyOutflow:
    def setup_method(self):
        self.rule = _catalog("large_daily_outflow")

    def test_boundary(self):
        assert not self.rule.trigger(_snap(count=3, sums={"amount": 100_000}))
        assert self.rule.trigger(_snap(count=3, sums={"amount": 100_000.01}))

    def test_only_debits_selected(self):
        assert self.rule.match(_txn(type="debit", amount=5))
        assert not self.rule.match(_txn(type="credit", amount=5))


class TestStructuring:
    def setup_method(self):
        self.rule = _catalog("structuring")

    def test_selection_is_under_500(self):
        assert self.rule.match(_txn(amount=499))
        assert not self.rule.match(_txn(amount=500))

    def test_boundary(self):
        assert not self.rule.trigger(_snap(count=20))
        assert self.rule.trigger(_snap(count=21))


class TestImpossibleTravel:
    def setup_method(self):
        self.rule = _catalog("impossible_travel")

    def test_two_cities_quickly_fires(self):
        assert self.rule.trigger(_snap(count=2, elapsed=600, distinct={"merchant_city": 2}))

    def test_same_city_does_not_fire(self):
        assert not self.rule.trigger(_snap(count=5, elapsed=60, distinct={"merchant_city": 1}))

    def test_too_slow_does_not_fire(self):
        assert not self.rule.trigger(_snap(count=2, elapsed=900, distinct={"merchant_city": 2}))

    def test_single_event_does_not_fire(self):
        assert not self.rule.trigger(_snap(count=1, elapsed=0, distinct={"merchant_city": 1}))

    def test_evidence(self):
        evidence = self.rule.evidence(MeasureSnapshot(
            count=2, min_ts=NOON, max_ts=NOON + 300,
            distinct={"merchant_city": 2}, samples={"merchant_city": ("Delhi", "Pune")},
        ))
        assert evidence["event_count"] == 2
        assert evidence["elapsed_seconds"] == 300
        assert evidence["distinct_merchant_city"] == 2
        assert evidence["merchant_city_sample"] == ["Delhi", "Pune"]


class TestDistinctRules:
    @pytest.mark.parametrize("rule_id,field,limit", [
        ("multi_ip_customer", "ip_address", 5),
        ("multi_device_customer", "device_id", 3),
        ("shared_ip_fanout", "customer_id", 3),
        ("multi_country_day", "merchant_country", 2),
        ("card_token_reuse", "account_id", 1),
        ("merchant_exposure", "customer_id", 50),
        ("account_takeover", "account_id", 1),
        ("stolen_card_multi_city", "merchant_city", 5),
    ])
    def test_boundary(self, rule_id, field, limit):
        rule = _catalog(rule_id)
        assert not rule.trigger(_snap(count=limit, distinct={field: limit}))
        assert rule.trigger(_snap(count=limit + 1, distinct={field: limit + 1}))


class TestCountRules:
    @pytest.mark.parametrize("rule_id,limit", [
        ("failed_txn_burst", 5),
        ("login_failures", 5),
        ("repeated_refunds", 3),
        ("excessive_transfers", 10),
        ("atm_withdrawals", 5),
        ("login_frequency", 20),
        ("repeated_alerts", 5),
    ])
    def test_boundary(self, rule_id, limit):
        rule = _catalog(rule_id)
        assert not rule.trigger(_snap(count=limit))
        assert rule.trigger(_snap(count=limit + 1))

    def test_login_failures_selects_failures_only(self):
        rule = _catalog("login_failures")
        assert rule.match(Event("l1", "login", NOON, {"customer_id": "c"}, {"success": False}))
        assert not rule.match(Event("l2", "login", NOON, {"customer_id": "c"}, {"success": True}))


class TestSpendingSpike:
    def test_average_boundary(self):
        rule = _catalog("spending_spike")
        assert not rule.trigger(_snap(count=2, sums={"amount": 40_000}))
        assert rule.trigger(_snap(count=2, sums={"amount": 40_002}))

    def test_empty_snapshot_does_not_fire(self):
        assert not _catalog("spending_spike").trigger(_snap(count=0))


# ---------------------------------------------------------------------------
# Per-event YAML rules
# ---------------------------------------------------------------------------

class TestLargeAmount:
    def setup_method(self):
        self.rule = _catalog("large_amount")

    def test_is_per_event(self):
        assert self.rule.per_event

    def test_boundary(self):
        assert self.rule.check(_txn(amount=50_000), None) is None
        assert self.rule.check(_txn(amount=75_000), None) == {"amount": 75_000}

    def test_missing_amount(self):
        assert self.rule.check(_txn(), None) is None


class TestModelHighRisk:
    def test_boundary(self):
        rule = _catalog("model_high_risk")
        assert rule.check(_txn(risk_score=0.9), None) is None
        assert rule.check(_txn(risk_score=0.95), None) == {"risk_score": 0.95}


# ---------------------------------------------------------------------------
# Python rules
# ---------------------------------------------------------------------------

class TestLateNight:
    def setup_method(self):
        self.rule = LateNightActivity()

    @pytest.mark.parametrize("hour,fires", [(0, True), (4, True), (5, False), (23, False),
                                            (12, False)])
    def test_hours(self, hour, fires):
        event = _txn(ts=MIDNIGHT + hour * 3600 + 120, amount=10)
        assert (self.rule.check(event, None) is not None) is fires

    def test_utc_offset(self):
        rule = LateNightActivity({"utc_offset_hours": 5.5})
        # 20:00 UTC is 01:30 local.
        assert rule.check(_txn(ts=MIDNIGHT + 20 * 3600), None) is not None

    @pytest.mark.parametrize("utc,local_hour,fires", [
        ((18, 40), 0, True),    # 00:10 IST
        ((22, 29), 3, True),    # 03:59 IST
        ((23, 40), 5, False),   # 05:10 IST
        ((17, 59), 23, False),  # 23:29 IST
    ])
    def test_half_hour_offset(self, utc, local_hour, fires):
        rule = LateNightActivity({"utc_offset_hours": 5.5})
        hours, minutes = utc
        evidence = rule.check(_txn(ts=MIDNIGHT + hours * 3600 + minutes * 60), None)
        assert (evidence is not None) is fires
        if fires:
            assert evidence["hour"] == local_hour

    def test_ignores_logins(self):
        assert not self.rule.match(Event("l1", "login", MIDNIGHT, {}, {}))

    def test_score_override(self):
        assert LateNightActivity({"score": 5}).score == 5


class TestHighRiskMerchant:
    def setup_method(self):
        self.rule = HighRiskMerchant()
        self.reference = StaticReferenceData(merchants={"m1": {"mcc": "5411"},
                                                        "m2": {"mcc": "5732"}})

    def test_mcc_on_event(self):
        evidence = self.rule.check(_txn(mcc="5814", amount=10), self.reference)
        assert evidence["mcc"] == "5814"

    def test_mcc_from_reference(self):
        assert self.rule.check(_txn(amount=10), self.reference)["mcc"] == "5411"

    def test_low_risk_mcc(self):
        event = Event("t1", "transaction", NOON, {"merchant_id": "m2"}, {"amount": 10})
        assert self.rule.check(event, self.reference) is None

    def test_unknown_merchant_raises(self):
        event = Event("t1", "transaction", NOON, {"merchant_id": "m9"}, {"amount": 10})
        with pytest.raises(ReferenceDataUnavailable):
            self.rule.check(event, self.reference)

    def test_keyed_by_merchant(self):
        assert self.rule.group_key(_txn()) == "m1"


class TestHighRiskLocation:
    def test_watch_list_city(self):
        rule = HighRiskLocation()
        reference = StaticReferenceData()
        assert rule.check(_txn(merchant_city="outside india"), reference) is not None
        assert rule.check(_txn(merchant_city="Pune"), reference) is None


# ---------------------------------------------------------------------------
# Loader validation
# ---------------------------------------------------------------------------

_VALID = """\
id: custom
title: Custom Rule
level: high
key:
  dimension: account_id
  window: tumbling
  size_seconds: 300
selection:
  kind: transaction
conditions:
  - metric: count
    operator: gt
    threshold: 3
"""


class TestLoader:
    def _write(self, tmp_path, text, name="custom.yml"):
        (tmp_path / name).write_text(text)
        return tmp_path

    def test_loads_directory(self, tmp_path):
        rules = load_rules(self._write(tmp_path, _VALID))
        assert [r.id for r in rules] == ["custom"]
        assert rules[0].severity == "high"

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_rules(tmp_path / "nope")

    @pytest.mark.parametrize("drop", ["id:", "title:", "level:", "conditions:"])
    def test_missing_required_field(self, tmp_path, drop):
        text = "\n".join(line for line in _VALID.splitlines() if not line.startswith(drop))
        if drop == "conditions:":
            text = text.split("  - metric")[0]
        with pytest.raises(ValueError, match="custom.yml"):
            load_rules(self._write(tmp_path, text))

    def test_missing_key_window(self, tmp_path):
        text = _VALID.replace("  window: tumbling\n", "")
        with pytest.raises(ValueError, match="window"):
            load_rules(self._write(tmp_path, text))

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(ValueError, match="mapping"):
            load_rules(self._write(tmp_path, "- just\n- a list\n"))

    def test_duplicate_ids(self, tmp_path):
        self._write(tmp_path, _VALID, "a.yml")
        with pytest.raises(ValueError, match="duplicate"):
            load_rules(self._write(tmp_path, _VALID, "b.yml"))

    def test_bad_metric_for_window(self, tmp_path):
        text = _VALID.replace("metric: count", "metric: value\n    field: amount")
        with pytest.raises(ValueError, match="not valid"):
            load_rules(self._write(tmp_path, text))

    def test_bad_operator(self, tmp_path):
        with pytest.raises(ValueError, match="operator"):
            load_rules(self._write(tmp_path, _VALID.replace("operator: gt", "operator: about")))

    def test_field_metric_needs_field(self, tmp_path):
        with pytest.raises(ValueError, match="needs a field"):
            load_rules(self._write(tmp_path, _VALID.replace("metric: count", "metric: sum")))


class TestOverrides:
    def test_threshold_and_window(self, tmp_path):
        (tmp_path / "custom.yml").write_text(_VALID)
        rule = load_rules(tmp_path, overrides={"custom": {
            "threshold": 7, "window_seconds": 120, "score": 99, "cooldown_seconds": 30,
        }})[0]
        assert rule.conditions[0]["threshold"] == 7
        assert rule.window.size_seconds == 120
        assert rule.score == 99
        assert rule.cooldown_seconds == 30
        assert not rule.trigger(_snap(count=7))
        assert rule.trigger(_snap(count=8))

    def test_disabled(self, tmp_path):
        (tmp_path / "custom.yml").write_text(_VALID)
        assert load_rules(tmp_path, overrides={"custom": {"enabled": False}}) == []

    def test_unknown_override(self, tmp_path):
        (tmp_path / "custom.yml").write_text(_VALID)
        with pytest.raises(ValueError, match="unknown override"):
            load_rules(tmp_path, overrides={"custom": {"thresh": 7}})

    def test_config_overrides_reach_default_rules(self):
        config = EngineConfig(rules={
            "velocity_burst": {"threshold": 20},
            "late_night_activity": {"enabled": False},
            "high_risk_merchant": {"severity": "high"},
        })
        rules = {r.id: r for r in default_rules(config)}
        assert "late_night_activity" not in rules
        assert rules["velocity_burst"].conditions[0]["threshold"] == 20
        assert rules["high_risk_merchant"].severity == "high"

    def test_catalog_is_not_mutated_by_overrides(self):
        default_rules(EngineConfig(rules={"velocity_burst": {"threshold": 99}}))
        assert _catalog("velocity_burst").conditions[0]["threshold"] == 10
