"""Tests for event parsing: source-schema aliases, timestamps, bad input."""

from datetime import datetime, timezone

import pytest

from fraud_detector.errors import MalformedEvent
from fraud_detector.events import ALERT, LOGIN, TRANSACTION, alert_event, parse_event

NOON = 1_699_963_200  # 2023-11-14 12:00:00 UTC


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

class TestTransactionParsing:
    def test_source_schema_names(self):
        event = parse_event({
            "transaction_id": "t1",
            "txn_timestamp": NOON,
            "account_id": "acct_1",
            "card_number_hash": "abc123",
            "device_info": "dev-9",
            "transaction_type": "debit",
            "merchant_category_code": 5411,
            "amount": "1250.50",
        })
        assert event.kind == TRANSACTION
        assert event.event_id == "t1"
        assert event.timestamp == NOON
        assert event.get("card_hash") == "abc123"
        assert event.get("device_id") == "dev-9"
        assert event.get("type") == "debit"
        assert event.get("mcc") == "5411"
        assert event.amount == 1250.50

    def test_normalised_names(self):
        event = parse_event({
            "event_id": "e1", "kind": "transaction", "timestamp": NOON,
            "account_id": "acct_1", "amount": 10,
        })
        assert event.kind == TRANSACTION
        assert dict(event.keys) == {"account_id": "acct_1"}

    def test_keys_are_strings(self):
        event = parse_event({"transaction_id": "t1", "txn_timestamp": NOON, "account_id": 42})
        assert event.get("account_id") == "42"

    def test_non_numeric_amount_rejected(self):
        with pytest.raises(MalformedEvent, match="amount"):
            parse_event({"transaction_id": "t1", "txn_timestamp": NOON, "amount": "lots"})

    def test_event_is_frozen(self):
        event = parse_event({"transaction_id": "t1", "txn_timestamp": NOON, "amount": 1})
        with pytest.raises(TypeError):
            event.payload["amount"] = 2

    def test_with_keys_returns_copy(self):
        event = parse_event({"transaction_id": "t1", "txn_timestamp": NOON, "account_id": "a"})
        enriched = event.with_keys(customer_id="c1")
        assert enriched.get("customer_id") == "c1"
        assert event.get("customer_id") is None


# ---------------------------------------------------------------------------
# Logins
# ---------------------------------------------------------------------------

class TestLoginParsing:
    def test_login_fields(self):
        event = parse_event({
            "login_id": "l1",
            "login_time": "2023-11-14T12:00:00Z",
            "customer_id": "cust_1",
            "ip_address": "10.0.0.1",
            "success": "false",
        })
        assert event.kind == LOGIN
        assert event.timestamp == NOON
        assert event.get("success") is False
        assert event.get("ip_address") == "10.0.0.1"

    @pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), (0, False), (True, True)])
    def test_success_values(self, raw, expected):
        event = parse_event({"login_id": "l1", "login_time": NOON, "success": raw})
        assert event.get("success") is expected


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

class TestTimestamps:
    def test_naive_iso_is_utc(self):
        event = parse_event({"transaction_id": "t1", "txn_timestamp": "2023-11-14T12:00:00"})
        assert event.timestamp == NOON

    def test_datetime_object(self):
        ts = datetime(2023, 11, 14, 12, 0, tzinfo=timezone.utc)
        event = parse_event({"transaction_id": "t1", "txn_timestamp": ts})
        assert event.timestamp == NOON

    def test_numeric_string(self):
        event = parse_event({"transaction_id": "t1", "txn_timestamp": str(NOON)})
        assert event.timestamp == NOON

    def test_hour_is_utc(self):
        event = parse_event({"transaction_id": "t1", "txn_timestamp": NOON + 3 * 3600})
        assert event.hour == 15

    @pytest.mark.parametrize("bad", ["yesterday", True, [1, 2]])
    def test_bad_timestamp(self, bad):
        with pytest.raises(MalformedEvent):
            parse_event({"transaction_id": "t1", "txn_timestamp": bad})


# ---------------------------------------------------------------------------
# Malformed envelopes
# ---------------------------------------------------------------------------

class TestMalformed:
    def test_not_a_mapping(self):
        with pytest.raises(MalformedEvent):
            parse_event(["transaction_id", "t1"])

    def test_unknown_kind(self):
        with pytest.raises(MalformedEvent, match="kind"):
            parse_event({"event_id": "e1", "kind": "wire", "timestamp": NOON})

    def test_missing_id(self):
        with pytest.raises(MalformedEvent, match="no id"):
            parse_event({"kind": "transaction", "timestamp": NOON})

    def test_missing_timestamp(self):
        with pytest.raises(MalformedEvent, match="timestamp"):
            parse_event({"transaction_id": "t1", "amount": 5})

    def test_malformed_is_value_error(self):
        with pytest.raises(ValueError):
            parse_event({"transaction_id": "t1"})


class TestAlertEvent:
    def test_alert_event_shape(self):
        event = alert_event("a-1", "velocity_burst", "acct_1", NOON)
        assert event.kind == ALERT
        assert event.event_id == "alert:a-1"
        assert event.get("account_id") == "acct_1"
        assert event.get("rule_id") == "velocity_burst"
