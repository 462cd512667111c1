"""Rule catalog and evaluator.

Pure business logic, no Kafka dependency.  For each incoming event:

  1. Apply: fold the event into the aggregation store (this is also where
     late and redelivered events are rejected)
  2. Per-event rules: check the event on its own
  3. Windowed rules: for every key the event touched, check each rule
     subscribed to that key whose selection the event passed
  4. Order: results sorted by rule id, then key, so a fixed input
     sequence always produces the same output sequence

Tumbling windows get one more look when the expiry manager evicts them
(evaluate_key(..., on_close=True)).
"""

from dataclasses import dataclass, field

import structlog

from fraud_detector import metrics
from fraud_detector.errors import ReferenceDataUnavailable
from fraud_detector.window import WindowKey

logger = structlog.get_logger()


@dataclass(frozen=True)
class RuleResult:
    rule_id: str
    rule_name: str
    severity: str
    score: float
    key: WindowKey
    timestamp: float
    cooldown_seconds: float = 0.0
    event_id: str | None = None
    account_id: str | None = None
    evidence: dict = field(default_factory=dict)
    on_close: bool = False
    # False for rules that count alerts themselves.
    feeds_back: bool = True

    @property
    def identity(self) -> tuple:
        return (self.rule_id,) + self.key.identity


class RuleEvaluator:

    def __init__(self, store, rules=(), reference=None):
        self._store = store
        self._reference = reference
        self._rules: dict = {}
        self._per_event: list = []
        self._subscribed: dict = {}
        for rule in rules:
            self.register(rule)

    @property
    def rules(self) -> list:
        return [self._rules[rule_id] for rule_id in sorted(self._rules)]

    def get(self, rule_id: str):
        return self._rules[rule_id]

    def register(self, rule) -> None:
        """Add a rule to the catalog.  Rule ids are unique."""
        if rule.id in self._rules:
            raise ValueError(f"rule '{rule.id}' already registered")
        self._rules[rule.id] = rule
        if rule.per_event:
            self._per_event.append(rule)
            self._per_event.sort(key=lambda r: r.id)
        else:
            subscribers = self._subscribed.setdefault((rule.dimension, rule.window), [])
            subscribers.append(rule)
            subscribers.sort(key=lambda r: r.id)
            self._store.router.subscribe(rule)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, rule, key: WindowKey, aggregate, event=None, on_close: bool = False):
        """Check one windowed rule against one key's aggregate.

        Returns a RuleResult if the predicate holds, else None.
        """
        if aggregate is None:
            return None
        measure = aggregate.measure(rule.measure.signature)
        if measure is None or not rule.trigger(measure):
            return None
        return self._result(
            rule,
            key,
            timestamp=event.timestamp if event is not None else aggregate.max_ts,
            event=event,
            evidence=rule.evidence(measure),
            on_close=on_close,
        )

    def evaluate_key(self, key: WindowKey, aggregate, event=None, on_close: bool = False) -> list:
        """Check every rule subscribed to *key*'s (dimension, window).

        With an event, only rules whose selection the event passed are
        checked; the other rules' measures did not change.
        """
        results = []
        for rule in self._subscribed.get((key.dimension, key.window), ()):
            if event is not None and not rule.match(event):
                continue
            try:
                result = self.evaluate(rule, key, aggregate, event=event, on_close=on_close)
            except Exception:
                logger.exception("rule_evaluation_error", rule_id=rule.id, key=str(key))
                continue
            if result is not None:
                results.append(result)
        return results

    def evaluate_on_event(self, event) -> list:
        """Apply *event* to the store and return every rule that fires.

        LateEventRejected and DuplicateEvent from the store propagate; in
        that case no rule runs.
        """
        updates = self._store.apply(event)

        results = []
        for rule in self._per_event:
            if not rule.match(event):
                continue
            value = rule.group_key(event)
            if value is None:
                continue
            try:
                evidence = rule.check(event, self._reference)
            except ReferenceDataUnavailable as e:
                metrics.rules_skipped_total.labels(rule_id=rule.id).inc()
                logger.info("rule_skipped_reference_unavailable", rule_id=rule.id,
                            event_id=event.event_id, reason=str(e))
                continue
            except Exception:
                logger.exception("rule_evaluation_error", rule_id=rule.id,
                                 event_id=event.event_id)
                continue
            if evidence is None:
                continue
            key = WindowKey(rule.dimension, str(value), rule.window)
            results.append(self._result(rule, key, event.timestamp, event, evidence))

        for key, aggregate in updates:
            results.extend(self.evaluate_key(key, aggregate, event=event))

        results.sort(key=lambda r: (r.rule_id, str(r.key)))
        return results

    @staticmethod
    def _result(rule, key, timestamp, event, evidence, on_close=False) -> RuleResult:
        if event is not None:
            account_id = event.get("account_id")
        else:
            account_id = key.value if key.dimension == "account_id" else None
        return RuleResult(
            rule_id=rule.id,
            rule_name=rule.name,
            severity=rule.severity,
            score=rule.score,
            key=key,
            timestamp=timestamp,
            cooldown_seconds=rule.cooldown_seconds,
            event_id=event.event_id if event is not None else None,
            account_id=account_id,
            evidence=evidence,
            on_close=on_close,
            feeds_back=not rule.consumes_alerts,
        )
