"""Detection engine: wires the store, evaluator, alert manager and sink.

Pure business logic, no Kafka dependency.  main.py feeds events in through
a ShardedWorkerPool; tests call process() directly.

    raw dict ──parse──> Event ──enrich──> RuleEvaluator ──> AlertManager ──> SinkDispatcher
                                              │                  │
                                       AggregationStore    alert feedback
                                              │            (alert events)
                                        ExpiryManager

Alert feedback: when an alert opens on an account, an internal ``alert``
event for that account goes back through the evaluator so rules over
alert counts (repeated_alerts) see it.  Results of those rules do not feed
back themselves.
"""

import queue
import threading
import zlib

import structlog

from fraud_detector import metrics
from fraud_detector.alerts import AlertManager
from fraud_detector.config import EngineConfig
from fraud_detector.errors import (
    DuplicateEvent,
    LateEventRejected,
    MalformedEvent,
    ReferenceDataUnavailable,
)
from fraud_detector.evaluator import RuleEvaluator
from fraud_detector.events import Event, alert_event, parse_event
from fraud_detector.expiry import ExpiryManager
from fraud_detector.reference import StaticReferenceData
from fraud_detector.router import EventRouter
from fraud_detector.rules import default_rules
from fraud_detector.sink import InMemoryAlertSink, SinkDispatcher
from fraud_detector.store import AggregationStore

logger = structlog.get_logger()


class DetectionEngine:

    def __init__(self, rules=None, config: EngineConfig | None = None,
                 reference=None, sink=None):
        self.config = config or EngineConfig()
        if rules is None:
            rules = default_rules(self.config)
        self.reference = reference or StaticReferenceData(
            high_risk_mccs=self.config.high_risk_mccs,
            high_risk_cities=self.config.high_risk_cities,
        )

        self._store = AggregationStore(
            EventRouter(),
            shards=self.config.shards,
            max_lateness_seconds=self.config.max_lateness_seconds,
            distinct_cap=self.config.distinct_cap,
            dedup_capacity=self.config.dedup_capacity,
            retention_grace_seconds=self.config.retention_grace_seconds,
        )
        self._evaluator = RuleEvaluator(self._store, rules, reference=self.reference)

        self.sink = sink if sink is not None else InMemoryAlertSink()
        self._dispatcher = SinkDispatcher(
            self.sink,
            buffer_size=self.config.sink_buffer_size,
            max_retries=self.config.sink_max_retries,
            backoff_seconds=self.config.sink_backoff_seconds,
            backoff_max_seconds=self.config.sink_backoff_max_seconds,
        )
        self._alerts = AlertManager(self._dispatcher, max_trigger_refs=self.config.max_trigger_refs)
        self._expiry = ExpiryManager(
            self._store,
            self._evaluator,
            self._trigger,
            interval_seconds=self.config.eviction_interval_seconds,
            alerts=self._alerts,
            alert_grace_seconds=self.config.max_lateness_seconds,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def rules(self) -> list:
        return self._evaluator.rules

    @property
    def store(self) -> AggregationStore:
        return self._store

    @property
    def evaluator(self) -> RuleEvaluator:
        return self._evaluator

    @property
    def alerts(self) -> AlertManager:
        return self._alerts

    @property
    def dispatcher(self) -> SinkDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Event path
    # ------------------------------------------------------------------

    def process(self, raw) -> list:
        """Feed one event, get back the alert mutations it caused.

        Redelivered events are dropped and return [].  MalformedEvent and
        LateEventRejected are counted, logged and re-raised to the caller.
        """
        try:
            event = raw if isinstance(raw, Event) else parse_event(raw)
        except MalformedEvent as e:
            metrics.events_total.labels(kind="unknown", outcome="malformed").inc()
            logger.warning("event_malformed", error=str(e))
            raise

        event = self._enrich(event)
        return self._process(event)

    def _process(self, event: Event) -> list:
        try:
            results = self._evaluator.evaluate_on_event(event)
        except DuplicateEvent:
            metrics.events_total.labels(kind=event.kind, outcome="duplicate").inc()
            logger.debug("event_duplicate", event_id=event.event_id)
            return []
        except LateEventRejected as e:
            metrics.events_total.labels(kind=event.kind, outcome="late_rejected").inc()
            logger.warning("event_late_rejected", event_id=event.event_id,
                           timestamp=e.timestamp, watermark=e.watermark)
            raise
        metrics.events_total.labels(kind=event.kind, outcome="applied").inc()

        mutations = []
        for result in results:
            mutations.extend(self._trigger(result))
        return mutations

    def _trigger(self, result) -> list:
        """Hand a rule result to the alert manager, then feed new alerts back."""
        mutation = self._alerts.on_trigger(result)
        mutations = [mutation]
        if mutation.created and result.feeds_back and result.account_id is not None:
            feedback = alert_event(mutation.alert.alert_id, result.rule_id,
                                   result.account_id, result.timestamp)
            try:
                mutations.extend(self._process(feedback))
            except LateEventRejected:
                # Close-time alerts can carry a timestamp behind the watermark.
                logger.debug("alert_feedback_late", alert_id=mutation.alert.alert_id)
        return mutations

    def _enrich(self, event: Event) -> Event:
        """Fill in customer and merchant fields the source left out."""
        account_id = event.get("account_id")
        if account_id is not None and event.get("customer_id") is None:
            try:
                event = event.with_keys(
                    customer_id=self.reference.customer_for_account(account_id))
            except ReferenceDataUnavailable:
                pass

        merchant_id = event.get("merchant_id")
        if merchant_id is not None and (event.get("mcc") is None
                                        or event.get("merchant_city") is None):
            try:
                merchant = self.reference.merchant(merchant_id)
            except ReferenceDataUnavailable:
                return event
            event = event.with_payload(
                mcc=event.get("mcc") or merchant.get("mcc"),
                merchant_city=event.get("merchant_city") or merchant.get("city"),
                merchant_country=event.get("merchant_country") or merchant.get("country"),
            )
        return event

    # ------------------------------------------------------------------
    # Investigator actions and housekeeping
    # ------------------------------------------------------------------

    def transition(self, alert_id: str, new_status, actor: str, notes: str = ""):
        return self._alerts.transition(alert_id, new_status, actor, notes)

    def add_note(self, alert_id: str, actor: str, notes: str):
        return self._alerts.add_note(alert_id, actor, notes)

    def tick(self, now: float | None = None) -> list:
        """Run one expiry sweep.  Returns the evicted window keys."""
        return self._expiry.tick(now)

    def start(self) -> None:
        self._dispatcher.start()
        self._expiry.start()

    def close(self) -> None:
        self._expiry.stop()
        self._dispatcher.stop()


def route_key(raw) -> str:
    """Partitioning key: account, else customer, else card."""
    get = raw.get if hasattr(raw, "get") else (lambda _name: None)
    for name in ("account_id", "customer_id", "card_id", "card_hash"):
        value = get(name)
        if value is not None:
            return str(value)
    return ""


class ShardedWorkerPool:
    """Fixed worker threads, each owning one queue.

    Events with the same account (or customer, or card) always land on the
    same worker, so they are processed in arrival order.  Failures are
    logged and counted; they never stop a worker.
    """

    _STOP = object()

    def __init__(self, engine: DetectionEngine, workers: int = 4, queue_size: int = 10_000):
        self.engine = engine
        self._queues = [queue.Queue(maxsize=queue_size) for _ in range(workers)]
        self._threads: list = []
        self.processed = 0
        self.failed = 0
        self._count_lock = threading.Lock()

    def submit(self, raw) -> None:
        """Queue an event.  Blocks while that worker's queue is full."""
        index = zlib.crc32(route_key(raw).encode("utf-8")) % len(self._queues)
        self._queues[index].put(raw)

    def start(self) -> None:
        if self._threads:
            return
        for i, q in enumerate(self._queues):
            t = threading.Thread(target=self._run, args=(q,), name=f"detector-worker-{i}",
                                 daemon=True)
            t.start()
            self._threads.append(t)

    def _run(self, q: queue.Queue) -> None:
        while True:
            raw = q.get()
            if raw is self._STOP:
                q.task_done()
                return
            try:
                self.engine.process(raw)
            except (MalformedEvent, LateEventRejected):
                self._count(ok=False)  # already logged and counted by the engine
            except Exception:
                metrics.events_total.labels(kind="unknown", outcome="error").inc()
                logger.exception("event_processing_failed")
                self._count(ok=False)
            else:
                self._count(ok=True)
            finally:
                q.task_done()

    def _count(self, ok: bool) -> None:
        with self._count_lock:
            if ok:
                self.processed += 1
            else:
                self.failed += 1

    def join(self) -> None:
        """Block until every queued event has been processed."""
        for q in self._queues:
            q.join()

    def stop(self, timeout: float = 10.0) -> None:
        for q in self._queues:
            q.put(self._STOP)
        for t in self._threads:
            t.join(timeout)
        self._threads = []
