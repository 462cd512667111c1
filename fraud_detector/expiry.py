"""Expiry manager: bounds memory by sweeping finished windows.

Each tick evicts every window key whose retention deadline has passed (the
store sweeps shard by shard under each shard's own lock).  Evicted
tumbling windows get a last rule check on their final snapshot before the
state is gone.  Alerts outlive their windows; the same tick only forgets
terminal alerts whose cooldown has run out, lagging by ``alert_grace`` so
a late firing still sees the cooldown it falls under.

The clock defaults to the store watermark, i.e. event time, so a replay of
last week's traffic expires windows exactly as live traffic would have.
"""

import threading

import structlog

logger = structlog.get_logger()


class ExpiryManager:

    def __init__(self, store, evaluator, on_trigger, interval_seconds: float = 30.0, clock=None,
                 alerts=None, alert_grace_seconds: float = 0.0):
        self._store = store
        self._evaluator = evaluator
        self._on_trigger = on_trigger
        self._alerts = alerts
        self.alert_grace = alert_grace_seconds
        self.interval = interval_seconds
        self._clock = clock or (lambda: store.watermark)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self, now: float | None = None) -> list:
        """Evict expired keys; return them.  Close-time results go to on_trigger."""
        if now is None:
            now = self._clock()
            if now is None:
                return []  # nothing applied yet

        evicted = self._store.evict(now)
        for key, final in evicted:
            if key.window.kind != "tumbling":
                continue
            for result in self._evaluator.evaluate_key(key, final, on_close=True):
                self._on_trigger(result)

        if evicted:
            logger.info("windows_evicted", count=len(evicted), now=now,
                        remaining=len(self._store))

        if self._alerts is not None:
            self._alerts.prune(now - self.alert_grace)
        return [key for key, _ in evicted]

    # ------------------------------------------------------------------
    # Background ticking
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="window-expiry", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception:
                logger.exception("expiry_tick_failed")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
